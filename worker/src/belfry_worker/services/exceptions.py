"""Shared service-layer exceptions."""

from __future__ import annotations


class SearchFailure(Exception):
    """Expected failure while preparing or running a composition search."""


class ConfigurationError(SearchFailure):
    """Raised when a method, call, stage or length combination cannot be searched."""


class InvariantViolation(RuntimeError):
    """A produced composition disagrees with an independent check (a defect, never expected)."""
