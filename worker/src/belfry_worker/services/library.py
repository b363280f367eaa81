"""Bundled method table and the standard lead-end calls."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from ..app.models import BaseCalls
from .bells import BELL_NAMES, LABEL_LEAD_END, Call, Method
from .exceptions import ConfigurationError

_LIBRARY_PATH = Path(__file__).resolve().parent / "methods.json"


@dataclass(frozen=True)
class MethodEntry:
    name: str
    stage: int
    place_notation: str
    folded: str

    def to_method(self, labels: Optional[Dict[int, str]] = None) -> Method:
        return Method.from_place_notation(self.name, self.stage, self.place_notation, labels)


@dataclass(frozen=True)
class MethodLibrary:
    version: int
    entries: List[MethodEntry]

    def find(self, name: str) -> Optional[MethodEntry]:
        folded = " ".join(name.split()).casefold()
        for entry in self.entries:
            if entry.folded == folded:
                return entry
        return None

    def names(self) -> List[str]:
        return [entry.name for entry in self.entries]


def _load_library() -> MethodLibrary:
    try:
        raw = json.loads(_LIBRARY_PATH.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:  # pragma: no cover - packaging error
        raise RuntimeError(f"method library file missing at {_LIBRARY_PATH}") from exc

    entries = [
        MethodEntry(
            name=item["name"],
            stage=int(item["stage"]),
            place_notation=item["place_notation"],
            folded=item["name"].casefold(),
        )
        for item in raw["methods"]
    ]
    return MethodLibrary(version=int(raw["version"]), entries=entries)


_LIBRARY = _load_library()


def get_library() -> MethodLibrary:
    return _LIBRARY


def lookup_method(name: str, labels: Optional[Dict[int, str]] = None) -> Method:
    entry = _LIBRARY.find(name)
    if entry is None:
        raise ConfigurationError(
            f"unknown method '{name}' (known: {', '.join(_LIBRARY.names())})"
        )
    return entry.to_method(labels)


def tenors_together_non_fixed_bells(stage: int) -> List[int]:
    """Bells 2-6 move freely; the treble, 7th and above, and the tenor stay in course."""
    return list(range(1, min(stage - 1, 6)))


def base_calls(
    stage: int,
    kind: BaseCalls,
    *,
    bob_weight: float,
    single_weight: float,
) -> List[Call]:
    """The bob and single for ``kind``, placed at the lead end."""
    if kind == BaseCalls.NONE:
        return []
    if stage < 4:
        raise ConfigurationError(f"base calls need at least 4 bells, got stage {stage}")

    if kind == BaseCalls.NEAR:
        bob = "14"
        single = "123" if stage == 5 else "1234"
    else:
        if stage % 2 or stage < 6:
            raise ConfigurationError(f"far calls need an even stage of 6 or more, got {stage}")
        far_place = BELL_NAMES[stage - 3]
        bob = f"1{far_place}"
        single = f"1{far_place}{BELL_NAMES[stage - 2]}{BELL_NAMES[stage - 1]}"

    return [
        Call.create("-", bob, stage, label=LABEL_LEAD_END, weight=bob_weight),
        Call.create("s", single, stage, label=LABEL_LEAD_END, weight=single_weight),
    ]
