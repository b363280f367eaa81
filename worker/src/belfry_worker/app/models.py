from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, Field, model_validator


class JobState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    CANCELLED = "cancelled"
    FAILED = "failed"


class SearchOutcome(str, Enum):
    COMPLETE = "complete"
    NO_COMPOSITION = "no_composition"
    CANCELLED = "cancelled"


class BaseCalls(str, Enum):
    NONE = "none"
    NEAR = "near"
    FAR = "far"


class LengthPreset(str, Enum):
    PRACTICE = "practice"
    QUARTER_PEAL = "quarter_peal"
    HALF_PEAL = "half_peal"
    PEAL = "peal"


LENGTH_PRESETS: dict[LengthPreset, tuple[int, int]] = {
    LengthPreset.PRACTICE: (1, 300),
    LengthPreset.QUARTER_PEAL: (1250, 1350),
    LengthPreset.HALF_PEAL: (2500, 2600),
    LengthPreset.PEAL: (5000, 5200),
}


class LengthRange(BaseModel):
    min: int = Field(..., ge=1)
    max: int = Field(..., ge=1)

    @model_validator(mode="after")
    def _check_order(self) -> "LengthRange":
        if self.min > self.max:
            raise ValueError(f"length minimum {self.min} exceeds maximum {self.max}")
        return self

    @classmethod
    def from_preset(cls, preset: LengthPreset) -> "LengthRange":
        low, high = LENGTH_PRESETS[preset]
        return cls(min=low, max=high)


class MethodSpec(BaseModel):
    name: str = Field(default="", max_length=128)
    place_notation: Optional[str] = Field(default=None, min_length=1, max_length=512)
    stage: Optional[int] = Field(default=None, ge=2, le=33)
    labels: Optional[dict[int, str]] = Field(
        default=None,
        description="Sub-lead indices mapped to label names (defaults to {0: 'LE'}).",
    )

    @model_validator(mode="after")
    def _check_source(self) -> "MethodSpec":
        if self.place_notation is None and not self.name:
            raise ValueError("a method needs either a library name or place notation")
        if self.place_notation is not None and self.stage is None:
            raise ValueError("methods given by place notation need a stage")
        return self


class CallSpec(BaseModel):
    symbol: str = Field(..., min_length=1, max_length=8)
    place_notation: str = Field(..., min_length=1, max_length=32)
    label: str = Field(default="LE", min_length=1, max_length=32)
    weight: float = Field(default=-3.0)
    calling_positions: Optional[Union[str, list[str]]] = Field(default=None)

    def positions(self) -> Optional[list[str]]:
        if self.calling_positions is None:
            return None
        if isinstance(self.calling_positions, str):
            return list(self.calling_positions)
        return list(self.calling_positions)


class MusicSpec(BaseModel):
    name: Optional[str] = Field(default=None, max_length=64)
    patterns: list[str] = Field(default_factory=list)
    run_lengths: list[int] = Field(default_factory=list)
    weight: float = Field(default=1.0)
    positions: Optional[list[int]] = Field(
        default=None,
        description="Sub-lead indices at which rows may score (None scores every row).",
    )
    count_min: Optional[int] = Field(default=None, ge=0)
    count_max: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _check_content(self) -> "MusicSpec":
        if not self.patterns and not self.run_lengths:
            raise ValueError("music needs at least one pattern or run length")
        if any(length < 2 for length in self.run_lengths):
            raise ValueError("run lengths must be at least 2")
        if (
            self.count_min is not None
            and self.count_max is not None
            and self.count_min > self.count_max
        ):
            raise ValueError("count_min must not exceed count_max")
        return self

    def label(self) -> str:
        if self.name:
            return self.name
        parts = [f"{length}-bell runs" for length in self.run_lengths] + list(self.patterns)
        return ", ".join(parts)


class SearchRequest(BaseModel):
    method: MethodSpec
    base_calls: BaseCalls = Field(default=BaseCalls.NEAR)
    bob_weight: float = Field(default=-1.8)
    single_weight: float = Field(default=-2.5)
    calls: list[CallSpec] = Field(default_factory=list)
    length: Union[LengthRange, LengthPreset] = Field(default=LengthPreset.PRACTICE)
    music: list[MusicSpec] = Field(default_factory=list)
    start_row: Optional[str] = Field(default=None, max_length=33)
    end_row: Optional[str] = Field(default=None, max_length=33)
    num_comps: Optional[int] = Field(default=None, ge=1, le=10_000)
    thread_count: Optional[int] = Field(default=None, ge=1, le=256)
    timeout_seconds: Optional[float] = Field(default=None, gt=0.0)
    dedup_reflections: bool = Field(default=False)
    calling_bell: Optional[int] = Field(
        default=None,
        ge=1,
        description="1-indexed bell whose position names calls (defaults to the tenor).",
    )
    non_fixed_bells: Optional[Union[str, list[str]]] = Field(
        default=None,
        description=(
            "Bells allowed to leave their course, e.g. '23456' (defaults to tenors together)."
        ),
    )
    include_rows: bool = Field(default=False)

    def non_fixed_names(self) -> Optional[list[str]]:
        if self.non_fixed_bells is None:
            return None
        if isinstance(self.non_fixed_bells, str):
            return [ch for ch in self.non_fixed_bells if not ch.isspace()]
        return list(self.non_fixed_bells)

    def length_range(self) -> LengthRange:
        if isinstance(self.length, LengthPreset):
            return LengthRange.from_preset(self.length)
        return self.length


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class CompositionRecord(BaseModel):
    rank: int = Field(..., ge=1)
    call_string: str
    tokens: list[str] = Field(default_factory=list)
    length: int
    music_score: float
    call_score: float
    total_score: float
    music_counts: dict[str, int] = Field(default_factory=dict)
    rows: Optional[list[str]] = None


class SearchStatistics(BaseModel):
    chunk_count: int = 0
    link_count: int = 0
    nodes_expanded: int = 0
    compositions_offered: int = 0
    worker_count: int = 1
    elapsed_seconds: float = 0.0


class SearchResult(BaseModel):
    job_id: str
    outcome: SearchOutcome
    method: str
    length_min: int
    length_max: int
    compositions: list[CompositionRecord] = Field(default_factory=list)
    statistics: SearchStatistics = Field(default_factory=SearchStatistics)
    artifact_path: Optional[str] = None
    completed_at: datetime = Field(default_factory=_utc_now)


class SearchStatus(BaseModel):
    job_id: str
    state: JobState
    outcome: Optional[SearchOutcome] = None
    nodes_expanded: int = 0
    compositions_found: int = 0
    message: Optional[str] = None
    updated_at: datetime = Field(default_factory=_utc_now)
