"""Row-pattern music scoring, vectorised over numpy row matrices."""

from __future__ import annotations

from dataclasses import dataclass
from typing import FrozenSet, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from .bells import bell_from_name
from .exceptions import ConfigurationError
from .types import Chunk, Layout

WILDCARD = -1
_ANY_CHARS = frozenset("xX?")


def parse_pattern(pattern: str, stage: int) -> np.ndarray:
    """Turn ``x``/``*`` patterns into a fixed-width mask (``-1`` matches any bell)."""
    text = "".join(pattern.split())
    stars = text.count("*")
    if stars > 1:
        raise ConfigurationError(f"music pattern '{pattern}' has more than one '*'")
    fixed_len = len(text) - stars
    if fixed_len > stage or (not stars and fixed_len != stage):
        raise ConfigurationError(
            f"music pattern '{pattern}' does not fit a row of {stage} bells"
        )
    text = text.replace("*", "x" * (stage - fixed_len))

    mask = np.full(stage, WILDCARD, dtype=np.int16)
    used = set()
    for place, ch in enumerate(text):
        if ch in _ANY_CHARS:
            continue
        bell = bell_from_name(ch)
        if bell >= stage or bell in used:
            raise ConfigurationError(f"music pattern '{pattern}' is not valid on stage {stage}")
        used.add(bell)
        mask[place] = bell
    return mask


def run_masks(length: int, stage: int) -> np.ndarray:
    """Ascending and descending runs of ``length`` bells at the front and back of a row."""
    if not 2 <= length <= stage:
        raise ConfigurationError(f"run length {length} does not fit stage {stage}")
    masks = []
    for first in range(stage - length + 1):
        run = list(range(first, first + length))
        for bells in (run, run[::-1]):
            front = np.full(stage, WILDCARD, dtype=np.int16)
            front[:length] = bells
            back = np.full(stage, WILDCARD, dtype=np.int16)
            back[stage - length :] = bells
            masks.extend((front, back))
    return np.unique(np.stack(masks), axis=0)


@dataclass(frozen=True, eq=False)
class MusicType:
    name: str
    weight: float
    masks: np.ndarray
    positions: Optional[FrozenSet[int]] = None
    count_min: Optional[int] = None
    count_max: Optional[int] = None

    @classmethod
    def build(
        cls,
        stage: int,
        *,
        patterns: Iterable[str] = (),
        run_lengths: Iterable[int] = (),
        weight: float = 1.0,
        name: Optional[str] = None,
        positions: Optional[Iterable[int]] = None,
        count_min: Optional[int] = None,
        count_max: Optional[int] = None,
    ) -> "MusicType":
        patterns = list(patterns)
        run_lengths = list(run_lengths)
        pieces = [parse_pattern(pattern, stage)[np.newaxis, :] for pattern in patterns]
        pieces.extend(run_masks(length, stage) for length in run_lengths)
        if not pieces:
            raise ConfigurationError("a music type needs at least one pattern or run length")
        if count_min is not None and count_max is not None and count_min > count_max:
            raise ConfigurationError(
                f"music count range {count_min}-{count_max} is empty"
            )
        masks = np.unique(np.concatenate(pieces, axis=0), axis=0)
        if name is None:
            name = ", ".join([f"{length}-bell runs" for length in run_lengths] + patterns)
        return cls(
            name=name,
            weight=float(weight),
            masks=masks,
            positions=None if positions is None else frozenset(int(p) for p in positions),
            count_min=count_min,
            count_max=count_max,
        )

    def count(self, rows: np.ndarray, sub_lead: Optional[np.ndarray] = None) -> int:
        """Number of (row, pattern) matches; a row matching two patterns counts twice."""
        if rows.shape[0] == 0:
            return 0
        values = rows.astype(np.int16)[:, np.newaxis, :]
        matches = np.all((values == self.masks) | (self.masks == WILDCARD), axis=2)
        if self.positions is not None:
            if sub_lead is None:
                raise ValueError(f"music type '{self.name}' needs sub-lead indices")
            allowed = np.isin(sub_lead, sorted(self.positions))
            matches &= allowed[:, np.newaxis]
        return int(matches.sum())

    def allows(self, count: int) -> bool:
        if self.count_min is not None and count < self.count_min:
            return False
        return self.count_max is None or count <= self.count_max


@dataclass(frozen=True)
class Breakdown:
    counts: Tuple[int, ...]
    score: float

    def __add__(self, other: "Breakdown") -> "Breakdown":
        counts = tuple(a + b for a, b in zip(self.counts, other.counts))
        return Breakdown(counts=counts, score=self.score + other.score)


class MusicScorer:
    """Scores rows against a fixed list of music types.

    A score is always ``sum(weight * count)`` over the types in order, so a
    chunk-by-chunk total and a full rescan agree exactly once the counts agree.
    """

    def __init__(self, types: Sequence[MusicType] = ()):
        self.types: Tuple[MusicType, ...] = tuple(types)

    def names(self) -> List[str]:
        return [music.name for music in self.types]

    def score_counts(self, counts: Sequence[int]) -> float:
        total = 0.0
        for music, count in zip(self.types, counts):
            total += music.weight * count
        return total

    def counts_allowed(self, counts: Sequence[int]) -> bool:
        """Whether every count lies inside its music type's optional range."""
        return all(music.allows(count) for music, count in zip(self.types, counts))

    def empty(self) -> Breakdown:
        return Breakdown(counts=(0,) * len(self.types), score=0.0)

    def score_rows(self, rows: np.ndarray, sub_lead: Optional[np.ndarray] = None) -> Breakdown:
        counts = tuple(music.count(rows, sub_lead) for music in self.types)
        return Breakdown(counts=counts, score=self.score_counts(counts))

    def chunk_breakdown(self, chunk: Chunk) -> Breakdown:
        sub_lead = chunk.start_idx + np.arange(chunk.length)
        return self.score_rows(chunk.rows, sub_lead)

    def layout_breakdowns(self, layout: Layout) -> List[Breakdown]:
        return [self.chunk_breakdown(chunk) for chunk in layout.chunks]

    def describe_counts(self, counts: Sequence[int]) -> dict[str, int]:
        described: dict[str, int] = {}
        for music, count in zip(self.types, counts):
            key = music.name
            while key in described:
                key = f"{key}'"
            described[key] = int(count)
        return described

