"""Shared service data structures."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

import numpy as np

from .bells import Call, Method, Row


class LinkKind(str, Enum):
    PLAIN = "plain"
    CALL = "call"


@dataclass(frozen=True, eq=False)
class Chunk:
    """A stretch of ringing between two call points, shared read-only by every search worker."""

    id: int
    lead_head: Row
    start_idx: int
    length: int
    rows: np.ndarray
    distance_from_start: int
    distance_to_end: int

    @property
    def first_row(self) -> Row:
        return Row(tuple(int(bell) for bell in self.rows[0]))

    def row_list(self) -> List[Row]:
        return [Row(tuple(int(bell) for bell in row)) for row in self.rows]


@dataclass(frozen=True)
class Link:
    id: int
    source: int
    target: Optional[int]
    kind: LinkKind
    call_index: Optional[int]
    weight: float
    next_row: Row

    @property
    def is_end(self) -> bool:
        return self.target is None


@dataclass(frozen=True, eq=False)
class Layout:
    stage: int
    method: Method
    calls: Tuple[Call, ...]
    chunks: Tuple[Chunk, ...]
    links: Tuple[Link, ...]
    successors: Tuple[Tuple[int, ...], ...]
    start: Optional[int]
    start_row: Row
    end_row: Row
    max_length: int
    calling_bell: int

    def is_empty(self) -> bool:
        return self.start is None

    def successor_links(self, chunk_id: int) -> List[Link]:
        return [self.links[link_id] for link_id in self.successors[chunk_id]]

    def call_for(self, link: Link) -> Optional[Call]:
        if link.call_index is None:
            return None
        return self.calls[link.call_index]

    def rows_for(self, chunk_ids: Tuple[int, ...]) -> np.ndarray:
        if not chunk_ids:
            return np.zeros((0, self.stage), dtype=np.uint8)
        return np.vstack([self.chunks[chunk_id].rows for chunk_id in chunk_ids])


@dataclass(frozen=True)
class Composition:
    """A finished, valid path through a layout."""

    chunk_ids: Tuple[int, ...]
    link_ids: Tuple[int, ...]
    tokens: Tuple[Tuple[int, str], ...]
    call_string: str
    length: int
    music_score: float
    call_score: float
    music_counts: Tuple[int, ...]

    @property
    def total_score(self) -> float:
        return self.music_score + self.call_score

    def token_strings(self) -> List[str]:
        return [f"{start}:{symbol or 'p'}" for start, symbol in self.tokens]


@dataclass
class SearchProgress:
    nodes_expanded: int = 0
    compositions_offered: int = 0
    compositions_kept: int = 0
    workers_finished: int = 0
    worker_count: int = 1
    elapsed_seconds: float = 0.0


@dataclass
class SearchRun:
    """What the engine hands back: ranked compositions plus bookkeeping."""

    compositions: List[Composition]
    cancelled: bool
    progress: SearchProgress = field(default_factory=SearchProgress)
