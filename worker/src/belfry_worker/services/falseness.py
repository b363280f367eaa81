"""Chunk-against-chunk falseness, computed once per layout."""

from __future__ import annotations

from typing import FrozenSet, List, Sequence

import numpy as np
from loguru import logger

from .types import Layout


def has_repeated_row(rows: np.ndarray) -> bool:
    if rows.shape[0] < 2:
        return False
    return int(np.unique(rows, axis=0).shape[0]) != int(rows.shape[0])


class FalsenessTable:
    """Per-chunk bitsets of the chunks that share at least one row with it.

    Bit ``i`` of ``mask(j)`` is set when chunks ``i`` and ``j`` cannot both
    appear in a true composition.  Every chunk is false against itself, so an
    accumulated mask also rules out revisiting a chunk.
    """

    def __init__(self, masks: Sequence[int], self_false: FrozenSet[int] = frozenset()):
        self._masks: List[int] = list(masks)
        self.self_false = frozenset(self_false)

    @classmethod
    def build(cls, layout: Layout) -> "FalsenessTable":
        chunk_count = len(layout.chunks)
        if chunk_count == 0:
            return cls([])

        stacked = np.vstack([chunk.rows for chunk in layout.chunks])
        owners = np.repeat(
            np.arange(chunk_count, dtype=np.int64),
            [chunk.length for chunk in layout.chunks],
        )
        _, inverse = np.unique(stacked, axis=0, return_inverse=True)
        inverse = np.asarray(inverse).reshape(-1)

        counts = np.bincount(inverse)
        shared = counts[inverse] > 1
        masks = [1 << chunk_id for chunk_id in range(chunk_count)]
        self_false = set()

        if np.any(shared):
            group_ids = inverse[shared]
            group_owners = owners[shared]
            order = np.lexsort((group_owners, group_ids))
            group_ids = group_ids[order]
            group_owners = group_owners[order]
            splits = np.flatnonzero(np.diff(group_ids)) + 1
            for members in np.split(group_owners, splits):
                owners_in_group = members.tolist()
                distinct = sorted(set(owners_in_group))
                if len(distinct) < len(owners_in_group):
                    seen = set()
                    for owner in owners_in_group:
                        if owner in seen:
                            self_false.add(owner)
                        seen.add(owner)
                if len(distinct) < 2:
                    continue
                bits = 0
                for owner in distinct:
                    bits |= 1 << owner
                for owner in distinct:
                    masks[owner] |= bits

        table = cls(masks, frozenset(self_false))
        logger.debug(
            "Falseness table: {} chunks, {} false pairs, {} self-false",
            chunk_count,
            table.false_pair_count(),
            len(table.self_false),
        )
        return table

    def __len__(self) -> int:
        return len(self._masks)

    def mask(self, chunk_id: int) -> int:
        return self._masks[chunk_id]

    def is_false(self, first: int, second: int) -> bool:
        return bool((self._masks[first] >> second) & 1)

    @staticmethod
    def compatible(accumulated: int, chunk_id: int) -> bool:
        return not (accumulated >> chunk_id) & 1

    def false_pair_count(self) -> int:
        """Unordered pairs of distinct chunks sharing a row."""
        total = sum(bin(mask).count("1") - 1 for mask in self._masks)
        return total // 2
