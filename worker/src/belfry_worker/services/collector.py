"""Thread-safe top-K store shared by every search worker."""

from __future__ import annotations

import math
import threading
from typing import Dict, List, Tuple

from .dedup import DedupKey, Deduplicator, Token, ranking_key
from .types import Composition

_OrderKey = Tuple[float, DedupKey, Tuple[Token, ...]]


class ResultCollector:
    """Keeps the best ``capacity`` compositions, one per deduplication key.

    Entries are ordered by total score (descending), then canonical key, then
    raw tokens, so the kept set never depends on which worker got there first.
    ``bound`` is read without the lock: a stale value only prunes less.
    """

    def __init__(self, capacity: int, deduplicator: Deduplicator):
        if capacity < 1:
            raise ValueError("collector capacity must be at least 1")
        self.capacity = capacity
        self.deduplicator = deduplicator
        self._entries: Dict[DedupKey, Composition] = {}
        self._lock = threading.Lock()
        self._bound = -math.inf
        self.offered = 0

    @property
    def bound(self) -> float:
        return self._bound

    def _order(self, key: DedupKey, composition: Composition) -> _OrderKey:
        return (-composition.total_score, key, composition.tokens)

    def offer(self, composition: Composition) -> bool:
        """Insert ``composition`` if it earns a place; returns whether it was kept."""
        key = self.deduplicator.key_for(composition)
        with self._lock:
            self.offered += 1
            current = self._entries.get(key)
            if current is not None:
                if ranking_key(composition) >= ranking_key(current):
                    return False
                self._entries[key] = composition
                self._refresh_bound()
                return True

            if len(self._entries) >= self.capacity:
                worst_key = max(self._entries, key=lambda k: self._order(k, self._entries[k]))
                if self._order(key, composition) >= self._order(worst_key, self._entries[worst_key]):
                    return False
                del self._entries[worst_key]
            self._entries[key] = composition
            self._refresh_bound()
            return True

    def _refresh_bound(self) -> None:
        if len(self._entries) < self.capacity:
            self._bound = -math.inf
        else:
            self._bound = min(comp.total_score for comp in self._entries.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def results(self) -> List[Composition]:
        with self._lock:
            items = list(self._entries.items())
        items.sort(key=lambda item: self._order(item[0], item[1]))
        return [composition for _, composition in items]
