"""Canonical keys for compositions that differ only by rotation (or reflection)."""

from __future__ import annotations

from typing import Dict, Iterable, List, Sequence, Tuple

from .types import Composition

Token = Tuple[int, str]
DedupKey = Tuple[Token, ...]


def _min_rotation(tokens: Sequence[Token]) -> DedupKey:
    if not tokens:
        return ()
    items = tuple(tokens)
    return min(items[index:] + items[:index] for index in range(len(items)))


def ranking_key(composition: Composition) -> Tuple[float, Tuple[Token, ...]]:
    """Sorts better compositions first: higher score, then smaller raw tokens."""
    return (-composition.total_score, composition.tokens)


class Deduplicator:
    def __init__(self, reflections: bool = False):
        self.reflections = reflections

    def key(self, tokens: Sequence[Token]) -> DedupKey:
        best = _min_rotation(tokens)
        if self.reflections:
            best = min(best, _min_rotation(tuple(reversed(tuple(tokens)))))
        return best

    def key_for(self, composition: Composition) -> DedupKey:
        return self.key(composition.tokens)

    def deduplicate(self, compositions: Iterable[Composition]) -> List[Composition]:
        """Keep the best composition per key, in (score desc, key, tokens) order."""
        kept: Dict[DedupKey, Composition] = {}
        for composition in compositions:
            key = self.key_for(composition)
            current = kept.get(key)
            if current is None or ranking_key(composition) < ranking_key(current):
                kept[key] = composition
        return sorted(
            kept.values(),
            key=lambda comp: (-comp.total_score, self.key_for(comp), comp.tokens),
        )
