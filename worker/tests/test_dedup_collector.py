from __future__ import annotations

import math
import threading

import pytest

from belfry_worker.services.collector import ResultCollector
from belfry_worker.services.dedup import Deduplicator
from belfry_worker.services.types import Composition


def _comp(calls: str, score: float) -> Composition:
    tokens = tuple((0, "" if symbol == "p" else symbol) for symbol in calls)
    return Composition(
        chunk_ids=tuple(range(len(tokens))),
        link_ids=tuple(range(len(tokens))),
        tokens=tokens,
        call_string=calls,
        length=8 * len(tokens),
        music_score=score,
        call_score=0.0,
        music_counts=(),
    )


def test_rotations_share_a_key() -> None:
    dedup = Deduplicator()
    assert dedup.key_for(_comp("-ps", 1.0)) == dedup.key_for(_comp("ps-", 1.0))
    assert dedup.key_for(_comp("-ps", 1.0)) == dedup.key_for(_comp("s-p", 1.0))
    assert dedup.key_for(_comp("-ps", 1.0)) != dedup.key_for(_comp("-sp", 1.0))


def test_reflections_only_when_enabled() -> None:
    plain = Deduplicator(reflections=False)
    mirrored = Deduplicator(reflections=True)
    forward, rotated = _comp("--ps", 0.0), _comp("ps--", 0.0)
    reflected = _comp("-sp-", 0.0)
    assert plain.key_for(forward) != plain.key_for(reflected)
    assert mirrored.key_for(forward) == mirrored.key_for(reflected)
    assert plain.key_for(forward) == plain.key_for(rotated)


def test_deduplicate_keeps_best_and_is_idempotent() -> None:
    dedup = Deduplicator()
    comps = [_comp("-ps", 1.0), _comp("ps-", 3.0), _comp("s-p", 2.0), _comp("--", 0.5)]
    once = dedup.deduplicate(comps)
    assert [comp.call_string for comp in once] == ["ps-", "--"]
    assert dedup.deduplicate(once) == once
    assert dedup.deduplicate([]) == []


def test_collector_bound_and_capacity() -> None:
    collector = ResultCollector(2, Deduplicator())
    assert collector.bound == -math.inf
    assert collector.offer(_comp("-", 1.0))
    assert collector.bound == -math.inf
    assert collector.offer(_comp("s", 3.0))
    assert collector.bound == 1.0
    assert not collector.offer(_comp("--", 0.5))
    assert collector.offer(_comp("-s", 2.0))
    assert collector.bound == 2.0
    assert [comp.call_string for comp in collector.results()] == ["s", "-s"]
    assert collector.offered == 4


def test_collector_is_idempotent_per_key() -> None:
    collector = ResultCollector(3, Deduplicator())
    assert collector.offer(_comp("-ps", 1.0))
    assert not collector.offer(_comp("-ps", 1.0))
    assert not collector.offer(_comp("s-p", 0.5))
    # same score, smaller raw tokens
    assert collector.offer(_comp("ps-", 1.0))
    assert collector.offer(_comp("s-p", 4.0))
    assert len(collector) == 1
    assert collector.results()[0].call_string == "s-p"


def test_collector_breaks_score_ties_by_canonical_key() -> None:
    first = ResultCollector(1, Deduplicator())
    first.offer(_comp("s", 1.0))
    first.offer(_comp("-", 1.0))
    second = ResultCollector(1, Deduplicator())
    second.offer(_comp("-", 1.0))
    second.offer(_comp("s", 1.0))
    assert [c.call_string for c in first.results()] == [c.call_string for c in second.results()]
    assert first.results()[0].call_string == "-"


def test_collector_is_thread_safe() -> None:
    collector = ResultCollector(10, Deduplicator())
    symbols = "-sp"

    def offer_many(offset: int) -> None:
        for index in range(200):
            calls = "".join(symbols[(index // 3**power) % 3] for power in range(5))
            collector.offer(_comp(calls, float((index * 7 + offset) % 50)))

    threads = [threading.Thread(target=offer_many, args=(offset,)) for offset in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    results = collector.results()
    assert len(results) == 10
    scores = [comp.total_score for comp in results]
    assert scores == sorted(scores, reverse=True)
    assert collector.bound == min(scores)
    keys = {collector.deduplicator.key_for(comp) for comp in results}
    assert len(keys) == len(results)


def test_collector_rejects_zero_capacity() -> None:
    with pytest.raises(ValueError):
        ResultCollector(0, Deduplicator())
