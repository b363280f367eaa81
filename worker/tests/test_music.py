from __future__ import annotations

import numpy as np
import pytest

from belfry_worker.app.models import BaseCalls
from belfry_worker.services.bells import Row
from belfry_worker.services.exceptions import ConfigurationError
from belfry_worker.services.layout import LayoutBuilder
from belfry_worker.services.library import base_calls, lookup_method
from belfry_worker.services.music import MusicScorer, MusicType, parse_pattern, run_masks


def _matrix(rows: list[Row]) -> np.ndarray:
    return np.asarray([row.bells for row in rows], dtype=np.uint8)


def _has_run(row: Row, length: int) -> int:
    """Front and back runs counted by hand, each direction separately."""
    bells = row.bells
    found = set()
    for segment in (bells[:length], bells[-length:]):
        steps = {b - a for a, b in zip(segment, segment[1:])}
        if steps in ({1}, {-1}):
            found.add(("front" if segment == bells[:length] else "back", segment))
    return len(found)


def test_parse_pattern_wildcards() -> None:
    assert parse_pattern("*5678", 8).tolist() == [-1, -1, -1, -1, 4, 5, 6, 7]
    assert parse_pattern("12xx", 4).tolist() == [0, 1, -1, -1]
    assert parse_pattern("1*8", 8).tolist() == [0, -1, -1, -1, -1, -1, -1, 7]


@pytest.mark.parametrize("pattern", ["*56*", "123", "12345", "1123", "*9"])
def test_parse_pattern_rejects_bad_patterns(pattern: str) -> None:
    with pytest.raises(ConfigurationError):
        parse_pattern(pattern, 4 if pattern != "*9" else 8)


def test_run_masks_deduplicate_full_length_runs() -> None:
    assert run_masks(4, 4).shape == (2, 4)
    assert run_masks(4, 8).shape == (20, 8)
    with pytest.raises(ConfigurationError):
        run_masks(5, 4)


def test_run_counts_match_hand_count() -> None:
    method = lookup_method("Plain Bob Major")
    course = method.plain_course()
    music = MusicType.build(8, run_lengths=[4])
    expected = sum(_has_run(row, 4) for row in course)
    assert music.count(_matrix(course)) == expected
    assert expected > 0


def test_positions_restrict_scoring_rows() -> None:
    rows = [Row.parse("1234"), Row.parse("2143"), Row.parse("1234")]
    music = MusicType.build(4, patterns=["1234"], positions=[0])
    assert music.count(_matrix(rows), np.asarray([0, 1, 2])) == 1
    assert music.count(_matrix(rows), np.asarray([0, 1, 0])) == 2
    with pytest.raises(ValueError):
        music.count(_matrix(rows))


def test_scorer_weights_and_names() -> None:
    scorer = MusicScorer(
        [
            MusicType.build(4, patterns=["12xx"], weight=2.0),
            MusicType.build(4, patterns=["xx34"], weight=-0.5, name="34 at back"),
        ]
    )
    rows = _matrix([Row.parse("1234"), Row.parse("1243"), Row.parse("2134")])
    breakdown = scorer.score_rows(rows)
    assert breakdown.counts == (2, 2)
    assert breakdown.score == pytest.approx(3.0)
    assert scorer.names() == ["12xx", "34 at back"]
    assert scorer.describe_counts(breakdown.counts) == {"12xx": 2, "34 at back": 2}


def test_chunk_breakdowns_sum_to_full_rescan() -> None:
    method = lookup_method("Plain Bob Doubles")
    calls = base_calls(5, BaseCalls.NEAR, bob_weight=-1.8, single_weight=-2.5)
    layout = LayoutBuilder(method, calls).build(120)
    scorer = MusicScorer(
        [
            MusicType.build(5, run_lengths=[3], weight=1.0),
            MusicType.build(5, patterns=["*5"], weight=0.25, positions=[0, 1]),
        ]
    )
    breakdowns = scorer.layout_breakdowns(layout)
    total = scorer.empty()
    for breakdown in breakdowns:
        total = total + breakdown

    rows = layout.rows_for(tuple(range(len(layout.chunks))))
    sub_lead = np.concatenate(
        [chunk.start_idx + np.arange(chunk.length) for chunk in layout.chunks]
    )
    rescan = scorer.score_rows(rows, sub_lead)
    assert rescan.counts == total.counts
    assert scorer.score_counts(total.counts) == rescan.score


def test_count_ranges_gate_whole_compositions() -> None:
    capped = MusicType.build(4, patterns=["12xx"], count_max=1)
    floored = MusicType.build(4, patterns=["xx34"], count_min=2)
    scorer = MusicScorer([capped, floored])
    assert capped.allows(0) and capped.allows(1) and not capped.allows(2)
    assert not floored.allows(1) and floored.allows(5)
    assert scorer.counts_allowed((1, 2))
    assert not scorer.counts_allowed((2, 2))
    assert not scorer.counts_allowed((0, 1))
    assert MusicScorer([MusicType.build(4, patterns=["12xx"])]).counts_allowed((99,))


def test_empty_count_range_is_rejected() -> None:
    with pytest.raises(ConfigurationError):
        MusicType.build(4, patterns=["12xx"], count_min=3, count_max=2)
