from __future__ import annotations

import pytest

from belfry_worker.app.models import BaseCalls
from belfry_worker.services.bells import Call, Method, Row
from belfry_worker.services.exceptions import ConfigurationError
from belfry_worker.services.layout import LayoutBuilder
from belfry_worker.services.library import base_calls, lookup_method
from belfry_worker.services.types import LinkKind


def _four_row_method() -> Method:
    return Method.from_place_notation("Four", 4, "x.12.x.12")


def _minimus_calls() -> list[Call]:
    return base_calls(4, BaseCalls.NEAR, bob_weight=-1.8, single_weight=-2.5)


def test_single_chunk_layout() -> None:
    layout = LayoutBuilder(_four_row_method()).build(4)
    assert len(layout.chunks) == 1
    chunk = layout.chunks[0]
    assert chunk.length == 4
    assert [str(row) for row in chunk.row_list()] == ["1234", "2143", "2134", "1243"]
    assert chunk.distance_from_start == 0
    assert chunk.distance_to_end == 4
    assert layout.start == 0
    (link,) = layout.links
    assert link.is_end
    assert link.kind == LinkKind.PLAIN
    assert link.next_row.is_rounds()


def test_chunks_follow_lead_heads() -> None:
    method = lookup_method("Plain Bob Minimus")
    layout = LayoutBuilder(method, _minimus_calls()).build(24)
    assert 1 <= len(layout.chunks) <= 6
    for chunk in layout.chunks:
        assert chunk.length == 8
        assert chunk.start_idx == 0
        assert chunk.first_row == chunk.lead_head
        assert chunk.lead_head.bells[0] == 0
        assert len(layout.successors[chunk.id]) <= 3
        assert chunk.distance_from_start + chunk.distance_to_end <= 24
    assert any(link.is_end for link in layout.links)


def test_enumeration_is_stable() -> None:
    method = lookup_method("Plain Bob Doubles")
    calls = base_calls(5, BaseCalls.NEAR, bob_weight=-1.8, single_weight=-2.5)
    first = LayoutBuilder(method, calls).build(120)
    second = LayoutBuilder(method, calls).build(120)
    assert [chunk.lead_head for chunk in first.chunks] == [
        chunk.lead_head for chunk in second.chunks
    ]
    assert [(link.source, link.target, link.call_index) for link in first.links] == [
        (link.source, link.target, link.call_index) for link in second.links
    ]


def test_links_are_plain_first_then_in_call_order() -> None:
    method = lookup_method("Plain Bob Minimus")
    layout = LayoutBuilder(method, _minimus_calls()).build(24)
    for chunk in layout.chunks:
        kinds = [layout.links[link_id].call_index for link_id in layout.successors[chunk.id]]
        order = [-1 if index is None else index for index in kinds]
        assert order == sorted(order)


def test_extra_label_splits_chunks() -> None:
    method = Method.from_place_notation("Minimus", 4, "x14x14,12", {0: "LE", 4: "HL"})
    half_lead = Call.create("h", "12", 4, label="HL", weight=-1.0)
    layout = LayoutBuilder(method, [half_lead]).build(400)
    assert {chunk.start_idx for chunk in layout.chunks} == {0, 4}
    assert all(chunk.length == 4 for chunk in layout.chunks)
    call_links = [link for link in layout.links if link.kind == LinkKind.CALL]
    assert call_links
    assert all(layout.chunks[link.source].start_idx == 0 for link in call_links)


def test_too_short_for_one_chunk_gives_empty_layout() -> None:
    method = lookup_method("Plain Bob Minimus")
    layout = LayoutBuilder(method, _minimus_calls()).build(7)
    assert layout.is_empty()
    assert layout.chunks == ()


def test_unreachable_end_row_is_configuration_error() -> None:
    method = lookup_method("Plain Bob Minimus")
    with pytest.raises(ConfigurationError):
        LayoutBuilder(method, _minimus_calls(), end_row=Row.parse("2134")).build(1000)


def test_unknown_call_label_is_configuration_error() -> None:
    method = lookup_method("Plain Bob Minimus")
    call = Call.create("h", "12", 4, label="HL")
    with pytest.raises(ConfigurationError):
        LayoutBuilder(method, [call])


def test_graph_size_limit() -> None:
    method = lookup_method("Plain Bob Doubles")
    calls = base_calls(5, BaseCalls.NEAR, bob_weight=-1.8, single_weight=-2.5)
    with pytest.raises(ConfigurationError):
        LayoutBuilder(method, calls, graph_size_limit=2).build(120)


def test_mismatched_rows_and_calling_bell() -> None:
    method = lookup_method("Plain Bob Minimus")
    with pytest.raises(ConfigurationError):
        LayoutBuilder(method, start_row=Row.parse("12345"))
    with pytest.raises(ConfigurationError):
        LayoutBuilder(method, calling_bell=4)
    with pytest.raises(ConfigurationError):
        LayoutBuilder(method).build(0)


def _minor_near_calls() -> list[Call]:
    return base_calls(6, BaseCalls.NEAR, bob_weight=-1.8, single_weight=-2.5)


def test_fixed_tenor_keeps_calls_out_of_its_way() -> None:
    method = lookup_method("Plain Bob Minor")
    free = LayoutBuilder(method, _minor_near_calls()).build(120)
    builder = LayoutBuilder(method, _minor_near_calls(), fixed_bells=[0, 5])
    fixed = builder.build(120)

    assert len(fixed.chunks) < len(free.chunks)
    for chunk in fixed.chunks:
        assert builder.course_positions(chunk.lead_head)
        plain_next = chunk.lead_head * method.lead_head()
        for link in fixed.successor_links(chunk.id):
            if link.kind == LinkKind.CALL:
                # The tenor ends up where the plain lead end would have put it
                assert link.next_row.place_of(5) == plain_next.place_of(5)


def test_course_positions_follow_the_plain_course() -> None:
    method = lookup_method("Plain Bob Minor")
    builder = LayoutBuilder(method, fixed_bells=[0, 5])
    for index, lead_head in enumerate(method.course_lead_heads()):
        assert builder.course_positions(lead_head) == {index}
    assert builder.stays_in_course(Row.parse("123456"), Row.parse("135264"), True)
    assert not builder.stays_in_course(Row.parse("123456"), Row.parse("156342"), True)


def test_unfixed_builder_accepts_every_lead_head() -> None:
    method = lookup_method("Plain Bob Minor")
    builder = LayoutBuilder(method)
    assert builder.stays_in_course(Row.parse("123456"), Row.parse("165432"), True)


def test_fixed_bells_outside_stage_are_rejected() -> None:
    method = lookup_method("Plain Bob Minor")
    with pytest.raises(ConfigurationError):
        LayoutBuilder(method, fixed_bells=[6])


def test_end_row_the_treble_never_leaves_is_configuration_error() -> None:
    method = lookup_method("Plain Bob Minor")
    with pytest.raises(ConfigurationError, match="can never be reached"):
        LayoutBuilder(method, end_row=Row.parse("213456")).build(30)


def test_end_row_of_wrong_parity_is_configuration_error() -> None:
    method = lookup_method("Plain Bob Minor")
    bob = Call.create("-", "14", 6, weight=-1.8)
    with pytest.raises(ConfigurationError, match="parity"):
        LayoutBuilder(method, [bob], end_row=Row.parse("132456")).build(300)


def test_end_row_outside_a_fixed_course_is_configuration_error() -> None:
    method = lookup_method("Plain Bob Major")
    calls = base_calls(8, BaseCalls.NEAR, bob_weight=-1.8, single_weight=-2.5)
    builder = LayoutBuilder(
        method, calls, end_row=Row.parse("12345687"), fixed_bells=[0, 6, 7]
    )
    with pytest.raises(ConfigurationError, match="course"):
        builder.build(224)
