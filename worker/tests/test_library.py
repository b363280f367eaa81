from __future__ import annotations

import pytest

from belfry_worker.app.models import BaseCalls
from belfry_worker.services.exceptions import ConfigurationError
from belfry_worker.services.library import (
    base_calls,
    get_library,
    lookup_method,
    tenors_together_non_fixed_bells,
)


def test_library_lookup_ignores_case_and_spacing() -> None:
    method = lookup_method("  cambridge   SURPRISE minor ")
    assert method.name == "Cambridge Surprise Minor"
    assert method.stage == 6
    assert method.lead_len == 24


def test_library_methods_all_parse_and_come_round() -> None:
    library = get_library()
    assert library.version >= 1
    for entry in library.entries:
        method = entry.to_method()
        course = method.plain_course()
        assert len(set(course)) == len(course), entry.name


def test_unknown_method_is_configuration_error() -> None:
    with pytest.raises(ConfigurationError):
        lookup_method("Nonexistent Delight Maximus")


def test_near_calls() -> None:
    bob, single = base_calls(8, BaseCalls.NEAR, bob_weight=-1.8, single_weight=-2.5)
    assert (bob.symbol, str(bob.place_notation), bob.weight) == ("-", "14", -1.8)
    assert (single.symbol, str(single.place_notation), single.weight) == ("s", "1234", -2.5)

    _, doubles_single = base_calls(5, BaseCalls.NEAR, bob_weight=-1.8, single_weight=-2.5)
    assert str(doubles_single.place_notation) == "123"


def test_far_calls() -> None:
    bob, single = base_calls(8, BaseCalls.FAR, bob_weight=-1.0, single_weight=-2.0)
    assert str(bob.place_notation) == "16"
    assert str(single.place_notation) == "1678"
    with pytest.raises(ConfigurationError):
        base_calls(5, BaseCalls.FAR, bob_weight=-1.0, single_weight=-2.0)


def test_no_calls_and_small_stages() -> None:
    assert base_calls(3, BaseCalls.NONE, bob_weight=-1.8, single_weight=-2.5) == []
    with pytest.raises(ConfigurationError):
        base_calls(3, BaseCalls.NEAR, bob_weight=-1.8, single_weight=-2.5)


@pytest.mark.parametrize(
    ("stage", "expected"),
    [(4, [1, 2]), (6, [1, 2, 3, 4]), (8, [1, 2, 3, 4, 5]), (12, [1, 2, 3, 4, 5])],
)
def test_tenors_together_fixes_treble_and_back_bells(stage: int, expected: list[int]) -> None:
    assert tenors_together_non_fixed_bells(stage) == expected
