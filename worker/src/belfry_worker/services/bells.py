"""Permutation algebra for change ringing: rows, place notation, methods and calls."""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import cached_property
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from .exceptions import ConfigurationError

BELL_NAMES = "1234567890ETABCDFGHJKLMNPQRSUVWYZ"
MAX_STAGE = len(BELL_NAMES)
MIN_STAGE = 2
LABEL_LEAD_END = "LE"
DEFAULT_MISC_CALL_WEIGHT = -3.0

_CROSS_CHARS = frozenset("xX-")
_NAMED_CALLING_POSITIONS = "LIBFVXSEN"


def bell_name(bell: int) -> str:
    return BELL_NAMES[bell]


def bell_from_name(name: str) -> int:
    index = BELL_NAMES.find(name.upper())
    if len(name) != 1 or index < 0:
        raise ConfigurationError(f"'{name}' is not a bell name")
    return index


def _check_stage(stage: int) -> None:
    if not MIN_STAGE <= stage <= MAX_STAGE:
        raise ConfigurationError(
            f"stage {stage} is outside the supported range {MIN_STAGE}-{MAX_STAGE}"
        )


@dataclass(frozen=True, order=True)
class Row:
    """An immutable permutation of bells, stored 0-indexed.

    Rows multiply as permutations: ``(a * b)[i] == a[b[i]]``.  Applying a change
    to a row is therefore ``row * change.transposition()``, and a row inside a
    lead starting at ``lead_head`` is ``lead_head * plain_row``.
    """

    bells: Tuple[int, ...]

    @classmethod
    def rounds(cls, stage: int) -> "Row":
        return cls(tuple(range(stage)))

    @classmethod
    def from_bells(cls, bells: Iterable[int]) -> "Row":
        values = tuple(int(bell) for bell in bells)
        if sorted(values) != list(range(len(values))):
            raise ConfigurationError(f"{values} is not a permutation")
        return cls(values)

    @classmethod
    def parse(cls, text: str, stage: Optional[int] = None) -> "Row":
        cleaned = "".join(text.split())
        if not cleaned:
            raise ConfigurationError("empty row")
        row = cls.from_bells(bell_from_name(ch) for ch in cleaned)
        if stage is not None and row.stage != stage:
            raise ConfigurationError(f"row '{text}' has {row.stage} bells, expected {stage}")
        return row

    @property
    def stage(self) -> int:
        return len(self.bells)

    @property
    def parity(self) -> int:
        """0 for an even row, 1 for an odd row."""
        seen = [False] * self.stage
        cycles = 0
        for start in range(self.stage):
            if seen[start]:
                continue
            cycles += 1
            place = start
            while not seen[place]:
                seen[place] = True
                place = self.bells[place]
        return (self.stage - cycles) % 2

    def is_rounds(self) -> bool:
        return all(place == bell for place, bell in enumerate(self.bells))

    def place_of(self, bell: int) -> int:
        return self.bells.index(bell)

    def inverse(self) -> "Row":
        inverse = [0] * self.stage
        for place, bell in enumerate(self.bells):
            inverse[bell] = place
        return Row(tuple(inverse))

    def as_array(self) -> np.ndarray:
        return np.asarray(self.bells, dtype=np.uint8)

    def __mul__(self, other: "Row") -> "Row":
        if not isinstance(other, Row):
            return NotImplemented
        if other.stage != self.stage:
            raise ValueError(f"cannot multiply rows of stage {self.stage} and {other.stage}")
        mine = self.bells
        return Row(tuple(mine[index] for index in other.bells))

    def __str__(self) -> str:
        return "".join(BELL_NAMES[bell] for bell in self.bells)

    def __repr__(self) -> str:
        return f"Row({self})"


@dataclass(frozen=True)
class PlaceNotation:
    """A single change, stored as the sorted 0-indexed places made (implicit places included)."""

    stage: int
    places: Tuple[int, ...]

    @classmethod
    def parse(cls, token: str, stage: int) -> "PlaceNotation":
        _check_stage(stage)
        token = token.strip()
        if token in _CROSS_CHARS:
            if stage % 2:
                raise ConfigurationError(f"cross change is not valid on stage {stage}")
            return cls(stage, ())
        if not token:
            raise ConfigurationError("empty place notation")

        places = set()
        for ch in token:
            place = bell_from_name(ch)
            if place >= stage:
                raise ConfigurationError(
                    f"place '{ch}' in '{token}' is outside stage {stage}"
                )
            places.add(place)
        ordered = sorted(places)
        if ordered[0] % 2 == 1:
            ordered.insert(0, 0)
        if (stage - 1 - ordered[-1]) % 2 == 1:
            ordered.append(stage - 1)

        previous = -1
        for place in ordered + [stage]:
            if (place - previous - 1) % 2:
                raise ConfigurationError(
                    f"place notation '{token}' leaves an unpaired bell on stage {stage}"
                )
            previous = place
        return cls(stage, tuple(ordered))

    def is_cross(self) -> bool:
        return not self.places

    def makes_place(self, place: int) -> bool:
        return place in self.places

    def transposition(self) -> Row:
        bells = list(range(self.stage))
        made = set(self.places)
        place = 0
        while place < self.stage:
            if place in made:
                place += 1
                continue
            bells[place], bells[place + 1] = bells[place + 1], bells[place]
            place += 2
        return Row(tuple(bells))

    def __str__(self) -> str:
        if self.is_cross():
            return "x"
        return "".join(BELL_NAMES[place] for place in self.places)


def _tokenise(fragment: str) -> List[str]:
    tokens: List[str] = []
    current = ""
    for ch in fragment:
        if ch in _CROSS_CHARS:
            if current:
                tokens.append(current)
                current = ""
            tokens.append("x")
        elif ch == "." or ch.isspace():
            if current:
                tokens.append(current)
                current = ""
        else:
            current += ch
    if current:
        tokens.append(current)
    return tokens


def _palindrome(changes: List[PlaceNotation]) -> List[PlaceNotation]:
    return changes + list(reversed(changes[:-1]))


def _parse_block(fragment: str, stage: int) -> List[PlaceNotation]:
    tokens = _tokenise(fragment)
    if not tokens:
        raise ConfigurationError(f"no changes found in place notation '{fragment}'")
    return [PlaceNotation.parse(token, stage) for token in tokens]


def parse_place_notation(text: str, stage: int) -> List[PlaceNotation]:
    """Parse a full lead of place notation.

    Supports ``x``/``-`` crosses, ``.`` separators, ``&`` (palindromic) and ``+``
    (as written) prefixes, and ``a,b`` for two palindromic halves.
    """
    source = text.strip()
    if not source:
        raise ConfigurationError("empty place notation")
    if "," in source:
        changes: List[PlaceNotation] = []
        for half in source.split(","):
            changes.extend(_palindrome(_parse_block(half.lstrip("&+"), stage)))
        return changes
    if source.startswith("&"):
        return _palindrome(_parse_block(source[1:], stage))
    return _parse_block(source.lstrip("+"), stage)


def _accumulate(start: Row, changes: Sequence[PlaceNotation]) -> List[Row]:
    rows = [start]
    for change in changes:
        rows.append(rows[-1] * change.transposition())
    return rows


@dataclass(frozen=True)
class Method:
    name: str
    stage: int
    place_notation: Tuple[PlaceNotation, ...]
    labels: Dict[int, str] = field(default_factory=lambda: {0: LABEL_LEAD_END})

    @classmethod
    def from_place_notation(
        cls,
        name: str,
        stage: int,
        place_notation: str,
        labels: Optional[Dict[int, str]] = None,
    ) -> "Method":
        _check_stage(stage)
        changes = tuple(parse_place_notation(place_notation, stage))
        lead_len = len(changes)
        raw_labels = {0: LABEL_LEAD_END} if labels is None else labels
        # Negative indices count back from the lead end
        wrapped = {int(index) % lead_len: label for index, label in raw_labels.items()}
        return cls(name=name, stage=stage, place_notation=changes, labels=wrapped)

    @property
    def lead_len(self) -> int:
        return len(self.place_notation)

    @cached_property
    def _lead_rows(self) -> Tuple[Row, ...]:
        return tuple(_accumulate(Row.rounds(self.stage), self.place_notation))

    def first_lead(self) -> List[Row]:
        return list(self._lead_rows[:-1])

    def lead_head(self) -> Row:
        return self._lead_rows[-1]

    def row_at(self, sub_lead_idx: int) -> Row:
        """Plain row ``sub_lead_idx`` changes after the lead head (``lead_len`` gives the next lead head)."""
        return self._lead_rows[sub_lead_idx]

    def lead_array(self) -> np.ndarray:
        return np.asarray([row.bells for row in self.first_lead()], dtype=np.uint8)

    def course_lead_heads(self) -> List[Row]:
        """Lead heads of the plain course, starting from rounds."""
        heads = [Row.rounds(self.stage)]
        while True:
            following = heads[-1] * self.lead_head()
            if following.is_rounds():
                return heads
            heads.append(following)

    def plain_course(self) -> List[Row]:
        rows: List[Row] = []
        lead_head = Row.rounds(self.stage)
        lead = self.first_lead()
        while True:
            rows.extend(lead_head * row for row in lead)
            lead_head = lead_head * self.lead_head()
            if lead_head.is_rounds():
                return rows

    def label_indices(self, label: str) -> List[int]:
        return sorted(index for index, name in self.labels.items() if name == label)

    def __str__(self) -> str:
        return self.name or ".".join(str(change) for change in self.place_notation)


def default_calling_positions(place_notation: PlaceNotation) -> Tuple[str, ...]:
    """Name each place the calling bell can land in after a call."""
    stage = place_notation.stage
    positions = [
        _NAMED_CALLING_POSITIONS[index] if index < len(_NAMED_CALLING_POSITIONS) else f"{index + 1}ths"
        for index in range(stage)
    ]
    if stage > 1:
        positions[1] = "I"
    if stage > 2:
        positions[2] = "B" if place_notation.makes_place(2) else "O"
    if stage >= 8:
        positions[stage - 3] = "M"
    if stage >= 5:
        positions[stage - 2] = "W"
        positions[stage - 1] = "H"
    return tuple(positions)


@dataclass(frozen=True)
class Call:
    symbol: str
    place_notation: PlaceNotation
    label: str = LABEL_LEAD_END
    weight: float = DEFAULT_MISC_CALL_WEIGHT
    calling_positions: Tuple[str, ...] = ()

    @classmethod
    def create(
        cls,
        symbol: str,
        place_notation: str,
        stage: int,
        *,
        label: str = LABEL_LEAD_END,
        weight: float = DEFAULT_MISC_CALL_WEIGHT,
        calling_positions: Optional[Sequence[str]] = None,
    ) -> "Call":
        changes = parse_place_notation(place_notation, stage)
        if len(changes) != 1:
            raise ConfigurationError(
                f"call '{symbol}' must be a single change, got '{place_notation}'"
            )
        change = changes[0]
        if calling_positions is None:
            positions = default_calling_positions(change)
        else:
            positions = tuple(calling_positions)
            if len(positions) != stage:
                raise ConfigurationError(
                    f"call '{symbol}' needs {stage} calling positions, got {len(positions)}"
                )
        return cls(
            symbol=symbol,
            place_notation=change,
            label=label,
            weight=weight,
            calling_positions=positions,
        )

    @property
    def short_symbol(self) -> str:
        return "" if self.symbol == "-" else self.symbol

    def calling_position(self, place: int) -> str:
        if 0 <= place < len(self.calling_positions):
            return self.calling_positions[place]
        return str(place + 1)
