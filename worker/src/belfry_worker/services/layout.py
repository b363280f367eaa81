"""Compile a method and its calls into the chunk graph walked by the search."""

from __future__ import annotations

import heapq
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple

import numpy as np
from loguru import logger

from .bells import Call, Method, Row, bell_name
from .exceptions import ConfigurationError
from .falseness import has_repeated_row
from .types import Chunk, Layout, Link, LinkKind

DEFAULT_GRAPH_SIZE_LIMIT = 100_000

ChunkKey = Tuple[Row, int]


@dataclass(frozen=True)
class _Transition:
    """How to leave a chunk, relative to the chunk's lead head.

    Both rows are taken from a lead head of rounds, so a chunk with lead head
    ``L`` continues to ``L * next_row`` in the chunk led by ``L * lead_head``.
    """

    kind: LinkKind
    call_index: Optional[int]
    weight: float
    next_row: Row
    lead_head: Row
    target_start: int


@dataclass(frozen=True)
class _Segment:
    start: int
    end: int
    transitions: Tuple[_Transition, ...]

    @property
    def length(self) -> int:
        return self.end - self.start


@dataclass
class _Node:
    key: ChunkKey
    order: int
    distance: int
    settled: bool = False
    expanded: bool = False
    edges: List[Tuple[_Transition, Optional[ChunkKey], Row]] = field(default_factory=list)


class LayoutBuilder:
    """Explores every chunk reachable from the start row within a length limit.

    Chunks run between call points: sub-lead index 0 plus every index whose
    label is used by a call.  Exploration is a Dijkstra traversal measured in
    rows, so each chunk records the shortest prefix that reaches it, and a
    reverse pass from the end links gives the shortest way home.
    """

    def __init__(
        self,
        method: Method,
        calls: Sequence[Call] = (),
        *,
        start_row: Optional[Row] = None,
        end_row: Optional[Row] = None,
        calling_bell: Optional[int] = None,
        fixed_bells: Sequence[int] = (),
        graph_size_limit: int = DEFAULT_GRAPH_SIZE_LIMIT,
    ):
        stage = method.stage
        self.method = method
        self.calls = tuple(calls)
        self.start_row = start_row if start_row is not None else Row.rounds(stage)
        self.end_row = end_row if end_row is not None else Row.rounds(stage)
        self.calling_bell = stage - 1 if calling_bell is None else calling_bell
        self.graph_size_limit = graph_size_limit

        for name, row in (("start", self.start_row), ("end", self.end_row)):
            if row.stage != stage:
                raise ConfigurationError(
                    f"{name} row {row} has {row.stage} bells but {method} is on {stage}"
                )
        if not 0 <= self.calling_bell < stage:
            raise ConfigurationError(
                f"calling bell {self.calling_bell + 1} is outside stage {stage}"
            )
        for call in self.calls:
            if call.place_notation.stage != stage:
                raise ConfigurationError(
                    f"call '{call.symbol}' is on stage {call.place_notation.stage}, not {stage}"
                )
        for bell in fixed_bells:
            if not 0 <= bell < stage:
                raise ConfigurationError(f"fixed bell {bell + 1} is outside stage {stage}")
        self.fixed_bells = tuple(sorted(set(fixed_bells)))
        self._fixed_places = [self.start_row.place_of(bell) for bell in self.fixed_bells]
        self._course_offsets = [row.inverse() for row in method.course_lead_heads()]
        self._course_cache: Dict[Row, FrozenSet[int]] = {}

        self._lead_array = method.lead_array()
        self._segments = self._build_segments()

    def _build_segments(self) -> Dict[int, _Segment]:
        method = self.method
        lead_len = method.lead_len
        boundaries = {0}
        sites: Dict[int, List[int]] = {}
        for call_index, call in enumerate(self.calls):
            indices = method.label_indices(call.label)
            if not indices:
                raise ConfigurationError(
                    f"call '{call.symbol}' uses label '{call.label}', which {method} does not have"
                )
            for index in indices:
                boundaries.add(index)
                sites.setdefault(index, []).append(call_index)

        ordered = sorted(boundaries)
        segments: Dict[int, _Segment] = {}
        for position, start in enumerate(ordered):
            end = ordered[position + 1] if position + 1 < len(ordered) else lead_len
            target_start = end % lead_len
            back = method.row_at(target_start).inverse()

            plain_next = method.row_at(end)
            transitions = [
                _Transition(LinkKind.PLAIN, None, 0.0, plain_next, plain_next * back, target_start)
            ]
            last_row = method.row_at(end - 1)
            for call_index in sites.get(target_start, []):
                call = self.calls[call_index]
                call_next = last_row * call.place_notation.transposition()
                transitions.append(
                    _Transition(
                        LinkKind.CALL,
                        call_index,
                        call.weight,
                        call_next,
                        call_next * back,
                        target_start,
                    )
                )
            segments[start] = _Segment(start, end, tuple(transitions))
        return segments

    def course_positions(self, lead_head: Row) -> FrozenSet[int]:
        """Leads of the plain course at which ``lead_head`` keeps the fixed bells home.

        Lead ``k`` of a course with course head ``C`` has lead head ``C * P[k]``,
        so each position gives one candidate course head to test against the
        fixed bells of the start row.
        """
        cached = self._course_cache.get(lead_head)
        if cached is not None:
            return cached
        start = self.start_row.bells
        positions = frozenset(
            index
            for index, offset in enumerate(self._course_offsets)
            if all((lead_head * offset).bells[place] == start[place] for place in self._fixed_places)
        )
        self._course_cache[lead_head] = positions
        return positions

    def stays_in_course(self, source: Row, target: Row, new_lead: bool) -> bool:
        """Whether moving from lead head ``source`` to ``target`` keeps a course with the fixed bells home."""
        if not self._fixed_places:
            return True
        step = 1 if new_lead else 0
        leads = len(self._course_offsets)
        allowed = self.course_positions(target)
        return any((index + step) % leads in allowed for index in self.course_positions(source))

    def _check_end_reachable(self) -> None:
        """Reject end rows outside the group generated by every possible lead-head step."""
        steps = [
            transition.lead_head
            for segment in self._segments.values()
            for transition in segment.transitions
        ]
        needed = self.start_row.inverse() * self.end_row
        problem: Optional[str] = None
        if all(step.parity == 0 for step in steps) and needed.parity == 1:
            problem = "has the wrong parity"
        elif any(
            needed.bells[place] != place
            for place in range(self.method.stage)
            if all(step.bells[place] == place for step in steps)
        ):
            problem = "moves a bell that no call or plain lead can move"
        elif self._fixed_places and not self.course_positions(self.end_row):
            problem = f"is not in a course with bells {self._fixed_names()} fixed"
        if problem is not None:
            raise ConfigurationError(
                f"end row {self.end_row} {problem}, so it can never be reached from {self.start_row}"
            )

    def _fixed_names(self) -> str:
        return "".join(bell_name(bell) for bell in self.fixed_bells)

    def chunk_rows(self, lead_head: Row, start_idx: int) -> np.ndarray:
        segment = self._segments[start_idx]
        plain = self._lead_array[segment.start : segment.end]
        return lead_head.as_array()[plain]

    def build(self, max_length: int) -> Layout:
        if max_length < 1:
            raise ConfigurationError(f"maximum length must be positive, got {max_length}")

        start_key: ChunkKey = (self.start_row, 0)
        if has_repeated_row(self.chunk_rows(*start_key)):
            raise ConfigurationError(
                f"the first chunk of {self.method} from {self.start_row} repeats a row"
            )

        self._check_end_reachable()
        nodes, discarded_for_length = self._explore(start_key, max_length)
        to_end = self._distances_to_end(nodes)

        end_edges = sum(
            1 for node in nodes.values() for _, target, _ in node.edges if target is None
        )
        if end_edges == 0:
            if discarded_for_length:
                logger.info(
                    "End row {} is out of reach within {} rows; layout is empty",
                    self.end_row,
                    max_length,
                )
                return self._empty_layout(max_length)
            raise ConfigurationError(
                f"end row {self.end_row} can never be reached from {self.start_row} "
                f"with {self.method} and the given calls"
            )

        survivors = [
            node
            for node in sorted(nodes.values(), key=lambda item: item.order)
            if node.expanded
            and node.key in to_end
            and node.distance + to_end[node.key] <= max_length
        ]
        if not survivors or survivors[0].key != start_key:
            return self._empty_layout(max_length)

        layout = self._assemble(survivors, to_end, max_length)
        logger.info(
            "Layout built for {}: {} chunks, {} links ({} explored)",
            self.method,
            len(layout.chunks),
            len(layout.links),
            len(nodes),
        )
        return layout

    def _explore(self, start_key: ChunkKey, max_length: int) -> Tuple[Dict[ChunkKey, _Node], bool]:
        nodes: Dict[ChunkKey, _Node] = {start_key: _Node(start_key, 0, 0)}
        heap: List[Tuple[int, int, ChunkKey]] = [(0, 0, start_key)]
        discarded_for_length = False

        while heap:
            distance, _, key = heapq.heappop(heap)
            node = nodes[key]
            if node.settled or distance > node.distance:
                continue
            node.settled = True

            lead_head, start_idx = key
            segment = self._segments[start_idx]
            reached = distance + segment.length
            if reached > max_length:
                discarded_for_length = True
                continue
            node.expanded = True

            for transition in segment.transitions:
                next_row = lead_head * transition.next_row
                if transition.target_start == 0 and next_row == self.end_row:
                    if self.stays_in_course(lead_head, next_row, True):
                        node.edges.append((transition, None, next_row))
                    continue
                target_key = (lead_head * transition.lead_head, transition.target_start)
                if not self.stays_in_course(lead_head, target_key[0], transition.target_start == 0):
                    continue
                target = nodes.get(target_key)
                if target is None:
                    if len(nodes) >= self.graph_size_limit:
                        raise ConfigurationError(
                            f"layout exceeds {self.graph_size_limit} chunks; "
                            "reduce the maximum length or the number of calls"
                        )
                    target = _Node(target_key, len(nodes), reached)
                    nodes[target_key] = target
                    heapq.heappush(heap, (reached, target.order, target_key))
                elif not target.settled and reached < target.distance:
                    target.distance = reached
                    heapq.heappush(heap, (reached, target.order, target_key))
                node.edges.append((transition, target_key, next_row))

        return nodes, discarded_for_length

    def _distances_to_end(self, nodes: Dict[ChunkKey, _Node]) -> Dict[ChunkKey, int]:
        """Fewest rows from each chunk's first row to the end row, the chunk included."""
        predecessors: Dict[ChunkKey, List[ChunkKey]] = {}
        to_end: Dict[ChunkKey, int] = {}
        for node in nodes.values():
            if not node.expanded:
                continue
            length = self._segments[node.key[1]].length
            for _, target, _ in node.edges:
                if target is None:
                    to_end[node.key] = length
                elif nodes[target].expanded:
                    predecessors.setdefault(target, []).append(node.key)

        heap = [(distance, nodes[key].order, key) for key, distance in to_end.items()]
        heapq.heapify(heap)
        while heap:
            distance, _, key = heapq.heappop(heap)
            if distance > to_end[key]:
                continue
            for previous in predecessors.get(key, []):
                candidate = distance + self._segments[previous[1]].length
                if candidate < to_end.get(previous, candidate + 1):
                    to_end[previous] = candidate
                    heapq.heappush(heap, (candidate, nodes[previous].order, previous))
        return to_end

    def _assemble(
        self,
        survivors: List[_Node],
        to_end: Dict[ChunkKey, int],
        max_length: int,
    ) -> Layout:
        ids = {node.key: chunk_id for chunk_id, node in enumerate(survivors)}
        chunks: List[Chunk] = []
        links: List[Link] = []
        successors: List[Tuple[int, ...]] = []

        for chunk_id, node in enumerate(survivors):
            lead_head, start_idx = node.key
            segment = self._segments[start_idx]
            chunks.append(
                Chunk(
                    id=chunk_id,
                    lead_head=lead_head,
                    start_idx=start_idx,
                    length=segment.length,
                    rows=self.chunk_rows(lead_head, start_idx),
                    distance_from_start=node.distance,
                    distance_to_end=to_end[node.key],
                )
            )
            outgoing: List[int] = []
            for transition, target, next_row in node.edges:
                if target is not None and target not in ids:
                    continue
                link = Link(
                    id=len(links),
                    source=chunk_id,
                    target=None if target is None else ids[target],
                    kind=transition.kind,
                    call_index=transition.call_index,
                    weight=transition.weight,
                    next_row=next_row,
                )
                links.append(link)
                outgoing.append(link.id)
            successors.append(tuple(outgoing))

        return Layout(
            stage=self.method.stage,
            method=self.method,
            calls=self.calls,
            chunks=tuple(chunks),
            links=tuple(links),
            successors=tuple(successors),
            start=0,
            start_row=self.start_row,
            end_row=self.end_row,
            max_length=max_length,
            calling_bell=self.calling_bell,
        )

    def _empty_layout(self, max_length: int) -> Layout:
        return Layout(
            stage=self.method.stage,
            method=self.method,
            calls=self.calls,
            chunks=(),
            links=(),
            successors=(),
            start=None,
            start_row=self.start_row,
            end_row=self.end_row,
            max_length=max_length,
            calling_bell=self.calling_bell,
        )
