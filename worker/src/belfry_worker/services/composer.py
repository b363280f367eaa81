"""High-level search orchestrator: request in, verified and ranked compositions out."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple
from uuid import uuid4

import numpy as np
from loguru import logger

from ..app.models import (
    CompositionRecord,
    LengthRange,
    MethodSpec,
    SearchOutcome,
    SearchRequest,
    SearchResult,
    SearchStatistics,
)
from ..app.settings import Settings
from .bells import Call, Method, Row, bell_from_name
from .collector import ResultCollector
from .dedup import Deduplicator
from .exceptions import ConfigurationError, InvariantViolation
from .falseness import FalsenessTable
from .layout import LayoutBuilder
from .library import base_calls, lookup_method, tenors_together_non_fixed_bells
from .music import MusicScorer, MusicType
from .search import CancellationToken, ProgressCallback, SearchEngine
from .types import Composition, Layout, LinkKind


@dataclass(frozen=True, eq=False)
class PreparedSearch:
    """Everything a search needs, built and validated before any worker starts."""

    method: Method
    layout: Layout
    falseness: FalsenessTable
    scorer: MusicScorer
    length: LengthRange
    num_comps: int
    thread_count: int
    timeout_seconds: Optional[float]
    dedup_reflections: bool
    include_rows: bool

    def new_token(self) -> CancellationToken:
        return CancellationToken(self.timeout_seconds)


class Composer:
    """Coordinates layout building, the search engine, verification and artifacts."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._artifact_root = settings.artifact_root

    def resolve_method(self, spec: MethodSpec) -> Method:
        if spec.place_notation is not None:
            assert spec.stage is not None
            return Method.from_place_notation(
                spec.name or spec.place_notation, spec.stage, spec.place_notation, spec.labels
            )
        method = lookup_method(spec.name, spec.labels)
        if spec.stage is not None and spec.stage != method.stage:
            raise ConfigurationError(
                f"{method} is on stage {method.stage}, but stage {spec.stage} was requested"
            )
        return method

    def resolve_calls(self, request: SearchRequest, method: Method) -> List[Call]:
        calls = base_calls(
            method.stage,
            request.base_calls,
            bob_weight=request.bob_weight,
            single_weight=request.single_weight,
        )
        for spec in request.calls:
            calls.append(
                Call.create(
                    spec.symbol,
                    spec.place_notation,
                    method.stage,
                    label=spec.label,
                    weight=spec.weight,
                    calling_positions=spec.positions(),
                )
            )
        symbols = [call.symbol for call in calls]
        duplicates = sorted({symbol for symbol in symbols if symbols.count(symbol) > 1})
        if duplicates:
            raise ConfigurationError(f"call symbols used more than once: {', '.join(duplicates)}")
        return calls

    def resolve_music(self, request: SearchRequest, stage: int) -> MusicScorer:
        types = [
            MusicType.build(
                stage,
                patterns=spec.patterns,
                run_lengths=spec.run_lengths,
                weight=spec.weight,
                name=spec.label(),
                positions=spec.positions,
                count_min=spec.count_min,
                count_max=spec.count_max,
            )
            for spec in request.music
        ]
        return MusicScorer(types)

    def resolve_non_fixed_bells(self, request: SearchRequest, stage: int) -> List[int]:
        names = request.non_fixed_names()
        if names is None:
            return tenors_together_non_fixed_bells(stage)
        bells = []
        for name in names:
            bell = bell_from_name(name)
            if bell >= stage:
                raise ConfigurationError(f"non-fixed bell '{name}' is outside stage {stage}")
            bells.append(bell)
        return sorted(set(bells))

    def prepare(self, request: SearchRequest) -> PreparedSearch:
        """Validate ``request`` and build its layout; configuration errors surface here."""
        settings = self._settings
        method = self.resolve_method(request.method)
        stage = method.stage
        calls = self.resolve_calls(request, method)
        scorer = self.resolve_music(request, stage)
        length = request.length_range()

        start_row = Row.parse(request.start_row, stage) if request.start_row else None
        end_row = Row.parse(request.end_row, stage) if request.end_row else None
        calling_bell = None if request.calling_bell is None else request.calling_bell - 1
        non_fixed = self.resolve_non_fixed_bells(request, stage)

        builder = LayoutBuilder(
            method,
            calls,
            start_row=start_row,
            end_row=end_row,
            calling_bell=calling_bell,
            fixed_bells=[bell for bell in range(stage) if bell not in non_fixed],
            graph_size_limit=settings.graph_size_limit,
        )
        layout = builder.build(length.max)
        falseness = FalsenessTable.build(layout)

        return PreparedSearch(
            method=method,
            layout=layout,
            falseness=falseness,
            scorer=scorer,
            length=length,
            num_comps=request.num_comps or settings.default_num_comps,
            thread_count=request.thread_count or settings.default_thread_count or 1,
            timeout_seconds=request.timeout_seconds or settings.default_timeout_seconds,
            dedup_reflections=request.dedup_reflections,
            include_rows=request.include_rows,
        )

    def run(
        self,
        request: SearchRequest,
        *,
        job_id: Optional[str] = None,
        token: Optional[CancellationToken] = None,
        progress_cb: Optional[ProgressCallback] = None,
    ) -> SearchResult:
        prepared = self.prepare(request)
        return self.search(
            job_id or f"run-{uuid4()}",
            prepared,
            token or prepared.new_token(),
            progress_cb=progress_cb,
        )

    def search(
        self,
        job_id: str,
        prepared: PreparedSearch,
        token: CancellationToken,
        progress_cb: Optional[ProgressCallback] = None,
    ) -> SearchResult:
        deduplicator = Deduplicator(reflections=prepared.dedup_reflections)
        collector = ResultCollector(prepared.num_comps, deduplicator)
        engine = SearchEngine(
            prepared.layout,
            prepared.falseness,
            prepared.scorer,
            collector,
            min_length=prepared.length.min,
            max_length=prepared.length.max,
            progress_interval=self._settings.progress_interval,
        )
        run = engine.run(token, thread_count=prepared.thread_count, progress_cb=progress_cb)
        compositions = deduplicator.deduplicate(run.compositions)

        records: List[CompositionRecord] = []
        for rank, composition in enumerate(compositions, start=1):
            rows = self.verify(prepared, composition)
            records.append(
                CompositionRecord(
                    rank=rank,
                    call_string=composition.call_string,
                    tokens=composition.token_strings(),
                    length=composition.length,
                    music_score=composition.music_score,
                    call_score=composition.call_score,
                    total_score=composition.total_score,
                    music_counts=prepared.scorer.describe_counts(composition.music_counts),
                    rows=[str(row) for row in rows] if prepared.include_rows else None,
                )
            )

        if run.cancelled:
            outcome = SearchOutcome.CANCELLED
        elif records:
            outcome = SearchOutcome.COMPLETE
        else:
            outcome = SearchOutcome.NO_COMPOSITION

        progress = run.progress
        result = SearchResult(
            job_id=job_id,
            outcome=outcome,
            method=str(prepared.method),
            length_min=prepared.length.min,
            length_max=prepared.length.max,
            compositions=records,
            statistics=SearchStatistics(
                chunk_count=len(prepared.layout.chunks),
                link_count=len(prepared.layout.links),
                nodes_expanded=progress.nodes_expanded,
                compositions_offered=progress.compositions_offered,
                worker_count=progress.worker_count,
                elapsed_seconds=progress.elapsed_seconds,
            ),
        )
        if self._settings.write_artifacts:
            result.artifact_path = str(self.write_artifact(result))
        logger.info(
            "Job {} finished: {} with {} composition(s)",
            job_id,
            outcome.value,
            len(records),
        )
        return result

    def write_artifact(self, result: SearchResult) -> Path:
        artifact_path = self._artifact_root / f"{result.job_id}.json"
        artifact_path.parent.mkdir(parents=True, exist_ok=True)
        artifact_path.write_text(result.model_dump_json(indent=2), encoding="utf-8")
        return artifact_path

    def verify(self, prepared: PreparedSearch, composition: Composition) -> List[Row]:
        """Re-ring ``composition`` change by change and check it from scratch.

        Raises ``InvariantViolation`` if the rows repeat, the length or end row
        is wrong, or the music recount disagrees with the search's running total.
        """
        rows, sub_lead, next_row = replay(prepared.layout, composition)
        length = prepared.length
        problem: Optional[str] = None
        if len(rows) != composition.length:
            problem = f"has {len(rows)} rows but claims {composition.length}"
        elif len(set(rows)) != len(rows):
            problem = "repeats a row"
        elif not length.min <= len(rows) <= length.max:
            problem = f"has length {len(rows)} outside {length.min}-{length.max}"
        elif next_row != prepared.layout.end_row:
            problem = f"comes round to {next_row} instead of {prepared.layout.end_row}"
        elif not prepared.scorer.counts_allowed(composition.music_counts):
            problem = f"music counts {composition.music_counts} fall outside their ranges"
        else:
            matrix = np.asarray([row.bells for row in rows], dtype=np.uint8)
            rescored = prepared.scorer.score_rows(matrix, np.asarray(sub_lead))
            if rescored.counts != composition.music_counts or rescored.score != composition.music_score:
                problem = (
                    f"music recount {rescored.counts} ({rescored.score}) differs from "
                    f"{composition.music_counts} ({composition.music_score})"
                )
        if problem is not None:
            raise InvariantViolation(f"composition '{composition.call_string}' {problem}")
        return rows


def replay(layout: Layout, composition: Composition) -> Tuple[List[Row], List[int], Row]:
    """Rows, their sub-lead indices, and the row after the last, rung from the start row."""
    method = layout.method
    row = layout.start_row
    sub_lead = 0
    rows: List[Row] = []
    indices: List[int] = []
    for chunk_id, link_id in zip(composition.chunk_ids, composition.link_ids):
        chunk = layout.chunks[chunk_id]
        link = layout.links[link_id]
        if row != chunk.first_row or sub_lead != chunk.start_idx:
            raise InvariantViolation(
                f"chunk {chunk_id} should start at {chunk.first_row} but ringing reached {row}"
            )
        for step in range(chunk.length):
            rows.append(row)
            indices.append(sub_lead)
            change = method.place_notation[sub_lead]
            if step == chunk.length - 1 and link.kind == LinkKind.CALL:
                call = layout.call_for(link)
                assert call is not None
                change = call.place_notation
            row = row * change.transposition()
            sub_lead = (sub_lead + 1) % method.lead_len
    return rows, indices, row
