from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import Dict, Optional
from uuid import uuid4

from loguru import logger

from ..services.composer import Composer, PreparedSearch
from ..services.exceptions import SearchFailure
from ..services.search import CancellationToken
from ..services.types import SearchProgress
from .models import JobState, SearchOutcome, SearchRequest, SearchResult, SearchStatus


class UnknownJobError(KeyError):
    def __init__(self, job_id: str):
        super().__init__(job_id)
        self.job_id = job_id


class JobManager:
    """Runs composition searches in the background and exposes their status and results."""

    def __init__(self, composer: Composer):
        self._composer = composer
        self._statuses: Dict[str, SearchStatus] = {}
        self._results: Dict[str, SearchResult] = {}
        self._tokens: Dict[str, CancellationToken] = {}
        self._lock = asyncio.Lock()
        self._tasks: Dict[str, asyncio.Task[None]] = {}
        self._progress_tasks: set[asyncio.Task[None]] = set()

    async def enqueue(self, request: SearchRequest) -> SearchStatus:
        """Validate and lay out ``request``, then start searching it.

        Configuration errors are raised here, before a job id is handed out.
        """
        prepared = await asyncio.to_thread(self._composer.prepare, request)

        job_id = str(uuid4())
        status = SearchStatus(job_id=job_id, state=JobState.QUEUED, message="queued")
        token = prepared.new_token()
        async with self._lock:
            self._statuses[job_id] = status
            self._tokens[job_id] = token
        task = asyncio.create_task(self._execute_job(job_id, prepared, token))
        async with self._lock:
            self._tasks[job_id] = task
        return status.model_copy(deep=True)

    async def get_status(self, job_id: str) -> Optional[SearchStatus]:
        async with self._lock:
            status = self._statuses.get(job_id)
            if status is None:
                return None
            return status.model_copy(deep=True)

    async def get_result(self, job_id: str) -> Optional[SearchResult]:
        async with self._lock:
            return self._results.get(job_id)

    async def cancel(self, job_id: str) -> SearchStatus:
        async with self._lock:
            status = self._statuses.get(job_id)
            if status is None:
                raise UnknownJobError(job_id)
            token = self._tokens.get(job_id)
            if token is not None:
                token.cancel()
                status.message = "cancelling"
                status.updated_at = datetime.now(tz=UTC)
            return status.model_copy(deep=True)

    async def wait(self, job_id: str) -> None:
        async with self._lock:
            task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.shield(task)

    async def _execute_job(
        self, job_id: str, prepared: PreparedSearch, token: CancellationToken
    ) -> None:
        await self._set_status(job_id, state=JobState.RUNNING, message="searching")
        loop = asyncio.get_running_loop()

        def progress_cb(progress: SearchProgress) -> None:
            loop.call_soon_threadsafe(self._schedule_progress, job_id, progress)

        try:
            result = await asyncio.to_thread(
                self._composer.search, job_id, prepared, token, progress_cb
            )
        except SearchFailure as exc:
            await self._set_status(job_id, state=JobState.FAILED, message=str(exc))
            logger.error("job {job_id} failed: {exc}", job_id=job_id, exc=exc)
            await self._forget(job_id)
            return
        except Exception:  # noqa: BLE001
            await self._set_status(
                job_id,
                state=JobState.FAILED,
                message="unexpected error during search",
            )
            logger.exception("unexpected error during job {}", job_id)
            await self._forget(job_id)
            return

        async with self._lock:
            self._results[job_id] = result
        if result.outcome == SearchOutcome.CANCELLED:
            state, message = JobState.CANCELLED, "search cancelled"
        elif result.outcome == SearchOutcome.NO_COMPOSITION:
            state, message = JobState.SUCCEEDED, "no composition found"
        else:
            state, message = JobState.SUCCEEDED, "search complete"
        await self._set_status(
            job_id,
            state=state,
            outcome=result.outcome,
            nodes_expanded=result.statistics.nodes_expanded,
            compositions_found=len(result.compositions),
            message=message,
        )
        await self._forget(job_id)

    def _schedule_progress(self, job_id: str, progress: SearchProgress) -> None:
        # The loop only keeps weak references to tasks
        task = asyncio.create_task(self._record_progress(job_id, progress))
        self._progress_tasks.add(task)
        task.add_done_callback(self._progress_tasks.discard)

    async def _record_progress(self, job_id: str, progress: SearchProgress) -> None:
        async with self._lock:
            status = self._statuses.get(job_id)
            if status is None or status.state != JobState.RUNNING:
                return
            status.nodes_expanded = progress.nodes_expanded
            status.compositions_found = progress.compositions_kept
            status.updated_at = datetime.now(tz=UTC)

    async def _forget(self, job_id: str) -> None:
        async with self._lock:
            self._tasks.pop(job_id, None)
            self._tokens.pop(job_id, None)

    async def _set_status(
        self,
        job_id: str,
        *,
        state: JobState,
        outcome: Optional[SearchOutcome] = None,
        nodes_expanded: Optional[int] = None,
        compositions_found: Optional[int] = None,
        message: Optional[str] = None,
    ) -> None:
        async with self._lock:
            status = self._statuses[job_id]
            status.state = state
            if outcome is not None:
                status.outcome = outcome
            if nodes_expanded is not None:
                status.nodes_expanded = nodes_expanded
            if compositions_found is not None:
                status.compositions_found = compositions_found
            status.message = message
            status.updated_at = datetime.now(tz=UTC)
