"""Branch-and-bound depth-first search over a layout."""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Callable, List, Optional, Sequence, Tuple

from loguru import logger

from .collector import ResultCollector
from .falseness import FalsenessTable
from .music import Breakdown, MusicScorer
from .types import Composition, Layout, Link, SearchProgress, SearchRun

ProgressCallback = Callable[[SearchProgress], None]

PREFIXES_PER_WORKER = 4
# Float slack so that rounding in running totals never prunes a tie.
_SCORE_EPSILON = 1e-9


class CancellationToken:
    """Cooperative stop signal polled by every worker at each node expansion."""

    def __init__(self, timeout_seconds: Optional[float] = None):
        self._event = threading.Event()
        self._deadline = None if timeout_seconds is None else time.monotonic() + timeout_seconds
        self.timed_out = False

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self.timed_out = True
            self._event.set()
            return True
        return False


@dataclass(frozen=True)
class SearchNode:
    """A partial composition; ``parent`` links share every prefix."""

    chunk_id: int
    link_id: Optional[int]
    parent: Optional["SearchNode"]
    length: int
    score: float
    mask: int

    def path(self) -> Tuple[List[int], List[int]]:
        """Chunk ids from the start, and the ids of the links taken between them."""
        chunk_ids: List[int] = []
        link_ids: List[int] = []
        node: Optional[SearchNode] = self
        while node is not None:
            chunk_ids.append(node.chunk_id)
            if node.link_id is not None:
                link_ids.append(node.link_id)
            node = node.parent
        chunk_ids.reverse()
        link_ids.reverse()
        return chunk_ids, link_ids


class SearchEngine:
    """Finds the best compositions in a layout, optionally with several worker threads.

    Every worker walks its own slice of root prefixes depth-first, most
    promising successor first, and prunes with the collector's live bound.
    """

    def __init__(
        self,
        layout: Layout,
        falseness: FalsenessTable,
        scorer: MusicScorer,
        collector: ResultCollector,
        *,
        min_length: int,
        max_length: Optional[int] = None,
        progress_interval: int = 10_000,
    ):
        self.layout = layout
        self.falseness = falseness
        self.scorer = scorer
        self.collector = collector
        self.min_length = min_length
        self.max_length = layout.max_length if max_length is None else max_length
        self.progress_interval = max(1, progress_interval)

        self._breakdowns: List[Breakdown] = scorer.layout_breakdowns(layout)
        self._music = [breakdown.score for breakdown in self._breakdowns]
        self._ordered = [self._order_links(chunk.id) for chunk in layout.chunks]

        densities = [
            music / chunk.length for music, chunk in zip(self._music, layout.chunks)
        ]
        weights = [link.weight for link in layout.links]
        self._row_gain = max([0.0, *densities]) + max([0.0, *weights])
        self._link_gain = max([0.0, *weights])

        self._progress = SearchProgress()
        self._progress_lock = threading.Lock()
        self._progress_cb: Optional[ProgressCallback] = None
        self._started = 0.0
        self._interrupted = False

    def _order_links(self, chunk_id: int) -> List[Link]:
        links = self.layout.successor_links(chunk_id)

        def potential(link: Link) -> float:
            if link.target is None:
                return link.weight
            return self._music[link.target] + link.weight

        # sorted() is stable, so equal potentials keep layout order
        return sorted(links, key=lambda link: -potential(link))

    def _optimistic(self, score: float, length: int) -> float:
        remaining = max(0, self.max_length - length)
        return score + remaining * self._row_gain + self._link_gain

    def _hopeless(self, score: float, length: int) -> bool:
        return self._optimistic(score, length) < self.collector.bound - _SCORE_EPSILON

    def run(
        self,
        token: CancellationToken,
        *,
        thread_count: int = 1,
        progress_cb: Optional[ProgressCallback] = None,
    ) -> SearchRun:
        self._started = time.monotonic()
        self._progress = SearchProgress(worker_count=max(1, thread_count))
        self._progress_cb = progress_cb
        self._interrupted = False

        layout = self.layout
        if layout.is_empty() or layout.start in self.falseness.self_false:
            logger.info("Nothing to search: layout has no usable start chunk")
            return SearchRun(compositions=[], cancelled=False, progress=self._snapshot())

        start = layout.chunks[layout.start]
        root = SearchNode(
            chunk_id=start.id,
            link_id=None,
            parent=None,
            length=start.length,
            score=self._music[start.id],
            mask=self.falseness.mask(start.id),
        )
        logger.info(
            "Search started: {} chunks, {} links, lengths {}-{}, {} worker(s)",
            len(layout.chunks),
            len(layout.links),
            self.min_length,
            self.max_length,
            thread_count,
        )

        if thread_count <= 1:
            self._search_from([root], token)
        else:
            prefixes = self._partition(root, token, thread_count)
            slices = [prefixes[index::thread_count] for index in range(thread_count)]
            slices = [chunk for chunk in slices if chunk]
            logger.debug(
                "Split search into {} prefixes across {} worker(s)", len(prefixes), len(slices)
            )
            if slices:
                with ThreadPoolExecutor(
                    max_workers=len(slices), thread_name_prefix="belfry-search"
                ) as pool:
                    futures = [pool.submit(self._search_from, part, token) for part in slices]
                    try:
                        for future in futures:
                            future.result()
                    except BaseException:
                        # Stop the remaining workers before the pool joins them
                        token.cancel()
                        raise

        cancelled = self._interrupted
        progress = self._snapshot()
        compositions = self.collector.results()
        if cancelled:
            logger.warning(
                "Search cancelled after {} nodes with {} composition(s) kept",
                progress.nodes_expanded,
                len(compositions),
            )
        else:
            logger.info(
                "Search finished: {} nodes, {} composition(s) in {:.2f}s",
                progress.nodes_expanded,
                len(compositions),
                progress.elapsed_seconds,
            )
        return SearchRun(compositions=compositions, cancelled=cancelled, progress=progress)

    def _partition(
        self, root: SearchNode, token: CancellationToken, worker_count: int
    ) -> List[SearchNode]:
        """Expand the top of the tree breadth-first until every worker has work."""
        frontier = [root]
        wanted = worker_count * PREFIXES_PER_WORKER
        while frontier and len(frontier) < wanted:
            if token.is_cancelled():
                self._interrupted = True
                return []
            next_frontier: List[SearchNode] = []
            for node in frontier:
                next_frontier.extend(self._expand(node))
            self._record(len(frontier), finished=False)
            frontier = next_frontier
        return frontier

    def _search_from(self, roots: Sequence[SearchNode], token: CancellationToken) -> None:
        stack = list(reversed(roots))
        pending = 0
        try:
            while stack:
                if token.is_cancelled():
                    self._interrupted = True
                    return
                node = stack.pop()
                if self._hopeless(node.score, node.length):
                    continue
                pending += 1
                if pending >= self.progress_interval:
                    self._record(pending, finished=False)
                    pending = 0
                stack.extend(reversed(self._expand(node)))
        finally:
            self._record(pending, finished=True)

    def _expand(self, node: SearchNode) -> List[SearchNode]:
        """Offer any finished compositions and return the children worth visiting."""
        chunks = self.layout.chunks
        self_false = self.falseness.self_false
        children: List[SearchNode] = []
        for link in self._ordered[node.chunk_id]:
            target = link.target
            if target is None:
                if node.length >= self.min_length:
                    composition = self._composition(node, link)
                    if self.scorer.counts_allowed(composition.music_counts):
                        self.collector.offer(composition)
                continue
            if target in self_false or not FalsenessTable.compatible(node.mask, target):
                continue
            chunk = chunks[target]
            if node.length + chunk.distance_to_end > self.max_length:
                continue
            length = node.length + chunk.length
            score = node.score + self._music[target] + link.weight
            if self._hopeless(score, length):
                continue
            children.append(
                SearchNode(
                    chunk_id=target,
                    link_id=link.id,
                    parent=node,
                    length=length,
                    score=score,
                    mask=node.mask | self.falseness.mask(target),
                )
            )
        return children

    def _composition(self, node: SearchNode, end_link: Link) -> Composition:
        layout = self.layout
        chunk_ids, link_ids = node.path()
        link_ids.append(end_link.id)

        tokens = []
        calls = []
        call_score = 0.0
        for chunk_id, link_id in zip(chunk_ids, link_ids):
            link = layout.links[link_id]
            call = layout.call_for(link)
            call_score += link.weight
            tokens.append((layout.chunks[chunk_id].start_idx, call.symbol if call else ""))
            if call is not None:
                place = link.next_row.place_of(layout.calling_bell)
                calls.append(f"{call.short_symbol}{call.calling_position(place)}")

        counts = [0] * len(self.scorer.types)
        for chunk_id in chunk_ids:
            for index, count in enumerate(self._breakdowns[chunk_id].counts):
                counts[index] += count

        return Composition(
            chunk_ids=tuple(chunk_ids),
            link_ids=tuple(link_ids),
            tokens=tuple(tokens),
            call_string="".join(calls),
            length=node.length,
            music_score=self.scorer.score_counts(counts),
            call_score=call_score,
            music_counts=tuple(counts),
        )

    def _record(self, expanded: int, *, finished: bool) -> None:
        with self._progress_lock:
            self._progress.nodes_expanded += expanded
            if finished:
                self._progress.workers_finished += 1
            snapshot = self._snapshot_locked()
        if self._progress_cb is not None:
            self._progress_cb(snapshot)
        if not finished:
            logger.debug(
                "Search progress: {} nodes, {} kept",
                snapshot.nodes_expanded,
                snapshot.compositions_kept,
            )

    def _snapshot_locked(self) -> SearchProgress:
        return replace(
            self._progress,
            compositions_offered=self.collector.offered,
            compositions_kept=len(self.collector),
            elapsed_seconds=time.monotonic() - self._started,
        )

    def _snapshot(self) -> SearchProgress:
        with self._progress_lock:
            return self._snapshot_locked()
