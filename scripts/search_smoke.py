#!/usr/bin/env python3
"""
Quick smoke test for the search pipeline.

Queues a Plain Bob Minor touch through the job manager, polls its status
while the search runs, and prints the ranked result so contributors can
check the worker end to end without starting the HTTP server.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
import time
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = REPO_ROOT / "worker" / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a standalone composition search smoke test.")
    parser.add_argument(
        "--method",
        default="Plain Bob Minor",
        help="Library method to search.",
    )
    parser.add_argument(
        "--max-length",
        type=int,
        default=360,
        help="Longest touch to consider, in rows.",
    )
    parser.add_argument(
        "--threads",
        type=int,
        default=2,
        help="Search worker threads.",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=30.0,
        help="Seconds before the search is cancelled.",
    )
    parser.add_argument(
        "--artifact-dir",
        type=Path,
        default=Path("~/Belfry/compositions").expanduser(),
        help="Directory where result artifacts should be written.",
    )
    parser.add_argument(
        "--config-dir",
        type=Path,
        default=Path("~/.config/belfry").expanduser(),
        help="Configuration directory for the worker Settings object.",
    )
    return parser.parse_args()


async def run_smoke(args: argparse.Namespace) -> None:
    from belfry_worker.app.jobs import JobManager
    from belfry_worker.app.models import JobState, LengthRange, MethodSpec, MusicSpec, SearchRequest
    from belfry_worker.app.settings import Settings
    from belfry_worker.services.composer import Composer

    settings = Settings(artifact_root=args.artifact_dir, config_dir=args.config_dir)
    settings.ensure_directories()
    manager = JobManager(Composer(settings))

    request = SearchRequest(
        method=MethodSpec(name=args.method),
        length=LengthRange(min=1, max=args.max_length),
        music=[MusicSpec(run_lengths=[4], weight=1.0)],
        thread_count=args.threads,
        timeout_seconds=args.timeout,
        num_comps=5,
    )

    start = time.perf_counter()
    status = await manager.enqueue(request)
    while status.state in (JobState.QUEUED, JobState.RUNNING):
        await asyncio.sleep(0.25)
        refreshed = await manager.get_status(status.job_id)
        assert refreshed is not None
        status = refreshed
        print(f"{status.state.value}: {status.nodes_expanded} nodes", file=sys.stderr)
    elapsed = time.perf_counter() - start

    result = await manager.get_result(status.job_id)
    if result is None:
        print(f"Search ended without a result: {status.message}", file=sys.stderr)
        sys.exit(3)

    payload = {
        "job_id": result.job_id,
        "outcome": result.outcome.value,
        "artifact_path": result.artifact_path,
        "statistics": result.statistics.model_dump(),
        "compositions": [record.model_dump(exclude={"rows"}) for record in result.compositions],
        "wall_seconds": round(elapsed, 3),
    }
    print(json.dumps(payload, indent=2))


def main() -> None:
    args = parse_args()
    try:
        asyncio.run(run_smoke(args))
    except KeyboardInterrupt:  # pragma: no cover - operator friendly exit
        print("Cancelled smoke test.", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
