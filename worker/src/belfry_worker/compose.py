"""
CLI entry point to run a one-off composition search.

Example:
    python -m belfry_worker.compose queries/cambridge-quarter.toml --threads 4 --num-comps 10
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import signal
import sys
import tomllib
from pathlib import Path
from typing import Any, Optional
from uuid import uuid4

from pydantic import ValidationError

from .app.models import SearchOutcome, SearchRequest, SearchResult
from .app.settings import Settings
from .services.composer import Composer
from .services.exceptions import ConfigurationError

CONFIG_ERROR_EXIT = 2


def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Search for change-ringing compositions.")
    parser.add_argument("query", type=Path, help="TOML or JSON file describing the search.")
    parser.add_argument(
        "--threads",
        type=int,
        default=None,
        help="Search worker threads (defaults to the query, then worker settings).",
    )
    parser.add_argument(
        "--num-comps",
        type=int,
        default=None,
        help="Number of compositions to keep.",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Stop searching after this many seconds and print what was found.",
    )
    parser.add_argument(
        "--artifact-dir",
        type=Path,
        default=None,
        help="Override artifact directory (defaults to worker settings).",
    )
    parser.add_argument(
        "--config-dir",
        type=Path,
        default=None,
        help="Override config directory (defaults to worker settings).",
    )
    parser.add_argument(
        "--rows",
        action="store_true",
        help="Include every row of each composition in the output.",
    )
    return parser.parse_args(argv)


def load_query(path: Path) -> dict[str, Any]:
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".json":
        return json.loads(text)
    return tomllib.loads(text)


def build_request(
    query: dict[str, Any],
    *,
    threads: Optional[int] = None,
    num_comps: Optional[int] = None,
    timeout: Optional[float] = None,
    include_rows: bool = False,
) -> SearchRequest:
    overrides: dict[str, Any] = {}
    if threads is not None:
        overrides["thread_count"] = threads
    if num_comps is not None:
        overrides["num_comps"] = num_comps
    if timeout is not None:
        overrides["timeout_seconds"] = timeout
    if include_rows:
        overrides["include_rows"] = True
    return SearchRequest.model_validate({**query, **overrides})


def _print_result(result: SearchResult) -> None:
    stats = result.statistics
    print(f"job_id        : {result.job_id}")
    print(f"method        : {result.method}")
    print(f"outcome       : {result.outcome.value}")
    print(f"length        : {result.length_min}-{result.length_max}")
    print(f"layout        : {stats.chunk_count} chunks, {stats.link_count} links")
    print(f"nodes         : {stats.nodes_expanded} ({stats.elapsed_seconds:.2f}s)")
    print(f"artifact_path : {result.artifact_path or '-'}")
    if result.outcome == SearchOutcome.NO_COMPOSITION:
        print("no composition found")
        return
    print()
    print(f"{'#':>4} {'len':>6} {'music':>8} {'calls':>7} {'total':>8}  calling")
    for record in result.compositions:
        calling = record.call_string or "(plain)"
        print(
            f"{record.rank:>4} {record.length:>6} {record.music_score:>8.2f} "
            f"{record.call_score:>7.2f} {record.total_score:>8.2f}  {calling}"
        )
        if record.rows is not None:
            for row in record.rows:
                print(f"{'':>12}{row}")


async def _run(
    query: Path,
    *,
    threads: Optional[int] = None,
    num_comps: Optional[int] = None,
    timeout: Optional[float] = None,
    artifact_dir: Optional[Path] = None,
    config_dir: Optional[Path] = None,
    include_rows: bool = False,
) -> SearchResult:
    settings_kwargs: dict[str, object] = {}
    if artifact_dir is not None:
        settings_kwargs["artifact_root"] = artifact_dir
    if config_dir is not None:
        settings_kwargs["config_dir"] = config_dir

    settings = Settings(**settings_kwargs)
    settings.ensure_directories()

    request = build_request(
        load_query(query),
        threads=threads,
        num_comps=num_comps,
        timeout=timeout,
        include_rows=include_rows,
    )
    composer = Composer(settings)
    prepared = await asyncio.to_thread(composer.prepare, request)
    token = prepared.new_token()

    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, token.cancel)
    try:
        result = await asyncio.to_thread(composer.search, f"cli-{uuid4()}", prepared, token)
    finally:
        with contextlib.suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)

    _print_result(result)
    return result


def main(argv: Optional[list[str]] = None) -> None:
    args = _parse_args(argv)
    try:
        asyncio.run(
            _run(
                args.query,
                threads=args.threads,
                num_comps=args.num_comps,
                timeout=args.timeout,
                artifact_dir=args.artifact_dir,
                config_dir=args.config_dir,
                include_rows=args.rows,
            )
        )
    except (ConfigurationError, ValidationError, OSError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        raise SystemExit(CONFIG_ERROR_EXIT) from exc


if __name__ == "__main__":
    main()
