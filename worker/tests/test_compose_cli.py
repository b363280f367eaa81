from __future__ import annotations

import json
from pathlib import Path

import pytest

from belfry_worker.app.models import SearchOutcome
from belfry_worker.compose import CONFIG_ERROR_EXIT, _run, build_request, load_query, main


def _write_query(path: Path, query: dict[str, object]) -> Path:
    path.write_text(json.dumps(query), encoding="utf-8")
    return path


@pytest.mark.asyncio
async def test_compose_cli_prints_ranked_compositions(
    tmp_path: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    artifact_dir = tmp_path / "artifacts"
    config_dir = tmp_path / "config"
    query = _write_query(
        tmp_path / "query.json",
        {
            "method": {"name": "Plain Bob Doubles"},
            "length": {"min": 30, "max": 60},
            "music": [{"name": "rounds at back", "patterns": ["*345"]}],
        },
    )

    result = await _run(
        query,
        threads=1,
        num_comps=3,
        artifact_dir=artifact_dir,
        config_dir=config_dir,
        include_rows=True,
    )

    captured = capsys.readouterr()
    assert result.outcome == SearchOutcome.COMPLETE
    assert 1 <= len(result.compositions) <= 3
    assert "outcome       : complete" in captured.out
    assert "artifact_path" in captured.out
    assert "12345" in captured.out
    assert artifact_dir.exists()
    assert config_dir.exists()


@pytest.mark.asyncio
async def test_compose_cli_reports_no_composition(
    tmp_path: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    query = _write_query(
        tmp_path / "query.json",
        {
            "method": {"name": "Four", "place_notation": "x.12.x.12", "stage": 4},
            "base_calls": "none",
            "length": {"min": 8, "max": 12},
        },
    )
    result = await _run(query, artifact_dir=tmp_path / "artifacts", config_dir=tmp_path / "config")
    assert result.outcome == SearchOutcome.NO_COMPOSITION
    assert "no composition found" in capsys.readouterr().out


def test_toml_queries_and_overrides(tmp_path: Path) -> None:
    path = tmp_path / "query.toml"
    path.write_text(
        '\n'.join(
            [
                'length = "quarter_peal"',
                "num_comps = 5",
                "[method]",
                'name = "Plain Bob Major"',
                "[[music]]",
                "run_lengths = [4, 5]",
                "weight = 0.5",
            ]
        ),
        encoding="utf-8",
    )
    request = build_request(load_query(path), threads=3, num_comps=2, include_rows=True)
    assert request.method.name == "Plain Bob Major"
    assert request.num_comps == 2
    assert request.thread_count == 3
    assert request.include_rows
    assert request.length_range().min == 1250
    assert request.music[0].run_lengths == [4, 5]


def test_main_exits_on_configuration_error(
    tmp_path: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    query = _write_query(
        tmp_path / "query.json",
        {
            "method": {"name": "Plain Bob Minor"},
            "calls": [{"symbol": "x", "place_notation": "18"}],
        },
    )
    with pytest.raises(SystemExit) as excinfo:
        main(
            [
                str(query),
                "--artifact-dir",
                str(tmp_path / "artifacts"),
                "--config-dir",
                str(tmp_path / "config"),
            ]
        )
    assert excinfo.value.code == CONFIG_ERROR_EXIT
    assert "error:" in capsys.readouterr().err
