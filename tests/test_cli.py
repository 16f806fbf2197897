from __future__ import annotations

import logging
from pathlib import Path

import pytest
import yaml

from weave import __version__
from weave.cli import main, parse_args


@pytest.fixture(autouse=True)
def restore_weave_logger():
    logger = logging.getLogger("weave")
    handlers, level, propagate = list(logger.handlers), logger.level, logger.propagate
    yield
    logger.handlers[:] = handlers
    logger.setLevel(level)
    logger.propagate = propagate


def _write_weavefile(tmp_path: Path, body: str) -> Path:
    path = tmp_path / "Weavefile.py"
    path.write_text(body, encoding="utf-8")
    return path


def test_tasks_lists_sorted_names(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    path = _write_weavefile(tmp_path, "task('release', 'true')\ntask('build', 'true')\n")
    assert main(["-f", str(path), "--quiet", "tasks"]) == 0
    assert capsys.readouterr().out.splitlines() == ["build", "release"]


def test_run_success_and_failure_exit_codes(tmp_path: Path) -> None:
    marker = tmp_path / "marker.txt"
    path = _write_weavefile(
        tmp_path,
        f"task('ok', 'echo ok > {marker}')\ntask('bad', 'exit 5')\n",
    )
    assert main(["-f", str(path), "--quiet", "run", "ok"]) == 0
    assert marker.read_text(encoding="utf-8").strip() == "ok"
    assert main(["-f", str(path), "--quiet", "run", "bad"]) == 1


def test_run_unknown_task_reports_error(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    path = _write_weavefile(tmp_path, "task('a', 'true')\n")
    assert main(["-f", str(path), "run", "missing"]) == 1
    assert 'unknown task "missing"' in capsys.readouterr().err


def test_dry_run_flag_skips_commands(tmp_path: Path) -> None:
    created = tmp_path / "created.txt"
    path = _write_weavefile(tmp_path, f"task('a', 'touch {created}')\n")
    assert main(["-f", str(path), "--dry-run", "--quiet", "run", "a"]) == 0
    assert not created.exists()


def test_settings_file_beside_weavefile_supplies_hosts(tmp_path: Path) -> None:
    path = _write_weavefile(
        tmp_path,
        "task('remote', lambda ctx: ctx.run('web', 'uptime').check())\n",
    )
    (tmp_path / "weave.yaml").write_text(
        yaml.safe_dump({"defaults": {"dry_run": True}, "hosts": {"web": {"addr": "10.0.0.5"}}}),
        encoding="utf-8",
    )
    assert main(["-f", str(path), "--quiet", "run", "remote"]) == 0


def test_explicit_missing_settings_file_fails(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    path = _write_weavefile(tmp_path, "task('a', 'true')\n")
    assert main(["-f", str(path), "--config", str(tmp_path / "nope.yaml"), "tasks"]) == 1
    assert "Settings file not found" in capsys.readouterr().err


def test_load_error_exit_code(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    path = _write_weavefile(tmp_path, "raise RuntimeError('nope')\n")
    assert main(["-f", str(path), "tasks"]) == 1
    assert "failure executing" in capsys.readouterr().err


def test_text_observer_output(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    path = _write_weavefile(tmp_path, "task('a', lambda ctx: ctx.log('info', 'hello from a'))\n")
    assert main(["-f", str(path), "run", "a"]) == 0
    err = capsys.readouterr().err
    assert "task start task=a" in err
    assert "hello from a task=a" in err


def test_version(capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["version"]) == 0
    assert capsys.readouterr().out.strip() == f"weave version {__version__}"


def test_parse_args_defaults() -> None:
    args = parse_args(["run", "build"])
    assert args.file == "Weavefile.py"
    assert args.workers is None
    assert args.dry_run is False
    assert args.task == "build"
    with pytest.raises(SystemExit):
        parse_args(["--log-format", "xml", "tasks"])
