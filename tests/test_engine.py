from __future__ import annotations

import threading
from pathlib import Path
from typing import List

import pytest

from weave.engine import Engine
from weave.errors import CycleError, TaskBodyError, UnknownTaskError
from weave.events import OpEnd, OpStart, TaskStart
from weave.taskfile import CallableTaskSource, FileTaskSource


def _write_weavefile(tmp_path: Path, body: str) -> Path:
    path = tmp_path / "Weavefile.py"
    path.write_text(body, encoding="utf-8")
    return path


def _marker_lines(marker: Path) -> List[str]:
    if not marker.exists():
        return []
    return marker.read_text(encoding="utf-8").split()


def test_runs_dependencies_first(tmp_path: Path) -> None:
    marker = tmp_path / "marker.txt"
    path = _write_weavefile(
        tmp_path,
        (
            f"MARKER = {str(marker)!r}\n"
            "task('sync', f'echo sync >> {MARKER}')\n"
            "@task('build', depends=['sync'])\n"
            "def build(ctx):\n"
            "    ctx.log('info', 'build')\n"
            "    ctx.run(f'echo build >> {MARKER}').check()\n"
            "task('release', {'depends': ['build']}, f'echo release >> {MARKER}')\n"
            "task('unrelated', f'echo unrelated >> {MARKER}')\n"
        ),
    )
    engine = Engine(FileTaskSource(path), workers=2)
    engine.load()
    engine.run("release")
    assert _marker_lines(marker) == ["sync", "build", "release"]


def test_task_names_are_sorted(tmp_path: Path) -> None:
    path = _write_weavefile(tmp_path, "task('zeta', 'true')\ntask('alpha', 'true')\ntask('mid', 'true')\n")
    engine = Engine(FileTaskSource(path))
    engine.load()
    assert engine.task_names() == ["alpha", "mid", "zeta"]


def test_failed_task_blocks_dependents(tmp_path: Path) -> None:
    marker = tmp_path / "marker.txt"
    path = _write_weavefile(
        tmp_path,
        (
            f"MARKER = {str(marker)!r}\n"
            "task('a', 'exit 1')\n"
            "task('side', f'sleep 0.1; echo side >> {MARKER}')\n"
            "task('b', {'depends': ['a']}, f'echo b >> {MARKER}')\n"
            "task('c', {'depends': ['b', 'side']}, f'echo c >> {MARKER}')\n"
        ),
    )
    engine = Engine(FileTaskSource(path), workers=2)
    started: List[str] = []
    engine.subscribe(lambda event: started.append(event.task) if isinstance(event, TaskStart) else None)

    with pytest.raises(TaskBodyError, match='task "a" failed'):
        engine.run("c")

    assert sorted(started) == ["a", "side"]
    assert _marker_lines(marker) == ["side"]


def test_base_exception_in_body_fails_the_run(tmp_path: Path) -> None:
    marker = tmp_path / "marker.txt"
    path = _write_weavefile(
        tmp_path,
        (
            f"MARKER = {str(marker)!r}\n"
            "class Abort(BaseException):\n"
            "    pass\n"
            "@task('a')\n"
            "def a(ctx):\n"
            "    raise Abort('stop')\n"
            "task('b', {'depends': ['a']}, f'echo b >> {MARKER}')\n"
        ),
    )
    engine = Engine(FileTaskSource(path), workers=2)
    started: List[str] = []
    engine.subscribe(lambda event: started.append(event.task) if isinstance(event, TaskStart) else None)

    with pytest.raises(TaskBodyError, match='task "a" failed: stop') as excinfo:
        engine.run("b")

    assert type(excinfo.value.cause).__name__ == "Abort"
    assert started == ["a"]
    assert not marker.exists()


def test_cycle_is_rejected_before_anything_runs(tmp_path: Path) -> None:
    marker = tmp_path / "marker.txt"
    path = _write_weavefile(
        tmp_path,
        (
            f"MARKER = {str(marker)!r}\n"
            "task('a', f'echo a >> {MARKER}')\n"
            "task('b', {'depends': ['a', 'c']}, 'true')\n"
            "task('c', {'depends': ['b']}, 'true')\n"
        ),
    )
    engine = Engine(FileTaskSource(path))
    with pytest.raises(CycleError) as excinfo:
        engine.run("b")
    assert excinfo.value.path == ["b", "c", "b"]
    assert not marker.exists()


def test_unknown_root_and_dependency(tmp_path: Path) -> None:
    path = _write_weavefile(tmp_path, "task('a', {'depends': ['ghost']}, 'true')\n")
    engine = Engine(FileTaskSource(path))
    engine.load()
    with pytest.raises(UnknownTaskError, match='unknown task "nope"'):
        engine.run("nope")
    with pytest.raises(UnknownTaskError, match='unknown dependency "ghost"'):
        engine.run("a")


def test_dry_run_emits_events_without_side_effects(tmp_path: Path) -> None:
    created = tmp_path / "created.txt"
    path = _write_weavefile(
        tmp_path,
        (
            "config = {'hosts': {'web': {'addr': '10.0.0.5', 'user': 'deploy'}}}\n"
            f"task('local', 'touch {created}')\n"
            "@task('deploy', depends=['local'])\n"
            "def deploy(ctx):\n"
            "    ctx.run('web', 'systemctl restart app').check()\n"
            f"    ctx.sync({str(tmp_path)!r}, 'web:/srv/app').check()\n"
            f"    ctx.fetch('web:/var/log/app.log', {str(tmp_path / 'logs' / 'app.log')!r}).check()\n"
        ),
    )
    engine = Engine(FileTaskSource(path), dry_run=True)
    events: list = []
    engine.subscribe(events.append)

    engine.run("deploy")

    assert not created.exists()
    assert not (tmp_path / "logs").exists()
    ops = [(event.task, event.op) for event in events if isinstance(event, OpStart)]
    assert ops == [("local", "run"), ("deploy", "run"), ("deploy", "sync"), ("deploy", "fetch")]
    assert all(event.ok and event.code == 0 for event in events if isinstance(event, OpEnd))


def test_single_worker_never_overlaps_operations() -> None:
    lock = threading.Lock()
    in_flight: List[str] = []
    overlaps: List[str] = []

    def watch(event) -> None:
        with lock:
            if isinstance(event, OpStart):
                if in_flight:
                    overlaps.append(event.task)
                in_flight.append(event.task)
            elif isinstance(event, OpEnd):
                in_flight.remove(event.task)

    def define(task) -> None:
        for name in ("a", "b", "c", "d"):
            task(name, "sleep 0.02")
        task("all", {"depends": ["a", "b", "c", "d"]}, "true")

    engine = Engine(CallableTaskSource(define), workers=1)
    engine.subscribe(watch)
    engine.run("all")
    assert overlaps == []


def test_parallel_workers_bound_in_flight_tasks() -> None:
    lock = threading.Lock()
    active = {"now": 0, "peak": 0}

    def define(task) -> None:
        def body(ctx) -> None:
            with lock:
                active["now"] += 1
                active["peak"] = max(active["peak"], active["now"])
            ctx.run("sleep 0.05")
            with lock:
                active["now"] -= 1

        for idx in range(6):
            task(f"t{idx}", body)
        task("all", {"depends": [f"t{idx}" for idx in range(6)]}, "true")

    engine = Engine(CallableTaskSource(define), workers=3)
    engine.run("all")
    assert 1 <= active["peak"] <= 3
