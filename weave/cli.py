from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import List, Optional

from . import __version__
from .config import DEFAULT_SETTINGS_FILE, VALID_LOG_FORMATS, VALID_LOG_LEVELS, Settings, load_settings
from .engine import Engine
from .errors import WeaveError
from .observers import LogObserver, setup_logging
from .taskfile import DEFAULT_TASKFILE, FileTaskSource

logger = logging.getLogger("weave.cli")


def command_tasks(engine: Engine) -> int:
    engine.load()
    for name in engine.task_names():
        print(name)
    return 0


def command_run(engine: Engine, task_name: str) -> int:
    engine.load()
    engine.run(task_name)
    return 0


def command_version() -> int:
    print(f"weave version {__version__}")
    return 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="weave",
        description="Run tasks declared in a Weavefile, dependencies first.",
    )
    parser.add_argument(
        "-f",
        "--file",
        default=DEFAULT_TASKFILE,
        help=f"Path to the Weavefile (default: {DEFAULT_TASKFILE})",
    )
    parser.add_argument(
        "--config",
        help=f"Path to YAML settings (default: {DEFAULT_SETTINGS_FILE} beside the Weavefile, if present)",
    )
    parser.add_argument("--workers", type=int, help="Max parallel tasks (default: 2)")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Emit events without executing run/sync/fetch",
    )
    parser.add_argument("--log-level", choices=VALID_LOG_LEVELS, help="Log level (default: info)")
    parser.add_argument("--log-format", choices=VALID_LOG_FORMATS, help="Log format (default: text)")
    parser.add_argument("--debug", action="store_true", help="Shortcut for --log-level debug")
    parser.add_argument("--quiet", action="store_true", help="Disable all output except errors")

    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("tasks", help="List task names")
    run_parser = subparsers.add_parser("run", help="Run a task and its dependencies")
    run_parser.add_argument("task", help="Task name")
    subparsers.add_parser("version", help="Print the version")

    return parser.parse_args(argv)


def _load_settings(args: argparse.Namespace, taskfile: Path) -> Settings:
    if args.config:
        return load_settings(Path(args.config).resolve(), required=True)
    return load_settings(taskfile.parent / DEFAULT_SETTINGS_FILE)


def _configure_logging(args: argparse.Namespace, settings: Settings) -> str:
    log_format = args.log_format or settings.log_format
    setup_logging(
        level="debug" if args.debug else (args.log_level or settings.log_level),
        fmt=log_format,
        quiet=args.quiet,
    )
    return log_format


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    if args.command == "version":
        return command_version()

    taskfile = Path(args.file).resolve()
    # Configured from flags first so settings errors are reported, then again once settings are known.
    _configure_logging(args, Settings())
    try:
        settings = _load_settings(args, taskfile)
        log_format = _configure_logging(args, settings)

        engine = Engine(
            FileTaskSource(taskfile, base_hosts=settings.hosts),
            workers=args.workers if args.workers is not None else settings.workers,
            dry_run=args.dry_run or settings.dry_run,
        )
        if not args.quiet:
            engine.subscribe(LogObserver(log_format=log_format))

        if args.command == "tasks":
            return command_tasks(engine)
        if args.command == "run":
            return command_run(engine, args.task)
        raise WeaveError(f"Unsupported command: {args.command}")
    except WeaveError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover - defensive
        logger.exception("Unexpected error: %s", exc)
        return 1
