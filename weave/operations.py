"""
run / sync / fetch: the only side-effecting calls available to task bodies.

``run`` shells out locally (``sh -c``) or over ssh to a configured host
alias. ``sync`` and ``fetch`` mirror files with ``rsync -az --delete``;
either endpoint may be ``alias:path``. Every dispatched call is bracketed by
OpStart/OpEnd events on the bus.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Mapping, Optional, Tuple

from .config import HostConfig, resolve_target
from .errors import ArgumentError, OperationError
from .events import EventBus, OpEnd, OpStart

logger = logging.getLogger(__name__)
UTC = timezone.utc

SHELL = "sh"
SSH = "ssh"
RSYNC = "rsync"
RSYNC_FLAGS = ("-az", "--delete")
LOCAL_DIR_MODE = 0o750


@dataclass(frozen=True)
class OperationResult:
    ok: bool
    code: int
    stdout: str = ""
    stderr: str = ""

    def check(self) -> "OperationResult":
        """Raise OperationError unless the operation succeeded."""
        if not self.ok:
            raise OperationError(self)
        return self

    @staticmethod
    def failure(message: str, code: int = 1) -> "OperationResult":
        return OperationResult(ok=False, code=code, stdout="", stderr=message)


def shell_quote(text: str) -> str:
    if text == "":
        return "''"
    return "'" + text.replace("'", "'\\''") + "'"


def split_host_path(spec: str) -> Optional[Tuple[str, str]]:
    """Split ``alias:path``; a slash before the colon marks a local path."""
    host, sep, path = spec.partition(":")
    if not sep or not host or not path or "/" in host:
        return None
    return host, path


def is_remote_spec(spec: str) -> bool:
    return split_host_path(spec) is not None


def ensure_local_dest(dst: str) -> None:
    if not dst or is_remote_spec(dst):
        return
    if dst.endswith("/") or dst.endswith(os.sep):
        Path(dst).mkdir(mode=LOCAL_DIR_MODE, parents=True, exist_ok=True)
        return
    parent = os.path.dirname(dst)
    if parent in ("", "."):
        return
    Path(parent).mkdir(mode=LOCAL_DIR_MODE, parents=True, exist_ok=True)


def normalize_sync_source(original: str, resolved: str) -> str:
    # An existing local directory is pushed as its contents, not as a nested entry.
    if is_remote_spec(original) or not Path(original).is_dir():
        return resolved
    if resolved.endswith("/"):
        return resolved
    return resolved + "/"


def run_process(argv: List[str]) -> OperationResult:
    try:
        completed = subprocess.run(
            argv,
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            check=False,
        )
    except (OSError, ValueError) as exc:
        return OperationResult.failure(str(exc))

    code = completed.returncode
    if code < 0:
        # terminated by a signal, no usable exit status
        code = 1
    return OperationResult(
        ok=completed.returncode == 0,
        code=code,
        stdout=completed.stdout or "",
        stderr=completed.stderr or "",
    )


class OperationRunner:
    def __init__(
        self,
        task: str,
        hosts: Mapping[str, HostConfig],
        bus: EventBus,
        dry_run: bool = False,
    ) -> None:
        self.task = task
        self.hosts = hosts
        self.bus = bus
        self.dry_run = dry_run

    def run(self, *args: str) -> OperationResult:
        """``run(command)`` locally or ``run(alias, command)`` on a configured host."""
        if len(args) == 1:
            host, command = "", args[0]
        elif len(args) == 2:
            host, command = args
        else:
            raise ArgumentError("expected run(command) or run(host, command)")
        if not isinstance(command, str):
            raise ArgumentError("run command must be a string")

        if host:
            if not isinstance(host, str):
                raise ArgumentError("run host must be a string")
            target = resolve_target(self.hosts, host)
            argv = [SSH, target, "--", f"{SHELL} -lc {shell_quote(command)}"]
        else:
            argv = [SHELL, "-c", command]

        return self._execute(OpStart(task=self.task, op="run", host=host, command=command), argv)

    def sync(self, src: str, dst: str) -> OperationResult:
        """Push-direction mirror of ``src`` onto ``dst``."""
        return self._mirror("sync", src, dst)

    def fetch(self, src: str, dst: str) -> OperationResult:
        """Pull-direction mirror of ``src`` onto ``dst``."""
        return self._mirror("fetch", src, dst)

    def _resolve_endpoint(self, spec: str) -> Tuple[str, str]:
        parts = split_host_path(spec)
        if parts is None:
            return spec, ""
        alias, path = parts
        return f"{resolve_target(self.hosts, alias)}:{path}", alias

    def _mirror(self, op: str, src: str, dst: str) -> OperationResult:
        if not isinstance(src, str) or not isinstance(dst, str) or not src or not dst:
            raise ArgumentError(f"expected {op}(src, dst) with non-empty path strings")
        try:
            resolved_src, src_host = self._resolve_endpoint(src)
            resolved_dst, dst_host = self._resolve_endpoint(dst)
        except ArgumentError as exc:
            return OperationResult.failure(str(exc))

        if op == "sync":
            resolved_src = normalize_sync_source(src, resolved_src)

        if not self.dry_run:
            try:
                ensure_local_dest(resolved_dst)
            except OSError as exc:
                return OperationResult.failure(f"unable to create destination for {dst}: {exc}")

        argv = [RSYNC, *RSYNC_FLAGS, resolved_src, resolved_dst]
        start = OpStart(task=self.task, op=op, host=src_host or dst_host, src=src, dst=dst)
        return self._execute(start, argv)

    def _execute(self, start: OpStart, argv: List[str]) -> OperationResult:
        started = datetime.now(tz=UTC)
        self.bus.emit(start)
        if self.dry_run:
            logger.debug("[%s] dry-run, skipping: %s", self.task, shlex.join(argv))
            result = OperationResult(ok=True, code=0)
        else:
            logger.debug("[%s] executing: %s", self.task, shlex.join(argv))
            result = run_process(argv)
        duration = datetime.now(tz=UTC) - started
        self.bus.emit(
            OpEnd(
                task=self.task,
                op=start.op,
                host=start.host,
                ok=result.ok,
                code=result.code,
                duration_ms=int(duration.total_seconds() * 1000),
                stdout_len=len(result.stdout),
                stderr_len=len(result.stderr),
            )
        )
        return result
