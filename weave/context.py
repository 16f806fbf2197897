from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from .config import HostConfig
from .events import EventBus, Message
from .operations import OperationResult, OperationRunner

LOG_LEVELS = ("debug", "info", "warn", "error")


def normalize_level(level: Any) -> str:
    text = str(level).strip().lower() if level is not None else ""
    if text == "warning":
        return "warn"
    return text if text in LOG_LEVELS else "info"


class TaskContext:
    """
    The value handed to a task body.

    ``run``/``sync``/``fetch`` return an ``OperationResult``; a failed result
    is data, call ``.check()`` on it to make the failure fatal. ``log`` emits
    a Message event.
    """

    def __init__(self, task: str, runner: OperationRunner, bus: EventBus) -> None:
        self._task = task
        self._runner = runner
        self._bus = bus

    @property
    def task(self) -> str:
        return self._task

    @property
    def hosts(self) -> Mapping[str, HostConfig]:
        return self._runner.hosts

    @property
    def dry_run(self) -> bool:
        return self._runner.dry_run

    def run(self, *args: str) -> OperationResult:
        return self._runner.run(*args)

    def sync(self, src: str, dst: str) -> OperationResult:
        return self._runner.sync(src, dst)

    def fetch(self, src: str, dst: str) -> OperationResult:
        return self._runner.fetch(src, dst)

    def log(self, level: str, message: Any, attrs: Optional[Mapping[str, Any]] = None, **extra: Any) -> None:
        fields: Dict[str, Any] = dict(attrs or {})
        fields.update(extra)
        self._bus.emit(Message(task=self._task, level=normalize_level(level), text=str(message), attrs=fields))
