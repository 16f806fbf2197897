from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from .context import TaskContext
from .errors import TaskBodyError
from .events import EventBus, TaskEnd, TaskStart
from .operations import OperationRunner
from .taskfile import TaskSource

logger = logging.getLogger(__name__)
UTC = timezone.utc


class TaskExecutor:
    """
    Runs one named task at a time against a freshly loaded environment.

    The source is evaluated again for every task, so two tasks running on
    different threads never share a registry, host table or any state the
    task declarations created while loading.
    """

    def __init__(self, source: TaskSource, bus: EventBus, dry_run: bool = False) -> None:
        self.source = source
        self.bus = bus
        self.dry_run = dry_run

    def run(self, name: str) -> None:
        env = self.source.load()
        definition = env.get(name)
        runner = OperationRunner(name, env.hosts, self.bus, dry_run=self.dry_run)
        ctx = TaskContext(name, runner, self.bus)

        started = datetime.now(tz=UTC)
        self.bus.emit(TaskStart(task=name, at=started))
        ok = False
        error: Optional[TaskBodyError] = None
        try:
            try:
                outcome = definition.body(ctx)
            except KeyboardInterrupt:
                raise
            except BaseException as exc:
                raise TaskBodyError(name, exc) from exc
            if isinstance(outcome, BaseException):
                raise TaskBodyError(name, outcome) from outcome
            ok = True
        except TaskBodyError as exc:
            error = exc
        finally:
            duration = datetime.now(tz=UTC) - started
            self.bus.emit(
                TaskEnd(
                    task=name,
                    ok=ok,
                    duration_ms=int(duration.total_seconds() * 1000),
                    error=str(error.cause) if error else None,
                )
            )

        if error is not None:
            logger.debug("Task %s body raised %r", name, error.cause)
            raise error
