from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from .config import DEFAULT_WORKERS
from .errors import CycleError
from .events import EventBus, Handler
from .executor import TaskExecutor
from .scheduler import build_graph, find_cycle, run_graph
from .taskfile import Environment, TaskSource

logger = logging.getLogger(__name__)
UTC = timezone.utc


class Engine:
    """Loads a task source and runs the dependency graph rooted at one task."""

    def __init__(
        self,
        source: TaskSource,
        workers: int = DEFAULT_WORKERS,
        dry_run: bool = False,
        bus: Optional[EventBus] = None,
    ) -> None:
        self.source = source
        self.workers = workers
        self.dry_run = dry_run
        self.bus = bus or EventBus()
        self.env: Optional[Environment] = None

    def subscribe(self, handler: Handler) -> Callable[[], None]:
        return self.bus.subscribe(handler)

    def load(self) -> Environment:
        # The registry is replaced wholesale, never merged.
        self.env = self.source.load()
        return self.env

    def task_names(self) -> List[str]:
        return self._environment().names()

    def graph(self, root: str) -> Dict[str, List[str]]:
        graph = build_graph(self._environment(), root)
        cycle = find_cycle(graph)
        if cycle:
            raise CycleError(cycle)
        return graph

    def run(self, root: str) -> None:
        graph = self.graph(root)
        executor = TaskExecutor(self.source, self.bus, dry_run=self.dry_run)
        started = datetime.now(tz=UTC)
        logger.info(
            "Running %s (%s task(s), workers=%s%s)",
            root,
            len(graph),
            max(1, self.workers),
            ", dry-run" if self.dry_run else "",
        )
        try:
            run_graph(executor, graph, self.workers)
        except Exception:
            logger.info("Run of %s failed after %.2fs", root, (datetime.now(tz=UTC) - started).total_seconds())
            raise
        logger.info("Run of %s completed in %.2fs", root, (datetime.now(tz=UTC) - started).total_seconds())

    def _environment(self) -> Environment:
        if self.env is None:
            return self.load()
        return self.env
