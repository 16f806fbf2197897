"""
Task sources.

A source evaluates task declarations into an ``Environment``: an immutable
registry of ``TaskDef`` plus the host table. Every ``load()`` builds a brand
new environment, which is what lets the executor give each concurrently
running task its own copy.
"""

from __future__ import annotations

import logging
import runpy
import threading
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from .config import HostConfig, parse_source_config
from .errors import ArgumentError, LoadError, UnknownTaskError, WeaveError

if TYPE_CHECKING:
    from .context import TaskContext

logger = logging.getLogger(__name__)

DEFAULT_TASKFILE = "Weavefile.py"

Runnable = Callable[["TaskContext"], Any]
_MISSING = object()

# runpy swaps sys.argv[0] and sys.modules[run_name] while a file runs.
_RUN_PATH_LOCK = threading.Lock()


@dataclass(frozen=True)
class TaskOptions:
    depends: Tuple[str, ...] = ()

    @staticmethod
    def from_raw(raw: Any) -> "TaskOptions":
        if raw is None:
            return TaskOptions()
        if not isinstance(raw, Mapping):
            raise ArgumentError("task options must be a mapping")
        unknown = set(raw.keys()) - {"depends"}
        if unknown:
            raise ArgumentError(f"unknown task options: {sorted(str(k) for k in unknown)}")
        depends = raw.get("depends")
        if depends is None:
            return TaskOptions()
        if isinstance(depends, str) or not isinstance(depends, (list, tuple)):
            raise ArgumentError("depends must be a list of task names")
        for dep in depends:
            if not isinstance(dep, str) or not dep:
                raise ArgumentError("depends must be a list of task names")
        return TaskOptions(depends=tuple(dict.fromkeys(depends)))


class CommandBody:
    """Scripted body: shell commands run in order, stopping at the first failure."""

    def __init__(self, commands: Sequence[str]) -> None:
        self.commands = tuple(commands)

    def __call__(self, ctx: "TaskContext") -> None:
        for command in self.commands:
            ctx.run(command).check()

    def __repr__(self) -> str:
        return f"CommandBody({list(self.commands)!r})"


def as_runnable(body: Any) -> Runnable:
    if isinstance(body, str):
        if not body.strip():
            raise ArgumentError("task command cannot be empty")
        return CommandBody([body])
    if isinstance(body, (list, tuple)):
        if not body or not all(isinstance(item, str) and item.strip() for item in body):
            raise ArgumentError("task commands must be a non-empty list of strings")
        return CommandBody(body)
    if callable(body):
        return body
    raise ArgumentError("task body must be a callable, a command string or a list of commands")


@dataclass(frozen=True)
class TaskDef:
    name: str
    depends: Tuple[str, ...]
    body: Runnable


@dataclass(frozen=True)
class Environment:
    tasks: Mapping[str, TaskDef] = field(default_factory=dict)
    hosts: Mapping[str, HostConfig] = field(default_factory=dict)

    def get(self, name: str) -> TaskDef:
        try:
            return self.tasks[name]
        except KeyError:
            raise UnknownTaskError(name) from None

    def names(self) -> List[str]:
        return sorted(self.tasks)


class TaskRegistrar:
    """
    The ``task`` callable exposed to task declarations.

    Accepted shapes::

        task("lint", "ruff check .")
        task("build", {"depends": ["lint"]}, build)

        @task("release", depends=["build"])
        def release(ctx): ...
    """

    def __init__(self) -> None:
        self._tasks: Dict[str, TaskDef] = {}

    def __call__(self, name: Any, *args: Any, depends: Optional[Sequence[str]] = None) -> Any:
        if len(args) > 2:
            raise ArgumentError("expected task(name, body) or task(name, options, body)")
        if not isinstance(name, str) or not name.strip():
            raise ArgumentError("task name cannot be empty")

        options_raw: Any = None
        body: Any = _MISSING
        if len(args) == 2:
            options_raw, body = args
        elif len(args) == 1:
            if isinstance(args[0], Mapping):
                options_raw = args[0]
            else:
                body = args[0]
        if depends is not None:
            if options_raw is not None:
                raise ArgumentError("depends given both as keyword and in options")
            options_raw = {"depends": depends}
        options = TaskOptions.from_raw(options_raw)

        if body is _MISSING:

            def decorator(fn: Runnable) -> Runnable:
                self._register(name, options, fn)
                return fn

            return decorator

        self._register(name, options, body)
        return body

    def _register(self, name: str, options: TaskOptions, body: Any) -> None:
        if name in self._tasks:
            raise ArgumentError(f'duplicate task "{name}"')
        self._tasks[name] = TaskDef(name=name, depends=options.depends, body=as_runnable(body))

    def environment(self, hosts: Mapping[str, HostConfig]) -> Environment:
        return Environment(
            tasks=MappingProxyType(dict(self._tasks)),
            hosts=MappingProxyType(dict(hosts)),
        )


class TaskSource(Protocol):
    def load(self) -> Environment: ...


class FileTaskSource:
    """Evaluates a Python Weavefile in a fresh namespace on every ``load()``."""

    def __init__(self, path: Path, base_hosts: Optional[Mapping[str, HostConfig]] = None) -> None:
        self.path = Path(path)
        self.base_hosts: Dict[str, HostConfig] = dict(base_hosts or {})

    def load(self) -> Environment:
        if not self.path.is_file():
            raise LoadError(f"failure reading {self.path}: no such file")

        registrar = TaskRegistrar()
        try:
            with _RUN_PATH_LOCK:
                namespace = runpy.run_path(
                    str(self.path),
                    init_globals={"task": registrar},
                    run_name="__weavefile__",
                )
        except WeaveError:
            raise
        except Exception as exc:
            raise LoadError(f"failure executing {self.path}: {exc}") from exc

        hosts = dict(self.base_hosts)
        hosts.update(parse_source_config(namespace.get("config")))
        env = registrar.environment(hosts)
        logger.debug("Loaded %s task(s) and %s host(s) from %s", len(env.tasks), len(hosts), self.path)
        return env


class CallableTaskSource:
    """Declares tasks from Python code: ``define(task)`` runs on every ``load()``."""

    def __init__(
        self,
        define: Callable[[TaskRegistrar], Any],
        hosts: Optional[Mapping[str, HostConfig]] = None,
    ) -> None:
        self.define = define
        self.hosts: Dict[str, HostConfig] = dict(hosts or {})

    def load(self) -> Environment:
        registrar = TaskRegistrar()
        try:
            self.define(registrar)
        except WeaveError:
            raise
        except Exception as exc:
            raise LoadError(f"failure declaring tasks: {exc}") from exc
        return registrar.environment(self.hosts)
