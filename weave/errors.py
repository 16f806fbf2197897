from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional, Sequence

if TYPE_CHECKING:
    from .operations import OperationResult


class WeaveError(Exception):
    """Base error for weave."""


class ConfigError(WeaveError):
    """Host table or settings validation error."""


class LoadError(WeaveError):
    """Task source could not be evaluated."""


class ArgumentError(WeaveError):
    """Malformed call shape or unresolvable host alias."""


class UnknownTaskError(WeaveError):
    def __init__(self, name: str, kind: str = "task") -> None:
        super().__init__(f'unknown {kind} "{name}"')
        self.name = name
        self.kind = kind


class CycleError(WeaveError):
    def __init__(self, path: Sequence[str]) -> None:
        self.path: List[str] = list(path)
        if self.path:
            message = "cycle: " + " -> ".join(self.path)
        else:
            message = "dependency cycle detected"
        super().__init__(message)


class OperationError(WeaveError):
    """A run/sync/fetch call that a task body chose to treat as fatal."""

    def __init__(self, result: "OperationResult", message: Optional[str] = None) -> None:
        if message is None:
            detail = result.stderr.strip().splitlines()
            message = f"operation failed (code={result.code})"
            if detail:
                message += f": {detail[-1]}"
        super().__init__(message)
        self.result = result


class TaskBodyError(WeaveError):
    def __init__(self, task: str, cause: BaseException) -> None:
        super().__init__(f'task "{task}" failed: {cause}')
        self.task = task
        self.cause = cause
