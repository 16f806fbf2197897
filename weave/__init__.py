"""Weave: run dependency-ordered tasks declared in a Python Weavefile."""

__version__ = "0.1.0"

from weave.config import HostConfig, Settings, load_settings
from weave.context import TaskContext
from weave.engine import Engine
from weave.errors import (
    ArgumentError,
    ConfigError,
    CycleError,
    LoadError,
    OperationError,
    TaskBodyError,
    UnknownTaskError,
    WeaveError,
)
from weave.events import EventBus, Message, OpEnd, OpStart, TaskEnd, TaskStart
from weave.executor import TaskExecutor
from weave.operations import OperationResult, OperationRunner
from weave.scheduler import build_graph, find_cycle, run_graph
from weave.taskfile import CallableTaskSource, Environment, FileTaskSource, TaskDef

__all__ = [
    "__version__",
    "ArgumentError",
    "CallableTaskSource",
    "ConfigError",
    "CycleError",
    "Engine",
    "Environment",
    "EventBus",
    "FileTaskSource",
    "HostConfig",
    "LoadError",
    "Message",
    "OpEnd",
    "OpStart",
    "OperationError",
    "OperationResult",
    "OperationRunner",
    "Settings",
    "TaskBodyError",
    "TaskContext",
    "TaskDef",
    "TaskEnd",
    "TaskExecutor",
    "TaskStart",
    "UnknownTaskError",
    "WeaveError",
    "build_graph",
    "find_cycle",
    "load_settings",
    "run_graph",
]
