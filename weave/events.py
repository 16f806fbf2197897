"""
Lifecycle and operation events, and the bus that delivers them.

Each event kind is its own frozen dataclass so observers can dispatch on the
type instead of probing a field map. ``to_payload`` gives the flat form used
by the JSON log formatter.
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, ClassVar, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

UTC = timezone.utc


def _now() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(frozen=True)
class TaskStart:
    kind: ClassVar[str] = "task_start"

    task: str
    at: datetime = field(default_factory=_now)

    def to_payload(self) -> Dict[str, Any]:
        return _payload(self, {})


@dataclass(frozen=True)
class TaskEnd:
    kind: ClassVar[str] = "task_end"

    task: str
    ok: bool
    duration_ms: int
    error: Optional[str] = None
    at: datetime = field(default_factory=_now)

    def to_payload(self) -> Dict[str, Any]:
        fields: Dict[str, Any] = {"ok": self.ok, "duration_ms": self.duration_ms}
        if self.error:
            fields["error"] = self.error
        return _payload(self, fields)


@dataclass(frozen=True)
class OpStart:
    kind: ClassVar[str] = "op_start"

    task: str
    op: str
    host: str = ""
    command: Optional[str] = None
    src: Optional[str] = None
    dst: Optional[str] = None
    at: datetime = field(default_factory=_now)

    def to_payload(self) -> Dict[str, Any]:
        fields: Dict[str, Any] = {"op": self.op, "host": self.host}
        if self.command is not None:
            fields["command"] = self.command
        else:
            fields["src"] = self.src
            fields["dst"] = self.dst
        return _payload(self, fields)


@dataclass(frozen=True)
class OpEnd:
    kind: ClassVar[str] = "op_end"

    task: str
    op: str
    host: str
    ok: bool
    code: int
    duration_ms: int
    stdout_len: int
    stderr_len: int
    at: datetime = field(default_factory=_now)

    def to_payload(self) -> Dict[str, Any]:
        return _payload(
            self,
            {
                "op": self.op,
                "host": self.host,
                "ok": self.ok,
                "code": self.code,
                "duration_ms": self.duration_ms,
                "stdout_len": self.stdout_len,
                "stderr_len": self.stderr_len,
            },
        )


@dataclass(frozen=True)
class Message:
    kind: ClassVar[str] = "message"

    task: str
    level: str
    text: str
    attrs: Dict[str, Any] = field(default_factory=dict)
    at: datetime = field(default_factory=_now)

    def to_payload(self) -> Dict[str, Any]:
        return _payload(self, {"level": self.level, "msg": self.text, "attrs": dict(self.attrs)})


Event = Union[TaskStart, TaskEnd, OpStart, OpEnd, Message]
Handler = Callable[[Event], None]


def _payload(event: Event, fields: Dict[str, Any]) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "type": event.kind,
        "time": event.at.astimezone(UTC).isoformat(),
        "task": event.task,
    }
    payload.update(fields)
    return payload


class EventBus:
    """
    Thread-safe publish/subscribe channel.

    ``emit`` snapshots the subscriber table under the lock and calls handlers
    outside it, so a handler may subscribe, unsubscribe (itself included) or
    emit again. Such changes apply from the next ``emit`` on. Delivery is
    synchronous: ``emit`` returns once every handler of the snapshot returned.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: Dict[int, Handler] = {}
        self._ids = itertools.count()

    def subscribe(self, handler: Handler) -> Callable[[], None]:
        with self._lock:
            handler_id = next(self._ids)
            self._handlers[handler_id] = handler

        def unsubscribe() -> None:
            with self._lock:
                self._handlers.pop(handler_id, None)

        return unsubscribe

    def emit(self, event: Event) -> None:
        with self._lock:
            handlers: List[Handler] = list(self._handlers.values())
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler %r failed on %s", handler, event.kind)

    def __len__(self) -> int:
        with self._lock:
            return len(self._handlers)
