"""Logging setup and the EventBus subscriber that renders events as log lines."""

from __future__ import annotations

import json
import logging
import sys
import threading
from datetime import datetime, timezone
from typing import IO, Any, Dict, Optional

from .events import Event, Message, OpEnd, OpStart, TaskEnd, TaskStart

UTC = timezone.utc
LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}
TEXT_FORMAT = "%(asctime)s %(levelname)s %(message)s"
KITCHEN_TIME = "%I:%M%p"
RAW_ATTRS = ("error", "output")


def _render_value(value: Any) -> str:
    text = str(value)
    if not text or any(ch.isspace() for ch in text) or '"' in text:
        return json.dumps(text)
    return text


class TextFormatter(logging.Formatter):
    def __init__(self) -> None:
        super().__init__(TEXT_FORMAT, datefmt=KITCHEN_TIME)

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        attrs = getattr(record, "attrs", None)
        if attrs:
            line += " " + " ".join(f"{key}={_render_value(value)}" for key, value in attrs.items())
        return line


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "time": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "msg": record.getMessage(),
        }
        attrs = getattr(record, "attrs", None)
        if attrs:
            payload["attrs"] = attrs
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def setup_logging(
    level: str = "info",
    fmt: str = "text",
    quiet: bool = False,
    stream: Optional[IO[str]] = None,
) -> logging.Logger:
    """
    Configure the ``weave`` logger hierarchy.

    Quiet mode keeps errors only; event output is suppressed by not
    subscribing a LogObserver at all.
    """
    logger = logging.getLogger("weave")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.propagate = False

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JsonFormatter() if fmt == "json" else TextFormatter())
    logger.addHandler(handler)
    logger.setLevel(logging.ERROR if quiet else LOG_LEVELS.get(level, logging.INFO))
    return logger


class LogObserver:
    """
    Renders bus events through ``logging``.

    Task lifecycle goes to INFO (failures to ERROR), operations to DEBUG and
    task messages to the level the task asked for. In text format a
    multi-line ``error`` or ``output`` attribute is written verbatim after
    the message line.
    """

    def __init__(self, log_format: str = "text", stream: Optional[IO[str]] = None) -> None:
        self.log_format = log_format
        self.stream = stream
        self._events = logging.getLogger("weave.events")
        self._tasks = logging.getLogger("weave.task")
        self._write_lock = threading.Lock()

    def __call__(self, event: Event) -> None:
        if isinstance(event, TaskStart):
            self._events.info("task start", extra={"attrs": {"task": event.task}})
        elif isinstance(event, TaskEnd):
            attrs: Dict[str, Any] = {"task": event.task, "ok": event.ok, "duration_ms": event.duration_ms}
            if event.error:
                attrs["error"] = event.error
            self._events.log(logging.INFO if event.ok else logging.ERROR, "task end", extra={"attrs": attrs})
        elif isinstance(event, OpStart):
            payload = event.to_payload()
            self._events.debug("op start", extra={"attrs": _without(payload, "type", "time")})
        elif isinstance(event, OpEnd):
            payload = event.to_payload()
            self._events.debug("op end", extra={"attrs": _without(payload, "type", "time")})
        elif isinstance(event, Message):
            self._message(event)

    def _message(self, event: Message) -> None:
        level = LOG_LEVELS.get(event.level, logging.INFO)
        if not self._tasks.isEnabledFor(level):
            return
        attrs = {"task": event.task, **event.attrs}
        raw: Optional[str] = None
        if self.log_format == "text":
            for key in RAW_ATTRS:
                value = attrs.get(key)
                if isinstance(value, str) and "\n" in value:
                    raw = attrs.pop(key)
                    break
        with self._write_lock:
            self._tasks.log(level, event.text, extra={"attrs": attrs})
            if raw is not None:
                self._write_raw(raw)

    def _write_raw(self, text: str) -> None:
        stream = self.stream or sys.stderr
        stream.write(text if text.endswith("\n") else text + "\n")
        stream.flush()


def _without(payload: Dict[str, Any], *keys: str) -> Dict[str, Any]:
    return {key: value for key, value in payload.items() if key not in keys}
