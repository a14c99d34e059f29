"""Structured event log for the service.

Each record is a flat JSON object: ``ts``, ``component``, ``event``,
``level``, ``message``, the request context bound with ``log_context``
(``user_id``, ``project_id``) and the event's own fields. Records go to an
optional in-process callback and to the active sink, which appends JSON
lines to a file, writes them to stderr (path ``-``), or drops them (no path).
"""

from __future__ import annotations

import json
import os
import sys
import threading
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar, Token
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Literal

type LogRecord = dict[str, object]
type LogCallback = Callable[[LogRecord], object]

LogLevel = Literal["debug", "info", "warning", "error"]

LEVEL_ORDER: dict[str, int] = {"debug": 10, "info": 20, "warning": 30, "error": 40}
DEFAULT_COMPONENT = "rust_runner"
LOG_PATH_ENV = "RUNNER_LOG_PATH"
LOG_LEVEL_ENV = "LOG_LEVEL"
STDERR_PATH = "-"

_LOG_CONTEXT: ContextVar[LogRecord | None] = ContextVar(
    "rust_runner_log_context",
    default=None,
)
_LOG_CALLBACK: ContextVar[LogCallback | None] = ContextVar(
    "rust_runner_log_callback",
    default=None,
)
_WRITE_LOCK = threading.Lock()


def level_rank(level: str) -> int:
    return LEVEL_ORDER.get(level, LEVEL_ORDER["info"])


@dataclass(frozen=True)
class LogSink:
    path: str = ""
    min_level: str = "info"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> LogSink:
        source = os.environ if environ is None else environ
        return cls(
            path=(source.get(LOG_PATH_ENV) or "").strip(),
            min_level=(source.get(LOG_LEVEL_ENV) or "info").strip().lower(),
        )

    def accepts(self, level: str) -> bool:
        return bool(self.path) and level_rank(level) >= level_rank(self.min_level)

    def write(self, record: LogRecord) -> None:
        if not self.accepts(str(record.get("level", "info"))):
            return
        line = json.dumps(record, ensure_ascii=False, default=str) + "\n"
        with _WRITE_LOCK:
            if self.path == STDERR_PATH:
                _ = sys.stderr.write(line)
                sys.stderr.flush()
                return
            target = Path(self.path)
            target.parent.mkdir(parents=True, exist_ok=True)
            with target.open("a", encoding="utf-8") as handle:
                _ = handle.write(line)


_SINK: LogSink | None = None


def configure_log_sink(sink: LogSink | None) -> None:
    """Pin the sink for the process; None falls back to the environment."""
    global _SINK
    _SINK = sink


def active_log_sink() -> LogSink:
    return _SINK if _SINK is not None else LogSink.from_env()


def set_log_callback(callback: LogCallback | None) -> Token[LogCallback | None]:
    return _LOG_CALLBACK.set(callback)


def reset_log_callback(token: Token[LogCallback | None]) -> None:
    _LOG_CALLBACK.reset(token)


def get_log_context() -> LogRecord:
    return dict(_LOG_CONTEXT.get() or {})


@contextmanager
def log_context(**fields: object) -> Iterator[LogRecord]:
    """Bind fields onto every record logged inside the block.

    A None value unbinds a field inherited from an outer block.
    """
    current = get_log_context()
    for key, value in fields.items():
        if value is None:
            _ = current.pop(key, None)
        else:
            current[key] = value
    token = _LOG_CONTEXT.set(current)
    try:
        yield current
    finally:
        _LOG_CONTEXT.reset(token)


def log_event(
    *,
    component: str | None = None,
    event: str = "log",
    message: str = "",
    level: str = "info",
    **fields: object,
) -> LogRecord:
    record: LogRecord = {
        "ts": datetime.now(UTC).isoformat(),
        "component": (component or "").strip() or DEFAULT_COMPONENT,
        "event": event,
        "level": level,
        "message": message,
    }
    record.update(get_log_context())
    record.update({key: value for key, value in fields.items() if value is not None})

    callback = _LOG_CALLBACK.get()
    if callback is not None:
        try:
            _ = callback(record)
        except Exception:
            pass

    active_log_sink().write(record)
    return record
