"""
Structured session events.

Every component reports what it did as an Event: a type, a millisecond
timestamp and a flat data dict. The emitter mirrors each event to the
module logger at DEBUG and, when configured, to an in-memory collector
(tests) and an append-only JSONL file (``--event-log``).

Event types:
- CONNECT: transport connection established
- STATE_CHANGE: supervisor state machine transition
- HOST_KEY: host key verification outcome
- AUTH: one authentication step and its result
- EXEC: one-shot command completed
- SHELL: interactive shell starting/completed
- FORWARD: listener or tunnel connection activity
- KEEPALIVE: probe failures and teardown
- DISCONNECT: session closed, with a reason
- ERROR: a fatal RemshError, as to_dict()

Event data never carries key material; values that are not JSON types
are written with str(), which a SecureString renders as ``<hidden>``.
"""
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO, Any

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Session event types."""
    CONNECT = "CONNECT"
    STATE_CHANGE = "STATE_CHANGE"
    HOST_KEY = "HOST_KEY"
    AUTH = "AUTH"
    EXEC = "EXEC"
    SHELL = "SHELL"
    FORWARD = "FORWARD"
    KEEPALIVE = "KEEPALIVE"
    DISCONNECT = "DISCONNECT"
    ERROR = "ERROR"


def _now_ms() -> float:
    return time.time() * 1000


@dataclass
class Event:
    """One structured event."""
    event_type: str
    timestamp: float = field(default_factory=_now_ms)
    data: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if isinstance(self.event_type, EventType):
            self.event_type = self.event_type.value
        assert self.event_type in EventType.__members__, \
            f"Invalid event_type '{self.event_type}'. Must be one of: {sorted(EventType.__members__)}"
        assert self.timestamp > 0, f"Timestamp must be positive, got {self.timestamp}"

    def to_dict(self) -> dict[str, Any]:
        return {"event_type": self.event_type, "timestamp": self.timestamp, "data": self.data}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_json(cls, line: str) -> "Event":
        raw = json.loads(line)
        return cls(
            event_type=raw["event_type"],
            timestamp=raw["timestamp"],
            data=raw.get("data", {}),
        )

    def describe(self) -> str:
        """One-line rendering for log output."""
        fields = " ".join(f"{k}={v}" for k, v in self.data.items())
        return f"{self.event_type} {fields}".rstrip()


class EventCollector:
    """Keeps events in memory, in emission order."""

    def __init__(self) -> None:
        self._events: list[Event] = []

    def emit(self, event: Event) -> None:
        assert isinstance(event, Event), f"Expected Event, got {type(event)}"
        self._events.append(event)

    @property
    def events(self) -> list[Event]:
        """Copy of the collected events."""
        return list(self._events)

    def types(self) -> list[str]:
        """Event types in emission order."""
        return [e.event_type for e in self._events]

    def get_by_type(self, event_type: str | EventType) -> list[Event]:
        if isinstance(event_type, EventType):
            event_type = event_type.value
        return [e for e in self._events if e.event_type == event_type]

    def clear(self) -> None:
        self._events.clear()


class JSONLEventWriter:
    """Appends events to a file, one JSON object per line, flushed per event."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._file: IO[str] | None = None

    @property
    def path(self) -> Path:
        return self._path

    def open(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self._path, "a", encoding="utf-8")

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None

    def emit(self, event: Event) -> None:
        assert self._file is not None, "Writer not opened. Call open() first."
        self._file.write(event.to_json() + "\n")
        self._file.flush()

    def __enter__(self) -> "JSONLEventWriter":
        self.open()
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class EventEmitter:
    """
    Fans events out to the logger and the configured sinks.

    Components take an optional emitter; one with no sinks still logs.

    Usage:
        with EventEmitter(jsonl_path="session.jsonl") as emitter:
            emitter.emit(EventType.CONNECT, host="web", port=22)
    """

    def __init__(
        self,
        collector: EventCollector | None = None,
        jsonl_path: Path | str | None = None,
    ) -> None:
        """
        Args:
            collector: In-memory sink, used by tests
            jsonl_path: File to append JSONL events to (opened immediately)
        """
        self._collector = collector
        self._writer: JSONLEventWriter | None = None
        if jsonl_path:
            self._writer = JSONLEventWriter(jsonl_path)
            self._writer.open()

    def emit(self, event_type: str | EventType, **data: Any) -> Event:
        """Build an event from keyword data and dispatch it; returns the event."""
        event = Event(event_type=event_type, data=data)
        logger.debug("event %s", event.describe())

        if self._collector is not None:
            self._collector.emit(event)
        if self._writer is not None:
            self._writer.emit(event)
        return event

    def close(self) -> None:
        if self._writer is not None:
            self._writer.close()
            self._writer = None

    def __enter__(self) -> "EventEmitter":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


def read_jsonl_events(path: Path | str) -> list[Event]:
    """Load every event from a JSONL event log, skipping blank lines."""
    path = Path(path)
    assert path.exists(), f"JSONL file not found: {path}"

    with open(path, "r", encoding="utf-8") as f:
        return [Event.from_json(line) for line in f if line.strip()]
