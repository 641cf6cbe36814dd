"""Lifecycle events and the injectable sink that receives them.

Components take an ``EventSink`` in their constructor and report
``migration.started`` / ``migration.failed`` / ``drift.detected`` (etc.)
through it.  Nothing here is global: a component built without a sink gets
its own ``LoggingEventSink``.

Usage:
    from db_integrity.events import MemoryEventSink

    sink = MemoryEventSink()
    engine = MigrationEngine(client, config, sink=sink)
    await engine.run_migrations()
    [event.name for event in sink.events]
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Protocol

from pydantic import BaseModel, Field

from db_integrity.errors import Scalar

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def new_correlation_id() -> str:
    """Return a fresh correlation identifier for one run."""
    return uuid.uuid4().hex


class IntegrityEvent(BaseModel):
    """One lifecycle event."""

    name: str
    message: str
    component: str
    level: str = "info"
    correlation_id: str
    details: dict[str, Scalar] = Field(default_factory=dict)
    duration_ms: int | None = None
    alert: bool = False
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class EventSink(Protocol):
    """Receiver for lifecycle events (logging, alert transport, tests)."""

    def log(self, event: IntegrityEvent) -> None:
        ...


class LoggingEventSink:
    """Forward events to a stdlib logger at the event's level."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger("db_integrity.events")

    def log(self, event: IntegrityEvent) -> None:
        level = _LEVELS.get(event.level, logging.INFO)
        suffix = f" ({event.duration_ms}ms)" if event.duration_ms is not None else ""
        self._logger.log(
            level,
            f"[{event.component}] {event.message}{suffix}",
            extra={
                "event_name": event.name,
                "correlation_id": event.correlation_id,
                "alert": event.alert,
            },
        )


class MemoryEventSink:
    """Collect events in memory."""

    def __init__(self) -> None:
        self.events: list[IntegrityEvent] = []

    def log(self, event: IntegrityEvent) -> None:
        self.events.append(event)

    def names(self) -> list[str]:
        return [event.name for event in self.events]


class EventEmitter:
    """Small helper binding a sink, component name, and correlation id."""

    def __init__(self, component: str, sink: EventSink | None = None) -> None:
        self.component = component
        self.sink: EventSink = sink if sink is not None else LoggingEventSink()
        self.correlation_id = new_correlation_id()

    def renew(self) -> str:
        """Start a new correlation scope (one per run)."""
        self.correlation_id = new_correlation_id()
        return self.correlation_id

    def emit(
        self,
        name: str,
        message: str,
        level: str = "info",
        details: dict[str, Scalar] | None = None,
        duration_ms: int | None = None,
        alert: bool = False,
    ) -> None:
        self.sink.log(
            IntegrityEvent(
                name=name,
                message=message,
                component=self.component,
                level=level,
                correlation_id=self.correlation_id,
                details=details or {},
                duration_ms=duration_ms,
                alert=alert,
            )
        )
