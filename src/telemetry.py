"""Structured event sink shared by the ingestion and categorization components.

Components receive an EventSink at construction instead of emitting on a
global emitter. The default sink writes one log record per event; the
event name and fields travel in ``extra`` so a JSON formatter or log
shipper can pick them up without parsing the message.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


def _format_fields(fields: dict[str, Any]) -> str:
    return " ".join(f"{k}={v!r}" for k, v in fields.items())


class EventSink:
    """Writes named events with keyword fields to a logging.Logger."""

    def __init__(self, target: logging.Logger | None = None, component: str | None = None):
        self.target = target or logger
        self.component = component

    def emit(self, event: str, **fields: Any) -> None:
        self._log(logging.INFO, event, fields)

    def error(self, event: str, **fields: Any) -> None:
        self._log(logging.WARNING, event, fields)

    def bind(self, component: str) -> EventSink:
        """Return a sink for the same target tagged with a component name."""
        return EventSink(self.target, component=component)

    def _log(self, level: int, event: str, fields: dict[str, Any]) -> None:
        if not self.target.isEnabledFor(level):
            return
        prefix = f"[{self.component}] " if self.component else ""
        self.target.log(
            level,
            "%s%s %s",
            prefix, event, _format_fields(fields),
            extra={"event": event, "component": self.component, "fields": fields},
        )


@dataclass
class RecordedEvent:
    event: str
    fields: dict[str, Any]
    is_error: bool = False
    component: str | None = None


@dataclass
class RecordingSink(EventSink):
    """Keeps events in memory instead of logging them."""

    events: list[RecordedEvent] = field(default_factory=list)
    component: str | None = None

    def __post_init__(self):
        self.target = logger

    def emit(self, event: str, **fields: Any) -> None:
        self.events.append(RecordedEvent(event, fields, False, self.component))

    def error(self, event: str, **fields: Any) -> None:
        self.events.append(RecordedEvent(event, fields, True, self.component))

    def bind(self, component: str) -> RecordingSink:
        child = RecordingSink(events=self.events, component=component)
        return child

    def names(self) -> list[str]:
        return [e.event for e in self.events]
