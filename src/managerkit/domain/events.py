"""Event bus domain: event types, events and subscribers."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Tuple

DAY = 86400

PRIORITIES = ("low", "medium", "high", "critical")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class EventBusError(RuntimeError):
    """Base error for event bus operations."""


class UnknownEventTypeError(EventBusError):
    """Raised when publishing or subscribing to an unregistered event type."""


class SubscriberNotFoundError(EventBusError):
    """Raised when unsubscribing an id that was never subscribed."""


class EventQueueFullError(EventBusError):
    """Raised when the pending queue reached ``max_events``."""


@dataclass(frozen=True)
class EventType:
    name: str
    description: str
    handlers: Tuple[str, ...]
    priority: str = "medium"
    retention_seconds: int = 7 * DAY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "description": self.description,
            "handlers": list(self.handlers),
            "priority": self.priority,
            "retention": self.retention_seconds,
        }


@dataclass(frozen=True)
class Event:
    id: str
    type: str
    data: Any
    timestamp: str
    priority: str
    handlers: Tuple[str, ...]

    @classmethod
    def create(cls, event_type: EventType, data: Any, now: datetime) -> "Event":
        return cls(
            id=str(uuid.uuid4()),
            type=event_type.name,
            data=data,
            timestamp=isoformat(now),
            priority=event_type.priority,
            handlers=event_type.handlers,
        )

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Event":
        return cls(
            id=str(payload["id"]),
            type=str(payload["type"]),
            data=payload.get("data"),
            timestamp=str(payload["timestamp"]),
            priority=str(payload.get("priority", "medium")),
            handlers=tuple(payload.get("handlers", ())),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "data": self.data,
            "timestamp": self.timestamp,
            "priority": self.priority,
            "handlers": list(self.handlers),
        }


@dataclass
class Subscriber:
    id: str
    events: List[str] = field(default_factory=list)
    status: str = "active"
    created: str = ""

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Subscriber":
        return cls(
            id=str(payload["id"]),
            events=[str(item) for item in payload.get("events", [])],
            status=str(payload.get("status", "active")),
            created=str(payload.get("created", "")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "events": list(self.events), "status": self.status, "created": self.created}


def _type(name: str, description: str, handlers: Tuple[str, ...], priority: str, days: int) -> EventType:
    return EventType(name, description, handlers, priority, days * DAY)


DEFAULT_EVENT_TYPES: Tuple[EventType, ...] = (
    _type("project.created", "Project created event",
          ("notification-service", "analytics-service", "audit-service"), "high", 30),
    _type("project.updated", "Project updated event",
          ("notification-service", "analytics-service", "audit-service"), "medium", 30),
    _type("project.deleted", "Project deleted event",
          ("notification-service", "analytics-service", "audit-service", "cleanup-service"), "high", 30),
    _type("task.created", "Task created event",
          ("notification-service", "ai-planner", "workflow-orchestrator"), "medium", 14),
    _type("task.completed", "Task completed event",
          ("notification-service", "analytics-service", "ai-planner"), "medium", 14),
    _type("workflow.started", "Workflow started event",
          ("notification-service", "monitoring-service", "audit-service"), "high", 14),
    _type("workflow.completed", "Workflow completed event",
          ("notification-service", "analytics-service", "monitoring-service"), "high", 14),
    _type("workflow.failed", "Workflow failed event",
          ("notification-service", "error-handler", "monitoring-service"), "critical", 30),
    _type("notification.sent", "Notification sent event",
          ("analytics-service", "audit-service"), "low", 7),
    _type("user.authenticated", "User authenticated event",
          ("analytics-service", "audit-service", "session-manager"), "medium", 7),
    _type("error.occurred", "Error occurred event",
          ("error-handler", "notification-service", "monitoring-service"), "critical", 30),
    _type("system.health", "System health check event",
          ("monitoring-service", "alert-service"), "low", 7),
)


__all__ = [
    "DEFAULT_EVENT_TYPES",
    "Event",
    "EventBusError",
    "EventQueueFullError",
    "EventType",
    "PRIORITIES",
    "Subscriber",
    "SubscriberNotFoundError",
    "UnknownEventTypeError",
    "isoformat",
    "parse_timestamp",
    "utc_now",
]
