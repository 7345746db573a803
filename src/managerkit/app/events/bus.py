"""In-process event bus with queued fan-out delivery and retry."""

from __future__ import annotations

import json
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Deque, Dict, Iterable, List

from managerkit.adapters.json_store import write_json_atomic
from managerkit.config import EventBusConfig
from managerkit.domain.events import (
    DEFAULT_EVENT_TYPES,
    Event,
    EventBusError,
    EventQueueFullError,
    EventType,
    Subscriber,
    SubscriberNotFoundError,
    UnknownEventTypeError,
    isoformat,
    parse_timestamp,
    utc_now,
)

PROCESSING_LOG = "event-processing.log"
STATE_DIRNAME = "event-bus"

Handler = Callable[[Event], Any]
Listener = Callable[[Event], None]


@dataclass
class Delivery:
    target: str
    status: str
    attempts: int
    error: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"handler": self.target, "status": self.status, "attempts": self.attempts}
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass
class DeliveryReport:
    event: Event
    deliveries: List[Delivery] = field(default_factory=list)

    @property
    def failed(self) -> List[Delivery]:
        return [item for item in self.deliveries if item.status == "failed"]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "eventId": self.event.id,
            "eventType": self.event.type,
            "deliveries": [item.to_dict() for item in self.deliveries],
        }


@dataclass
class BusMetrics:
    events_published: int = 0
    events_processed: int = 0
    events_failed: int = 0
    subscribers_active: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "eventsPublished": self.events_published,
            "eventsProcessed": self.events_processed,
            "eventsFailed": self.events_failed,
            "subscribersActive": self.subscribers_active,
        }


class EventBus:
    """Registry of event types and subscribers plus a pending queue.

    Publishing only enqueues; delivery happens in :meth:`process_next`, which
    fans the event out to the type's handlers and to its subscribers.
    """

    def __init__(
        self,
        config: EventBusConfig,
        *,
        log_dir: Path,
        state_dir: Path | None = None,
        event_types: Iterable[EventType] = DEFAULT_EVENT_TYPES,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._log_dir = log_dir
        self._state_dir = state_dir / STATE_DIRNAME if state_dir is not None else None
        self._types: Dict[str, EventType] = {item.name: item for item in event_types}
        self._clock = clock
        self._sleep = sleep
        self._subscribers: Dict[str, Subscriber] = {}
        self._handlers: Dict[str, Handler] = {}
        self._listeners: List[Listener] = []
        self._queue: Deque[Event] = deque()
        self._history: Deque[Event] = deque(maxlen=config.history_limit)
        self._metrics = BusMetrics()
        self._started = time.monotonic()
        self._lock = threading.RLock()

    @property
    def config(self) -> EventBusConfig:
        return self._config

    @property
    def event_types(self) -> Dict[str, EventType]:
        return dict(self._types)

    @property
    def subscribers(self) -> Dict[str, Subscriber]:
        with self._lock:
            return {key: Subscriber.from_dict(value.to_dict()) for key, value in self._subscribers.items()}

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    @property
    def history_size(self) -> int:
        return len(self._history)

    @property
    def processing_log(self) -> Path:
        return self._log_dir / PROCESSING_LOG

    def _require_type(self, event_type: str) -> EventType:
        try:
            return self._types[event_type]
        except KeyError:
            raise UnknownEventTypeError(f"Unknown event type: {event_type}") from None

    # registration -------------------------------------------------------

    def register_handler(self, name: str, handler: Handler) -> None:
        with self._lock:
            self._handlers[name] = handler

    def add_listener(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def subscribe(self, event_type: str, subscriber_id: str) -> bool:
        self._require_type(event_type)
        if not subscriber_id or not subscriber_id.strip():
            raise EventBusError("subscriber id must be a non-empty string")
        with self._lock:
            subscriber = self._subscribers.get(subscriber_id)
            if subscriber is None:
                subscriber = Subscriber(id=subscriber_id, created=isoformat(self._clock()))
                self._subscribers[subscriber_id] = subscriber
            if event_type in subscriber.events:
                return False
            subscriber.events.append(event_type)
            self._metrics.subscribers_active = len(self._subscribers)
            return True

    def unsubscribe(self, subscriber_id: str) -> None:
        with self._lock:
            if subscriber_id not in self._subscribers:
                raise SubscriberNotFoundError(f"Subscriber {subscriber_id} not found")
            del self._subscribers[subscriber_id]
            self._metrics.subscribers_active = len(self._subscribers)

    # publishing ---------------------------------------------------------

    def publish(self, event_type: str, data: Any = None) -> Event:
        definition = self._require_type(event_type)
        with self._lock:
            if len(self._queue) >= self._config.max_events:
                raise EventQueueFullError(
                    f"event queue is full ({self._config.max_events} pending events)"
                )
            event = Event.create(definition, data, self._clock())
            self._queue.append(event)
            self._history.append(event)
            self._metrics.events_published += 1
            listeners = list(self._listeners)
        for listener in listeners:
            listener(event)
        return event

    # processing ---------------------------------------------------------

    def targets_for(self, event: Event) -> List[str]:
        targets: List[str] = []
        for handler in event.handlers:
            if handler not in targets:
                targets.append(handler)
        with self._lock:
            for subscriber in self._subscribers.values():
                if event.type in subscriber.events and subscriber.id not in targets:
                    targets.append(subscriber.id)
        return targets

    def process_next(self) -> DeliveryReport | None:
        with self._lock:
            if not self._queue:
                return None
            event = self._queue.popleft()
        report = DeliveryReport(event=event)
        for target in self.targets_for(event):
            delivery = self._deliver(event, target)
            report.deliveries.append(delivery)
            self._append_processing_log(event, delivery)
            with self._lock:
                if delivery.status == "processed":
                    self._metrics.events_processed += 1
                else:
                    self._metrics.events_failed += 1
        return report

    def drain(self) -> List[DeliveryReport]:
        reports: List[DeliveryReport] = []
        while True:
            report = self.process_next()
            if report is None:
                return reports
            reports.append(report)

    def _deliver(self, event: Event, target: str) -> Delivery:
        with self._lock:
            handler = self._handlers.get(target)
        if handler is None:
            return Delivery(target=target, status="processed", attempts=1)
        max_attempts = self._config.retry_attempts + 1
        last_error: str | None = None
        for attempt in range(1, max_attempts + 1):
            try:
                handler(event)
            except Exception as exc:  # handler failures are recorded, not raised
                last_error = f"{type(exc).__name__}: {exc}"
                if attempt < max_attempts and self._config.retry_delay > 0:
                    self._sleep(self._config.retry_delay)
                continue
            return Delivery(target=target, status="processed", attempts=attempt)
        return Delivery(target=target, status="failed", attempts=max_attempts, error=last_error)

    def _append_processing_log(self, event: Event, delivery: Delivery) -> None:
        entry: Dict[str, Any] = {
            "timestamp": isoformat(self._clock()),
            "eventId": event.id,
            "eventType": event.type,
            "handler": delivery.target,
            "status": delivery.status,
            "attempts": delivery.attempts,
        }
        if delivery.error is not None:
            entry["error"] = delivery.error
        self._log_dir.mkdir(parents=True, exist_ok=True)
        with self.processing_log.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(entry, ensure_ascii=False) + "\n")

    # history ------------------------------------------------------------

    def history(self, limit: int = 10) -> List[Event]:
        with self._lock:
            events = list(reversed(self._history))
        events.sort(key=lambda item: item.timestamp, reverse=True)
        return events[: max(limit, 0)]

    def purge_expired(self, now: datetime | None = None) -> int:
        current = now or self._clock()
        with self._lock:
            kept: List[Event] = []
            for event in self._history:
                definition = self._types.get(event.type)
                retention = definition.retention_seconds if definition else 0
                if parse_timestamp(event.timestamp) + timedelta(seconds=retention) >= current:
                    kept.append(event)
            removed = len(self._history) - len(kept)
            self._history.clear()
            self._history.extend(kept)
        return removed

    # reporting ----------------------------------------------------------

    def uptime_ms(self) -> int:
        return int((time.monotonic() - self._started) * 1000)

    def list_summary(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "eventTypes": list(self._types),
                "subscribers": list(self._subscribers),
                "queueSize": len(self._queue),
                "historySize": len(self._history),
            }

    def status(self, *, running: bool = True) -> Dict[str, Any]:
        with self._lock:
            return {
                "status": "running" if running else "stopped",
                "uptime": self.uptime_ms(),
                "eventTypes": len(self._types),
                "subscribers": len(self._subscribers),
                "queueSize": len(self._queue),
                "historySize": len(self._history),
                "metrics": self._metrics.to_dict(),
            }

    def health(self, *, running: bool = True) -> Dict[str, Any]:
        with self._lock:
            queue_ok = len(self._queue) < self._config.max_events
            checks = {
                "server": "running" if running else "stopped",
                "eventTypes": "healthy" if self._types else "unhealthy",
                "subscribers": "healthy",
                "queue": "healthy" if queue_ok else "warning",
            }
        overall = "healthy" if all(value in {"healthy", "running"} for value in checks.values()) else "degraded"
        return {"status": overall, "timestamp": isoformat(self._clock()), "checks": checks}

    def metrics(self) -> Dict[str, Any]:
        with self._lock:
            payload: Dict[str, Any] = dict(self._metrics.to_dict())
            payload.update(
                {
                    "uptime": self.uptime_ms(),
                    "eventTypes": len(self._types),
                    "subscribers": len(self._subscribers),
                    "queueSize": len(self._queue),
                    "historySize": len(self._history),
                    "config": {
                        "host": self._config.host,
                        "port": self._config.port,
                        "maxEvents": self._config.max_events,
                        "retryAttempts": self._config.retry_attempts,
                        "security": self._config.auth_token is not None,
                    },
                }
            )
            return payload

    # persistence --------------------------------------------------------

    def save_state(self) -> Path | None:
        if self._state_dir is None or not self._config.persistence:
            return None
        with self._lock:
            subscribers = [item.to_dict() for item in self._subscribers.values()]
            history = [item.to_dict() for item in self._history]
            metrics = self._metrics.to_dict()
        write_json_atomic(self._state_dir / "subscribers.json", subscribers)
        write_json_atomic(
            self._state_dir / "events.json",
            {"saved_at": isoformat(self._clock()), "metrics": metrics, "history": history},
        )
        return self._state_dir

    def load_state(self) -> bool:
        if self._state_dir is None or not self._config.persistence:
            return False
        subscribers_path = self._state_dir / "subscribers.json"
        events_path = self._state_dir / "events.json"
        if not subscribers_path.exists() and not events_path.exists():
            return False
        try:
            raw_subscribers = json.loads(subscribers_path.read_text(encoding="utf-8")) if subscribers_path.exists() else []
            raw_events = json.loads(events_path.read_text(encoding="utf-8")) if events_path.exists() else {}
        except json.JSONDecodeError as exc:
            raise EventBusError(f"event bus state is corrupted: {exc}") from exc
        with self._lock:
            self._subscribers = {}
            for item in raw_subscribers:
                subscriber = Subscriber.from_dict(item)
                subscriber.events = [name for name in subscriber.events if name in self._types]
                self._subscribers[subscriber.id] = subscriber
            self._history.clear()
            for item in raw_events.get("history", []):
                if item.get("type") in self._types:
                    self._history.append(Event.from_dict(item))
            self._metrics.subscribers_active = len(self._subscribers)
        self.purge_expired()
        return True


def read_persisted_state(state_dir: Path) -> Dict[str, Any] | None:
    """Summarise persisted event bus state without constructing a bus."""

    base = state_dir / STATE_DIRNAME
    events_path = base / "events.json"
    subscribers_path = base / "subscribers.json"
    if not events_path.exists() and not subscribers_path.exists():
        return None
    try:
        events = json.loads(events_path.read_text(encoding="utf-8")) if events_path.exists() else {}
        subscribers = json.loads(subscribers_path.read_text(encoding="utf-8")) if subscribers_path.exists() else []
    except json.JSONDecodeError:
        return {"status": "corrupted"}
    return {
        "status": "ok",
        "savedAt": events.get("saved_at"),
        "metrics": events.get("metrics", {}),
        "historySize": len(events.get("history", [])),
        "subscribers": len(subscribers),
    }


__all__ = [
    "BusMetrics",
    "Delivery",
    "DeliveryReport",
    "EventBus",
    "PROCESSING_LOG",
    "read_persisted_state",
]
