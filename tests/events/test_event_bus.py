from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path
from typing import List

import pytest

from managerkit.app.events.bus import EventBus, PROCESSING_LOG, read_persisted_state
from managerkit.config import EventBusConfig
from managerkit.domain.events import (
    Event,
    EventBusError,
    EventQueueFullError,
    EventType,
    SubscriberNotFoundError,
    UnknownEventTypeError,
)


def _bus(tmp_path: Path, clock, **overrides) -> tuple[EventBus, List[float]]:
    sleeps: List[float] = []
    config = EventBusConfig(retry_delay=0.25, **overrides)
    bus = EventBus(config, log_dir=tmp_path / "logs", state_dir=tmp_path / "state", clock=clock, sleep=sleeps.append)
    return bus, sleeps


def test_publish_enqueues_and_records_history(tmp_path: Path, clock) -> None:
    bus, _ = _bus(tmp_path, clock)
    event = bus.publish("project.created", {"name": "demo"})

    assert event.type == "project.created"
    assert event.priority == "high"
    assert event.handlers == ("notification-service", "analytics-service", "audit-service")
    assert bus.queue_size == 1
    assert bus.history(5) == [event]
    assert bus.metrics()["eventsPublished"] == 1


def test_publish_unknown_type_is_rejected(tmp_path: Path, clock) -> None:
    bus, _ = _bus(tmp_path, clock)
    with pytest.raises(UnknownEventTypeError):
        bus.publish("nope.nothing")
    assert bus.queue_size == 0


def test_queue_limit_raises_when_full(tmp_path: Path, clock) -> None:
    bus, _ = _bus(tmp_path, clock, max_events=2)
    bus.publish("system.health")
    bus.publish("system.health")
    with pytest.raises(EventQueueFullError):
        bus.publish("system.health")


def test_subscribe_is_idempotent_and_unsubscribe_requires_known_id(tmp_path: Path, clock) -> None:
    bus, _ = _bus(tmp_path, clock)
    assert bus.subscribe("task.created", "dashboard") is True
    assert bus.subscribe("task.created", "dashboard") is False
    assert bus.subscribe("task.completed", "dashboard") is True
    assert bus.subscribers["dashboard"].events == ["task.created", "task.completed"]

    with pytest.raises(UnknownEventTypeError):
        bus.subscribe("missing.type", "dashboard")
    with pytest.raises(EventBusError):
        bus.subscribe("task.created", "  ")

    bus.unsubscribe("dashboard")
    with pytest.raises(SubscriberNotFoundError):
        bus.unsubscribe("dashboard")


def test_process_next_delivers_to_handlers_then_subscribers(tmp_path: Path, clock) -> None:
    bus, _ = _bus(tmp_path, clock)
    seen: List[str] = []
    bus.register_handler("ai-planner", lambda event: seen.append(f"planner:{event.data['id']}"))
    bus.register_handler("dashboard", lambda event: seen.append(f"dashboard:{event.data['id']}"))
    bus.subscribe("task.created", "dashboard")
    bus.subscribe("task.created", "ai-planner")

    event = bus.publish("task.created", {"id": "t1"})
    assert bus.targets_for(event) == ["notification-service", "ai-planner", "workflow-orchestrator", "dashboard"]

    report = bus.process_next()
    assert report is not None
    assert [item.target for item in report.deliveries] == [
        "notification-service",
        "ai-planner",
        "workflow-orchestrator",
        "dashboard",
    ]
    assert all(item.status == "processed" for item in report.deliveries)
    assert seen == ["planner:t1", "dashboard:t1"]
    assert bus.process_next() is None

    log_lines = (tmp_path / "logs" / PROCESSING_LOG).read_text(encoding="utf-8").splitlines()
    assert len(log_lines) == 4
    assert json.loads(log_lines[0])["eventId"] == event.id


def test_failing_handler_is_retried_then_marked_failed(tmp_path: Path, clock) -> None:
    bus, sleeps = _bus(tmp_path, clock, retry_attempts=2)
    calls: List[int] = []

    def broken(event: Event) -> None:
        calls.append(1)
        raise RuntimeError("boom")

    bus.register_handler("error-handler", broken)
    bus.publish("error.occurred", {"code": 500})
    reports = bus.drain()

    failed = reports[0].failed
    assert len(failed) == 1
    assert failed[0].target == "error-handler"
    assert failed[0].attempts == 3
    assert "RuntimeError: boom" in (failed[0].error or "")
    assert len(calls) == 3
    assert sleeps == [0.25, 0.25]
    assert bus.metrics()["eventsFailed"] == 1


def test_handler_recovering_on_retry_counts_as_processed(tmp_path: Path, clock) -> None:
    bus, sleeps = _bus(tmp_path, clock, retry_attempts=3)
    attempts: List[int] = []

    def flaky(event: Event) -> None:
        attempts.append(1)
        if len(attempts) < 2:
            raise ValueError("not yet")

    bus.register_handler("alert-service", flaky)
    bus.publish("system.health")
    report = bus.drain()[0]
    delivery = next(item for item in report.deliveries if item.target == "alert-service")
    assert delivery.status == "processed"
    assert delivery.attempts == 2
    assert sleeps == [0.25]


def test_listener_sees_published_events(tmp_path: Path, clock) -> None:
    bus, _ = _bus(tmp_path, clock)
    received: List[str] = []
    bus.add_listener(lambda event: received.append(event.type))
    bus.publish("user.authenticated", {"user": "kim"})
    assert received == ["user.authenticated"]


def test_history_is_newest_first_and_bounded(tmp_path: Path, clock) -> None:
    bus, _ = _bus(tmp_path, clock, history_limit=3)
    published = [bus.publish("system.health", {"n": index}) for index in range(5)]

    history = bus.history(10)
    assert [event.data["n"] for event in history] == [4, 3, 2]
    assert bus.history(1) == [published[-1]]
    assert bus.history(0) == []


def test_purge_expired_drops_events_past_retention(tmp_path: Path, clock) -> None:
    types = [
        EventType("short.lived", "short", (), "low", 60),
        EventType("long.lived", "long", (), "low", 3600),
    ]
    bus = EventBus(EventBusConfig(), log_dir=tmp_path / "logs", event_types=types, clock=clock)
    bus.publish("short.lived")
    bus.publish("long.lived")

    removed = bus.purge_expired(clock.current + timedelta(minutes=5))
    assert removed == 1
    assert [event.type for event in bus.history()] == ["long.lived"]


def test_state_round_trips_through_disk(tmp_path: Path, clock) -> None:
    bus, _ = _bus(tmp_path, clock)
    bus.subscribe("project.created", "auditor")
    bus.publish("project.created", {"name": "alpha"})
    bus.drain()
    assert bus.save_state() == tmp_path / "state" / "event-bus"

    restored, _ = _bus(tmp_path, clock)
    assert restored.load_state() is True
    assert list(restored.subscribers) == ["auditor"]
    assert [event.data for event in restored.history()] == [{"name": "alpha"}]

    summary = read_persisted_state(tmp_path / "state")
    assert summary is not None
    assert summary["status"] == "ok"
    assert summary["historySize"] == 1
    assert summary["subscribers"] == 1
    assert summary["metrics"]["eventsPublished"] == 1


def test_persistence_disabled_skips_state(tmp_path: Path, clock) -> None:
    bus, _ = _bus(tmp_path, clock, persistence=False)
    bus.publish("system.health")
    assert bus.save_state() is None
    assert bus.load_state() is False
    assert read_persisted_state(tmp_path / "state") is None


def test_corrupted_state_raises(tmp_path: Path, clock) -> None:
    state = tmp_path / "state" / "event-bus"
    state.mkdir(parents=True)
    (state / "events.json").write_text("{broken", encoding="utf-8")
    bus, _ = _bus(tmp_path, clock)
    with pytest.raises(EventBusError):
        bus.load_state()
    assert read_persisted_state(tmp_path / "state") == {"status": "corrupted"}


def test_status_and_health_reports(tmp_path: Path, clock) -> None:
    bus, _ = _bus(tmp_path, clock, max_events=1)
    assert bus.health()["status"] == "healthy"
    bus.publish("system.health")
    health = bus.health()
    assert health["checks"]["queue"] == "warning"
    assert health["status"] == "degraded"
    assert bus.health(running=False)["checks"]["server"] == "stopped"

    status = bus.status()
    assert status["status"] == "running"
    assert status["queueSize"] == 1
    assert status["eventTypes"] == 12
    assert bus.list_summary()["queueSize"] == 1


def test_load_state_drops_events_past_retention(tmp_path: Path, clock) -> None:
    types = [
        EventType("short.lived", "short", (), "low", 60),
        EventType("long.lived", "long", (), "low", 3600),
    ]
    bus = EventBus(EventBusConfig(), log_dir=tmp_path / "logs", state_dir=tmp_path / "state", event_types=types, clock=clock)
    bus.publish("short.lived")
    bus.publish("long.lived")
    bus.save_state()

    clock.current += timedelta(minutes=5)
    restored = EventBus(
        EventBusConfig(), log_dir=tmp_path / "logs", state_dir=tmp_path / "state", event_types=types, clock=clock
    )
    assert restored.load_state() is True
    assert [event.type for event in restored.history()] == ["long.lived"]
