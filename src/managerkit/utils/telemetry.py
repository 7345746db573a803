"""Structured telemetry for managerctl commands and the long-running services.

Every record is one JSON line in ``<log_dir>/telemetry.jsonl``. The log is
rotated to ``telemetry.jsonl.1`` once it grows past ``MAX_LOG_BYTES`` so a
busy event bus or gateway cannot fill the managerkit home.
"""

from __future__ import annotations

import json
import os
import time
from collections import Counter, deque
from functools import lru_cache
from pathlib import Path
from typing import Any, Iterable, Iterator

from jsonschema import Draft202012Validator

from managerkit.resources import load_schema
from managerkit.settings import RuntimeSettings

LEVELS = {"info", "warn", "error"}
TELEMETRY_ENV = "MANAGERKIT_TELEMETRY"
LOG_FILENAME = "telemetry.jsonl"
MAX_LOG_BYTES = 5 * 1024 * 1024

_DISABLE_VALUES = {"0", "false", "no", "off"}


def telemetry_enabled() -> bool:
    return os.getenv(TELEMETRY_ENV, "1").strip().lower() not in _DISABLE_VALUES


def log_path(settings: RuntimeSettings) -> Path:
    return settings.log_dir / LOG_FILENAME


def record_event(settings: RuntimeSettings, event: str, payload: dict[str, Any] | None = None, **extra: Any) -> None:
    record_structured_event(settings, event, payload=payload, **extra)


def record_structured_event(
    settings: RuntimeSettings,
    event: str,
    *,
    payload: dict[str, Any] | None = None,
    level: str = "info",
    status: str | None = None,
    component: str | None = None,
    correlation_id: str | None = None,
    duration_ms: float | None = None,
) -> None:
    if not telemetry_enabled():
        return
    record = _build_record(event, payload or {}, level, status, component, correlation_id, duration_ms)
    _validator().validate(record)
    path = log_path(settings)
    path.parent.mkdir(parents=True, exist_ok=True)
    _rotate_if_needed(path)
    with path.open("a", encoding="utf-8") as fh:
        fh.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")


def iter_events(settings: RuntimeSettings) -> Iterator[dict[str, Any]]:
    path = log_path(settings)
    if not path.exists():
        return
    with path.open("r", encoding="utf-8", errors="replace") as fh:
        for line in fh:
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(record, dict):
                yield record


def recent_events(settings: RuntimeSettings, limit: int) -> list[dict[str, Any]]:
    """The last ``limit`` records, oldest first; ``limit <= 0`` returns everything."""

    if limit <= 0:
        return list(iter_events(settings))
    return list(deque(iter_events(settings), maxlen=limit))


def summarize(events: Iterable[dict[str, Any]]) -> dict[str, Any]:
    """Totals per event and status plus a per-component breakdown.

    ``by_component`` maps each managerkit component (planner, workflows,
    events, gateway, ...) to its record count, error count and mean
    ``durationMs`` over the records that carry one.
    """

    by_event: Counter[str] = Counter()
    by_status: Counter[str] = Counter()
    counts: Counter[str] = Counter()
    errors: Counter[str] = Counter()
    durations: dict[str, list[float]] = {}
    total = 0
    for evt in events:
        total += 1
        component = evt.get("component", "unknown")
        by_event[evt.get("event", "unknown")] += 1
        by_status[evt.get("status", "unknown")] += 1
        counts[component] += 1
        if evt.get("status") == "error" or evt.get("level") == "error":
            errors[component] += 1
        if isinstance(evt.get("durationMs"), (int, float)):
            durations.setdefault(component, []).append(float(evt["durationMs"]))
    by_component = {
        name: {
            "events": count,
            "errors": errors[name],
            "avgDurationMs": round(sum(durations[name]) / len(durations[name]), 3) if name in durations else None,
        }
        for name, count in counts.items()
    }
    return {
        "total": total,
        "by_event": dict(by_event),
        "by_status": dict(by_status),
        "by_component": by_component,
    }


def clear(settings: RuntimeSettings) -> None:
    path = log_path(settings)
    path.unlink(missing_ok=True)
    path.with_name(path.name + ".1").unlink(missing_ok=True)


def _rotate_if_needed(path: Path) -> None:
    try:
        size = path.stat().st_size
    except FileNotFoundError:
        return
    if size >= MAX_LOG_BYTES:
        os.replace(path, path.with_name(path.name + ".1"))


def _build_record(
    event: str,
    payload: Any,
    level: str,
    status: str | None,
    component: str | None,
    correlation_id: str | None,
    duration_ms: float | None,
) -> dict[str, Any]:
    if not isinstance(event, str) or not event.strip():
        raise ValueError("Telemetry event must have non-empty string 'event'")
    if not isinstance(payload, dict):
        raise ValueError("Telemetry payload must be a dict")
    if level not in LEVELS:
        raise ValueError(f"Telemetry level '{level}' is not supported")
    if duration_ms is not None and (not isinstance(duration_ms, (int, float)) or duration_ms < 0):
        raise ValueError("Telemetry durationMs must be a non-negative number")
    optional = {"status": status, "component": component, "correlationId": correlation_id}
    record: dict[str, Any] = {"ts": time.time(), "event": event, "payload": payload, "level": level}
    record.update({key: value for key, value in optional.items() if value})
    if duration_ms is not None:
        record["durationMs"] = round(float(duration_ms), 3)
    return record


@lru_cache(maxsize=1)
def _validator() -> Draft202012Validator:
    return Draft202012Validator(load_schema("telemetry.schema.json"))
