"""HTTP front-end for the event bus."""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, HTTPServer
from socketserver import ThreadingMixIn
from typing import Any, Dict
from urllib.parse import parse_qs, urlparse

from managerkit.app.events.bus import EventBus
from managerkit.domain.events import EventBusError
from managerkit.settings import RuntimeSettings
from managerkit.utils.telemetry import record_structured_event

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization, X-Requested-With",
}

_POST_ROUTES = {"/events/publish", "/events/subscribe", "/events/unsubscribe"}
_GET_ROUTES = {"/events/list", "/events/history", "/status", "/health", "/metrics"}


class ThreadedHTTPServer(ThreadingMixIn, HTTPServer):
    daemon_threads = True


class RequestError(ValueError):
    """Raised when a request body is missing required fields."""


@dataclass
class EventBusWebConfig:
    host: str
    port: int
    token: str | None = None
    process_interval: float = 1.0


class EventBusWebApp:
    """Serves the event bus API and drains the queue in a background thread."""

    def __init__(self, bus: EventBus, config: EventBusWebConfig, settings: RuntimeSettings | None = None) -> None:
        self._bus = bus
        self._config = config
        self._settings = settings
        self._stop_event = threading.Event()
        self._worker: threading.Thread | None = None

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def running(self) -> bool:
        return not self._stop_event.is_set()

    def start_processing(self) -> threading.Thread:
        if self._worker is None or not self._worker.is_alive():
            self._stop_event.clear()
            self._worker = threading.Thread(target=self._process_loop, name="event-bus-worker", daemon=True)
            self._worker.start()
        return self._worker

    def _process_loop(self) -> None:
        while not self._stop_event.wait(self._config.process_interval):
            self._bus.drain()
            self._bus.purge_expired()

    def shutdown(self) -> None:
        self._stop_event.set()
        if self._worker is not None:
            self._worker.join(timeout=max(self._config.process_interval * 2, 1.0))
        self._bus.drain()
        self._bus.save_state()

    def handle_post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        if path == "/events/publish":
            event_type = _require_field(body, "type")
            event = self._bus.publish(event_type, body.get("data"))
            self._record("events.publish", {"type": event_type, "eventId": event.id})
            return {"success": True, "eventId": event.id, "message": "Event published successfully"}
        if path == "/events/subscribe":
            event_type = _require_field(body, "eventType")
            subscriber_id = _require_field(body, "subscriberId")
            added = self._bus.subscribe(event_type, subscriber_id)
            message = "Subscribed successfully" if added else "Already subscribed"
            return {"success": True, "message": message}
        subscriber_id = _require_field(body, "subscriberId")
        self._bus.unsubscribe(subscriber_id)
        return {"success": True, "message": "Unsubscribed successfully"}

    def handle_get(self, path: str, query: Dict[str, list[str]]) -> Any:
        if path == "/events/list":
            return self._bus.list_summary()
        if path == "/events/history":
            try:
                limit = int(query.get("limit", ["10"])[0])
            except ValueError:
                limit = 10
            return [event.to_dict() for event in self._bus.history(limit)]
        if path == "/status":
            return self._bus.status(running=self.running)
        if path == "/health":
            return self._bus.health(running=self.running)
        return self._bus.metrics()

    def _record(self, event: str, payload: Dict[str, Any]) -> None:
        if self._settings is None:
            return
        record_structured_event(self._settings, event, payload=payload, component="events", status="success")

    def create_server(self) -> ThreadedHTTPServer:
        app = self
        config = self._config

        class Handler(BaseHTTPRequestHandler):
            def log_message(self, format: str, *args: object) -> None:  # noqa: A003 - silence default logging
                return

            def _write_json(self, status: HTTPStatus, payload: Any) -> None:
                data = json.dumps(payload, ensure_ascii=False, indent=2).encode("utf-8")
                self.send_response(status)
                for key, value in CORS_HEADERS.items():
                    self.send_header(key, value)
                self.send_header("Content-Type", "application/json; charset=utf-8")
                self.send_header("Content-Length", str(len(data)))
                self.end_headers()
                self.wfile.write(data)

            def _authorised(self) -> bool:
                if not config.token:
                    return True
                auth = self.headers.get("Authorization", "")
                return auth == f"Bearer {config.token}"

            def _read_body(self) -> Dict[str, Any]:
                length = int(self.headers.get("Content-Length") or 0)
                raw = self.rfile.read(length) if length else b""
                try:
                    payload = json.loads(raw.decode("utf-8") or "{}")
                except (UnicodeDecodeError, json.JSONDecodeError) as exc:
                    raise RequestError(f"invalid JSON body: {exc}") from exc
                if not isinstance(payload, dict):
                    raise RequestError("request body must be a JSON object")
                return payload

            def do_OPTIONS(self) -> None:  # noqa: N802
                self.send_response(HTTPStatus.OK)
                for key, value in CORS_HEADERS.items():
                    self.send_header(key, value)
                self.send_header("Content-Length", "0")
                self.end_headers()

            def _reject_method(self) -> None:
                parsed = urlparse(self.path)
                if parsed.path in _GET_ROUTES or parsed.path in _POST_ROUTES:
                    self._write_json(HTTPStatus.METHOD_NOT_ALLOWED, {"error": "Method not allowed"})
                    return
                self._write_json(HTTPStatus.NOT_FOUND, {"error": "Not found"})

            do_PUT = do_DELETE = do_PATCH = _reject_method

            def do_GET(self) -> None:  # noqa: N802
                parsed = urlparse(self.path)
                if parsed.path in _POST_ROUTES:
                    self._write_json(HTTPStatus.METHOD_NOT_ALLOWED, {"error": "Method not allowed"})
                    return
                if parsed.path not in _GET_ROUTES:
                    self._write_json(HTTPStatus.NOT_FOUND, {"error": "Not found"})
                    return
                self._write_json(HTTPStatus.OK, app.handle_get(parsed.path, parse_qs(parsed.query)))

            def do_POST(self) -> None:  # noqa: N802
                parsed = urlparse(self.path)
                if parsed.path in _GET_ROUTES:
                    self._write_json(HTTPStatus.METHOD_NOT_ALLOWED, {"error": "Method not allowed"})
                    return
                if parsed.path not in _POST_ROUTES:
                    self._write_json(HTTPStatus.NOT_FOUND, {"error": "Not found"})
                    return
                if not self._authorised():
                    self._write_json(HTTPStatus.UNAUTHORIZED, {"error": "Unauthorized"})
                    return
                try:
                    body = self._read_body()
                    response = app.handle_post(parsed.path, body)
                except (RequestError, EventBusError) as exc:
                    self._write_json(HTTPStatus.BAD_REQUEST, {"error": str(exc)})
                    return
                self._write_json(HTTPStatus.OK, response)

        return ThreadedHTTPServer((config.host, config.port), Handler)


def _require_field(body: Dict[str, Any], name: str) -> str:
    value = body.get(name)
    if not isinstance(value, str) or not value:
        raise RequestError(f"field '{name}' is required")
    return value


__all__ = ["EventBusWebApp", "EventBusWebConfig", "ThreadedHTTPServer"]
