"""Reverse-proxy core of the API gateway, independent of the HTTP server."""

from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Tuple
from urllib.parse import urlsplit

import requests

from managerkit.config import GatewayConfig
from managerkit.domain.events import isoformat, utc_now
from managerkit.domain.gateway import ServiceDefinition, ServiceRegistry

HOP_BY_HOP = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
        "host",
        "content-length",
    }
)
# requests transparently decodes bodies, so encoding headers no longer apply
_STRIPPED_RESPONSE = HOP_BY_HOP | {"content-encoding"}
IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
HEALTH_TIMEOUT = 5.0
LOCAL_PREFIX = "/gateway/"


@dataclass
class GatewayRequest:
    method: str
    path: str
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""
    client: str = "unknown"

    @property
    def pathname(self) -> str:
        return urlsplit(self.path).path or "/"


@dataclass
class GatewayResponse:
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def json(self) -> Any:
        return json.loads(self.body.decode("utf-8"))


def json_response(status: int, payload: Any, headers: Mapping[str, str] | None = None) -> GatewayResponse:
    body = json.dumps(payload, ensure_ascii=False, indent=2).encode("utf-8")
    merged = {"Content-Type": "application/json; charset=utf-8"}
    if headers:
        merged.update(headers)
    return GatewayResponse(status=status, headers=merged, body=body)


class FixedWindowRateLimiter:
    """Counts requests per client in fixed windows of ``window`` seconds."""

    def __init__(self, limit: int, window: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._limit = limit
        self._window = window
        self._clock = clock
        self._buckets: Dict[str, Tuple[float, int]] = {}
        self._next_sweep = 0.0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._buckets)

    def check(self, key: str) -> Tuple[bool, float]:
        """Return (allowed, retry_after_seconds)."""
        now = self._clock()
        with self._lock:
            if now >= self._next_sweep:
                self._buckets = {
                    client: bucket for client, bucket in self._buckets.items() if now - bucket[0] < self._window
                }
                self._next_sweep = now + self._window
            started, count = self._buckets.get(key, (now, 0))
            if now - started >= self._window:
                started, count = now, 0
            if count >= self._limit:
                self._buckets[key] = (started, count)
                return False, max(self._window - (now - started), 0.0)
            self._buckets[key] = (started, count + 1)
            return True, 0.0


@dataclass
class GatewayMetrics:
    requests: int = 0
    errors: int = 0
    rate_limited: int = 0
    proxied: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "requests": self.requests,
            "errors": self.errors,
            "rateLimited": self.rate_limited,
            "proxied": self.proxied,
        }


class GatewayService:
    def __init__(
        self,
        registry: ServiceRegistry,
        config: GatewayConfig,
        *,
        session: requests.Session | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._registry = registry
        self._config = config
        self._session = session or requests.Session()
        self._metrics = GatewayMetrics()
        self._lock = threading.Lock()
        self._started = clock()
        self._clock = clock
        self._limiter = FixedWindowRateLimiter(config.rate_limit.requests, config.rate_limit.window, clock)

    @property
    def registry(self) -> ServiceRegistry:
        return self._registry

    @property
    def metrics_snapshot(self) -> GatewayMetrics:
        with self._lock:
            return GatewayMetrics(**vars(self._metrics))

    def cors_headers(self) -> Dict[str, str]:
        cors = self._config.cors
        if not cors.enabled:
            return {}
        return {
            "Access-Control-Allow-Origin": ", ".join(cors.origins),
            "Access-Control-Allow-Methods": ", ".join(cors.methods),
            "Access-Control-Allow-Headers": ", ".join(cors.headers),
        }

    def handle(self, request: GatewayRequest) -> GatewayResponse:
        with self._lock:
            self._metrics.requests += 1
        response = self._dispatch(request)
        response.headers.update(self.cors_headers())
        return response

    def _dispatch(self, request: GatewayRequest) -> GatewayResponse:
        method = request.method.upper()
        if method == "OPTIONS" and self._config.cors.enabled:
            return GatewayResponse(status=200)

        if self._config.rate_limit.enabled:
            allowed, retry_after = self._limiter.check(request.client)
            if not allowed:
                with self._lock:
                    self._metrics.rate_limited += 1
                return json_response(
                    429,
                    {"error": "Too many requests", "retryAfter": round(retry_after, 3)},
                    {"Retry-After": str(max(int(retry_after + 0.999), 1))},
                )

        pathname = request.pathname
        if pathname.startswith(LOCAL_PREFIX):
            local = self._local(pathname)
            if local is not None:
                return local

        resolved = self._registry.resolve(method, pathname)
        if resolved is None:
            return json_response(404, {"error": "Service not found", "path": pathname, "method": method})
        service, _route = resolved
        return self.forward(request, service)

    def _local(self, pathname: str) -> GatewayResponse | None:
        if pathname == "/gateway/status":
            return json_response(200, self.status())
        if pathname == "/gateway/health":
            return json_response(200, self.health())
        if pathname == "/gateway/metrics":
            return json_response(200, self.metrics())
        return None

    def forward(self, request: GatewayRequest, service: ServiceDefinition) -> GatewayResponse:
        method = request.method.upper()
        url = service.endpoint.rstrip("/") + request.path
        headers = {key: value for key, value in request.headers.items() if key.lower() not in HOP_BY_HOP}
        headers["X-Forwarded-For"] = request.client
        attempts = 1 + (self._config.retries if method in IDEMPOTENT_METHODS else 0)
        last_error: Exception = requests.ConnectionError(f"no attempt made for {url}")
        for _ in range(attempts):
            try:
                upstream = self._session.request(
                    method,
                    url,
                    headers=headers,
                    data=request.body or None,
                    timeout=self._config.timeout,
                    allow_redirects=False,
                )
            except requests.Timeout as exc:
                return self._upstream_error(504, "Service timeout", service, exc)
            except requests.ConnectionError as exc:
                last_error = exc
                continue
            except requests.RequestException as exc:
                return self._upstream_error(502, "Service unavailable", service, exc)
            with self._lock:
                self._metrics.proxied += 1
            response_headers = {
                key: value for key, value in upstream.headers.items() if key.lower() not in _STRIPPED_RESPONSE
            }
            return GatewayResponse(status=upstream.status_code, headers=response_headers, body=upstream.content)
        return self._upstream_error(502, "Service unavailable", service, last_error)

    def _upstream_error(self, status: int, label: str, service: ServiceDefinition, exc: Exception) -> GatewayResponse:
        with self._lock:
            self._metrics.errors += 1
        return json_response(status, {"error": label, "service": service.name, "message": str(exc)})

    def check_service_health(self, service: ServiceDefinition) -> Dict[str, Any]:
        try:
            response = self._session.get(service.health_url, timeout=HEALTH_TIMEOUT)
        except requests.Timeout:
            return {"status": "timeout", "code": 0}
        except requests.RequestException:
            return {"status": "unreachable", "code": 0}
        status = "healthy" if response.status_code == 200 else "unhealthy"
        return {"status": status, "code": response.status_code}

    def uptime_ms(self) -> int:
        return int((self._clock() - self._started) * 1000)

    def status(self) -> Dict[str, Any]:
        return {
            "status": "running",
            "uptime": self.uptime_ms(),
            "services": len(self._registry),
            "metrics": self.metrics_snapshot.to_dict(),
        }

    def health(self) -> Dict[str, Any]:
        services = {service.key: self.check_service_health(service) for service in self._registry}
        overall = "healthy" if all(item["status"] == "healthy" for item in services.values()) else "degraded"
        return {"status": overall, "timestamp": isoformat(utc_now()), "services": services}

    def metrics(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = dict(self.metrics_snapshot.to_dict())
        payload.update(
            {
                "uptime": self.uptime_ms(),
                "services": len(self._registry),
                "config": {
                    "host": self._config.host,
                    "port": self._config.port,
                    "timeout": self._config.timeout,
                    "retries": self._config.retries,
                    "rateLimit": {
                        "enabled": self._config.rate_limit.enabled,
                        "requests": self._config.rate_limit.requests,
                        "window": self._config.rate_limit.window,
                    },
                },
            }
        )
        return payload


__all__ = [
    "FixedWindowRateLimiter",
    "GatewayMetrics",
    "GatewayRequest",
    "GatewayResponse",
    "GatewayService",
    "json_response",
]
