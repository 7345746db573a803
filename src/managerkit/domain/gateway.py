"""Service registry and route matching for the API gateway."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Tuple

import yaml

HTTP_METHODS = ("GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS")


class ServiceRegistryError(ValueError):
    """Raised when a service registry document is invalid."""


@lru_cache(maxsize=512)
def _compile(pattern: str) -> re.Pattern[str]:
    parts = (re.escape(chunk) for chunk in pattern.split("*"))
    return re.compile("^" + ".*".join(parts) + "$", re.DOTALL)


def match_route(path: str, pattern: str) -> bool:
    """Return True when ``path`` matches ``pattern``; ``*`` matches any run of characters."""
    return _compile(pattern).match(path) is not None


@dataclass(frozen=True)
class ServiceRoute:
    path: str
    methods: Tuple[str, ...]

    def matches(self, method: str, path: str) -> bool:
        return method.upper() in self.methods and match_route(path, self.path)

    def to_dict(self) -> Dict[str, Any]:
        return {"path": self.path, "methods": list(self.methods)}


@dataclass(frozen=True)
class ServiceDefinition:
    key: str
    name: str
    endpoint: str
    health_path: str
    routes: Tuple[ServiceRoute, ...]

    @property
    def health_url(self) -> str:
        return self.endpoint.rstrip("/") + self.health_path

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "endpoint": self.endpoint,
            "health": self.health_path,
            "routes": [route.to_dict() for route in self.routes],
        }


def _route(path: str, *methods: str) -> ServiceRoute:
    return ServiceRoute(path, tuple(methods))


def _service(key: str, name: str, port: int, *routes: ServiceRoute) -> ServiceDefinition:
    return ServiceDefinition(key, name, f"http://localhost:{port}", "/health", tuple(routes))


_CRUD = ("GET", "POST", "PUT", "DELETE")

DEFAULT_SERVICES: Tuple[ServiceDefinition, ...] = (
    _service(
        "project-manager", "Project Manager", 3001,
        _route("/api/projects", "GET", "POST"),
        _route("/api/projects/*", "GET", "PUT", "DELETE"),
        _route("/api/templates", "GET"),
        _route("/api/scan", "POST"),
    ),
    _service(
        "ai-planner", "AI Planner", 3002,
        _route("/api/tasks", *_CRUD),
        _route("/api/plans", *_CRUD),
        _route("/api/prioritize", "POST"),
        _route("/api/recommend", "POST"),
    ),
    _service(
        "workflow-orchestrator", "Workflow Orchestrator", 3003,
        _route("/api/workflows", *_CRUD),
        _route("/api/workflows/*/execute", "POST"),
        _route("/api/workflows/*/status", "GET"),
    ),
    _service(
        "smart-notifications", "Smart Notifications", 3004,
        _route("/api/notifications", *_CRUD),
        _route("/api/notifications/*/send", "POST"),
        _route("/api/notifications/*/status", "GET"),
    ),
    _service(
        "template-generator", "Template Generator", 3005,
        _route("/api/templates", "GET", "POST"),
        _route("/api/templates/*/generate", "POST"),
        _route("/api/templates/*/validate", "POST"),
    ),
    _service(
        "consistency-manager", "Consistency Manager", 3006,
        _route("/api/consistency/validate", "POST"),
        _route("/api/consistency/fix", "POST"),
        _route("/api/consistency/status", "GET"),
    ),
)


class ServiceRegistry:
    """Ordered collection of services; resolution takes the first match."""

    def __init__(self, services: Iterable[ServiceDefinition] = DEFAULT_SERVICES) -> None:
        self._services: Dict[str, ServiceDefinition] = {}
        for service in services:
            if service.key in self._services:
                raise ServiceRegistryError(f"duplicate service key: {service.key}")
            self._services[service.key] = service

    def __iter__(self) -> Iterator[ServiceDefinition]:
        return iter(self._services.values())

    def __len__(self) -> int:
        return len(self._services)

    def get(self, key: str) -> ServiceDefinition | None:
        return self._services.get(key)

    def resolve(self, method: str, path: str) -> Tuple[ServiceDefinition, ServiceRoute] | None:
        for service in self._services.values():
            for route in service.routes:
                if route.matches(method, path):
                    return service, route
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {key: service.to_dict() for key, service in self._services.items()}

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ServiceRegistry":
        services: List[ServiceDefinition] = []
        for key, raw in data.items():
            if not isinstance(raw, Mapping):
                raise ServiceRegistryError(f"service '{key}' must be a mapping")
            endpoint = raw.get("endpoint")
            if not isinstance(endpoint, str) or not endpoint.startswith(("http://", "https://")):
                raise ServiceRegistryError(f"service '{key}' needs an http(s) endpoint")
            routes: List[ServiceRoute] = []
            for entry in raw.get("routes", []):
                path = entry.get("path") if isinstance(entry, Mapping) else None
                if not isinstance(path, str) or not path.startswith("/"):
                    raise ServiceRegistryError(f"service '{key}' has a route without an absolute path")
                methods = tuple(str(item).upper() for item in entry.get("methods", ["GET"]))
                unknown = [item for item in methods if item not in HTTP_METHODS]
                if unknown:
                    raise ServiceRegistryError(f"service '{key}' route {path} has unknown methods {unknown}")
                routes.append(ServiceRoute(path, methods))
            services.append(
                ServiceDefinition(
                    key=str(key),
                    name=str(raw.get("name", key)),
                    endpoint=endpoint,
                    health_path=str(raw.get("health", "/health")),
                    routes=tuple(routes),
                )
            )
        return cls(services)

    @classmethod
    def load(cls, path: Path) -> "ServiceRegistry":
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ServiceRegistryError(f"cannot read services file {path}: {exc}") from exc
        try:
            if path.suffix == ".json":
                data = json.loads(text)
            else:
                data = yaml.safe_load(text)
        except (json.JSONDecodeError, yaml.YAMLError) as exc:
            raise ServiceRegistryError(f"invalid services file {path}: {exc}") from exc
        if not isinstance(data, Mapping):
            raise ServiceRegistryError(f"services file {path} must contain a mapping")
        services = data.get("services", data)
        if not isinstance(services, Mapping):
            raise ServiceRegistryError(f"services file {path}: 'services' must be a mapping")
        return cls.from_mapping(services)


__all__ = [
    "DEFAULT_SERVICES",
    "HTTP_METHODS",
    "ServiceDefinition",
    "ServiceRegistry",
    "ServiceRegistryError",
    "ServiceRoute",
    "match_route",
]
