"""Aggregate platform status from persisted state."""

from __future__ import annotations

from collections import Counter
from typing import Any, Callable, Dict

from managerkit import __version__
from managerkit.app.backup.service import BackupService
from managerkit.app.events.bus import read_persisted_state
from managerkit.app.gateway.service import GatewayService
from managerkit.app.planner.service import PlannerService
from managerkit.app.workflows.service import WorkflowService
from managerkit.config import PlatformConfig
from managerkit.domain.events import isoformat, utc_now
from managerkit.settings import RuntimeSettings


class StatusService:
    def __init__(
        self,
        settings: RuntimeSettings,
        config: PlatformConfig,
        *,
        planner: PlannerService,
        workflows: WorkflowService,
        backups: BackupService,
        gateway: GatewayService | None = None,
        clock: Callable[[], Any] = utc_now,
    ) -> None:
        self._settings = settings
        self._config = config
        self._planner = planner
        self._workflows = workflows
        self._backups = backups
        self._gateway = gateway
        self._clock = clock

    def collect(self, *, include_gateway: bool = False) -> Dict[str, Any]:
        tasks = self._planner.list_tasks()
        statuses = Counter(task.status for task in tasks)
        backups = self._backups.list()
        executions = self._workflows.list_executions()
        payload: Dict[str, Any] = {
            "generated_at": isoformat(self._clock()),
            "version": __version__,
            "home": str(self._settings.home_dir),
            "config": {
                "path": str(self._settings.config_file),
                "exists": self._settings.config_file.exists(),
                "source": str(self._config.source) if self._config.source else None,
            },
            "eventBus": read_persisted_state(self._settings.state_dir) or {"status": "no-state"},
            "planner": {
                "tasks": len(tasks),
                "open": sum(1 for task in tasks if task.is_open),
                "byStatus": dict(sorted(statuses.items())),
                "plans": len(self._planner.list_plans()),
            },
            "workflows": {
                "defined": len(self._workflows.list()),
                "executions": len(executions),
                "lastExecution": executions[0].to_dict() if executions else None,
            },
            "backups": {
                "count": len(backups),
                "latest": backups[0].to_dict() if backups else None,
            },
        }
        if payload["workflows"]["lastExecution"] is not None:
            last = payload["workflows"]["lastExecution"]
            payload["workflows"]["lastExecution"] = {
                key: last[key] for key in ("id", "workflow", "status", "started_at", "finished_at")
            }
        if include_gateway and self._gateway is not None:
            payload["gateway"] = self._gateway.health()
        return payload


__all__ = ["StatusService"]
