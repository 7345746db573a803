"""Runtime settings for the managerkit toolkit."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from managerkit import __version__

HOME_ENV = "MANAGERKIT_HOME"


@dataclass(frozen=True)
class RuntimeSettings:
    home_dir: Path
    state_dir: Path
    log_dir: Path
    data_dir: Path
    backup_dir: Path
    report_dir: Path
    cli_version: str = __version__

    @property
    def config_file(self) -> Path:
        return self.home_dir / "config.yaml"

    @property
    def tasks_dir(self) -> Path:
        return self.data_dir / "tasks"

    @property
    def plans_dir(self) -> Path:
        return self.data_dir / "plans"

    @property
    def workflows_dir(self) -> Path:
        return self.data_dir / "workflows"

    @property
    def executions_dir(self) -> Path:
        return self.data_dir / "executions"


def _default_home_dir() -> Path:
    override = os.environ.get(HOME_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".managerkit"


def settings_for_home(base: Path) -> RuntimeSettings:
    return RuntimeSettings(
        home_dir=base,
        state_dir=base / "state",
        log_dir=base / "logs",
        data_dir=base / "data",
        backup_dir=base / "backups",
        report_dir=base / "reports",
    )


def load_settings() -> RuntimeSettings:
    return settings_for_home(_default_home_dir())


SETTINGS = load_settings()
