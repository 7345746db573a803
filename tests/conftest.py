from __future__ import annotations

import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
SANDBOX_HOME = ROOT / ".test_place" / "global-home"
os.environ.setdefault("MANAGERKIT_HOME", str(SANDBOX_HOME))
SANDBOX_HOME.mkdir(parents=True, exist_ok=True)
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from managerkit.settings import RuntimeSettings, settings_for_home  # noqa: E402

FIXED_NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic clock advancing by ``step`` seconds per call."""

    def __init__(self, start: datetime = FIXED_NOW, step: float = 1.0) -> None:
        self.current = start
        self.step = step

    def __call__(self) -> datetime:
        value = self.current
        self.current = self.current + timedelta(seconds=self.step)
        return value


@pytest.fixture()
def settings(tmp_path: Path) -> RuntimeSettings:
    return settings_for_home(tmp_path / "home")


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def frozen_clock() -> FakeClock:
    return FakeClock(step=0.0)
