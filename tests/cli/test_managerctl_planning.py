from __future__ import annotations

import csv
import json
from pathlib import Path

import pytest

from managerkit import __version__
from managerkit.app.planner.service import SUGGESTED_TASKS
from managerkit.cli import main as cli_main
from managerkit.settings import RuntimeSettings, settings_for_home
from managerkit.utils.telemetry import iter_events


@pytest.fixture()
def runtime_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> RuntimeSettings:
    settings = settings_for_home(tmp_path / "home")
    monkeypatch.setattr(cli_main, "SETTINGS", settings, raising=False)
    monkeypatch.delenv("MANAGERKIT_TELEMETRY", raising=False)
    return settings


def _run(capsys: pytest.CaptureFixture[str], *argv: str) -> tuple[int, str, str]:
    code = cli_main.main(list(argv))
    captured = capsys.readouterr()
    return code, captured.out, captured.err


def test_version_and_usage_errors(runtime_settings: RuntimeSettings, capsys: pytest.CaptureFixture[str]) -> None:
    code, out, _ = _run(capsys, "--version")
    assert code == 0
    assert out.strip() == f"managerctl {__version__}"

    code, _, err = _run(capsys, "tasks")
    assert code == 2
    assert "tasks_command" in err or "required" in err


def test_task_lifecycle(runtime_settings: RuntimeSettings, capsys: pytest.CaptureFixture[str]) -> None:
    code, out, _ = _run(capsys, "tasks", "create", "Write docs", "--priority", "high", "--hours", "3", "--json")
    assert code == 0
    task = json.loads(out)
    assert task["title"] == "Write docs"
    assert task["priority"] == "high"
    assert task["estimated_hours"] == 3.0
    task_id = task["id"]

    code, out, _ = _run(capsys, "tasks", "list")
    assert code == 0
    assert f"{task_id}\t[pending] Write docs (high, 3h)" in out

    code, _, _ = _run(capsys, "tasks", "update", task_id, "--status", "in_progress", "--note", "drafted outline")
    assert code == 0
    code, _, _ = _run(capsys, "tasks", "update", task_id, "--note", "reviewed", "--progress", "0.5")
    assert code == 0

    code, out, _ = _run(capsys, "tasks", "show", task_id, "--json")
    shown = json.loads(out)
    assert shown["status"] == "in_progress"
    assert shown["progress"] == 0.5
    assert shown["notes"] == ["drafted outline", "reviewed"]

    code, out, _ = _run(capsys, "tasks", "list", "--status", "completed")
    assert out.strip() == "No tasks"

    code, out, _ = _run(capsys, "tasks", "delete", task_id)
    assert code == 0
    assert f"Deleted task {task_id}" in out
    code, _, err = _run(capsys, "tasks", "delete", task_id)
    assert code == 1
    assert "not found" in err


def test_task_errors_are_reported(runtime_settings: RuntimeSettings, capsys: pytest.CaptureFixture[str]) -> None:
    code, _, err = _run(capsys, "tasks", "show", "missing")
    assert code == 1
    assert err.startswith("planner error:")

    code, _, err = _run(capsys, "tasks", "create", "Bad date", "--due", "someday")
    assert code == 1
    assert "due" in err

    events = list(iter_events(runtime_settings))
    assert events[-1]["event"] == "tasks.create"
    assert events[-1]["status"] == "error"
    assert events[-1]["level"] == "error"


def test_prioritize_ranks_open_tasks(runtime_settings: RuntimeSettings, capsys: pytest.CaptureFixture[str]) -> None:
    _run(capsys, "tasks", "create", "Polish", "--priority", "low")
    _run(capsys, "tasks", "create", "Outage", "--priority", "critical")
    code, out, _ = _run(capsys, "tasks", "create", "Done", "--priority", "critical", "--json")
    done_id = json.loads(out)["id"]
    _run(capsys, "tasks", "update", done_id, "--status", "completed")

    code, out, _ = _run(capsys, "tasks", "prioritize", "--json")
    assert code == 0
    ranked = json.loads(out)
    assert [item["title"] for item in ranked] == ["Outage", "Polish"]
    assert ranked[0]["calculated_priority"] == "critical"

    code, out, _ = _run(capsys, "tasks", "prioritize", "--all", "--limit", "1", "--json")
    assert len(json.loads(out)) == 1


def test_plan_create_show_and_export(
    runtime_settings: RuntimeSettings, capsys: pytest.CaptureFixture[str], tmp_path: Path
) -> None:
    code, out, _ = _run(capsys, "plans", "create", "Shop", "--type", "web", "--docs", "--service", "stripe", "--json")
    assert code == 0
    plan = json.loads(out)
    assert plan["project_name"] == "Shop"
    assert plan["phases"][-1]["name"] == "Documentation"
    assert any(risk["type"] == "dependency" for risk in plan["risks"])

    code, out, _ = _run(capsys, "plans", "list")
    assert f"{plan['id']}\tShop (web, draft)" in out

    code, out, _ = _run(capsys, "plans", "show", plan["id"])
    assert out.startswith("# Shop")

    target = tmp_path / "exports" / "shop.csv"
    code, out, _ = _run(capsys, "plans", "export", plan["id"], "--format", "csv", "--output", str(target))
    assert code == 0
    rows = list(csv.reader(target.read_text(encoding="utf-8").splitlines()))
    assert rows[0][0] == "phase"
    assert rows[1][0] == "Planning & Setup"

    code, _, err = _run(capsys, "plans", "export", "missing-plan")
    assert code == 1
    assert err.startswith("planner error:")


def test_plan_uses_configured_default_type(runtime_settings: RuntimeSettings, capsys: pytest.CaptureFixture[str]) -> None:
    runtime_settings.home_dir.mkdir(parents=True, exist_ok=True)
    runtime_settings.config_file.write_text("planner:\n  default_project_type: api\n", encoding="utf-8")
    code, out, _ = _run(capsys, "plans", "create", "Service", "--json")
    assert code == 0
    assert json.loads(out)["project_type"] == "api"


def test_recommendations(runtime_settings: RuntimeSettings, capsys: pytest.CaptureFixture[str]) -> None:
    _run(capsys, "tasks", "create", "Design", "--complexity", "high")
    code, out, _ = _run(capsys, "plans", "recommend", "--type", "api", "--json")
    assert code == 0
    recommendations = json.loads(out)
    assert recommendations[0]["type"] == "tasks"
    assert recommendations[0]["items"] == list(SUGGESTED_TASKS["api"])

    code, out, _ = _run(capsys, "plans", "recommend", "--type", "api")
    assert out.startswith("[")
