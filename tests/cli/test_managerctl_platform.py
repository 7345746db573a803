from __future__ import annotations

import json
from pathlib import Path

import pytest

from managerkit.cli import main as cli_main
from managerkit.settings import RuntimeSettings, settings_for_home

SERVICES_YAML = """
services:
  users:
    name: Users
    endpoint: http://127.0.0.1:1
    routes:
      - path: /api/users*
        methods: [GET, POST]
"""


@pytest.fixture()
def runtime_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> RuntimeSettings:
    settings = settings_for_home(tmp_path / "home")
    settings.home_dir.mkdir(parents=True)
    monkeypatch.setattr(cli_main, "SETTINGS", settings, raising=False)
    monkeypatch.delenv("MANAGERKIT_TELEMETRY", raising=False)
    return settings


def _run(capsys: pytest.CaptureFixture[str], *argv: str) -> tuple[int, str, str]:
    code = cli_main.main(list(argv))
    captured = capsys.readouterr()
    return code, captured.out, captured.err


def test_status_of_fresh_home(runtime_settings: RuntimeSettings, capsys: pytest.CaptureFixture[str]) -> None:
    code, out, _ = _run(capsys, "status", "--json")
    assert code == 0
    payload = json.loads(out)
    assert payload["home"] == str(runtime_settings.home_dir)
    assert payload["eventBus"] == {"status": "no-state"}
    assert payload["config"]["exists"] is False

    code, out, _ = _run(capsys, "status")
    assert "Event bus: no-state" in out
    assert "Backups: 0" in out


def test_status_reports_malformed_task_records(
    runtime_settings: RuntimeSettings, capsys: pytest.CaptureFixture[str]
) -> None:
    runtime_settings.tasks_dir.mkdir(parents=True)
    (runtime_settings.tasks_dir / "t1.json").write_text(
        json.dumps({"id": "t1", "title": "Odd", "priority": "urgent"}), encoding="utf-8"
    )
    code, _, err = _run(capsys, "status")
    assert code == 1
    assert err.startswith("status error: task priority")


def test_config_show_and_validate(
    runtime_settings: RuntimeSettings, capsys: pytest.CaptureFixture[str], tmp_path: Path
) -> None:
    code, out, _ = _run(capsys, "config", "show", "--json")
    assert code == 0
    payload = json.loads(out)
    assert payload["source"] is None
    assert payload["config"]["event_bus"]["port"] == 4000

    code, out, _ = _run(capsys, "config", "validate")
    assert code == 0
    assert out.startswith("Configuration OK")

    broken = tmp_path / "broken.yaml"
    broken.write_text("event_bus:\n  retry_attempts: -2\n", encoding="utf-8")
    code, _, err = _run(capsys, "config", "validate", str(broken))
    assert code == 1
    assert err.startswith("config error: config.schema")

    code, _, err = _run(capsys, "--config", str(tmp_path / "absent.yaml"), "status")
    assert code == 1
    assert "config.not_found" in err


def test_event_commands_persist_state(runtime_settings: RuntimeSettings, capsys: pytest.CaptureFixture[str]) -> None:
    code, out, _ = _run(capsys, "events", "types", "--json")
    assert code == 0
    types = json.loads(out)
    assert types["workflow.failed"]["priority"] == "critical"

    code, out, _ = _run(capsys, "events", "subscribe", "task.created", "audit-bot")
    assert out.strip() == "Subscribed successfully"
    code, out, _ = _run(capsys, "events", "subscribe", "task.created", "audit-bot")
    assert out.strip() == "Already subscribed"

    code, out, _ = _run(capsys, "events", "publish", "task.created", "--data", '{"id": "t1"}', "--json")
    assert code == 0
    published = json.loads(out)
    assert published["event"]["data"] == {"id": "t1"}
    targets = [item["target"] for item in published["deliveries"][0]["deliveries"]]
    assert targets[-1] == "audit-bot"

    code, out, _ = _run(capsys, "events", "history", "--json")
    history = json.loads(out)
    assert [item["type"] for item in history] == ["task.created"]

    code, out, _ = _run(capsys, "events", "unsubscribe", "audit-bot")
    assert out.strip() == "Unsubscribed successfully"
    code, _, err = _run(capsys, "events", "unsubscribe", "audit-bot")
    assert code == 1
    assert err.startswith("events error:")

    code, out, _ = _run(capsys, "status", "--json")
    assert json.loads(out)["eventBus"]["historySize"] == 1


def test_event_publish_rejects_bad_input(runtime_settings: RuntimeSettings, capsys: pytest.CaptureFixture[str]) -> None:
    code, _, err = _run(capsys, "events", "publish", "no.such.type")
    assert code == 1
    assert "Unknown event type" in err
    code, _, err = _run(capsys, "events", "publish", "task.created", "--data", "{oops")
    assert code == 1
    assert "--data is not valid JSON" in err


def test_gateway_routes_and_resolve(runtime_settings: RuntimeSettings, capsys: pytest.CaptureFixture[str]) -> None:
    (runtime_settings.home_dir / "services.yaml").write_text(SERVICES_YAML, encoding="utf-8")
    runtime_settings.config_file.write_text("gateway:\n  services_file: services.yaml\n", encoding="utf-8")

    code, out, _ = _run(capsys, "gateway", "routes")
    assert code == 0
    assert "users\thttp://127.0.0.1:1" in out
    assert "/api/users*" in out

    code, out, _ = _run(capsys, "gateway", "resolve", "get", "/api/users/42", "--json")
    assert code == 0
    assert json.loads(out)["service"] == "users"

    code, _, err = _run(capsys, "gateway", "resolve", "DELETE", "/api/users/42")
    assert code == 1
    assert "No service matches DELETE /api/users/42" in err


def test_gateway_reports_missing_services_file(
    runtime_settings: RuntimeSettings, capsys: pytest.CaptureFixture[str]
) -> None:
    runtime_settings.config_file.write_text("gateway:\n  services_file: missing.yaml\n", encoding="utf-8")
    code, _, err = _run(capsys, "gateway", "routes")
    assert code == 1
    assert err.startswith("gateway error:")


def test_workflow_define_run_and_delete(
    runtime_settings: RuntimeSettings, capsys: pytest.CaptureFixture[str], tmp_path: Path
) -> None:
    definition = tmp_path / "hello.yaml"
    definition.write_text(
        "\n".join(
            [
                "description: Write a greeting",
                "steps:",
                "  - name: Greet",
                "    type: file",
                "    operation: write",
                "    path: greetings/{{who}}.txt",
                "    content: hello {{who}}",
                "  - name: Announce",
                "    type: notification",
                "    message: greeted {{who}}",
            ]
        ),
        encoding="utf-8",
    )
    workdir = tmp_path / "work"
    workdir.mkdir()

    code, out, _ = _run(capsys, "workflows", "define", "hello", str(definition))
    assert code == 0
    assert out.strip() == "Defined workflow hello (2 steps)"

    code, out, _ = _run(capsys, "workflows", "run", "hello", "--set", "who=team", "--cwd", str(workdir))
    assert code == 0
    assert "[completed] Greet" in out
    assert (workdir / "greetings" / "team.txt").read_text(encoding="utf-8") == "hello team"

    code, out, _ = _run(capsys, "events", "history", "--json")
    assert [item["type"] for item in json.loads(out)] == ["workflow.completed", "notification.sent", "workflow.started"]

    code, out, _ = _run(capsys, "workflows", "show", "hello", "--json")
    shown = json.loads(out)
    assert shown["workflow"]["description"] == "Write a greeting"
    assert shown["executions"][0]["status"] == "completed"

    code, _, err = _run(capsys, "workflows", "run", "hello", "--set", "broken")
    assert code == 1
    assert "expected KEY=VALUE" in err

    code, out, _ = _run(capsys, "workflows", "delete", "hello")
    assert code == 0
    code, _, err = _run(capsys, "workflows", "delete", "hello")
    assert code == 1
    code, _, err = _run(capsys, "workflows", "stop", "unknown")
    assert code == 1
    assert "is not running" in err


def test_failed_workflow_exits_non_zero(
    runtime_settings: RuntimeSettings, capsys: pytest.CaptureFixture[str], tmp_path: Path
) -> None:
    definition = tmp_path / "fail.json"
    definition.write_text(
        json.dumps({"steps": [{"name": "Read", "type": "file", "operation": "read", "path": "absent.txt"}]}),
        encoding="utf-8",
    )
    _run(capsys, "workflows", "define", "fail", str(definition))
    code, out, _ = _run(capsys, "workflows", "run", "fail", "--cwd", str(tmp_path))
    assert code == 1
    assert "failed" in out


def test_workflows_install_predefined(runtime_settings: RuntimeSettings, capsys: pytest.CaptureFixture[str]) -> None:
    code, out, _ = _run(capsys, "workflows", "install")
    assert out.strip() == "Installed: project-bootstrap, quality-check"
    code, out, _ = _run(capsys, "workflows", "install")
    assert out.strip() == "Installed: nothing new"
    code, out, _ = _run(capsys, "workflows", "list")
    assert out.startswith("project-bootstrap\t4 steps")


def test_project_scan_and_report(
    runtime_settings: RuntimeSettings, capsys: pytest.CaptureFixture[str], tmp_path: Path
) -> None:
    project = tmp_path / "api"
    project.mkdir()
    (project / "package.json").write_text(json.dumps({"dependencies": {"express": "4"}}), encoding="utf-8")

    code, out, _ = _run(capsys, "project", "scan", str(project), "--json")
    assert code == 0
    assert json.loads(out)["type"] == "api"

    code, _, err = _run(capsys, "project", "scan", str(tmp_path / "none"))
    assert code == 1
    assert err.startswith("projects error:")

    code, out, _ = _run(capsys, "report", "generate", str(project), "--format", "markdown")
    assert code == 0
    path = Path(out.strip().split(": ", 1)[1])
    assert path.parent == runtime_settings.report_dir
    assert path.read_text(encoding="utf-8").startswith("# Project report: api")


def test_backup_create_verify_restore_prune(
    runtime_settings: RuntimeSettings, capsys: pytest.CaptureFixture[str], tmp_path: Path
) -> None:
    source = tmp_path / "src"
    source.mkdir()
    (source / "notes.txt").write_text("keep me", encoding="utf-8")

    code, out, _ = _run(capsys, "backup", "create", str(source), "--label", "nightly", "--json")
    assert code == 0
    backup_id = json.loads(out)["id"]
    assert backup_id.startswith("nightly-")

    code, out, _ = _run(capsys, "backup", "list")
    assert backup_id in out

    code, out, _ = _run(capsys, "backup", "verify", backup_id)
    assert code == 0
    assert f"Backup {backup_id}: OK (1 files checked)" in out

    target = tmp_path / "restored"
    code, out, _ = _run(capsys, "backup", "restore", backup_id, str(target))
    assert code == 0
    assert (target / "notes.txt").read_text(encoding="utf-8") == "keep me"

    code, _, err = _run(capsys, "backup", "verify", "missing")
    assert code == 1
    assert err.startswith("backup error:")

    code, out, _ = _run(capsys, "backup", "prune", "--keep", "0")
    assert code == 0
    assert out.startswith("Removed 1 backups")


def test_telemetry_commands(runtime_settings: RuntimeSettings, capsys: pytest.CaptureFixture[str]) -> None:
    _run(capsys, "tasks", "list")
    _run(capsys, "tasks", "show", "missing")

    code, out, _ = _run(capsys, "telemetry", "report")
    summary = json.loads(out)
    assert summary["total"] == 2
    assert summary["by_status"] == {"success": 1, "error": 1}
    assert summary["by_component"]["planner"]["events"] == 2
    assert summary["by_component"]["planner"]["errors"] == 1
    assert summary["by_component"]["planner"]["avgDurationMs"] >= 0

    code, out, _ = _run(capsys, "telemetry", "report", "--recent", "1")
    assert json.loads(out)["by_event"] == {"tasks.show": 1}

    code, out, _ = _run(capsys, "telemetry", "tail", "--limit", "1")
    assert json.loads(out.strip())["event"] == "tasks.show"

    code, out, _ = _run(capsys, "telemetry", "clear")
    assert out.strip() == "Telemetry log cleared"
    code, out, _ = _run(capsys, "telemetry", "report")
    assert json.loads(out)["total"] == 0
