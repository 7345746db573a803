from __future__ import annotations

import csv
import io
import json
from itertools import count
from pathlib import Path

import pytest

from managerkit.app.planner import EXPORT_FORMATS, PlannerService, render_plan
from managerkit.app.planner.service import SUGGESTED_TASKS, build_timeline, ranked_priorities
from managerkit.domain.planning import PlannerNotFoundError, PlannerValidationError


@pytest.fixture()
def planner(tmp_path: Path, frozen_clock) -> PlannerService:
    ids = count(1)
    return PlannerService(
        tmp_path / "tasks",
        tmp_path / "plans",
        clock=frozen_clock,
        id_factory=lambda: f"id{next(ids)}",
    )


def test_task_crud_round_trip(planner: PlannerService) -> None:
    task = planner.create_task({"title": "Write docs", "priority": "high", "id": "ignored"})
    assert task.id == "id1"
    assert task.status == "pending"
    assert task.created_at == "2025-03-01T12:00:00Z"

    updated = planner.update_task(task.id, {"status": "in_progress", "progress": 0.5})
    assert updated.status == "in_progress"
    assert planner.require_task(task.id).progress == 0.5
    assert [item.id for item in planner.list_tasks()] == ["id1"]

    assert planner.delete_task(task.id) is True
    assert planner.delete_task(task.id) is False
    assert planner.get_task(task.id) is None
    assert planner.get_task("../etc/passwd") is None


def test_task_errors(planner: PlannerService) -> None:
    with pytest.raises(PlannerValidationError):
        planner.create_task({"title": ""})
    with pytest.raises(PlannerValidationError):
        planner.create_task({"title": "x", "unexpected": 1, "priority": "sometime"})
    task = planner.create_task({"title": "Keep id"})
    with pytest.raises(PlannerValidationError):
        planner.update_task(task.id, {"id": "other"})
    with pytest.raises(PlannerValidationError):
        planner.update_task(task.id, {"status": "finished"})
    with pytest.raises(PlannerNotFoundError):
        planner.update_task("missing", {"title": "nope"})


def test_generate_plan_for_web_project(planner: PlannerService) -> None:
    plan = planner.generate_plan(
        {"name": "Shop", "type": "web", "complexity": "high", "services": ["stripe"]},
        include_documentation=True,
    )

    names = [phase["name"] for phase in plan["phases"]]
    assert names == [
        "Planning & Setup",
        "Development",
        "Testing & Quality",
        "Deployment & Launch",
        "Frontend Development",
        "Backend Development",
        "Documentation",
    ]
    timeline = plan["timeline"]
    assert timeline["total_duration"] == 3 + 14 + 7 + 3 + 10 + 8 + 2
    assert timeline["start_date"] == "2025-03-01T12:00:00Z"
    assert timeline["end_date"] == "2025-04-17T12:00:00Z"
    assert timeline["phases"][1]["start_date"] == timeline["phases"][0]["end_date"]

    risk_types = [risk["type"] for risk in plan["risks"]]
    assert risk_types == ["technical", "resource", "timeline", "dependency"]
    assert plan["status"] == "draft"
    assert planner.require_plan(plan["id"]) == plan


def test_plan_requires_name_and_handles_unknown_type(planner: PlannerService) -> None:
    with pytest.raises(PlannerValidationError):
        planner.generate_plan({"type": "web"})
    plan = planner.generate_plan({"name": "Toolkit", "type": "cli", "team": ["a", "b"]}, include_maintenance=True)
    assert [phase["name"] for phase in plan["phases"]][-1] == "Maintenance & Support"
    assert [risk["type"] for risk in plan["risks"]] == ["timeline"]
    assert len(plan["assumptions"]) == 5


def test_ai_ml_plan_carries_type_assumptions(planner: PlannerService) -> None:
    plan = planner.generate_plan({"name": "Model", "type": "ai-ml", "team": ["a", "b"]})
    assert "Data quality is sufficient for model training" in plan["assumptions"]
    assert "Model Deployment" in [phase["name"] for phase in plan["phases"]]


def test_update_and_delete_plan(planner: PlannerService) -> None:
    plan = planner.generate_plan({"name": "Lib", "type": "library"})
    updated = planner.update_plan(plan["id"], {"status": "active"})
    assert updated["status"] == "active"
    with pytest.raises(PlannerValidationError):
        planner.update_plan(plan["id"], {"id": "elsewhere"})
    assert [item["id"] for item in planner.list_plans()] == [plan["id"]]
    assert planner.delete_plan(plan["id"]) is True
    with pytest.raises(PlannerNotFoundError):
        planner.require_plan(plan["id"])


def test_export_formats(planner: PlannerService) -> None:
    plan = planner.generate_plan({"name": "Exported", "type": "api", "description": "Public API"})
    assert EXPORT_FORMATS == ("json", "markdown", "csv")

    as_json = json.loads(planner.export_plan(plan["id"], "json"))
    assert as_json["project_name"] == "Exported"

    markdown = planner.export_plan(plan["id"], "markdown")
    assert markdown.startswith("# Exported")
    assert "## Phases" in markdown
    assert "  - [ ] endpoint-development" in markdown
    assert "| resource | medium |" in markdown
    assert render_plan(plan, "md") == markdown

    rows = list(csv.reader(io.StringIO(planner.export_plan(plan["id"], "csv"))))
    assert rows[0] == ["phase", "task", "duration_days", "priority", "start_date", "end_date"]
    assert rows[1][:4] == ["Planning & Setup", "project-analysis", "3", "high"]
    assert rows[1][4] == "2025-03-01T12:00:00Z"

    with pytest.raises(PlannerValidationError):
        planner.export_plan(plan["id"], "pdf")


def test_prioritize_orders_by_score(planner: PlannerService) -> None:
    low = planner.create_task({"title": "Polish", "priority": "low"})
    urgent = planner.create_task({"title": "Fix outage", "priority": "critical", "due_date": "2025-03-02"})
    backend = planner.create_task({"title": "API", "priority": "medium", "category": "backend"})

    ranked = planner.prioritize()
    assert [item.task.id for item in ranked] == [urgent.id, backend.id, low.id]
    assert ranked[0].calculated_priority == "critical"
    assert ranked[0].to_dict()["priority_score"] == ranked[0].score

    boosted = planner.prioritize(criteria={"category": "backend"})
    assert boosted[1].task.id == backend.id
    assert boosted[1].score == 62


def test_prioritize_counts_completed_dependencies(planner: PlannerService) -> None:
    done = planner.create_task({"title": "Setup", "status": "completed"})
    follow = planner.create_task({"title": "Build", "dependencies": [done.id]})
    ranked = {item.task.id: item.score for item in planner.prioritize([follow])}
    assert ranked[follow.id] == 50 + 2 + 20


def test_recommendations_include_suggestions_improvements_and_timeline(planner: PlannerService) -> None:
    design = planner.create_task({"title": "Design", "estimated_hours": 4, "complexity": "high"})
    build = planner.create_task({"title": "Build", "estimated_hours": 8, "dependencies": [design.id]})
    planner.create_task({"title": "Late", "due_date": "2025-02-01"})
    planner.create_task({"title": "Docs"})

    recommendations = planner.recommend({"type": "api"})
    kinds = [item.type for item in recommendations]
    assert kinds == ["tasks", "improvements", "timeline"]
    assert recommendations[0].items == list(SUGGESTED_TASKS["api"])

    improvements = recommendations[1].items
    assert any("1 overdue tasks" in item for item in improvements)
    assert any("high complexity" in item for item in improvements)

    timeline = recommendations[2].items
    assert any(item.startswith("Consider running these tasks in parallel") for item in timeline)
    assert any("Design -> Build" in item for item in timeline)
    assert [task.id for task in planner.critical_path()] == [design.id, build.id]


def test_recommendations_for_unknown_type_have_no_suggestions(planner: PlannerService) -> None:
    recommendations = planner.recommend({"type": "game"}, tasks=[])
    assert len(recommendations) == 1
    assert recommendations[0].items == []


def test_build_timeline_empty_and_priorities_order(frozen_clock) -> None:
    timeline = build_timeline([], frozen_clock())
    assert timeline["total_duration"] == 0
    assert timeline["start_date"] == timeline["end_date"]
    assert ranked_priorities() == ["critical", "high", "medium", "low", "optional"]
