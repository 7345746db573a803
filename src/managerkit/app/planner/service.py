"""Task management, plan generation and prioritisation."""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Sequence

from managerkit.adapters.json_store import InvalidRecordIdError, JsonRecordStore
from managerkit.app.planner.export import render_plan
from managerkit.domain.events import isoformat, utc_now
from managerkit.domain.planning import (
    PRIORITY_WEIGHTS,
    Phase,
    PlannerNotFoundError,
    PlannerValidationError,
    Risk,
    Task,
    critical_path,
    days_until,
    parallel_candidates,
    priority_from_score,
    task_score,
)

_COMMON_PHASES: Sequence[Phase] = (
    Phase(
        "Planning & Setup",
        "Project planning, environment setup, and initial configuration",
        ["project-analysis", "requirements-gathering", "architecture-design", "environment-setup", "tool-configuration"],
        3,
        "high",
    ),
    Phase(
        "Development",
        "Core development and implementation",
        ["core-implementation", "feature-development", "integration", "testing"],
        14,
        "high",
    ),
    Phase(
        "Testing & Quality",
        "Comprehensive testing and quality assurance",
        ["unit-testing", "integration-testing", "user-testing", "performance-testing", "security-testing"],
        7,
        "high",
    ),
    Phase(
        "Deployment & Launch",
        "Deployment, launch, and initial monitoring",
        ["deployment-preparation", "production-deployment", "monitoring-setup", "launch-verification"],
        3,
        "critical",
    ),
)

_TYPE_PHASES: Mapping[str, Sequence[Phase]] = {
    "web": (
        Phase("Frontend Development", "User interface and user experience development",
              ["ui-design", "frontend-implementation", "responsive-design"], 10, "high"),
        Phase("Backend Development", "Server-side logic and API development",
              ["api-development", "database-design", "authentication"], 8, "high"),
    ),
    "mobile": (
        Phase("Mobile Development", "Native or cross-platform mobile app development",
              ["mobile-ui", "platform-integration", "device-testing"], 12, "high"),
        Phase("App Store Preparation", "Prepare app for app store submission",
              ["app-store-optimization", "screenshots", "metadata"], 2, "medium"),
    ),
    "ai-ml": (
        Phase("Data Preparation", "Data collection, cleaning, and preprocessing",
              ["data-collection", "data-cleaning", "feature-engineering"], 7, "high"),
        Phase("Model Development", "Machine learning model development and training",
              ["model-design", "training", "validation", "optimization"], 10, "high"),
        Phase("Model Deployment", "Deploy model to production environment",
              ["model-serving", "api-integration", "monitoring"], 5, "high"),
    ),
    "api": (
        Phase("API Development", "RESTful API development and documentation",
              ["endpoint-development", "authentication", "rate-limiting"], 8, "high"),
        Phase("API Testing", "Comprehensive API testing and validation",
              ["unit-tests", "integration-tests", "load-tests"], 4, "high"),
    ),
    "library": (
        Phase("Core Development", "Core library functionality development",
              ["core-implementation", "api-design", "type-definitions"], 6, "high"),
        Phase("Package Preparation", "Prepare package for distribution",
              ["build-configuration", "documentation", "examples"], 3, "medium"),
    ),
}

_DOCUMENTATION_PHASE = Phase(
    "Documentation", "Create comprehensive documentation",
    ["api-documentation", "user-guide", "technical-docs"], 2, "medium",
)
_MAINTENANCE_PHASE = Phase(
    "Maintenance & Support", "Ongoing maintenance and support",
    ["bug-fixes", "feature-updates", "performance-optimization"], 30, "low",
)

_COMMON_ASSUMPTIONS = (
    "Team members have the necessary skills and availability",
    "Required tools and technologies are available",
    "Stakeholder requirements are stable and well-defined",
    "External dependencies will be available as expected",
    "No major changes in project scope during development",
)
_TYPE_ASSUMPTIONS: Mapping[str, Sequence[str]] = {
    "ai-ml": (
        "Data quality is sufficient for model training",
        "Computational resources are available for training",
    ),
    "mobile": (
        "Target devices and platforms are clearly defined",
        "App store approval process will be smooth",
    ),
}

SUGGESTED_TASKS: Mapping[str, Sequence[str]] = {
    "web": (
        "Set up development environment",
        "Create responsive design system",
        "Implement user authentication",
        "Set up API endpoints",
        "Configure database",
        "Implement testing framework",
        "Set up CI/CD pipeline",
        "Configure monitoring and logging",
    ),
    "mobile": (
        "Set up mobile development environment",
        "Design mobile UI/UX",
        "Implement navigation structure",
        "Add offline functionality",
        "Implement push notifications",
        "Set up app analytics",
        "Prepare for app store submission",
        "Implement security measures",
    ),
    "ai-ml": (
        "Collect and prepare data",
        "Set up ML development environment",
        "Choose and implement algorithms",
        "Train and validate models",
        "Implement model serving",
        "Set up monitoring for model performance",
        "Create data pipelines",
        "Implement A/B testing framework",
    ),
    "api": (
        "Design API architecture",
        "Implement authentication and authorization",
        "Add rate limiting and throttling",
        "Implement API documentation",
        "Set up API testing",
        "Configure API monitoring",
        "Implement API versioning",
        "Set up API security measures",
    ),
}

_TASK_DEFAULTS: Dict[str, Any] = {
    "description": "",
    "priority": "medium",
    "category": "general",
    "estimated_hours": 1.0,
    "complexity": "medium",
    "dependencies": [],
    "tags": [],
    "assignee": None,
    "due_date": None,
}
_READONLY_TASK_FIELDS = frozenset({"id", "created_at"})


def _generate_id() -> str:
    return secrets.token_hex(5)


@dataclass
class PrioritizedTask:
    task: Task
    score: int
    calculated_priority: str

    def to_dict(self) -> Dict[str, Any]:
        payload = self.task.to_dict()
        payload["priority_score"] = self.score
        payload["calculated_priority"] = self.calculated_priority
        return payload


@dataclass
class Recommendation:
    type: str
    priority: str
    title: str
    description: str
    items: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "priority": self.priority,
            "title": self.title,
            "description": self.description,
            "items": list(self.items),
        }


class PlannerService:
    def __init__(
        self,
        tasks_dir: Path,
        plans_dir: Path,
        *,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] = _generate_id,
    ) -> None:
        self._tasks = JsonRecordStore(tasks_dir)
        self._plans = JsonRecordStore(plans_dir)
        self._clock = clock
        self._id_factory = id_factory

    # tasks ----------------------------------------------------------------

    def create_task(self, data: Mapping[str, Any]) -> Task:
        payload = dict(_TASK_DEFAULTS)
        payload.update({key: value for key, value in data.items() if key not in _READONLY_TASK_FIELDS})
        now = isoformat(self._clock())
        payload.update(
            {
                "id": self._id_factory(),
                "status": payload.get("status") or "pending",
                "created_at": now,
                "updated_at": now,
            }
        )
        try:
            task = Task.from_dict(payload)
        except TypeError as exc:
            raise PlannerValidationError(f"invalid task payload: {exc}") from exc
        self._tasks.save(task.id, task.to_dict())
        return task

    def get_task(self, task_id: str) -> Task | None:
        try:
            payload = self._tasks.get(task_id)
        except InvalidRecordIdError:
            return None
        return Task.from_dict(payload) if payload is not None else None

    def require_task(self, task_id: str) -> Task:
        task = self.get_task(task_id)
        if task is None:
            raise PlannerNotFoundError(f"Task {task_id} not found")
        return task

    def list_tasks(self) -> List[Task]:
        return [Task.from_dict(item) for item in self._tasks.list()]

    def update_task(self, task_id: str, updates: Mapping[str, Any]) -> Task:
        current = self.require_task(task_id)
        if "id" in updates and updates["id"] != task_id:
            raise PlannerValidationError("task id cannot be changed")
        payload = current.to_dict()
        payload.update({key: value for key, value in updates.items() if key not in _READONLY_TASK_FIELDS})
        payload["updated_at"] = isoformat(self._clock())
        try:
            task = Task.from_dict(payload)
        except TypeError as exc:
            raise PlannerValidationError(f"invalid task update: {exc}") from exc
        self._tasks.save(task.id, task.to_dict())
        return task

    def delete_task(self, task_id: str) -> bool:
        try:
            return self._tasks.delete(task_id)
        except InvalidRecordIdError:
            return False

    # plans ----------------------------------------------------------------

    def generate_plan(
        self,
        project: Mapping[str, Any],
        *,
        include_documentation: bool = False,
        include_maintenance: bool = False,
    ) -> Dict[str, Any]:
        name = project.get("name")
        if not isinstance(name, str) or not name.strip():
            raise PlannerValidationError("project name is required")
        project_type = str(project.get("type") or "web")
        now = self._clock()
        phases = self.build_phases(
            project_type,
            include_documentation=include_documentation,
            include_maintenance=include_maintenance,
        )
        resources = {
            "team": list(project.get("team", [])),
            "budget": project.get("budget", 0),
            "tools": list(project.get("tools", [])),
        }
        timeline = build_timeline(phases, now)
        plan: Dict[str, Any] = {
            "id": self._id_factory(),
            "project_name": name,
            "project_type": project_type,
            "description": str(project.get("description", "")),
            "created_at": isoformat(now),
            "updated_at": isoformat(now),
            "status": "draft",
            "phases": [phase.to_dict() for phase in phases],
            "timeline": timeline,
            "resources": resources,
        }
        plan["risks"] = [risk.to_dict() for risk in identify_risks(project, resources, timeline)]
        plan["assumptions"] = build_assumptions(project_type)
        self._plans.save(plan["id"], plan)
        return plan

    @staticmethod
    def build_phases(project_type: str, *, include_documentation: bool = False, include_maintenance: bool = False) -> List[Phase]:
        phases = [Phase(**phase.to_dict()) for phase in _COMMON_PHASES]
        phases.extend(Phase(**phase.to_dict()) for phase in _TYPE_PHASES.get(project_type, ()))
        if include_documentation:
            phases.append(Phase(**_DOCUMENTATION_PHASE.to_dict()))
        if include_maintenance:
            phases.append(Phase(**_MAINTENANCE_PHASE.to_dict()))
        return phases

    def get_plan(self, plan_id: str) -> Dict[str, Any] | None:
        try:
            return self._plans.get(plan_id)
        except InvalidRecordIdError:
            return None

    def require_plan(self, plan_id: str) -> Dict[str, Any]:
        plan = self.get_plan(plan_id)
        if plan is None:
            raise PlannerNotFoundError(f"Plan {plan_id} not found")
        return plan

    def list_plans(self) -> List[Dict[str, Any]]:
        return self._plans.list()

    def update_plan(self, plan_id: str, updates: Mapping[str, Any]) -> Dict[str, Any]:
        plan = self.require_plan(plan_id)
        if "id" in updates and updates["id"] != plan_id:
            raise PlannerValidationError("plan id cannot be changed")
        plan.update({key: value for key, value in updates.items() if key not in {"id", "created_at"}})
        plan["updated_at"] = isoformat(self._clock())
        self._plans.save(plan_id, plan)
        return plan

    def delete_plan(self, plan_id: str) -> bool:
        try:
            return self._plans.delete(plan_id)
        except InvalidRecordIdError:
            return False

    def export_plan(self, plan_id: str, fmt: str = "json") -> str:
        return render_plan(self.require_plan(plan_id), fmt)

    # prioritisation -------------------------------------------------------

    def prioritize(
        self,
        tasks: Iterable[Task] | None = None,
        criteria: Mapping[str, Any] | None = None,
        *,
        now: datetime | None = None,
    ) -> List[PrioritizedTask]:
        current = now or self._clock()
        selected = list(tasks) if tasks is not None else self.list_tasks()
        completed = {task.id for task in self.list_tasks() if task.status == "completed"}
        completed.update(task.id for task in selected if task.status == "completed")
        ranked = []
        for task in selected:
            score = task_score(task, now=current, completed_ids=completed, criteria=criteria)
            ranked.append(PrioritizedTask(task, score, priority_from_score(score)))
        ranked.sort(key=lambda item: item.score, reverse=True)
        return ranked

    def recommend(
        self,
        project: Mapping[str, Any],
        tasks: Sequence[Task] | None = None,
        *,
        now: datetime | None = None,
    ) -> List[Recommendation]:
        current = now or self._clock()
        current_tasks = list(tasks) if tasks is not None else self.list_tasks()
        project_type = str(project.get("type") or "web")
        recommendations = [
            Recommendation(
                type="tasks",
                priority="high",
                title="Suggested Tasks for Project Type",
                description=f"Based on {project_type} project, consider these tasks:",
                items=list(SUGGESTED_TASKS.get(project_type, ())),
            )
        ]

        improvements = analyze_tasks(current_tasks, current)
        if improvements:
            recommendations.append(
                Recommendation(
                    type="improvements",
                    priority="medium",
                    title="Task Improvements",
                    description="Suggestions to improve your current tasks:",
                    items=improvements,
                )
            )

        timeline_notes: List[str] = []
        ready = [task.title for task in parallel_candidates(current_tasks)]
        if len(ready) > 1:
            timeline_notes.append(f"Consider running these tasks in parallel: {', '.join(ready[:5])}")
        path = critical_path([task for task in current_tasks if task.is_open])
        if path:
            hours = sum(task.estimated_hours for task in path)
            timeline_notes.append(
                f"Focus on critical path tasks ({hours:g}h): {' -> '.join(task.title for task in path)}"
            )
        if timeline_notes:
            recommendations.append(
                Recommendation(
                    type="timeline",
                    priority="medium",
                    title="Timeline Optimizations",
                    description="Ways to optimize your project timeline:",
                    items=timeline_notes,
                )
            )
        return recommendations

    def critical_path(self) -> List[Task]:
        return critical_path([task for task in self.list_tasks() if task.is_open])


def build_timeline(phases: Sequence[Phase], start: datetime) -> Dict[str, Any]:
    cursor = start
    entries: List[Dict[str, Any]] = []
    total = 0
    for phase in phases:
        end = cursor + timedelta(days=phase.duration)
        entries.append(
            {
                "name": phase.name,
                "start_date": isoformat(cursor),
                "end_date": isoformat(end),
                "duration": phase.duration,
            }
        )
        cursor = end
        total += phase.duration
    return {
        "start_date": isoformat(start),
        "end_date": isoformat(cursor),
        "total_duration": total,
        "phases": entries,
    }


def identify_risks(project: Mapping[str, Any], resources: Mapping[str, Any], timeline: Mapping[str, Any]) -> List[Risk]:
    risks: List[Risk] = []
    if project.get("complexity") == "high":
        risks.append(
            Risk(
                "technical",
                "high",
                "High complexity may lead to technical challenges",
                "Break down complex tasks into smaller, manageable pieces",
                0.7,
            )
        )
    if len(resources.get("team", [])) < 2:
        risks.append(
            Risk(
                "resource",
                "medium",
                "Limited team size may impact delivery timeline",
                "Consider additional resources or adjust timeline",
                0.6,
            )
        )
    if timeline.get("total_duration", 0) > 30:
        risks.append(
            Risk(
                "timeline",
                "medium",
                "Long project duration increases risk of scope creep",
                "Implement regular milestone reviews and scope control",
                0.5,
            )
        )
    if external_dependencies(project):
        risks.append(
            Risk(
                "dependency",
                "medium",
                "External dependencies may cause delays",
                "Identify backup solutions and maintain communication",
                0.4,
            )
        )
    return risks


def external_dependencies(project: Mapping[str, Any]) -> List[str]:
    found: List[str] = []
    for tech in project.get("technologies", []) or []:
        if isinstance(tech, Mapping) and tech.get("type") == "external" and tech.get("name"):
            found.append(str(tech["name"]))
    found.extend(str(item) for item in project.get("services", []) or [])
    return found


def build_assumptions(project_type: str) -> List[str]:
    return list(_COMMON_ASSUMPTIONS) + list(_TYPE_ASSUMPTIONS.get(project_type, ()))


def analyze_tasks(tasks: Sequence[Task], now: datetime) -> List[str]:
    notes: List[str] = []
    open_tasks = [task for task in tasks if task.is_open]
    overdue = [task for task in open_tasks if task.due_date and days_until(task.due_date, now) < 0]
    if overdue:
        notes.append(
            f"You have {len(overdue)} overdue tasks. Consider reprioritizing or adjusting deadlines."
        )
    without_deps = [task for task in open_tasks if not task.dependencies]
    if len(open_tasks) > 1 and without_deps:
        notes.append(
            f"Consider adding dependencies to {len(without_deps)} tasks to better organize your workflow."
        )
    complex_tasks = [task for task in open_tasks if task.complexity == "high"]
    if complex_tasks:
        notes.append(
            f"You have {len(complex_tasks)} high complexity tasks. Consider breaking them down into smaller tasks."
        )
    return notes


def ranked_priorities() -> List[str]:
    return sorted(PRIORITY_WEIGHTS, key=PRIORITY_WEIGHTS.__getitem__, reverse=True)


__all__ = [
    "PlannerService",
    "PrioritizedTask",
    "Recommendation",
    "SUGGESTED_TASKS",
    "analyze_tasks",
    "build_assumptions",
    "build_timeline",
    "external_dependencies",
    "identify_risks",
    "ranked_priorities",
]
