"""Task and plan records plus the pure scheduling helpers behind the planner."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Sequence

from managerkit.domain.events import isoformat, parse_timestamp


class PlannerError(RuntimeError):
    """Base error for planner operations."""


class PlannerValidationError(PlannerError, ValueError):
    """Raised when task or plan input is invalid."""


class PlannerNotFoundError(PlannerError, LookupError):
    """Raised when a task or plan id is unknown."""


class DependencyCycleError(PlannerError):
    """Raised when task dependencies form a cycle."""


PRIORITY_WEIGHTS: Dict[str, int] = {"critical": 10, "high": 8, "medium": 5, "low": 2, "optional": 1}
COMPLEXITY_WEIGHTS: Dict[str, int] = {"low": 1, "medium": 2, "high": 3}
TASK_STATUSES = ("pending", "in_progress", "completed", "blocked", "cancelled")
CLOSED_STATUSES = frozenset({"completed", "cancelled"})

_SCORE_THRESHOLDS = ((80, "critical"), (60, "high"), (40, "medium"), (20, "low"))


@dataclass
class Task:
    id: str
    title: str
    description: str = ""
    priority: str = "medium"
    category: str = "general"
    estimated_hours: float = 1.0
    complexity: str = "medium"
    dependencies: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    assignee: str | None = None
    status: str = "pending"
    created_at: str = ""
    updated_at: str = ""
    due_date: str | None = None
    actual_hours: float = 0.0
    progress: float = 0.0
    notes: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        validate_task_fields(asdict(self))

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Task":
        known = {name for name in cls.__dataclass_fields__}
        data = {key: value for key, value in payload.items() if key in known}
        missing = [name for name in ("id", "title") if name not in data]
        if missing:
            raise PlannerValidationError(f"task record is missing {', '.join(missing)}")
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @property
    def is_open(self) -> bool:
        return self.status not in CLOSED_STATUSES


def validate_task_fields(data: Mapping[str, Any]) -> None:
    title = data.get("title")
    if not isinstance(title, str) or not title.strip():
        raise PlannerValidationError("task title must be a non-empty string")
    if data.get("priority") not in PRIORITY_WEIGHTS:
        raise PlannerValidationError(
            f"task priority must be one of {', '.join(PRIORITY_WEIGHTS)}"
        )
    if data.get("complexity") not in COMPLEXITY_WEIGHTS:
        raise PlannerValidationError(
            f"task complexity must be one of {', '.join(COMPLEXITY_WEIGHTS)}"
        )
    if data.get("status") not in TASK_STATUSES:
        raise PlannerValidationError(f"task status must be one of {', '.join(TASK_STATUSES)}")
    progress = data.get("progress", 0)
    if not isinstance(progress, (int, float)) or not 0 <= progress <= 1:
        raise PlannerValidationError("task progress must be a number between 0 and 1")
    hours = data.get("estimated_hours", 0)
    if not isinstance(hours, (int, float)) or hours < 0:
        raise PlannerValidationError("task estimated_hours must be a non-negative number")
    dependencies = data.get("dependencies", [])
    if not isinstance(dependencies, list) or not all(isinstance(item, str) for item in dependencies):
        raise PlannerValidationError("task dependencies must be a list of task ids")
    due = data.get("due_date")
    if due is not None:
        try:
            parse_timestamp(str(due))
        except ValueError as exc:
            raise PlannerValidationError(f"task due_date is not an ISO date: {due}") from exc


@dataclass
class Phase:
    name: str
    description: str
    tasks: List[str]
    duration: int
    priority: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Risk:
    type: str
    severity: str
    description: str
    mitigation: str
    probability: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# scoring -------------------------------------------------------------------


def days_until(due_date: str, now: datetime) -> int:
    due = parse_timestamp(due_date)
    if due.tzinfo is None:
        due = due.replace(tzinfo=now.tzinfo)
    return math.ceil((due - now).total_seconds() / 86400)


def priority_from_score(score: int) -> str:
    for threshold, label in _SCORE_THRESHOLDS:
        if score >= threshold:
            return label
    return "optional"


def task_score(
    task: Task,
    *,
    now: datetime,
    completed_ids: Iterable[str] = (),
    criteria: Mapping[str, Any] | None = None,
) -> int:
    criteria = criteria or {}
    score = PRIORITY_WEIGHTS.get(task.priority, 5) * 10.0

    if task.due_date:
        remaining = days_until(task.due_date, now)
        if remaining < 0:
            score += 50
        elif remaining < 3:
            score += 30
        elif remaining < 7:
            score += 15

    score += COMPLEXITY_WEIGHTS.get(task.complexity, 2)

    if task.dependencies:
        done = set(completed_ids)
        ratio = sum(1 for dep in task.dependencies if dep in done) / len(task.dependencies)
        score += ratio * 20

    if task.progress > 0:
        score += task.progress * 5

    if criteria.get("category") and task.category == criteria["category"]:
        score += 10
    if criteria.get("assignee") and task.assignee == criteria["assignee"]:
        score += 5
    return int(math.floor(score + 0.5))


# dependency graph ---------------------------------------------------------


def _topological_order(tasks: Sequence[Task]) -> List[Task]:
    by_id = {task.id: task for task in tasks}
    order: List[Task] = []
    state: Dict[str, int] = {}

    def visit(task: Task, trail: List[str]) -> None:
        mark = state.get(task.id, 0)
        if mark == 2:
            return
        if mark == 1:
            cycle = trail[trail.index(task.id):] + [task.id]
            raise DependencyCycleError("dependency cycle: " + " -> ".join(cycle))
        state[task.id] = 1
        for dep in task.dependencies:
            if dep in by_id:
                visit(by_id[dep], trail + [task.id])
        state[task.id] = 2
        order.append(task)

    for task in tasks:
        visit(task, [])
    return order


def critical_path(tasks: Sequence[Task]) -> List[Task]:
    """Longest chain of dependent tasks weighted by estimated hours."""

    if not tasks:
        return []
    order = _topological_order(tasks)
    finish: Dict[str, float] = {}
    previous: Dict[str, str | None] = {}
    for task in order:
        best_dep: str | None = None
        best_finish = 0.0
        for dep in task.dependencies:
            if dep in finish and finish[dep] > best_finish:
                best_dep, best_finish = dep, finish[dep]
        finish[task.id] = best_finish + float(task.estimated_hours)
        previous[task.id] = best_dep

    by_id = {task.id: task for task in tasks}
    end = max(order, key=lambda item: finish[item.id]).id
    path: List[Task] = []
    cursor: str | None = end
    while cursor is not None:
        path.append(by_id[cursor])
        cursor = previous[cursor]
    path.reverse()
    return path


def parallel_candidates(tasks: Sequence[Task]) -> List[Task]:
    """Open tasks whose known dependencies are all closed."""

    status = {task.id: task.status for task in tasks}
    ready: List[Task] = []
    for task in tasks:
        if not task.is_open:
            continue
        blockers = [dep for dep in task.dependencies if dep in status and status[dep] not in CLOSED_STATUSES]
        if not blockers:
            ready.append(task)
    return ready


__all__ = [
    "CLOSED_STATUSES",
    "COMPLEXITY_WEIGHTS",
    "DependencyCycleError",
    "PRIORITY_WEIGHTS",
    "Phase",
    "PlannerError",
    "PlannerNotFoundError",
    "PlannerValidationError",
    "Risk",
    "TASK_STATUSES",
    "Task",
    "critical_path",
    "days_until",
    "isoformat",
    "parallel_candidates",
    "priority_from_score",
    "task_score",
    "validate_task_fields",
]
