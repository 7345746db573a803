"""Workflow definitions, execution records and the safe expression helpers."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Tuple

STEP_TYPES = (
    "command",
    "script",
    "condition",
    "parallel",
    "sequential",
    "wait",
    "http",
    "file",
    "notification",
)
ON_ERROR_POLICIES = ("stop", "continue", "retry")
FILE_OPERATIONS = ("read", "write", "append", "delete", "copy", "move")
EXECUTION_STATUSES = ("running", "completed", "failed", "stopped")
_NESTED_TYPES = {"parallel", "sequential"}

# camelCase spellings accepted from hand-written definitions
_STEP_ALIASES = {"onError": "on_error", "maxRetries": "max_retries", "retryDelay": "retry_delay"}
_STEP_FIELDS = {"name", "type", "on_error", "max_retries", "retry_delay", "output"}

_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")
_CONDITION = re.compile(r"^\s*(?P<left>.+?)\s*(?P<op>==|!=|<=|>=|<|>|\bnot\s+in\b|\bin\b)\s*(?P<right>.+?)\s*$")
_QUOTED = re.compile(r"'[^']*'|\"(?:[^\"\\]|\\.)*\"")


class WorkflowError(RuntimeError):
    """Base error for workflow operations."""


class WorkflowDefinitionError(WorkflowError, ValueError):
    """Raised when a workflow document is malformed."""


class WorkflowNotFoundError(WorkflowError, LookupError):
    """Raised when a workflow or execution id is unknown."""


class WorkflowStepError(WorkflowError):
    """Raised when a single step fails; ``result`` keeps partial output."""

    def __init__(self, message: str, result: Dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.result = result


@dataclass
class WorkflowStep:
    name: str
    type: str
    on_error: str = "stop"
    max_retries: int = 3
    retry_delay: int = 1000
    output: str | None = None
    params: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any], *, where: str = "steps") -> "WorkflowStep":
        if not isinstance(payload, Mapping):
            raise WorkflowDefinitionError(f"{where}: step must be a mapping")
        data = {_STEP_ALIASES.get(key, key): value for key, value in payload.items()}
        name = data.get("name")
        if not isinstance(name, str) or not name.strip():
            raise WorkflowDefinitionError(f"{where}: step name is required")
        step_type = data.get("type")
        if step_type not in STEP_TYPES:
            raise WorkflowDefinitionError(f"{where}/{name}: unknown step type {step_type!r}")
        on_error = data.get("on_error", "stop")
        if on_error not in ON_ERROR_POLICIES:
            raise WorkflowDefinitionError(f"{where}/{name}: on_error must be one of {', '.join(ON_ERROR_POLICIES)}")
        max_retries = data.get("max_retries", 3)
        retry_delay = data.get("retry_delay", 1000)
        for label, value in (("max_retries", max_retries), ("retry_delay", retry_delay)):
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise WorkflowDefinitionError(f"{where}/{name}: {label} must be a non-negative integer")
        params = {key: value for key, value in data.items() if key not in _STEP_FIELDS}
        if step_type in _NESTED_TYPES:
            nested = params.get("steps")
            if not isinstance(nested, list) or not nested:
                raise WorkflowDefinitionError(f"{where}/{name}: {step_type} step needs a non-empty 'steps' list")
            params["steps"] = [
                WorkflowStep.from_dict(item, where=f"{where}/{name}") for item in nested
            ]
        return cls(
            name=name,
            type=step_type,
            on_error=on_error,
            max_retries=max_retries,
            retry_delay=retry_delay,
            output=data.get("output"),
            params=params,
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"name": self.name, "type": self.type, "on_error": self.on_error}
        if self.on_error == "retry":
            payload["max_retries"] = self.max_retries
            payload["retry_delay"] = self.retry_delay
        if self.output:
            payload["output"] = self.output
        for key, value in self.params.items():
            if key == "steps" and self.type in _NESTED_TYPES:
                payload["steps"] = [item.to_dict() for item in value]
            else:
                payload[key] = value
        return payload


@dataclass
class WorkflowDefinition:
    name: str
    description: str
    steps: List[WorkflowStep]
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any], *, name: str | None = None) -> "WorkflowDefinition":
        if not isinstance(payload, Mapping):
            raise WorkflowDefinitionError("workflow definition must be a mapping")
        # accept the nested {"definition": {...}} layout as well as a flat one
        body = payload.get("definition") if isinstance(payload.get("definition"), Mapping) else payload
        workflow_name = name or payload.get("name") or body.get("name")
        if not isinstance(workflow_name, str) or not workflow_name.strip():
            raise WorkflowDefinitionError("workflow name is required")
        raw_steps = body.get("steps")
        if not isinstance(raw_steps, list) or not raw_steps:
            raise WorkflowDefinitionError(f"workflow '{workflow_name}' needs a non-empty 'steps' list")
        steps = [WorkflowStep.from_dict(item, where=workflow_name) for item in raw_steps]
        return cls(
            name=workflow_name,
            description=str(body.get("description", "")),
            steps=steps,
            created_at=str(payload.get("created_at", "")),
            updated_at=str(payload.get("updated_at", "")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "steps": [step.to_dict() for step in self.steps],
        }


@dataclass
class StepExecution:
    id: str
    name: str
    type: str
    status: str = "running"
    started_at: str = ""
    finished_at: str | None = None
    attempts: int = 0
    result: Any = None
    error: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "status": self.status,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "attempts": self.attempts,
            "result": self.result,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "StepExecution":
        return cls(**{key: payload.get(key) for key in cls.__dataclass_fields__ if key in payload})


@dataclass
class WorkflowExecution:
    id: str
    workflow: str
    status: str
    context: Dict[str, Any]
    started_at: str
    steps: List[StepExecution] = field(default_factory=list)
    finished_at: str | None = None
    error: str | None = None

    @property
    def finished(self) -> bool:
        return self.status != "running"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workflow": self.workflow,
            "status": self.status,
            "context": self.context,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "error": self.error,
            "steps": [step.to_dict() for step in self.steps],
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "WorkflowExecution":
        return cls(
            id=str(payload["id"]),
            workflow=str(payload["workflow"]),
            status=str(payload.get("status", "running")),
            context=dict(payload.get("context") or {}),
            started_at=str(payload.get("started_at", "")),
            steps=[StepExecution.from_dict(item) for item in payload.get("steps", [])],
            finished_at=payload.get("finished_at"),
            error=payload.get("error"),
        )


# templating ----------------------------------------------------------------


def render_template(value: Any, context: Mapping[str, Any]) -> Any:
    """Substitute ``{{key}}`` placeholders in strings, recursing into lists and mappings."""

    if isinstance(value, str):

        def _replace(match: re.Match[str]) -> str:
            key = match.group(1)
            if key not in context or context[key] is None:
                return match.group(0)
            return str(context[key])

        return _PLACEHOLDER.sub(_replace, value)
    if isinstance(value, list):
        return [render_template(item, context) for item in value]
    if isinstance(value, Mapping):
        return {key: render_template(item, context) for key, item in value.items()}
    return value


# conditions ----------------------------------------------------------------


def _operand(token: str) -> Any:
    token = token.strip()
    if len(token) >= 2 and token[0] == token[-1] == "'":
        return token[1:-1]
    try:
        return json.loads(token)
    except json.JSONDecodeError:
        return token


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in {"", "0", "false", "no", "off", "null", "none"}
    return bool(value)


def _mask_quoted(expression: str) -> str:
    # blank out quoted text so operators inside string literals are not matched
    return _QUOTED.sub(lambda m: m.group(0)[0] + "_" * (len(m.group(0)) - 2) + m.group(0)[-1], expression)


def parse_condition(expression: str) -> Tuple[Any, str | None, Any]:
    match = _CONDITION.match(_mask_quoted(expression))
    if match is None:
        return _operand(expression), None, None
    op = re.sub(r"\s+", " ", match.group("op"))
    left = expression[match.start("left") : match.end("left")]
    right = expression[match.start("right") : match.end("right")]
    return _operand(left), op, _operand(right)


def evaluate_condition(expression: str) -> bool:
    """Evaluate ``left op right`` over literal operands without executing code."""

    if not isinstance(expression, str) or not expression.strip():
        raise WorkflowStepError("condition must be a non-empty string")
    left, op, right = parse_condition(expression)
    if op is None:
        return _truthy(left)
    if op == "==":
        return left == right
    if op == "!=":
        return left != right
    if op in {"in", "not in"}:
        if isinstance(right, (list, dict)):
            found = left in right
        else:
            found = str(left) in str(right)
        return found if op == "in" else not found
    try:
        if op == "<":
            return left < right
        if op == "<=":
            return left <= right
        if op == ">":
            return left > right
        return left >= right
    except TypeError as exc:
        raise WorkflowStepError(f"cannot compare {left!r} {op} {right!r}") from exc


__all__ = [
    "EXECUTION_STATUSES",
    "FILE_OPERATIONS",
    "ON_ERROR_POLICIES",
    "STEP_TYPES",
    "StepExecution",
    "WorkflowDefinition",
    "WorkflowDefinitionError",
    "WorkflowError",
    "WorkflowExecution",
    "WorkflowNotFoundError",
    "WorkflowStep",
    "WorkflowStepError",
    "evaluate_condition",
    "parse_condition",
    "render_template",
]
