"""Render stored plans as JSON, Markdown or CSV."""

from __future__ import annotations

import csv
import io
import json
from typing import Any, Callable, Dict, List, Mapping

from managerkit.domain.planning import PlannerValidationError

EXPORT_FORMATS = ("json", "markdown", "csv")


def _to_json(plan: Mapping[str, Any]) -> str:
    return json.dumps(plan, ensure_ascii=False, indent=2) + "\n"


def _to_markdown(plan: Mapping[str, Any]) -> str:
    lines: List[str] = [f"# {plan.get('project_name', 'Project plan')}", ""]
    if plan.get("description"):
        lines += [str(plan["description"]), ""]
    lines += [
        f"- Type: {plan.get('project_type', 'unknown')}",
        f"- Status: {plan.get('status', 'draft')}",
        f"- Created: {plan.get('created_at', '')}",
    ]
    timeline = plan.get("timeline") or {}
    if timeline:
        lines.append(
            f"- Timeline: {timeline.get('start_date', '')} to {timeline.get('end_date', '')}"
            f" ({timeline.get('total_duration', 0)} days)"
        )
    lines.append("")

    lines += ["## Phases", ""]
    for index, phase in enumerate(plan.get("phases", []), start=1):
        lines.append(f"### {index}. {phase['name']}")
        lines.append("")
        lines.append(f"{phase.get('description', '')}")
        lines.append("")
        lines.append(f"- Duration: {phase.get('duration', 0)} days")
        lines.append(f"- Priority: {phase.get('priority', 'medium')}")
        for task in phase.get("tasks", []):
            lines.append(f"  - [ ] {task}")
        lines.append("")

    risks = plan.get("risks") or []
    if risks:
        lines += ["## Risks", "", "| Type | Severity | Probability | Description | Mitigation |", "| --- | --- | --- | --- | --- |"]
        for risk in risks:
            lines.append(
                f"| {risk['type']} | {risk['severity']} | {risk['probability']} "
                f"| {risk['description']} | {risk['mitigation']} |"
            )
        lines.append("")

    assumptions = plan.get("assumptions") or []
    if assumptions:
        lines += ["## Assumptions", ""]
        lines += [f"- {item}" for item in assumptions]
        lines.append("")
    return "\n".join(lines)


def _to_csv(plan: Mapping[str, Any]) -> str:
    dates: Dict[str, Mapping[str, Any]] = {
        entry["name"]: entry for entry in (plan.get("timeline") or {}).get("phases", [])
    }
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(["phase", "task", "duration_days", "priority", "start_date", "end_date"])
    for phase in plan.get("phases", []):
        span = dates.get(phase["name"], {})
        for task in phase.get("tasks", []) or [""]:
            writer.writerow(
                [
                    phase["name"],
                    task,
                    phase.get("duration", 0),
                    phase.get("priority", ""),
                    span.get("start_date", ""),
                    span.get("end_date", ""),
                ]
            )
    return buffer.getvalue()


_RENDERERS: Dict[str, Callable[[Mapping[str, Any]], str]] = {
    "json": _to_json,
    "markdown": _to_markdown,
    "md": _to_markdown,
    "csv": _to_csv,
}


def render_plan(plan: Mapping[str, Any], fmt: str) -> str:
    renderer = _RENDERERS.get(fmt.lower())
    if renderer is None:
        raise PlannerValidationError(
            f"unsupported export format '{fmt}' (expected one of {', '.join(EXPORT_FORMATS)})"
        )
    return renderer(plan)


__all__ = ["EXPORT_FORMATS", "render_plan"]
