"""Project status reports rendered as JSON, HTML or Markdown."""

from __future__ import annotations

import html
import json
import os
import subprocess
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Sequence

from managerkit.app.events.bus import read_persisted_state
from managerkit.app.planner.service import PlannerService
from managerkit.domain.events import isoformat, utc_now
from managerkit.domain.planning import days_until

REPORT_FORMATS = ("json", "html", "markdown")
_EXTENSIONS = {"json": "json", "html": "html", "markdown": "md", "md": "md"}
_TOP_EXTENSIONS = 10


class ReportError(RuntimeError):
    """Raised when a report cannot be produced."""


@dataclass(frozen=True)
class ReportResult:
    generated_at: str
    paths: Dict[str, Path]
    data: Dict[str, Any]


def collect_directory_stats(root: Path, excludes: Iterable[str] = ()) -> Dict[str, Any]:
    skipped = set(excludes)
    files = 0
    directories = 0
    total_bytes = 0
    extensions: Counter[str] = Counter()
    for current, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(name for name in dirnames if name not in skipped)
        directories += len(dirnames)
        for name in filenames:
            path = Path(current) / name
            try:
                size = path.stat().st_size
            except OSError:
                continue
            files += 1
            total_bytes += size
            extensions[path.suffix.lower() or "(none)"] += 1
    return {
        "files": files,
        "directories": directories,
        "totalBytes": total_bytes,
        "extensions": dict(extensions.most_common(_TOP_EXTENSIONS)),
    }


def _git(root: Path, *args: str) -> str | None:
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=root,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            check=True,
            text=True,
        )
    except (subprocess.CalledProcessError, FileNotFoundError):
        return None
    return result.stdout.strip()


def collect_git_info(root: Path) -> Dict[str, Any]:
    inside = _git(root, "rev-parse", "--is-inside-work-tree")
    if inside != "true":
        return {"available": False}
    info: Dict[str, Any] = {"available": True, "branch": _git(root, "rev-parse", "--abbrev-ref", "HEAD")}
    head = _git(root, "log", "-1", "--pretty=format:%H\x1f%an\x1f%ad\x1f%s", "--date=iso-strict")
    if head:
        sha, author, date, subject = (head.split("\x1f") + ["", "", "", ""])[:4]
        info["head"] = {"sha": sha, "author": author, "date": date, "summary": subject}
    count = _git(root, "rev-list", "--count", "HEAD")
    info["commits"] = int(count) if count and count.isdigit() else 0
    status = _git(root, "status", "--porcelain")
    info["dirty"] = bool(status)
    return info


def collect_planner_summary(planner: PlannerService, now: datetime) -> Dict[str, Any]:
    tasks = planner.list_tasks()
    by_status = Counter(task.status for task in tasks)
    by_priority = Counter(task.priority for task in tasks)
    overdue = sum(1 for task in tasks if task.is_open and task.due_date and days_until(task.due_date, now) < 0)
    estimated = sum(task.estimated_hours for task in tasks)
    actual = sum(task.actual_hours for task in tasks)
    return {
        "tasks": len(tasks),
        "byStatus": dict(sorted(by_status.items())),
        "byPriority": dict(sorted(by_priority.items())),
        "overdue": overdue,
        "estimatedHours": round(estimated, 2),
        "actualHours": round(actual, 2),
        "plans": len(planner.list_plans()),
    }


class ReportService:
    def __init__(
        self,
        report_dir: Path,
        planner: PlannerService,
        *,
        state_dir: Path | None = None,
        excludes: Sequence[str] = (),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._report_dir = report_dir
        self._planner = planner
        self._state_dir = state_dir
        self._excludes = tuple(excludes)
        self._clock = clock

    @property
    def report_dir(self) -> Path:
        return self._report_dir

    def collect(self, project_root: Path) -> Dict[str, Any]:
        root = project_root.expanduser()
        if not root.is_dir():
            raise ReportError(f"project root is not a directory: {root}")
        now = self._clock()
        data: Dict[str, Any] = {
            "generated_at": isoformat(now),
            "project": {"name": root.resolve().name, "path": str(root.resolve())},
            "files": collect_directory_stats(root, self._excludes),
            "git": collect_git_info(root),
            "planner": collect_planner_summary(self._planner, now),
        }
        if self._state_dir is not None:
            bus_state = read_persisted_state(self._state_dir)
            if bus_state is not None:
                data["eventBus"] = bus_state
        return data

    def generate(self, project_root: Path, formats: Sequence[str] = ("json",)) -> ReportResult:
        unknown = [fmt for fmt in formats if fmt not in _EXTENSIONS]
        if unknown:
            raise ReportError(
                f"unsupported report format(s): {', '.join(unknown)} (expected {', '.join(REPORT_FORMATS)})"
            )
        if not formats:
            raise ReportError("at least one report format is required")
        data = self.collect(project_root)
        stamp = self._clock().strftime("%Y%m%dT%H%M%SZ")
        try:
            self._report_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ReportError(f"cannot create report directory {self._report_dir}: {exc}") from exc
        paths: Dict[str, Path] = {}
        for fmt in dict.fromkeys(formats):
            extension = _EXTENSIONS[fmt]
            target = self._report_dir / f"report-{stamp}.{extension}"
            target.write_text(render_report(data, fmt), encoding="utf-8")
            paths[fmt] = target
        return ReportResult(generated_at=data["generated_at"], paths=paths, data=data)

    def list_reports(self) -> List[Path]:
        if not self._report_dir.exists():
            return []
        return sorted(self._report_dir.glob("report-*.*"), reverse=True)


def render_report(data: Dict[str, Any], fmt: str) -> str:
    if fmt == "json":
        return json.dumps(data, ensure_ascii=False, indent=2) + "\n"
    if fmt in {"markdown", "md"}:
        return _render_markdown(data)
    if fmt == "html":
        return _render_html(data)
    raise ReportError(f"unsupported report format: {fmt}")


def _summary_rows(data: Dict[str, Any]) -> List[tuple[str, str]]:
    files = data["files"]
    planner = data["planner"]
    git = data["git"]
    rows = [
        ("Files", str(files["files"])),
        ("Directories", str(files["directories"])),
        ("Total size (bytes)", str(files["totalBytes"])),
        ("Tasks", str(planner["tasks"])),
        ("Overdue tasks", str(planner["overdue"])),
        ("Plans", str(planner["plans"])),
        ("Estimated hours", f"{planner['estimatedHours']:g}"),
    ]
    if git.get("available"):
        rows.append(("Branch", str(git.get("branch") or "")))
        rows.append(("Commits", str(git.get("commits", 0))))
        head = git.get("head") or {}
        if head:
            rows.append(("Last commit", f"{head.get('sha', '')[:10]} {head.get('summary', '')}"))
    else:
        rows.append(("Git", "not available"))
    bus = data.get("eventBus")
    if bus and bus.get("status") == "ok":
        rows.append(("Event history", str(bus.get("historySize", 0))))
        rows.append(("Subscribers", str(bus.get("subscribers", 0))))
    return rows


def _render_markdown(data: Dict[str, Any]) -> str:
    lines = [
        f"# Project report: {data['project']['name']}",
        "",
        f"Generated at {data['generated_at']}",
        "",
        "## Summary",
        "",
        "| Metric | Value |",
        "| --- | --- |",
    ]
    lines += [f"| {label} | {value} |" for label, value in _summary_rows(data)]
    lines += ["", "## Tasks by status", ""]
    by_status = data["planner"]["byStatus"]
    lines += [f"- {status}: {count}" for status, count in by_status.items()] or ["- none"]
    lines += ["", "## File types", ""]
    lines += [f"- `{ext}`: {count}" for ext, count in data["files"]["extensions"].items()] or ["- none"]
    lines.append("")
    return "\n".join(lines)


def _render_html(data: Dict[str, Any]) -> str:
    esc = html.escape
    rows = "\n".join(
        f"      <tr><th>{esc(label)}</th><td>{esc(value)}</td></tr>" for label, value in _summary_rows(data)
    )
    statuses = "\n".join(
        f"      <li>{esc(status)}: {count}</li>" for status, count in data["planner"]["byStatus"].items()
    )
    extensions = "\n".join(
        f"      <li><code>{esc(ext)}</code>: {count}</li>" for ext, count in data["files"]["extensions"].items()
    )
    payload = json.dumps(data, ensure_ascii=False).replace("</", "<\\/")
    return (
        "<!doctype html>\n"
        '<html lang="en">\n'
        "<head>\n"
        '  <meta charset="utf-8">\n'
        f"  <title>Project report: {esc(data['project']['name'])}</title>\n"
        "  <style>body{font-family:system-ui,sans-serif;margin:2rem}th{text-align:left;padding-right:1rem}</style>\n"
        "</head>\n"
        "<body>\n"
        f"  <h1>Project report: {esc(data['project']['name'])}</h1>\n"
        f"  <p>Generated at {esc(data['generated_at'])}</p>\n"
        "  <table>\n"
        f"{rows}\n"
        "  </table>\n"
        "  <h2>Tasks by status</h2>\n"
        "  <ul>\n"
        f"{statuses}\n"
        "  </ul>\n"
        "  <h2>File types</h2>\n"
        "  <ul>\n"
        f"{extensions}\n"
        "  </ul>\n"
        f'  <script type="application/json" id="report-data">{payload}</script>\n'
        "</body>\n"
        "</html>\n"
    )


__all__ = [
    "REPORT_FORMATS",
    "ReportError",
    "ReportResult",
    "ReportService",
    "collect_directory_stats",
    "collect_git_info",
    "collect_planner_summary",
    "render_report",
]
