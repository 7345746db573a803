"""Workflow storage and the step runner."""

from __future__ import annotations

import os
import secrets
import shlex
import shutil
import subprocess
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping

import requests
import yaml

from managerkit.adapters.json_store import InvalidRecordIdError, JsonRecordStore, validate_record_id
from managerkit.app.events.bus import EventBus
from managerkit.domain.events import isoformat, utc_now
from managerkit.domain.workflows import (
    StepExecution,
    WorkflowDefinition,
    WorkflowDefinitionError,
    WorkflowExecution,
    WorkflowNotFoundError,
    WorkflowStep,
    WorkflowStepError,
    evaluate_condition,
    render_template,
)

DEFAULT_HTTP_TIMEOUT = 30.0
MAX_PARALLEL_WORKERS = 8
_OUTPUT_LIMIT = 4000
# file and notification steps may nest their parameters under one key
_NESTED_SECTIONS = {"file": "operation", "notification": "notification"}


def _execution_id() -> str:
    return secrets.token_hex(6)


def _clip(text: str) -> str:
    text = text.strip()
    return text if len(text) <= _OUTPUT_LIMIT else text[:_OUTPUT_LIMIT] + "..."


PREDEFINED_WORKFLOWS: Dict[str, Dict[str, Any]] = {
    "project-bootstrap": {
        "description": "Create a project skeleton with README, .gitignore and a git repository",
        "steps": [
            {
                "name": "Write README",
                "type": "file",
                "operation": "write",
                "path": "{{projectName}}/README.md",
                "content": "# {{projectName}}\n\n{{projectDescription}}\n\n## Getting Started\n\nSee docs/ for details.\n",
            },
            {
                "name": "Write .gitignore",
                "type": "file",
                "operation": "write",
                "path": "{{projectName}}/.gitignore",
                "content": "__pycache__/\n*.pyc\n.venv/\nnode_modules/\ndist/\n",
            },
            {
                "name": "Initialise git",
                "type": "command",
                "command": ["git", "init", "--quiet"],
                "cwd": "{{projectName}}",
                "on_error": "continue",
            },
            {
                "name": "Announce",
                "type": "notification",
                "message": "Project {{projectName}} bootstrapped",
                "channel": "workflows",
            },
        ],
    },
    "quality-check": {
        "description": "Byte-compile sources, run the test suite and write a quality report",
        "steps": [
            {
                "name": "Compile sources",
                "type": "command",
                "command": ["{{python}}", "-m", "compileall", "-q", "."],
                "on_error": "retry",
                "max_retries": 1,
                "retry_delay": 500,
                "output": "compileResult",
            },
            {
                "name": "Run tests",
                "type": "command",
                "command": ["{{python}}", "-m", "pytest", "-q"],
                "on_error": "continue",
                "output": "testResult",
            },
            {
                "name": "Write report",
                "type": "file",
                "operation": "write",
                "path": "quality-report.md",
                "content": "# Code Quality Report\n\nGenerated on {{date}}\n\n## Compile\n\n{{compileResult}}\n\n## Tests\n\n{{testResult}}\n",
            },
        ],
    },
}


class WorkflowStore:
    """YAML-backed workflow definitions, one file per workflow."""

    def __init__(self, directory: Path) -> None:
        self._directory = directory

    @property
    def directory(self) -> Path:
        return self._directory

    def path_for(self, name: str) -> Path:
        try:
            validate_record_id(name)
        except InvalidRecordIdError as exc:
            raise WorkflowDefinitionError(f"invalid workflow name: {name!r}") from exc
        return self._directory / f"{name}.yaml"

    def save(self, workflow: WorkflowDefinition) -> Path:
        target = self.path_for(workflow.name)
        self._directory.mkdir(parents=True, exist_ok=True)
        target.write_text(yaml.safe_dump(workflow.to_dict(), sort_keys=False, allow_unicode=True), encoding="utf-8")
        return target

    def get(self, name: str) -> WorkflowDefinition | None:
        path = self.path_for(name)
        if not path.exists():
            return None
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise WorkflowDefinitionError(f"invalid workflow file {path}: {exc}") from exc
        return WorkflowDefinition.from_dict(data, name=name)

    def list(self) -> List[WorkflowDefinition]:
        if not self._directory.exists():
            return []
        workflows: List[WorkflowDefinition] = []
        for path in sorted(self._directory.glob("*.yaml")):
            workflow = self.get(path.stem)
            if workflow is not None:
                workflows.append(workflow)
        return workflows

    def delete(self, name: str) -> bool:
        path = self.path_for(name)
        if not path.exists():
            return False
        path.unlink()
        return True


class StepRunner:
    """Executes a single step against a mutable execution context."""

    def __init__(
        self,
        *,
        bus: EventBus | None = None,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
        python: str = sys.executable,
    ) -> None:
        self._bus = bus
        self._session = session or requests.Session()
        self._sleep = sleep
        self._python = python
        self._handlers: Dict[str, Callable[[WorkflowStep, Dict[str, Any]], Dict[str, Any]]] = {
            "command": self._command,
            "script": self._script,
            "condition": self._condition,
            "parallel": self._parallel,
            "sequential": self._sequential,
            "wait": self._wait,
            "http": self._http,
            "file": self._file,
            "notification": self._notification,
        }

    def run(self, step: WorkflowStep, context: Dict[str, Any]) -> Dict[str, Any]:
        handler = self._handlers.get(step.type)
        if handler is None:
            raise WorkflowStepError(f"Unknown step type: {step.type}")
        try:
            result = handler(step, context)
        except WorkflowStepError:
            raise
        except Exception as exc:
            raise WorkflowStepError(f"step '{step.name}' raised {type(exc).__name__}: {exc}") from exc
        if step.output:
            context[step.output] = result.get("output", result.get("result", result.get("success")))
        return result

    # helpers ---------------------------------------------------------------

    @staticmethod
    def _section(step: WorkflowStep) -> Mapping[str, Any]:
        nested = step.params.get(_NESTED_SECTIONS.get(step.type, ""))
        return nested if isinstance(nested, Mapping) else step.params

    def _param(self, step: WorkflowStep, context: Mapping[str, Any], key: str, default: Any = None) -> Any:
        return render_template(self._section(step).get(key, default), context)

    @staticmethod
    def _resolve_path(raw: str, context: Mapping[str, Any]) -> Path:
        path = Path(raw).expanduser()
        base = context.get("workingDirectory")
        if not path.is_absolute() and base:
            path = Path(str(base)) / path
        return path

    def _run_process(self, argv: List[str], step: WorkflowStep, context: Mapping[str, Any]) -> Dict[str, Any]:
        cwd_param = self._param(step, context, "cwd")
        cwd = self._resolve_path(cwd_param, context) if cwd_param else context.get("workingDirectory")
        env = os.environ.copy()
        extra_env = context.get("env")
        if isinstance(extra_env, Mapping):
            env.update({str(key): str(value) for key, value in extra_env.items()})
        timeout = step.params.get("timeout")
        try:
            completed = subprocess.run(
                argv,
                cwd=str(cwd) if cwd else None,
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                timeout=timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            raise WorkflowStepError(f"command not found: {argv[0]}") from exc
        except subprocess.TimeoutExpired as exc:
            raise WorkflowStepError(f"command timed out after {timeout}s: {' '.join(argv)}") from exc
        except OSError as exc:
            raise WorkflowStepError(f"cannot run {argv[0]}: {exc}") from exc
        result = {
            "success": completed.returncode == 0,
            "returncode": completed.returncode,
            "output": _clip(completed.stdout),
        }
        if completed.returncode != 0:
            result["stderr"] = _clip(completed.stderr)
            raise WorkflowStepError(
                f"command exited with code {completed.returncode}: {_clip(completed.stderr) or ' '.join(argv)}",
                result,
            )
        return result

    # step types ------------------------------------------------------------

    def _command(self, step: WorkflowStep, context: Dict[str, Any]) -> Dict[str, Any]:
        command = self._param(step, context, "command")
        if isinstance(command, str):
            argv = shlex.split(command)
        elif isinstance(command, list):
            argv = [str(item) for item in command]
        else:
            raise WorkflowStepError(f"step '{step.name}' needs a 'command' string or list")
        if not argv:
            raise WorkflowStepError(f"step '{step.name}' has an empty command")
        return self._run_process(argv, step, context)

    def _script(self, step: WorkflowStep, context: Dict[str, Any]) -> Dict[str, Any]:
        script = self._param(step, context, "script")
        if not isinstance(script, str) or not script:
            raise WorkflowStepError(f"step '{step.name}' needs a 'script' path")
        path = self._resolve_path(script, context)
        if not path.is_file():
            raise WorkflowStepError(f"Script not found: {path}")
        args = [str(item) for item in self._param(step, context, "args", []) or []]
        return self._run_process([self._python, str(path), *args], step, context)

    def _condition(self, step: WorkflowStep, context: Dict[str, Any]) -> Dict[str, Any]:
        expression = self._param(step, context, "condition")
        return {"success": True, "result": evaluate_condition(expression)}

    def _parallel(self, step: WorkflowStep, context: Dict[str, Any]) -> Dict[str, Any]:
        nested: List[WorkflowStep] = step.params["steps"]
        outcomes: List[Dict[str, Any]] = []
        with ThreadPoolExecutor(max_workers=min(len(nested), MAX_PARALLEL_WORKERS)) as pool:
            futures = [pool.submit(self.run, item, context) for item in nested]
            for item, future in zip(nested, futures):
                try:
                    outcomes.append({"name": item.name, "status": "completed", "result": future.result()})
                except WorkflowStepError as exc:
                    outcomes.append({"name": item.name, "status": "failed", "error": str(exc)})
        failed = [item["name"] for item in outcomes if item["status"] == "failed"]
        result = {"success": not failed, "results": outcomes}
        if failed:
            raise WorkflowStepError(f"{len(failed)} of {len(nested)} parallel steps failed: {', '.join(failed)}", result)
        return result

    def _sequential(self, step: WorkflowStep, context: Dict[str, Any]) -> Dict[str, Any]:
        results = [self.run(item, context) for item in step.params["steps"]]
        return {"success": True, "results": results}

    def _wait(self, step: WorkflowStep, context: Dict[str, Any]) -> Dict[str, Any]:
        duration = self._param(step, context, "duration", 0)
        try:
            millis = float(duration)
        except (TypeError, ValueError) as exc:
            raise WorkflowStepError(f"step '{step.name}' has an invalid duration: {duration!r}") from exc
        if millis < 0:
            raise WorkflowStepError(f"step '{step.name}' has a negative duration")
        self._sleep(millis / 1000.0)
        return {"success": True, "message": f"Waited {millis:g}ms"}

    def _http(self, step: WorkflowStep, context: Dict[str, Any]) -> Dict[str, Any]:
        request = self._param(step, context, "request", {}) or {}
        url = request.get("url")
        if not isinstance(url, str) or not url:
            raise WorkflowStepError(f"step '{step.name}' needs request.url")
        method = str(request.get("method", "GET")).upper()
        try:
            response = self._session.request(
                method,
                url,
                headers=request.get("headers"),
                params=request.get("params"),
                json=request.get("json"),
                data=request.get("data"),
                timeout=float(request.get("timeout", DEFAULT_HTTP_TIMEOUT)),
            )
        except requests.RequestException as exc:
            raise WorkflowStepError(f"{method} {url} failed: {exc}") from exc
        try:
            data: Any = response.json()
        except ValueError:
            data = _clip(response.text)
        result = {"success": response.ok, "status": response.status_code, "data": data}
        if not response.ok:
            raise WorkflowStepError(f"{method} {url} returned {response.status_code}", result)
        return result

    def _file(self, step: WorkflowStep, context: Dict[str, Any]) -> Dict[str, Any]:
        operation = self._param(step, context, "operation")
        raw_path = self._param(step, context, "path")
        if not isinstance(raw_path, str) or not raw_path:
            raise WorkflowStepError(f"step '{step.name}' needs a 'path'")
        encoding = str(self._section(step).get("encoding", "utf-8"))
        path = self._resolve_path(raw_path, context)
        try:
            if operation == "read":
                if not path.is_file():
                    raise WorkflowStepError(f"File not found: {path}")
                return {"success": True, "output": path.read_text(encoding=encoding)}
            if operation in {"write", "append"}:
                content = str(self._param(step, context, "content", "") or "")
                path.parent.mkdir(parents=True, exist_ok=True)
                mode = "w" if operation == "write" else "a"
                with path.open(mode, encoding=encoding) as handle:
                    handle.write(content)
                verb = "written" if operation == "write" else "appended"
                return {"success": True, "message": f"File {verb}: {path}"}
            if operation == "delete":
                if path.exists():
                    path.unlink()
                    return {"success": True, "message": f"File deleted: {path}"}
                return {"success": True, "message": f"File not found: {path}"}
            if operation in {"copy", "move"}:
                raw_destination = self._param(step, context, "destination")
                if not isinstance(raw_destination, str) or not raw_destination:
                    raise WorkflowStepError(f"step '{step.name}' needs a 'destination'")
                destination = self._resolve_path(raw_destination, context)
                destination.parent.mkdir(parents=True, exist_ok=True)
                if operation == "copy":
                    shutil.copyfile(path, destination)
                    return {"success": True, "message": f"File copied: {path} -> {destination}"}
                shutil.move(str(path), str(destination))
                return {"success": True, "message": f"File moved: {path} -> {destination}"}
        except OSError as exc:
            raise WorkflowStepError(f"file {operation} failed for {path}: {exc}") from exc
        raise WorkflowStepError(f"Unknown file operation: {operation}")

    def _notification(self, step: WorkflowStep, context: Dict[str, Any]) -> Dict[str, Any]:
        payload = render_template(dict(self._section(step)), context)
        if "message" not in payload:
            raise WorkflowStepError(f"step '{step.name}' needs a 'message'")
        if self._bus is None:
            return {"success": True, "delivered": False, "message": payload["message"]}
        event = self._bus.publish("notification.sent", payload)
        return {"success": True, "delivered": True, "eventId": event.id, "message": payload["message"]}


class WorkflowService:
    def __init__(
        self,
        workflows_dir: Path,
        executions_dir: Path,
        *,
        bus: EventBus | None = None,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] = _execution_id,
    ) -> None:
        self._store = WorkflowStore(workflows_dir)
        self._executions = JsonRecordStore(executions_dir)
        self._bus = bus
        self._sleep = sleep
        self._clock = clock
        self._id_factory = id_factory
        self._runner = StepRunner(bus=bus, session=session, sleep=sleep)
        self._stop_requests: set[str] = set()
        self._lock = threading.Lock()

    @property
    def store(self) -> WorkflowStore:
        return self._store

    # definitions -----------------------------------------------------------

    def define(self, name: str, payload: Mapping[str, Any], *, overwrite: bool = True) -> WorkflowDefinition:
        workflow = WorkflowDefinition.from_dict(payload, name=name)
        existing = self._store.get(name)
        if existing is not None and not overwrite:
            raise WorkflowDefinitionError(f"workflow '{name}' already exists")
        now = isoformat(self._clock())
        workflow.created_at = existing.created_at if existing and existing.created_at else now
        workflow.updated_at = now
        self._store.save(workflow)
        return workflow

    def get(self, name: str) -> WorkflowDefinition | None:
        return self._store.get(name)

    def require(self, name: str) -> WorkflowDefinition:
        workflow = self._store.get(name)
        if workflow is None:
            raise WorkflowNotFoundError(f"Workflow '{name}' not found")
        return workflow

    def list(self) -> List[WorkflowDefinition]:
        return self._store.list()

    def delete(self, name: str) -> bool:
        return self._store.delete(name)

    def install_predefined(self, *, overwrite: bool = False) -> List[str]:
        installed: List[str] = []
        for name, payload in PREDEFINED_WORKFLOWS.items():
            if not overwrite and self._store.get(name) is not None:
                continue
            self.define(name, payload)
            installed.append(name)
        return installed

    # executions ------------------------------------------------------------

    def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        try:
            payload = self._executions.get(execution_id)
        except InvalidRecordIdError:
            return None
        return WorkflowExecution.from_dict(payload) if payload is not None else None

    def list_executions(self, workflow: str | None = None) -> List[WorkflowExecution]:
        executions = [WorkflowExecution.from_dict(item) for item in self._executions.list()]
        if workflow is not None:
            executions = [item for item in executions if item.workflow == workflow]
        executions.sort(key=lambda item: item.started_at, reverse=True)
        return executions

    def stop(self, execution_id: str) -> bool:
        execution = self.get_execution(execution_id)
        if execution is None or execution.finished:
            return False
        with self._lock:
            self._stop_requests.add(execution_id)
        execution.status = "stopped"
        execution.finished_at = isoformat(self._clock())
        self._save(execution)
        return True

    def _stop_requested(self, execution_id: str) -> bool:
        with self._lock:
            if execution_id in self._stop_requests:
                return True
        stored = self._executions.get(execution_id)
        return bool(stored and stored.get("status") == "stopped")

    def _save(self, execution: WorkflowExecution) -> None:
        self._executions.save(execution.id, execution.to_dict())

    def _publish(self, event_type: str, execution: WorkflowExecution) -> None:
        if self._bus is None:
            return
        data: Dict[str, Any] = {"executionId": execution.id, "workflow": execution.workflow, "status": execution.status}
        if execution.error:
            data["error"] = execution.error
        self._bus.publish(event_type, data)

    def run(self, name: str, context: Mapping[str, Any] | None = None) -> WorkflowExecution:
        workflow = self.require(name)
        started = self._clock()
        merged: Dict[str, Any] = {"python": sys.executable, "date": started.date().isoformat()}
        merged.update(context or {})
        execution = WorkflowExecution(
            id=self._id_factory(),
            workflow=workflow.name,
            status="running",
            context=merged,
            started_at=isoformat(started),
        )
        self._save(execution)
        self._publish("workflow.started", execution)

        try:
            for step in workflow.steps:
                if self._stop_requested(execution.id):
                    execution.status = "stopped"
                    break
                record = self._execute_step(step, execution.context)
                execution.steps.append(record)
                # a stop written by another process must survive this save
                if self._stop_requested(execution.id):
                    execution.status = "stopped"
                    break
                self._save(execution)
                if record.status == "failed" and step.on_error != "continue":
                    execution.status = "failed"
                    execution.error = f"{step.name}: {record.error}"
                    break
            else:
                execution.status = "completed"
        except Exception as exc:
            execution.status = "failed"
            execution.error = f"{type(exc).__name__}: {exc}"
            raise
        finally:
            if execution.status == "running":
                execution.status = "failed"
                execution.error = execution.error or "interrupted"
            execution.finished_at = isoformat(self._clock())
            with self._lock:
                self._stop_requests.discard(execution.id)
            self._save(execution)
        if execution.status == "completed":
            self._publish("workflow.completed", execution)
        elif execution.status == "failed":
            self._publish("workflow.failed", execution)
        return execution

    def _execute_step(self, step: WorkflowStep, context: Dict[str, Any]) -> StepExecution:
        record = StepExecution(
            id=secrets.token_hex(4),
            name=step.name,
            type=step.type,
            started_at=isoformat(self._clock()),
        )
        attempts_allowed = 1 + (step.max_retries if step.on_error == "retry" else 0)
        while True:
            record.attempts += 1
            try:
                record.result = self._runner.run(step, context)
            except WorkflowStepError as exc:
                record.error = str(exc)
                record.result = exc.result
                if record.attempts < attempts_allowed:
                    self._sleep(step.retry_delay / 1000.0)
                    continue
                record.status = "failed"
            else:
                record.error = None
                record.status = "completed"
            break
        record.finished_at = isoformat(self._clock())
        return record


__all__ = [
    "PREDEFINED_WORKFLOWS",
    "StepRunner",
    "WorkflowService",
    "WorkflowStore",
]
