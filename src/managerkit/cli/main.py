#!/usr/bin/env python3
"""Entry point for the managerctl CLI."""

from __future__ import annotations

import argparse
import json
import sys
import time
from pathlib import Path
from textwrap import dedent
from typing import Any, Callable, Dict, Iterable, List

import yaml

from managerkit import __version__
from managerkit.adapters.json_store import RecordStoreError
from managerkit.app.backup.service import BackupError, BackupService
from managerkit.app.events.bus import EventBus
from managerkit.app.events.web import EventBusWebApp, EventBusWebConfig
from managerkit.app.gateway.service import GatewayService
from managerkit.app.gateway.web import GatewayWebApp
from managerkit.app.planner.export import EXPORT_FORMATS
from managerkit.app.planner.service import PlannerService, ranked_priorities
from managerkit.app.projects.service import ProjectScanError, scan as scan_project
from managerkit.app.reports.service import REPORT_FORMATS, ReportError, ReportService
from managerkit.app.status.service import StatusService
from managerkit.app.workflows.service import WorkflowService
from managerkit.config import ConfigError, PlatformConfig, load_config
from managerkit.domain.events import EventBusError
from managerkit.domain.gateway import HTTP_METHODS, ServiceRegistry, ServiceRegistryError
from managerkit.domain.planning import COMPLEXITY_WEIGHTS, TASK_STATUSES, PlannerError, Task
from managerkit.domain.workflows import WorkflowError
from managerkit.settings import SETTINGS
from managerkit.utils.telemetry import clear as telemetry_clear
from managerkit.utils.telemetry import recent_events as telemetry_recent
from managerkit.utils.telemetry import record_structured_event, summarize as telemetry_summarize

HELP_OVERVIEW = dedent(
    """
    Project management automation toolkit.

    Services:
      - managerctl events serve    - event bus HTTP API
      - managerctl gateway serve   - API gateway reverse proxy

    Everyday commands:
      - managerctl tasks create "Write docs" --priority high
      - managerctl plans create my-app --type web
      - managerctl workflows install && managerctl workflows run quality-check
      - managerctl backup create . --label nightly
    """
)


# helpers -------------------------------------------------------------------


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000


def _record(event: str, component: str, start: float, *, status: str = "success", payload: Dict[str, Any] | None = None) -> None:
    record_structured_event(
        SETTINGS,
        event,
        payload=payload or {},
        status=status,
        component=component,
        level="error" if status == "error" else "info",
        duration_ms=_elapsed_ms(start),
    )


def _fail(event: str, component: str, start: float, exc: Exception) -> int:
    print(f"{component} error: {exc}", file=sys.stderr)
    _record(event, component, start, status="error", payload={"error": str(exc)})
    return 1


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def _load_platform_config(args: argparse.Namespace) -> PlatformConfig:
    override = getattr(args, "config", None)
    return load_config(SETTINGS, Path(override).expanduser() if override else None)


def _parse_json_option(raw: str | None, label: str) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"{label} is not valid JSON: {exc}") from exc


def _parse_assignments(items: Iterable[str]) -> Dict[str, str]:
    values: Dict[str, str] = {}
    for item in items:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise ValueError(f"expected KEY=VALUE, got {item!r}")
        values[key] = value
    return values


def _build_planner() -> PlannerService:
    return PlannerService(SETTINGS.tasks_dir, SETTINGS.plans_dir)


def _build_bus(config: PlatformConfig) -> EventBus:
    bus = EventBus(config.event_bus, log_dir=SETTINGS.log_dir, state_dir=SETTINGS.state_dir)
    bus.load_state()
    return bus


def _build_registry(config: PlatformConfig) -> ServiceRegistry:
    if config.gateway.services_file:
        path = Path(config.gateway.services_file).expanduser()
        if not path.is_absolute():
            path = SETTINGS.home_dir / path
        return ServiceRegistry.load(path)
    return ServiceRegistry()


def _build_workflows(bus: EventBus | None = None) -> WorkflowService:
    return WorkflowService(SETTINGS.workflows_dir, SETTINGS.executions_dir, bus=bus)


def _build_backups(config: PlatformConfig) -> BackupService:
    return BackupService(SETTINGS.backup_dir, excludes=config.backup_excludes, keep=config.backup_keep)


def _print_task(task: Task) -> None:
    due = f" due {task.due_date}" if task.due_date else ""
    print(f"{task.id}\t[{task.status}] {task.title} ({task.priority}, {task.estimated_hours:g}h){due}")


# status / config -------------------------------------------------------------


def _status_cmd(args: argparse.Namespace) -> int:
    start = time.perf_counter()
    try:
        config = _load_platform_config(args)
        gateway = GatewayService(_build_registry(config), config.gateway) if args.gateway else None
        service = StatusService(
            SETTINGS,
            config,
            planner=_build_planner(),
            workflows=_build_workflows(),
            backups=_build_backups(config),
            gateway=gateway,
        )
        payload = service.collect(include_gateway=args.gateway)
    except (ConfigError, ServiceRegistryError, RecordStoreError, WorkflowError, BackupError, PlannerError) as exc:
        return _fail("status", "status", start, exc)
    _record("status", "status", start, payload={"gateway": bool(args.gateway)})
    if args.json:
        _print_json(payload)
        return 0
    planner = payload["planner"]
    bus = payload["eventBus"]
    latest = payload["backups"]["latest"]
    print(f"managerkit {payload['version']} home={payload['home']}")
    print(f"Config: {payload['config']['path']} ({'present' if payload['config']['exists'] else 'defaults'})")
    print(f"Tasks: {planner['tasks']} ({planner['open']} open), plans: {planner['plans']}")
    print(f"Workflows: {payload['workflows']['defined']} defined, {payload['workflows']['executions']} executions")
    if bus.get("status") == "ok":
        print(f"Event bus: {bus['historySize']} events in history, {bus['subscribers']} subscribers")
    else:
        print(f"Event bus: {bus.get('status')}")
    print(f"Backups: {payload['backups']['count']}" + (f", latest {latest['id']}" if latest else ""))
    if "gateway" in payload:
        print(f"Gateway: {payload['gateway']['status']}")
        for key, item in payload["gateway"]["services"].items():
            print(f"  {key}: {item['status']}")
    return 0


def _config_cmd(args: argparse.Namespace) -> int:
    start = time.perf_counter()
    if args.config_command == "show":
        try:
            config = _load_platform_config(args)
        except ConfigError as exc:
            return _fail("config.show", "config", start, exc)
        _record("config.show", "config", start)
        payload = {"source": str(config.source) if config.source else None, "config": config.raw}
        if args.json:
            _print_json(payload)
        else:
            print(f"# source: {payload['source'] or 'packaged defaults'}")
            print(yaml.safe_dump(config.raw, sort_keys=False, allow_unicode=True), end="")
        return 0

    path = Path(args.path).expanduser() if args.path else SETTINGS.config_file
    try:
        load_config(SETTINGS, path if args.path else None)
    except ConfigError as exc:
        return _fail("config.validate", "config", start, exc)
    _record("config.validate", "config", start, payload={"path": str(path)})
    print(f"Configuration OK: {path}")
    return 0


# events ----------------------------------------------------------------------


def _events_cmd(args: argparse.Namespace) -> int:
    start = time.perf_counter()
    command = args.events_command
    event_name = f"events.{command}"
    try:
        config = _load_platform_config(args)
        bus = _build_bus(config)

        if command == "serve":
            return _events_serve(args, config, bus, start)

        if command == "types":
            types = {name: item.to_dict() for name, item in bus.event_types.items()}
            _record(event_name, "events", start, payload={"count": len(types)})
            if args.json:
                _print_json(types)
            else:
                for name, item in types.items():
                    print(f"{name}\t{item['priority']}\t{item['description']}")
            return 0

        if command == "publish":
            data = _parse_json_option(args.data, "--data")
            event = bus.publish(args.type, data)
            reports = bus.drain()
            bus.save_state()
            failed = sum(len(report.failed) for report in reports)
            _record(event_name, "events", start, payload={"type": args.type, "eventId": event.id})
            if args.json:
                _print_json({"event": event.to_dict(), "deliveries": [report.to_dict() for report in reports]})
            else:
                delivered = sum(len(report.deliveries) for report in reports)
                print(f"Published {event.type} ({event.id}); {delivered} deliveries, {failed} failed")
            return 0

        if command == "subscribe":
            added = bus.subscribe(args.type, args.subscriber)
            bus.save_state()
            _record(event_name, "events", start, payload={"type": args.type, "subscriber": args.subscriber})
            print("Subscribed successfully" if added else "Already subscribed")
            return 0

        if command == "unsubscribe":
            bus.unsubscribe(args.subscriber)
            bus.save_state()
            _record(event_name, "events", start, payload={"subscriber": args.subscriber})
            print("Unsubscribed successfully")
            return 0

        if command == "history":
            events = bus.history(args.limit)
            _record(event_name, "events", start, payload={"count": len(events)})
            if args.json:
                _print_json([event.to_dict() for event in events])
            else:
                if not events:
                    print("No events recorded")
                for event in events:
                    print(f"{event.timestamp}\t{event.type}\t{event.id}")
            return 0

        if command == "metrics":
            metrics = bus.metrics()
            _record(event_name, "events", start)
            _print_json(metrics)
            return 0
    except (ConfigError, EventBusError, ValueError) as exc:
        return _fail(event_name, "events", start, exc)

    print("Unsupported events command", file=sys.stderr)
    return 2


def _events_serve(args: argparse.Namespace, config: PlatformConfig, bus: EventBus, start: float) -> int:
    host = args.host or config.event_bus.host
    port = config.event_bus.port if args.port is None else args.port
    web_config = EventBusWebConfig(
        host=host,
        port=port,
        token=args.token or config.event_bus.auth_token,
        process_interval=config.event_bus.process_interval,
    )
    app = EventBusWebApp(bus, web_config, SETTINGS)
    server = app.create_server()
    actual_host, actual_port = server.server_address[:2]
    print(f"Event bus listening on http://{actual_host}:{actual_port}/")
    print("Endpoints: POST /events/publish|subscribe|unsubscribe, GET /events/list|history, /status, /health, /metrics")
    print("Press Ctrl+C to stop.")
    app.start_processing()
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        print("Stopping event bus")
    finally:
        app.shutdown()
        server.shutdown()
        server.server_close()
    _record("events.serve", "events", start, payload={"port": actual_port})
    return 0


# gateway ---------------------------------------------------------------------


def _gateway_cmd(args: argparse.Namespace) -> int:
    start = time.perf_counter()
    command = args.gateway_command
    event_name = f"gateway.{command}"
    try:
        config = _load_platform_config(args)
        registry = _build_registry(config)
    except (ConfigError, ServiceRegistryError) as exc:
        return _fail(event_name, "gateway", start, exc)

    if command == "routes":
        _record(event_name, "gateway", start, payload={"services": len(registry)})
        if args.json:
            _print_json(registry.to_dict())
        else:
            for service in registry:
                print(f"{service.key}\t{service.endpoint}")
                for route in service.routes:
                    print(f"  {','.join(route.methods):<22} {route.path}")
        return 0

    if command == "resolve":
        resolved = registry.resolve(args.method.upper(), args.path)
        _record(event_name, "gateway", start, payload={"path": args.path, "matched": resolved is not None})
        if resolved is None:
            print(f"No service matches {args.method.upper()} {args.path}", file=sys.stderr)
            return 1
        service, route = resolved
        if args.json:
            _print_json({"service": service.key, "endpoint": service.endpoint, "route": route.to_dict()})
        else:
            print(f"{service.key} -> {service.endpoint}{args.path} (route {route.path})")
        return 0

    service = GatewayService(registry, config.gateway)
    if command == "health":
        health = service.health()
        _record(event_name, "gateway", start, payload={"status": health["status"]})
        if args.json:
            _print_json(health)
        else:
            print(f"Gateway services: {health['status']}")
            for key, item in health["services"].items():
                print(f"  {key}: {item['status']} ({item['code']})")
        return 0

    if command == "serve":
        host = args.host or config.gateway.host
        port = config.gateway.port if args.port is None else args.port
        app = GatewayWebApp(service, host, port)
        server = app.create_server()
        actual_host, actual_port = server.server_address[:2]
        print(f"API gateway listening on http://{actual_host}:{actual_port}/ ({len(registry)} services)")
        print("Press Ctrl+C to stop.")
        try:
            server.serve_forever()
        except KeyboardInterrupt:
            print("Stopping API gateway")
        finally:
            server.shutdown()
            server.server_close()
        _record(event_name, "gateway", start, payload={"port": actual_port})
        return 0

    print("Unsupported gateway command", file=sys.stderr)
    return 2


# tasks -----------------------------------------------------------------------


def _task_updates(args: argparse.Namespace) -> Dict[str, Any]:
    fields = {
        "title": args.title,
        "description": args.description,
        "priority": args.priority,
        "category": args.category,
        "estimated_hours": args.hours,
        "complexity": args.complexity,
        "assignee": args.assignee,
        "due_date": args.due,
    }
    updates = {key: value for key, value in fields.items() if value is not None}
    if getattr(args, "depends_on", None):
        updates["dependencies"] = list(args.depends_on)
    if getattr(args, "tag", None):
        updates["tags"] = list(args.tag)
    return updates


def _tasks_cmd(args: argparse.Namespace) -> int:
    start = time.perf_counter()
    command = args.tasks_command
    event_name = f"tasks.{command}"
    planner = _build_planner()
    try:
        if command == "create":
            task = planner.create_task(_task_updates(args))
            _record(event_name, "planner", start, payload={"taskId": task.id})
            if args.json:
                _print_json(task.to_dict())
            else:
                print(f"Created task {task.id}: {task.title}")
            return 0

        if command == "list":
            tasks = planner.list_tasks()
            if args.status:
                tasks = [task for task in tasks if task.status == args.status]
            _record(event_name, "planner", start, payload={"count": len(tasks)})
            if args.json:
                _print_json([task.to_dict() for task in tasks])
            elif not tasks:
                print("No tasks")
            else:
                for task in tasks:
                    _print_task(task)
            return 0

        if command == "show":
            task = planner.require_task(args.task_id)
            _record(event_name, "planner", start, payload={"taskId": task.id})
            if args.json:
                _print_json(task.to_dict())
            else:
                _print_task(task)
                if task.description:
                    print(f"  {task.description}")
                if task.dependencies:
                    print(f"  depends on: {', '.join(task.dependencies)}")
                for note in task.notes:
                    print(f"  note: {note}")
            return 0

        if command == "update":
            current = planner.require_task(args.task_id)
            updates = _task_updates(args)
            if args.status is not None:
                updates["status"] = args.status
            if args.progress is not None:
                updates["progress"] = args.progress
            if args.actual_hours is not None:
                updates["actual_hours"] = args.actual_hours
            if args.note:
                updates["notes"] = list(current.notes) + list(args.note)
            task = planner.update_task(args.task_id, updates)
            _record(event_name, "planner", start, payload={"taskId": task.id, "fields": sorted(updates)})
            if args.json:
                _print_json(task.to_dict())
            else:
                print(f"Updated task {task.id}")
            return 0

        if command == "delete":
            removed = planner.delete_task(args.task_id)
            _record(event_name, "planner", start, payload={"taskId": args.task_id, "removed": removed})
            if not removed:
                print(f"Task {args.task_id} not found", file=sys.stderr)
                return 1
            print(f"Deleted task {args.task_id}")
            return 0

        if command == "prioritize":
            criteria = {"category": args.category, "assignee": args.assignee}
            tasks = [task for task in planner.list_tasks() if task.is_open or args.all]
            ranked = planner.prioritize(tasks, criteria)
            if args.limit:
                ranked = ranked[: args.limit]
            _record(event_name, "planner", start, payload={"count": len(ranked)})
            if args.json:
                _print_json([item.to_dict() for item in ranked])
            else:
                for item in ranked:
                    print(f"{item.score:>4}  {item.calculated_priority:<8} {item.task.id}  {item.task.title}")
            return 0
    except PlannerError as exc:
        return _fail(event_name, "planner", start, exc)

    print("Unsupported tasks command", file=sys.stderr)
    return 2


# plans -----------------------------------------------------------------------


def _project_payload(args: argparse.Namespace) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"name": getattr(args, "name", None), "type": args.type or _default_type(args)}
    if getattr(args, "description", None):
        payload["description"] = args.description
    if getattr(args, "complexity", None):
        payload["complexity"] = args.complexity
    if getattr(args, "team", None):
        payload["team"] = list(args.team)
    if getattr(args, "service", None):
        payload["services"] = list(args.service)
    return payload


def _default_type(args: argparse.Namespace) -> str:
    try:
        return _load_platform_config(args).default_project_type
    except ConfigError:
        return "web"


def _plans_cmd(args: argparse.Namespace) -> int:
    start = time.perf_counter()
    command = args.plans_command
    event_name = f"plans.{command}"
    planner = _build_planner()
    try:
        if command == "create":
            plan = planner.generate_plan(
                _project_payload(args),
                include_documentation=args.docs,
                include_maintenance=args.maintenance,
            )
            _record(event_name, "planner", start, payload={"planId": plan["id"], "type": plan["project_type"]})
            if args.json:
                _print_json(plan)
            else:
                timeline = plan["timeline"]
                print(f"Created plan {plan['id']} for {plan['project_name']} ({plan['project_type']})")
                print(f"  {len(plan['phases'])} phases, {timeline['total_duration']} days, ends {timeline['end_date']}")
                for risk in plan["risks"]:
                    print(f"  risk [{risk['severity']}] {risk['description']}")
            return 0

        if command == "list":
            plans = planner.list_plans()
            _record(event_name, "planner", start, payload={"count": len(plans)})
            if args.json:
                _print_json(plans)
            elif not plans:
                print("No plans")
            else:
                for plan in plans:
                    print(f"{plan['id']}\t{plan['project_name']} ({plan['project_type']}, {plan['status']})")
            return 0

        if command == "show":
            rendered = planner.export_plan(args.plan_id, "json" if args.json else "markdown")
            _record(event_name, "planner", start, payload={"planId": args.plan_id})
            print(rendered, end="")
            return 0

        if command == "export":
            rendered = planner.export_plan(args.plan_id, args.format)
            if args.output:
                target = Path(args.output).expanduser()
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(rendered, encoding="utf-8")
                print(f"Plan exported to {target}")
            else:
                print(rendered, end="")
            _record(event_name, "planner", start, payload={"planId": args.plan_id, "format": args.format})
            return 0

        if command == "recommend":
            recommendations = planner.recommend(_project_payload(args))
            _record(event_name, "planner", start, payload={"count": len(recommendations)})
            if args.json:
                _print_json([item.to_dict() for item in recommendations])
            else:
                for item in recommendations:
                    print(f"[{item.priority}] {item.title}: {item.description}")
                    for entry in item.items:
                        print(f"  - {entry}")
            return 0
    except PlannerError as exc:
        return _fail(event_name, "planner", start, exc)

    print("Unsupported plans command", file=sys.stderr)
    return 2


# workflows -------------------------------------------------------------------


def _workflows_cmd(args: argparse.Namespace) -> int:
    start = time.perf_counter()
    command = args.workflows_command
    event_name = f"workflows.{command}"
    try:
        if command == "run":
            config = _load_platform_config(args)
            bus = _build_bus(config)
            service = _build_workflows(bus)
            context: Dict[str, Any] = _parse_json_option(args.context, "--context") or {}
            if not isinstance(context, dict):
                raise ValueError("--context must be a JSON object")
            context.update(_parse_assignments(args.set or []))
            if args.cwd:
                context["workingDirectory"] = str(Path(args.cwd).expanduser().resolve())
            execution = service.run(args.name, context)
            bus.drain()
            bus.save_state()
            status = "success" if execution.status == "completed" else "error"
            _record(
                event_name,
                "workflows",
                start,
                status=status,
                payload={"workflow": args.name, "executionId": execution.id, "result": execution.status},
            )
            if args.json:
                _print_json(execution.to_dict())
            else:
                print(f"Execution {execution.id}: {execution.status}")
                for step in execution.steps:
                    suffix = f" ({step.attempts} attempts)" if step.attempts > 1 else ""
                    print(f"  [{step.status}] {step.name}{suffix}")
                    if step.error:
                        print(f"      {step.error}")
            return 0 if execution.status == "completed" else 1

        service = _build_workflows()
        if command == "install":
            installed = service.install_predefined(overwrite=args.force)
            _record(event_name, "workflows", start, payload={"installed": installed})
            print("Installed: " + (", ".join(installed) if installed else "nothing new"))
            return 0

        if command == "define":
            source = Path(args.file).expanduser()
            try:
                payload = yaml.safe_load(source.read_text(encoding="utf-8"))
            except (OSError, yaml.YAMLError) as exc:
                raise ValueError(f"cannot read workflow file {source}: {exc}") from exc
            workflow = service.define(args.name, payload or {})
            _record(event_name, "workflows", start, payload={"workflow": workflow.name, "steps": len(workflow.steps)})
            print(f"Defined workflow {workflow.name} ({len(workflow.steps)} steps)")
            return 0

        if command == "list":
            workflows = service.list()
            _record(event_name, "workflows", start, payload={"count": len(workflows)})
            if args.json:
                _print_json([workflow.to_dict() for workflow in workflows])
            elif not workflows:
                print("No workflows defined")
            else:
                for workflow in workflows:
                    print(f"{workflow.name}\t{len(workflow.steps)} steps\t{workflow.description}")
            return 0

        if command == "show":
            workflow = service.require(args.name)
            executions = service.list_executions(args.name)[: args.executions]
            _record(event_name, "workflows", start, payload={"workflow": args.name})
            if args.json:
                _print_json({"workflow": workflow.to_dict(), "executions": [item.to_dict() for item in executions]})
            else:
                print(f"{workflow.name}: {workflow.description}")
                for index, step in enumerate(workflow.steps, start=1):
                    print(f"  {index}. {step.name} [{step.type}, on_error={step.on_error}]")
                for item in executions:
                    print(f"  run {item.id}: {item.status} at {item.started_at}")
            return 0

        if command == "stop":
            stopped = service.stop(args.execution_id)
            _record(event_name, "workflows", start, payload={"executionId": args.execution_id, "stopped": stopped})
            if not stopped:
                print(f"Execution {args.execution_id} is not running", file=sys.stderr)
                return 1
            print(f"Stopped execution {args.execution_id}")
            return 0

        if command == "delete":
            removed = service.delete(args.name)
            _record(event_name, "workflows", start, payload={"workflow": args.name, "removed": removed})
            if not removed:
                print(f"Workflow '{args.name}' not found", file=sys.stderr)
                return 1
            print(f"Deleted workflow {args.name}")
            return 0
    except (ConfigError, EventBusError, WorkflowError, RecordStoreError, ValueError) as exc:
        return _fail(event_name, "workflows", start, exc)

    print("Unsupported workflows command", file=sys.stderr)
    return 2


# project / report ------------------------------------------------------------


def _project_cmd(args: argparse.Namespace) -> int:
    start = time.perf_counter()
    try:
        result = scan_project(Path(args.path or "."))
    except ProjectScanError as exc:
        return _fail("project.scan", "projects", start, exc)
    payload = result.to_dict()
    _record("project.scan", "projects", start, payload={"type": result.project_type})
    if args.json:
        _print_json(payload)
    else:
        print(f"{payload['path']}: {payload['type']} ({payload['language']})")
        print(f"  {payload['config']['name']}")
        if payload["config"]["features"]:
            print(f"  features: {', '.join(payload['config']['features'])}")
        for note in payload["suggestions"]:
            print(f"  - {note}")
    return 0


def _report_cmd(args: argparse.Namespace) -> int:
    start = time.perf_counter()
    try:
        config = _load_platform_config(args)
        service = ReportService(
            SETTINGS.report_dir,
            _build_planner(),
            state_dir=SETTINGS.state_dir,
            excludes=config.report_excludes,
        )
        formats = args.format or list(config.report_formats)
        result = service.generate(Path(args.path or "."), formats)
    except (ConfigError, ReportError, PlannerError) as exc:
        return _fail("report.generate", "reports", start, exc)
    paths = {fmt: str(path) for fmt, path in result.paths.items()}
    _record("report.generate", "reports", start, payload={"formats": sorted(paths)})
    if args.json:
        _print_json({"generated_at": result.generated_at, "paths": paths, "data": result.data})
    else:
        for fmt, path in paths.items():
            print(f"{fmt}: {path}")
    return 0


# backup ----------------------------------------------------------------------


def _backup_cmd(args: argparse.Namespace) -> int:
    start = time.perf_counter()
    command = args.backup_command
    event_name = f"backup.{command}"
    try:
        service = _build_backups(_load_platform_config(args))
        if command == "create":
            info = service.create(Path(args.source or "."), args.label)
            _record(event_name, "backup", start, payload={"id": info.backup_id, "files": info.files})
            if args.json:
                _print_json(info.to_dict())
            else:
                print(f"Created backup {info.backup_id} ({info.files} files, {info.size_bytes} bytes) -> {info.path}")
            return 0

        if command == "list":
            backups = service.list()
            _record(event_name, "backup", start, payload={"count": len(backups)})
            if args.json:
                _print_json([item.to_dict() for item in backups])
            elif not backups:
                print("No backups")
            else:
                for item in backups:
                    print(f"{item.backup_id}\t{item.created_at}\t{item.files} files\t{item.source}")
            return 0

        if command == "verify":
            result = service.verify(args.backup_id)
            _record(
                event_name,
                "backup",
                start,
                status="success" if result.ok else "error",
                payload=result.to_dict(),
            )
            if args.json:
                _print_json(result.to_dict())
            else:
                state = "OK" if result.ok else "FAILED"
                print(f"Backup {args.backup_id}: {state} ({result.checked} files checked)")
                for name in result.missing:
                    print(f"  missing: {name}")
                for name in result.mismatched:
                    print(f"  mismatched: {name}")
            return 0 if result.ok else 1

        if command == "restore":
            restored = service.restore(args.backup_id, Path(args.target), force=args.force)
            _record(event_name, "backup", start, payload={"id": args.backup_id, "files": len(restored)})
            print(f"Restored {len(restored)} files into {args.target}")
            return 0

        if command == "prune":
            removed = service.prune(args.keep)
            _record(event_name, "backup", start, payload={"removed": [item.backup_id for item in removed]})
            print(f"Removed {len(removed)} backups")
            for item in removed:
                print(f"  {item.backup_id}")
            return 0
    except (ConfigError, BackupError) as exc:
        return _fail(event_name, "backup", start, exc)

    print("Unsupported backup command", file=sys.stderr)
    return 2


# telemetry -------------------------------------------------------------------


def _telemetry_cmd(args: argparse.Namespace) -> int:
    if args.telemetry_command == "report":
        _print_json(telemetry_summarize(telemetry_recent(SETTINGS, args.recent or 0)))
        return 0
    if args.telemetry_command == "clear":
        telemetry_clear(SETTINGS)
        print("Telemetry log cleared")
        return 0
    if args.telemetry_command == "tail":
        for evt in telemetry_recent(SETTINGS, args.limit) if args.limit > 0 else []:
            print(json.dumps(evt, ensure_ascii=False))
        return 0
    print("Unsupported telemetry command", file=sys.stderr)
    return 2


# parser ----------------------------------------------------------------------


def _add_json(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--json", action="store_true", help="Emit JSON")


def _add_task_fields(parser: argparse.ArgumentParser, *, creating: bool) -> None:
    if not creating:
        parser.add_argument("--title")
    parser.add_argument("--description")
    parser.add_argument("--priority", choices=ranked_priorities())
    parser.add_argument("--category")
    parser.add_argument("--hours", type=float, help="Estimated hours")
    parser.add_argument("--complexity", choices=list(COMPLEXITY_WEIGHTS))
    parser.add_argument("--depends-on", action="append", metavar="TASK_ID")
    parser.add_argument("--tag", action="append")
    parser.add_argument("--assignee")
    parser.add_argument("--due", help="Due date (ISO 8601)")


def _add_project_fields(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--type", help="Project type (web, mobile, ai-ml, api, library, ...)")
    parser.add_argument("--description")
    parser.add_argument("--complexity", choices=list(COMPLEXITY_WEIGHTS))
    parser.add_argument("--team", action="append", metavar="MEMBER")
    parser.add_argument("--service", action="append", metavar="NAME", help="External service dependency")


def _add_subcommands(
    parent: argparse.ArgumentParser,
    dest: str,
    handler: Callable[[argparse.Namespace], int],
) -> argparse._SubParsersAction:
    sub = parent.add_subparsers(dest=dest, required=True)
    parent.set_defaults(func=handler)
    return sub


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="managerctl",
        description=HELP_OVERVIEW,
        formatter_class=argparse.RawTextHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"managerctl {__version__}")
    parser.add_argument("--config", help="Path to config.yaml (default: $MANAGERKIT_HOME/config.yaml)")
    sub = parser.add_subparsers(dest="command", required=True)

    status_cmd = sub.add_parser("status", help="Summarise platform state")
    status_cmd.add_argument("--gateway", action="store_true", help="Also probe gateway service health")
    _add_json(status_cmd)
    status_cmd.set_defaults(func=_status_cmd)

    config_cmd = sub.add_parser("config", help="Inspect or validate configuration")
    config_sub = _add_subcommands(config_cmd, "config_command", _config_cmd)
    config_show = config_sub.add_parser("show", help="Print the effective configuration")
    _add_json(config_show)
    config_validate = config_sub.add_parser("validate", help="Validate a configuration file")
    config_validate.add_argument("path", nargs="?")

    events_cmd = sub.add_parser("events", help="Event bus operations")
    events_sub = _add_subcommands(events_cmd, "events_command", _events_cmd)
    _add_json(events_sub.add_parser("types", help="List registered event types"))
    events_publish = events_sub.add_parser("publish", help="Publish and deliver an event")
    events_publish.add_argument("type")
    events_publish.add_argument("--data", help="JSON payload")
    _add_json(events_publish)
    events_subscribe = events_sub.add_parser("subscribe", help="Subscribe to an event type")
    events_subscribe.add_argument("type")
    events_subscribe.add_argument("subscriber")
    events_unsubscribe = events_sub.add_parser("unsubscribe", help="Remove a subscriber")
    events_unsubscribe.add_argument("subscriber")
    events_history = events_sub.add_parser("history", help="Show recent events")
    events_history.add_argument("--limit", type=int, default=10)
    _add_json(events_history)
    events_sub.add_parser("metrics", help="Print bus metrics")
    events_serve = events_sub.add_parser("serve", help="Serve the event bus HTTP API")
    events_serve.add_argument("--host")
    events_serve.add_argument("--port", type=int)
    events_serve.add_argument("--token", help="Bearer token required for POST endpoints")

    gateway_cmd = sub.add_parser("gateway", help="API gateway operations")
    gateway_sub = _add_subcommands(gateway_cmd, "gateway_command", _gateway_cmd)
    _add_json(gateway_sub.add_parser("routes", help="List services and routes"))
    gateway_resolve = gateway_sub.add_parser("resolve", help="Show which service handles a request")
    gateway_resolve.add_argument("method", type=str.upper, choices=HTTP_METHODS)
    gateway_resolve.add_argument("path")
    _add_json(gateway_resolve)
    _add_json(gateway_sub.add_parser("health", help="Probe service health endpoints"))
    gateway_serve = gateway_sub.add_parser("serve", help="Run the reverse proxy")
    gateway_serve.add_argument("--host")
    gateway_serve.add_argument("--port", type=int)

    tasks_cmd = sub.add_parser("tasks", help="Manage tasks")
    tasks_sub = _add_subcommands(tasks_cmd, "tasks_command", _tasks_cmd)
    tasks_create = tasks_sub.add_parser("create", help="Create a task")
    tasks_create.add_argument("title")
    _add_task_fields(tasks_create, creating=True)
    _add_json(tasks_create)
    tasks_list = tasks_sub.add_parser("list", help="List tasks")
    tasks_list.add_argument("--status", choices=TASK_STATUSES)
    _add_json(tasks_list)
    tasks_show = tasks_sub.add_parser("show", help="Show a task")
    tasks_show.add_argument("task_id")
    _add_json(tasks_show)
    tasks_update = tasks_sub.add_parser("update", help="Update a task")
    tasks_update.add_argument("task_id")
    _add_task_fields(tasks_update, creating=False)
    tasks_update.add_argument("--status", choices=TASK_STATUSES)
    tasks_update.add_argument("--progress", type=float, help="Progress between 0 and 1")
    tasks_update.add_argument("--actual-hours", type=float)
    tasks_update.add_argument("--note", action="append")
    _add_json(tasks_update)
    tasks_delete = tasks_sub.add_parser("delete", help="Delete a task")
    tasks_delete.add_argument("task_id")
    tasks_prioritize = tasks_sub.add_parser("prioritize", help="Rank tasks by computed score")
    tasks_prioritize.add_argument("--category")
    tasks_prioritize.add_argument("--assignee")
    tasks_prioritize.add_argument("--limit", type=int, default=0)
    tasks_prioritize.add_argument("--all", action="store_true", help="Include completed and cancelled tasks")
    _add_json(tasks_prioritize)

    plans_cmd = sub.add_parser("plans", help="Generate and export project plans")
    plans_sub = _add_subcommands(plans_cmd, "plans_command", _plans_cmd)
    plans_create = plans_sub.add_parser("create", help="Generate a plan")
    plans_create.add_argument("name")
    _add_project_fields(plans_create)
    plans_create.add_argument("--docs", action="store_true", help="Include a documentation phase")
    plans_create.add_argument("--maintenance", action="store_true", help="Include a maintenance phase")
    _add_json(plans_create)
    _add_json(plans_sub.add_parser("list", help="List plans"))
    plans_show = plans_sub.add_parser("show", help="Show a plan")
    plans_show.add_argument("plan_id")
    _add_json(plans_show)
    plans_export = plans_sub.add_parser("export", help="Export a plan")
    plans_export.add_argument("plan_id")
    plans_export.add_argument("--format", choices=EXPORT_FORMATS, default="markdown")
    plans_export.add_argument("--output")
    plans_recommend = plans_sub.add_parser("recommend", help="Recommendations for the current tasks")
    _add_project_fields(plans_recommend)
    _add_json(plans_recommend)

    workflows_cmd = sub.add_parser("workflows", help="Define and run workflows")
    workflows_sub = _add_subcommands(workflows_cmd, "workflows_command", _workflows_cmd)
    workflows_install = workflows_sub.add_parser("install", help="Install predefined workflows")
    workflows_install.add_argument("--force", action="store_true", help="Overwrite existing definitions")
    workflows_define = workflows_sub.add_parser("define", help="Define a workflow from a YAML/JSON file")
    workflows_define.add_argument("name")
    workflows_define.add_argument("file")
    _add_json(workflows_sub.add_parser("list", help="List workflows"))
    workflows_show = workflows_sub.add_parser("show", help="Show a workflow and recent executions")
    workflows_show.add_argument("name")
    workflows_show.add_argument("--executions", type=int, default=5)
    _add_json(workflows_show)
    workflows_run = workflows_sub.add_parser("run", help="Execute a workflow")
    workflows_run.add_argument("name")
    workflows_run.add_argument("--context", help="JSON object with template values")
    workflows_run.add_argument("--set", action="append", metavar="KEY=VALUE")
    workflows_run.add_argument("--cwd", help="Working directory for command and file steps")
    _add_json(workflows_run)
    workflows_stop = workflows_sub.add_parser("stop", help="Stop a running execution")
    workflows_stop.add_argument("execution_id")
    workflows_delete = workflows_sub.add_parser("delete", help="Delete a workflow")
    workflows_delete.add_argument("name")

    project_cmd = sub.add_parser("project", help="Project inspection")
    project_sub = _add_subcommands(project_cmd, "project_command", _project_cmd)
    project_scan = project_sub.add_parser("scan", help="Detect the project type and suggest improvements")
    project_scan.add_argument("path", nargs="?")
    _add_json(project_scan)

    report_cmd = sub.add_parser("report", help="Project reports")
    report_sub = _add_subcommands(report_cmd, "report_command", _report_cmd)
    report_generate = report_sub.add_parser("generate", help="Generate a status report")
    report_generate.add_argument("path", nargs="?")
    report_generate.add_argument("--format", action="append", choices=REPORT_FORMATS)
    _add_json(report_generate)

    backup_cmd = sub.add_parser("backup", help="Backups of a project tree")
    backup_sub = _add_subcommands(backup_cmd, "backup_command", _backup_cmd)
    backup_create = backup_sub.add_parser("create", help="Create a zip backup")
    backup_create.add_argument("source", nargs="?")
    backup_create.add_argument("--label", default="backup")
    _add_json(backup_create)
    _add_json(backup_sub.add_parser("list", help="List backups"))
    backup_verify = backup_sub.add_parser("verify", help="Verify archive checksums")
    backup_verify.add_argument("backup_id")
    _add_json(backup_verify)
    backup_restore = backup_sub.add_parser("restore", help="Restore a backup into a directory")
    backup_restore.add_argument("backup_id")
    backup_restore.add_argument("target")
    backup_restore.add_argument("--force", action="store_true", help="Allow a non-empty target")
    backup_prune = backup_sub.add_parser("prune", help="Delete old backups")
    backup_prune.add_argument("--keep", type=int)

    telemetry_cmd = sub.add_parser("telemetry", help="Inspect local telemetry logs")
    telemetry_sub = _add_subcommands(telemetry_cmd, "telemetry_command", _telemetry_cmd)
    telemetry_report = telemetry_sub.add_parser("report", help="Print aggregated telemetry stats")
    telemetry_report.add_argument("--recent", type=int, default=0, help="Limit aggregation to the last N events")
    telemetry_sub.add_parser("clear", help="Remove telemetry log file")
    telemetry_tail = telemetry_sub.add_parser("tail", help="Print last N telemetry events")
    telemetry_tail.add_argument("--limit", type=int, default=20)

    return parser


def main(argv: List[str] | None = None) -> int:
    parser = build_parser()
    try:
        args = parser.parse_args(sys.argv[1:] if argv is None else argv)
    except SystemExit as exc:
        return int(exc.code or 0)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
