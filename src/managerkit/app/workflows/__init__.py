"""Workflow orchestration package."""

from .service import PREDEFINED_WORKFLOWS, StepRunner, WorkflowService, WorkflowStore  # noqa: F401

__all__ = ["PREDEFINED_WORKFLOWS", "StepRunner", "WorkflowService", "WorkflowStore"]
