"""Task planner package."""

from .export import EXPORT_FORMATS, render_plan  # noqa: F401
from .service import PlannerService, PrioritizedTask, Recommendation  # noqa: F401

__all__ = ["EXPORT_FORMATS", "PlannerService", "PrioritizedTask", "Recommendation", "render_plan"]
