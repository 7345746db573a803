"""Status aggregation package."""

from .service import StatusService  # noqa: F401

__all__ = ["StatusService"]
