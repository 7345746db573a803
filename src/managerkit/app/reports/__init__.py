"""Report generation package."""

from .service import REPORT_FORMATS, ReportError, ReportResult, ReportService  # noqa: F401

__all__ = ["REPORT_FORMATS", "ReportError", "ReportResult", "ReportService"]
