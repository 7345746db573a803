"""Project scanning package."""

from .service import ProjectScanError, ScanResult, default_config, detect_project_type, scan  # noqa: F401

__all__ = ["ProjectScanError", "ScanResult", "default_config", "detect_project_type", "scan"]
