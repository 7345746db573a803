"""Backup package."""

from .service import BackupError, BackupInfo, BackupService, VerifyResult  # noqa: F401

__all__ = ["BackupError", "BackupInfo", "BackupService", "VerifyResult"]
