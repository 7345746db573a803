"""Zip backups with a hashed manifest."""

from __future__ import annotations

import hashlib
import json
import os
import re
import shutil
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Dict, Iterable, List
from zipfile import BadZipFile, ZIP_DEFLATED, ZipFile

from managerkit.adapters.json_store import InvalidRecordIdError, validate_record_id
from managerkit.domain.events import isoformat, utc_now

MANIFEST_NAME = "MANIFEST.json"
DATA_PREFIX = "data/"
_CHUNK = 1 << 16
# same-second backups get a numeric "-N" suffix after the timestamp
_SEQUENCE = re.compile(r"T\d{6}Z-(\d+)$")


class BackupError(RuntimeError):
    """Raised when a backup cannot be created, read or restored."""


@dataclass(frozen=True)
class BackupInfo:
    backup_id: str
    path: Path
    source: str
    created_at: str
    files: int
    size_bytes: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.backup_id,
            "path": str(self.path),
            "source": self.source,
            "created_at": self.created_at,
            "files": self.files,
            "size_bytes": self.size_bytes,
        }


@dataclass
class VerifyResult:
    backup_id: str
    checked: int = 0
    mismatched: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.mismatched and not self.missing

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.backup_id,
            "ok": self.ok,
            "checked": self.checked,
            "mismatched": list(self.mismatched),
            "missing": list(self.missing),
        }


def _newest_first_key(info: BackupInfo) -> tuple[str, int, str]:
    match = _SEQUENCE.search(info.backup_id)
    return (info.created_at, int(match.group(1)) if match else 0, info.backup_id)


def _sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


def iter_source_files(source: Path, excludes: Iterable[str] = (), *, skip: Iterable[Path] = ()) -> List[Path]:
    """Files under ``source`` in sorted order, skipping excluded names and ``skip`` trees."""

    excluded = set(excludes)
    skipped = [path.resolve() for path in skip]
    found: List[Path] = []
    for current, dirnames, filenames in os.walk(source):
        here = Path(current)
        kept = []
        for name in sorted(dirnames):
            if name in excluded:
                continue
            resolved = (here / name).resolve()
            if any(resolved == item or item in resolved.parents for item in skipped):
                continue
            kept.append(name)
        dirnames[:] = kept
        for name in sorted(filenames):
            if name in excluded:
                continue
            path = here / name
            if path.is_file() and not path.is_symlink():
                found.append(path)
    return found


class BackupService:
    def __init__(
        self,
        backup_dir: Path,
        *,
        excludes: Iterable[str] = (),
        keep: int = 10,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._backup_dir = backup_dir
        self._excludes = tuple(excludes)
        self._keep = keep
        self._clock = clock

    @property
    def backup_dir(self) -> Path:
        return self._backup_dir

    def _archive_path(self, backup_id: str) -> Path:
        try:
            validate_record_id(backup_id)
        except InvalidRecordIdError as exc:
            raise BackupError(f"invalid backup id: {backup_id!r}") from exc
        return self._backup_dir / f"{backup_id}.zip"

    def create(self, source: Path, label: str = "backup") -> BackupInfo:
        source = source.expanduser()
        if not source.is_dir():
            raise BackupError(f"backup source is not a directory: {source}")
        try:
            validate_record_id(label)
        except InvalidRecordIdError as exc:
            raise BackupError(f"invalid backup label: {label!r}") from exc

        now = self._clock()
        stem = f"{label}-{now.strftime('%Y%m%dT%H%M%SZ')}"
        backup_id = stem
        suffix = 1
        while self._archive_path(backup_id).exists():
            backup_id = f"{stem}-{suffix}"
            suffix += 1

        files = iter_source_files(source, self._excludes, skip=[self._backup_dir])
        entries: List[Dict[str, Any]] = []
        self._backup_dir.mkdir(parents=True, exist_ok=True)
        destination = self._archive_path(backup_id)
        with tempfile.TemporaryDirectory(dir=self._backup_dir) as tmp_dir:
            tmp_path = Path(tmp_dir) / destination.name
            try:
                with ZipFile(tmp_path, "w", compression=ZIP_DEFLATED) as archive:
                    for path in files:
                        relative = path.relative_to(source).as_posix()
                        archive.write(path, DATA_PREFIX + relative)
                        entries.append(
                            {"path": relative, "size": path.stat().st_size, "sha256": _sha256_file(path)}
                        )
                    manifest = {
                        "id": backup_id,
                        "source": str(source.resolve()),
                        "created_at": isoformat(now),
                        "files": entries,
                    }
                    archive.writestr(MANIFEST_NAME, json.dumps(manifest, ensure_ascii=False, indent=2))
            except OSError as exc:
                raise BackupError(f"failed to write backup {destination}: {exc}") from exc
            shutil.move(str(tmp_path), destination)
        return BackupInfo(
            backup_id=backup_id,
            path=destination,
            source=manifest["source"],
            created_at=manifest["created_at"],
            files=len(entries),
            size_bytes=destination.stat().st_size,
        )

    def _read_manifest(self, archive: ZipFile, path: Path) -> Dict[str, Any]:
        try:
            payload = json.loads(archive.read(MANIFEST_NAME).decode("utf-8"))
        except KeyError as exc:
            raise BackupError(f"{path.name} has no {MANIFEST_NAME}") from exc
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise BackupError(f"{path.name} has an unreadable manifest: {exc}") from exc
        if not isinstance(payload, dict) or not isinstance(payload.get("files"), list):
            raise BackupError(f"{path.name} has a malformed manifest")
        return payload

    def _open(self, backup_id: str) -> tuple[Path, ZipFile]:
        path = self._archive_path(backup_id)
        if not path.exists():
            raise BackupError(f"backup '{backup_id}' not found")
        try:
            return path, ZipFile(path)
        except BadZipFile as exc:
            raise BackupError(f"backup '{backup_id}' is not a valid zip archive") from exc

    def info(self, backup_id: str) -> BackupInfo:
        path, archive = self._open(backup_id)
        with archive:
            manifest = self._read_manifest(archive, path)
        return BackupInfo(
            backup_id=backup_id,
            path=path,
            source=str(manifest.get("source", "")),
            created_at=str(manifest.get("created_at", "")),
            files=len(manifest["files"]),
            size_bytes=path.stat().st_size,
        )

    def list(self) -> List[BackupInfo]:
        """Readable backups, newest first."""

        if not self._backup_dir.exists():
            return []
        backups: List[BackupInfo] = []
        for path in self._backup_dir.glob("*.zip"):
            try:
                backups.append(self.info(path.stem))
            except BackupError:
                continue
        backups.sort(key=_newest_first_key, reverse=True)
        return backups

    def verify(self, backup_id: str) -> VerifyResult:
        path, archive = self._open(backup_id)
        result = VerifyResult(backup_id=backup_id)
        with archive:
            manifest = self._read_manifest(archive, path)
            names = set(archive.namelist())
            for entry in manifest["files"]:
                relative = str(entry.get("path", ""))
                member = DATA_PREFIX + relative
                result.checked += 1
                if member not in names:
                    result.missing.append(relative)
                    continue
                digest = hashlib.sha256()
                size = 0
                with archive.open(member) as handle:
                    for chunk in iter(lambda: handle.read(_CHUNK), b""):
                        digest.update(chunk)
                        size += len(chunk)
                if digest.hexdigest() != entry.get("sha256") or size != entry.get("size"):
                    result.mismatched.append(relative)
        return result

    def restore(self, backup_id: str, target: Path, *, force: bool = False) -> List[Path]:
        target = target.expanduser()
        if target.exists() and not target.is_dir():
            raise BackupError(f"restore target is not a directory: {target}")
        if target.exists() and any(target.iterdir()) and not force:
            raise BackupError(f"restore target {target} is not empty; use --force to overwrite")
        path, archive = self._open(backup_id)
        restored: List[Path] = []
        with archive:
            manifest = self._read_manifest(archive, path)
            names = set(archive.namelist())
            root = target.resolve()
            plan: List[tuple[str, Path]] = []
            # check every entry before the first byte is written
            for entry in manifest["files"]:
                relative = PurePosixPath(str(entry.get("path", "")))
                destination = (root / Path(*relative.parts)).resolve() if relative.parts else root
                if destination == root or root not in destination.parents:
                    raise BackupError(f"backup entry escapes the restore target: {relative}")
                member = DATA_PREFIX + relative.as_posix()
                if member not in names:
                    raise BackupError(f"backup '{backup_id}' is missing {relative}")
                plan.append((member, destination))
            target.mkdir(parents=True, exist_ok=True)
            for member, destination in plan:
                destination.parent.mkdir(parents=True, exist_ok=True)
                with archive.open(member) as source_handle, destination.open("wb") as handle:
                    shutil.copyfileobj(source_handle, handle)
                restored.append(destination)
        return restored

    def prune(self, keep: int | None = None) -> List[BackupInfo]:
        limit = self._keep if keep is None else keep
        if limit < 0:
            raise BackupError("keep must be zero or positive")
        backups = self.list()
        removed = backups[limit:]
        for item in removed:
            item.path.unlink()
        return removed


__all__ = [
    "BackupError",
    "BackupInfo",
    "BackupService",
    "MANIFEST_NAME",
    "VerifyResult",
    "iter_source_files",
]
