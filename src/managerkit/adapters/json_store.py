"""One-file-per-record JSON persistence used by planner, workflows and events."""

from __future__ import annotations

import json
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Dict, Iterator, List

_RECORD_ID = re.compile(r"[A-Za-z0-9_-][A-Za-z0-9._-]*")


class RecordStoreError(RuntimeError):
    """Raised when a record cannot be read or written."""


class InvalidRecordIdError(RecordStoreError, ValueError):
    """Raised when a record id cannot be used as a file name."""


class RecordNotFoundError(RecordStoreError, KeyError):
    """Raised when a required record is missing."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "record not found"


def validate_record_id(record_id: str) -> str:
    if not isinstance(record_id, str) or not _RECORD_ID.fullmatch(record_id):
        raise InvalidRecordIdError(f"invalid record id: {record_id!r}")
    return record_id


def write_json_atomic(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    data = json.dumps(payload, ensure_ascii=False, indent=2) + "\n"
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(data)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class JsonRecordStore:
    """Directory of ``<id>.json`` files with atomic overwrite semantics."""

    def __init__(self, directory: Path) -> None:
        self._directory = directory

    @property
    def directory(self) -> Path:
        return self._directory

    def path_for(self, record_id: str) -> Path:
        return self._directory / f"{validate_record_id(record_id)}.json"

    def exists(self, record_id: str) -> bool:
        return self.path_for(record_id).exists()

    def save(self, record_id: str, payload: Dict[str, Any]) -> Path:
        path = self.path_for(record_id)
        write_json_atomic(path, payload)
        return path

    def get(self, record_id: str) -> Dict[str, Any] | None:
        path = self.path_for(record_id)
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise RecordStoreError(f"record {record_id} is not valid JSON: {exc}") from exc
        except UnicodeDecodeError as exc:
            raise RecordStoreError(f"record {record_id} is not valid UTF-8: {exc}") from exc
        if not isinstance(payload, dict):
            raise RecordStoreError(f"record {record_id} must be a JSON object")
        return payload

    def require(self, record_id: str) -> Dict[str, Any]:
        payload = self.get(record_id)
        if payload is None:
            raise RecordNotFoundError(f"record {record_id} not found")
        return payload

    def delete(self, record_id: str) -> bool:
        path = self.path_for(record_id)
        if not path.exists():
            return False
        path.unlink()
        return True

    def ids(self) -> Iterator[str]:
        if not self._directory.exists():
            return
        for entry in sorted(self._directory.glob("*.json")):
            yield entry.stem

    def list(self) -> List[Dict[str, Any]]:
        records: List[Dict[str, Any]] = []
        for record_id in self.ids():
            try:
                payload = self.get(record_id)
            except (RecordStoreError, OSError):
                continue
            if payload is not None:
                records.append(payload)
        return records


__all__ = [
    "InvalidRecordIdError",
    "JsonRecordStore",
    "RecordNotFoundError",
    "RecordStoreError",
    "validate_record_id",
    "write_json_atomic",
]
