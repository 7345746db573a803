from __future__ import annotations

from pathlib import Path

import pytest

from managerkit.adapters.json_store import (
    InvalidRecordIdError,
    JsonRecordStore,
    RecordNotFoundError,
    RecordStoreError,
    validate_record_id,
    write_json_atomic,
)


def test_save_get_and_list_records(tmp_path: Path) -> None:
    store = JsonRecordStore(tmp_path / "records")
    store.save("b-2", {"id": "b-2", "value": 2})
    store.save("a-1", {"id": "a-1", "value": "é"})

    assert store.exists("a-1")
    assert store.get("a-1") == {"id": "a-1", "value": "é"}
    assert list(store.ids()) == ["a-1", "b-2"]
    assert [item["id"] for item in store.list()] == ["a-1", "b-2"]


def test_missing_directory_lists_nothing(tmp_path: Path) -> None:
    store = JsonRecordStore(tmp_path / "absent")
    assert store.list() == []
    assert store.get("nope") is None
    assert store.delete("nope") is False


def test_require_raises_not_found(tmp_path: Path) -> None:
    store = JsonRecordStore(tmp_path)
    with pytest.raises(RecordNotFoundError) as excinfo:
        store.require("ghost")
    assert "ghost" in str(excinfo.value)


@pytest.mark.parametrize("record_id", ["../escape", "a/b", "", ".hidden", "with space", "trailing\n"])
def test_invalid_record_ids_are_rejected(tmp_path: Path, record_id: str) -> None:
    store = JsonRecordStore(tmp_path)
    with pytest.raises(InvalidRecordIdError):
        store.path_for(record_id)
    with pytest.raises(ValueError):
        validate_record_id(record_id)


def test_corrupted_record_is_reported_and_skipped_by_list(tmp_path: Path) -> None:
    store = JsonRecordStore(tmp_path)
    store.save("good", {"ok": True})
    (tmp_path / "bad.json").write_text("{not json", encoding="utf-8")
    (tmp_path / "list.json").write_text("[1, 2]", encoding="utf-8")

    with pytest.raises(RecordStoreError):
        store.get("bad")
    with pytest.raises(RecordStoreError):
        store.get("list")
    assert store.list() == [{"ok": True}]


def test_write_json_atomic_leaves_no_temp_files(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "state.json"
    write_json_atomic(target, {"a": 1})
    write_json_atomic(target, {"a": 2})

    assert target.read_text(encoding="utf-8").strip().endswith("}")
    assert [path.name for path in target.parent.iterdir()] == ["state.json"]


def test_record_with_invalid_utf8_is_reported_and_skipped_by_list(tmp_path: Path) -> None:
    store = JsonRecordStore(tmp_path)
    store.save("good", {"ok": True})
    (tmp_path / "binary.json").write_bytes(b"\xff\xfe{}")

    with pytest.raises(RecordStoreError) as excinfo:
        store.get("binary")
    assert "UTF-8" in str(excinfo.value)
    assert store.list() == [{"ok": True}]
