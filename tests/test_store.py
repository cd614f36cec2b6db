import json
import multiprocessing

import pytest
from pydantic import BaseModel

from agent_teams import store
from agent_teams.errors import DocumentParseError, NotFoundError, StorageError, ValidationError
from agent_teams.models import Inbox, Task


class Counter(BaseModel):
    value: int = 0


def _increment_many(lock_path, path, times):
    for _ in range(times):
        store.locked_transaction(
            lock_path,
            path,
            Counter,
            lambda counter: counter.model_copy(update={"value": counter.value + 1}),
            default=Counter,
        )


def test_read_missing_document(tmp_path):
    with pytest.raises(NotFoundError):
        store.read_document(tmp_path / "absent.json", Counter)


def test_read_invalid_json(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text("{not json")
    with pytest.raises(DocumentParseError):
        store.read_document(path, Counter)


def test_read_wrong_shape_lists_issues(tmp_path):
    path = tmp_path / "task.json"
    path.write_text(json.dumps({"id": "TASK-1", "status": "done", "created_at": "2026-01-01T00:00:00Z"}))
    with pytest.raises(ValidationError) as excinfo:
        store.read_document(path, Task)
    assert any(issue.startswith("status") for issue in excinfo.value.issues)


def test_write_then_read(tmp_path):
    path = tmp_path / "nested" / "counter.json"
    store.write_document(path, Counter(value=3), Counter)
    assert store.read_document(path, Counter).value == 3
    assert store.read_document(tmp_path / "nested" / "counter.json", Counter) == Counter(value=3)


def test_write_rejects_invalid_value_before_touching_disk(tmp_path):
    path = tmp_path / "inbox.json"
    with pytest.raises(ValidationError):
        store.write_document(path, [{"sender": "a"}], Inbox)
    assert not path.exists()


def test_failed_rename_leaves_previous_document(tmp_path, monkeypatch):
    path = tmp_path / "counter.json"
    store.write_document(path, Counter(value=1), Counter)
    before = path.read_bytes()

    def broken_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(store.os, "replace", broken_replace)
    with pytest.raises(StorageError):
        store.write_document(path, Counter(value=2), Counter)

    assert path.read_bytes() == before
    assert [p.name for p in tmp_path.iterdir()] == ["counter.json"]


def test_locked_transaction_uses_default_for_missing_document(tmp_path):
    path = tmp_path / "counter.json"
    result = store.locked_transaction(
        tmp_path / ".lock", path, Counter, lambda c: c.model_copy(update={"value": 7}), default=Counter
    )
    assert result.value == 7
    assert store.read_document(path, Counter).value == 7


def test_locked_transaction_without_default_requires_document(tmp_path):
    with pytest.raises(NotFoundError):
        store.locked_transaction(tmp_path / ".lock", tmp_path / "counter.json", Counter, lambda c: c)


def test_concurrent_increments_are_not_lost(tmp_path):
    lock_path = tmp_path / ".lock"
    path = tmp_path / "counter.json"
    ctx = multiprocessing.get_context("fork")
    workers = [ctx.Process(target=_increment_many, args=(lock_path, path, 25)) for _ in range(8)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(timeout=60)
        assert worker.exitcode == 0

    assert store.read_document(path, Counter).value == 200


def test_list_documents_skips_hidden_and_temp_files(tmp_path):
    (tmp_path / "a.json").write_text("{}")
    (tmp_path / ".a.json.1.abc.tmp").write_text("{}")
    (tmp_path / ".lock").write_text("")
    (tmp_path / "notes.txt").write_text("")
    assert store.list_documents(tmp_path) == ["a.json"]
    assert store.list_documents(tmp_path / "missing") == []


def test_new_id_shape():
    value = store.new_id("TASK")
    assert value.startswith("TASK-")
    assert len(value) == len("TASK-") + 12
    assert store.new_id("TASK") != value
