"""Validated JSON documents with atomic replacement.

Writes go to a sibling temp file which is renamed over the target, so readers
see either the old or the new document and never a partial one. Combined with
:mod:`agent_teams.locks` this is the whole storage layer: every shared
document is mutated through :func:`locked_transaction`.
"""
from __future__ import annotations

import json
import logging
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, List, Optional, TypeVar, Union

from pydantic import BaseModel, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from agent_teams import locks
from agent_teams.errors import DocumentParseError, NotFoundError, StorageError, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")
Shape = Union[type, TypeAdapter]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str = "") -> str:
    token = uuid.uuid4().hex[:12]
    return f"{prefix}-{token}" if prefix else token


def to_jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", exclude_none=True)
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    if isinstance(value, dict):
        return {str(key): to_jsonable(item) for key, item in value.items()}
    return value


def validate(source: Any, value: Any, shape: Shape) -> Any:
    """Validate ``value`` against a model class or ``TypeAdapter``.

    Model instances are dumped first so values built with ``model_copy`` are
    checked as strictly as freshly parsed JSON.
    """
    raw = to_jsonable(value)
    try:
        if isinstance(shape, TypeAdapter):
            return shape.validate_python(raw)
        return shape.model_validate(raw)
    except PydanticValidationError as exc:
        raise ValidationError.from_pydantic(str(source), exc) from exc


def read_document(path: Path, shape: Shape) -> Any:
    if not path.exists():
        raise NotFoundError(f"File not found: {path}")
    try:
        with path.open("r", encoding="utf-8") as fh:
            raw = json.load(fh)
    except json.JSONDecodeError as exc:
        raise DocumentParseError(f"Invalid JSON in file {path}: {exc}") from exc
    except OSError as exc:
        raise StorageError(f"Failed to read file {path}: {exc}") from exc
    return validate(path, raw, shape)


def write_document(path: Path, value: Any, shape: Optional[Shape] = None) -> Any:
    if shape is not None:
        value = validate(path, value, shape)
    payload = json.dumps(to_jsonable(value), indent=2)

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.parent / f".{path.name}.{os.getpid()}.{uuid.uuid4().hex[:8]}.tmp"
    try:
        with tmp.open("w", encoding="utf-8") as fh:
            fh.write(payload)
            fh.write("\n")
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, path)
    except OSError as exc:
        try:
            tmp.unlink()
        except FileNotFoundError:
            pass
        raise StorageError(f"Failed to write {path}: {exc}") from exc
    _fsync_dir(path.parent)
    return value


def _fsync_dir(directory: Path) -> None:
    try:
        dir_fd = os.open(str(directory), os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(dir_fd)
    except OSError:
        pass
    finally:
        os.close(dir_fd)


def locked_read(lock_path: Path, path: Path, shape: Shape) -> Any:
    with locks.file_lock(lock_path, exclusive=False):
        return read_document(path, shape)


def locked_transaction(
    lock_path: Path,
    path: Path,
    shape: Shape,
    mutator: Callable[[Any], T],
    default: Optional[Callable[[], Any]] = None,
) -> T:
    """Exclusive read-modify-write of one document.

    ``default`` builds the starting value when the document is absent;
    without it a missing document raises ``NotFoundError``. The mutator's
    result is validated before it replaces the document.
    """
    with locks.file_lock(lock_path, exclusive=True):
        if path.exists():
            current = read_document(path, shape)
        elif default is not None:
            current = default()
        else:
            raise NotFoundError(f"File not found: {path}")
        updated = mutator(current)
        return write_document(path, updated, shape)


def list_documents(directory: Path) -> List[str]:
    if not directory.is_dir():
        return []
    return sorted(
        entry.name
        for entry in directory.iterdir()
        if entry.is_file() and entry.name.endswith(".json") and not entry.name.startswith(".")
    )


def remove_document(path: Path) -> bool:
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False
