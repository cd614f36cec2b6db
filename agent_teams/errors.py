from __future__ import annotations

from typing import Any, Dict, List, Optional


class TeamsError(Exception):
    """Base error carrying a stable ``kind`` for callers of exposed operations."""

    kind = "error"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": str(self)}


class ValidationError(TeamsError):
    kind = "validation"

    def __init__(self, source: str, issues: List[str]) -> None:
        self.source = source
        self.issues = list(issues)
        detail = "\n".join(f"  - {issue}" for issue in self.issues)
        super().__init__(f"Validation failed for {source}:\n{detail}")

    @classmethod
    def from_pydantic(cls, source: str, exc: Any) -> "ValidationError":
        issues = []
        for err in exc.errors():
            loc = ".".join(str(part) for part in err.get("loc", ())) or "<root>"
            issues.append(f"{loc}: {err.get('msg', 'invalid')}")
        return cls(source, issues)


class DocumentParseError(TeamsError):
    kind = "parse"


class NotFoundError(TeamsError):
    kind = "not_found"


class ConflictError(TeamsError):
    kind = "conflict"


class LockError(TeamsError):
    kind = "lock"


class PermissionDeniedError(TeamsError):
    kind = "permission"


class ActionFailure(TeamsError):
    kind = "action"

    def __init__(self, message: str, rule_id: Optional[str] = None) -> None:
        self.rule_id = rule_id
        super().__init__(message)


class StorageError(TeamsError):
    kind = "io"
