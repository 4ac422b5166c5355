# circles_node/circles_runtime/results.py
from __future__ import annotations

"""
Structured operation results for the proposal and ranking core.

Business outcomes (not found, forbidden, invalid transition, incomplete
ranking, lost optimistic race) are returned, never raised. Only
infrastructure faults (see storage.errors) propagate as exceptions.

The dictionary shape produced by OpResult.to_dict() is the same
{"ok": ..., "error": ...} envelope the API layer hands back to clients.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    INVALID_TRANSITION = "invalid_transition"
    INCOMPLETE_RANKING = "incomplete_ranking"
    PERSISTENCE_CONFLICT = "persistence_conflict"
    DOWNSTREAM_FAILURE = "downstream_failure"
    AUTH_REQUIRED = "auth_required"
    BAD_REQUEST = "bad_request"


@dataclass(frozen=True)
class ResultWarning:
    """
    Partial-success marker: the core mutation committed but a follow-up
    (goal link, notification) did not.
    """

    kind: ErrorKind
    message: str
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"kind": self.kind.value, "message": self.message}
        if self.detail:
            out["detail"] = dict(self.detail)
        return out


@dataclass(frozen=True)
class OpResult:
    ok: bool
    value: Any = None
    error: Optional[ErrorKind] = None
    reason: str = ""
    message: str = ""
    warnings: List[ResultWarning] = field(default_factory=list)

    @classmethod
    def success(cls, value: Any = None, *, message: str = "", warnings: Optional[List[ResultWarning]] = None) -> "OpResult":
        return cls(ok=True, value=value, message=message, warnings=list(warnings or []))

    @classmethod
    def failure(cls, error: ErrorKind, message: str, *, reason: str = "", value: Any = None) -> "OpResult":
        return cls(ok=False, value=value, error=error, reason=reason or error.value, message=message)

    def with_warning(self, warning: ResultWarning) -> "OpResult":
        return OpResult(
            ok=self.ok,
            value=self.value,
            error=self.error,
            reason=self.reason,
            message=self.message,
            warnings=[*self.warnings, warning],
        )

    @property
    def partial(self) -> bool:
        return self.ok and bool(self.warnings)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"ok": self.ok}
        if not self.ok and self.error is not None:
            out["error"] = self.error.value
            out["reason"] = self.reason
        if self.message:
            out["message"] = self.message
        if self.warnings:
            out["warnings"] = [w.to_dict() for w in self.warnings]
        return out


def not_found(what: str, ident: str) -> OpResult:
    return OpResult.failure(ErrorKind.NOT_FOUND, f"{what} {ident} not found", reason=f"{what.lower()}_not_found")
