from __future__ import annotations

from typing import Any, Dict

from fastapi import HTTPException, Request

from circles_node.circles_runtime.results import ErrorKind, OpResult
from circles_node.circles_runtime.service import CirclesCore

_STATUS: Dict[ErrorKind, int] = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.INVALID_TRANSITION: 400,
    ErrorKind.INCOMPLETE_RANKING: 400,
    ErrorKind.BAD_REQUEST: 400,
    ErrorKind.PERSISTENCE_CONFLICT: 409,
    ErrorKind.AUTH_REQUIRED: 401,
    ErrorKind.DOWNSTREAM_FAILURE: 502,
}


def get_core(request: Request) -> CirclesCore:
    return request.app.state.core


def _jsonable(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def unwrap(res: OpResult) -> OpResult:
    """Raise the matching HTTPException for a failed result, else return it."""
    if res.ok:
        return res
    detail = res.to_dict()
    if res.value is not None:
        detail["value"] = _jsonable(res.value)
    status_code = _STATUS.get(res.error, 400) if res.error is not None else 400
    raise HTTPException(status_code=status_code, detail=detail)


def respond(res: OpResult, key: str) -> Dict[str, Any]:
    out = unwrap(res).to_dict()
    out[key] = _jsonable(res.value)
    return out
