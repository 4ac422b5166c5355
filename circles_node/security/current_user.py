from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from circles_node.circles_runtime.collaborators import RequestContext

USER_HEADER = "X-Circles-User"


def current_user_id_optional(
    user_id: Optional[str] = Header(default=None, alias=USER_HEADER),
) -> Optional[str]:
    if not user_id or not user_id.strip():
        return None
    return user_id.strip()


def require_current_user_id(
    user_id: Optional[str] = Depends(current_user_id_optional),
) -> str:
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated.")
    return user_id


def request_context(user_id: Optional[str] = Depends(current_user_id_optional)) -> RequestContext:
    return RequestContext(user_id=user_id)
