from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends

from circles_node.api.deps import get_core, respond
from circles_node.circles_runtime.collaborators import RequestContext
from circles_node.circles_runtime.results import OpResult
from circles_node.circles_runtime.service import CirclesCore
from circles_node.security.current_user import require_current_user_id

router = APIRouter(tags=["goals"])


@router.get("/circles/{circle_id}/goals")
def open_goals(circle_id: str, core: CirclesCore = Depends(get_core)) -> Dict[str, Any]:
    return respond(OpResult.success(core.goals.list_open(circle_id)), "goals")


@router.post("/goals/{goal_id}/complete")
def complete_goal(
    goal_id: str,
    user_id: str = Depends(require_current_user_id),
    core: CirclesCore = Depends(get_core),
) -> Dict[str, Any]:
    return respond(core.complete_goal(RequestContext(user_id), goal_id), "goal")
