from __future__ import annotations

from typing import Any, Dict, List

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from circles_node.api.deps import get_core, respond
from circles_node.circles_runtime.collaborators import RequestContext
from circles_node.circles_runtime.service import CirclesCore
from circles_node.security.current_user import request_context, require_current_user_id

router = APIRouter(prefix="/circles/{circle_id}/rankings", tags=["rankings"])


class RankingSubmit(BaseModel):
    ordered_ids: List[str]


@router.get("/{list_type}/eligible")
def eligible_items(circle_id: str, list_type: str, core: CirclesCore = Depends(get_core)) -> Dict[str, Any]:
    return respond(core.get_ranking_eligible_items(circle_id, list_type), "items")


@router.get("/{list_type}/mine")
def my_ranking(
    circle_id: str,
    list_type: str,
    user_id: str = Depends(require_current_user_id),
    core: CirclesCore = Depends(get_core),
) -> Dict[str, Any]:
    return respond(core.get_user_ranked_list(circle_id, list_type, user_id), "ranked_list")


@router.put("/{list_type}/mine")
def save_my_ranking(
    circle_id: str,
    list_type: str,
    body: RankingSubmit,
    user_id: str = Depends(require_current_user_id),
    core: CirclesCore = Depends(get_core),
) -> Dict[str, Any]:
    res = core.save_user_ranked_list(RequestContext(user_id), circle_id, list_type, body.ordered_ids)
    return respond(res, "ranked_list")


@router.get("/{list_type}")
def aggregate_ranking(
    circle_id: str,
    list_type: str,
    ctx: RequestContext = Depends(request_context),
    core: CirclesCore = Depends(get_core),
) -> Dict[str, Any]:
    return respond(core.get_aggregate_ranking(ctx, circle_id, list_type), "aggregate")


@router.post("/{list_type}/invalidate")
def invalidate(
    circle_id: str,
    list_type: str,
    user_id: str = Depends(require_current_user_id),
    core: CirclesCore = Depends(get_core),
) -> Dict[str, Any]:
    res = core.invalidate_stale_rankings(circle_id, list_type, ctx=RequestContext(user_id))
    return respond(res, "invalidated")
