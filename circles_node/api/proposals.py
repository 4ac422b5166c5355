from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from circles_node.api.deps import get_core, respond
from circles_node.circles_runtime.collaborators import RequestContext
from circles_node.circles_runtime.service import CirclesCore
from circles_node.security.current_user import require_current_user_id

router = APIRouter(tags=["proposals"])


class ProposalCreate(BaseModel):
    name: str
    description: str = ""


class ProposalUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None


class StageChangeRequest(BaseModel):
    stage: str
    goal_id: Optional[str] = None
    outcome: Optional[str] = None
    outcome_reason: Optional[str] = None


class VoteRequest(BaseModel):
    vote: str = "like"


class ImplementRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    outcome_reason: str = ""


@router.post("/circles/{circle_id}/proposals")
def create_proposal(
    circle_id: str,
    body: ProposalCreate,
    user_id: str = Depends(require_current_user_id),
    core: CirclesCore = Depends(get_core),
) -> Dict[str, Any]:
    res = core.create_proposal(RequestContext(user_id), circle_id, body.name, body.description)
    return respond(res, "proposal")


@router.get("/circles/{circle_id}/proposals")
def list_proposals(
    circle_id: str,
    stage: Optional[str] = None,
    core: CirclesCore = Depends(get_core),
) -> Dict[str, Any]:
    return respond(core.list_proposals(circle_id, stage), "proposals")


@router.get("/proposals/{proposal_id}")
def get_proposal(proposal_id: str, core: CirclesCore = Depends(get_core)) -> Dict[str, Any]:
    return respond(core.get_proposal(proposal_id), "proposal")


@router.patch("/proposals/{proposal_id}")
def update_proposal(
    proposal_id: str,
    body: ProposalUpdate,
    user_id: str = Depends(require_current_user_id),
    core: CirclesCore = Depends(get_core),
) -> Dict[str, Any]:
    res = core.update_proposal(RequestContext(user_id), proposal_id, name=body.name, description=body.description)
    return respond(res, "proposal")


@router.delete("/proposals/{proposal_id}")
def delete_proposal(
    proposal_id: str,
    user_id: str = Depends(require_current_user_id),
    core: CirclesCore = Depends(get_core),
) -> Dict[str, Any]:
    return respond(core.delete_proposal(RequestContext(user_id), proposal_id), "proposal")


@router.post("/proposals/{proposal_id}/stage")
def change_stage(
    proposal_id: str,
    body: StageChangeRequest,
    user_id: str = Depends(require_current_user_id),
    core: CirclesCore = Depends(get_core),
) -> Dict[str, Any]:
    fields = {"goal_id": body.goal_id, "outcome": body.outcome, "outcome_reason": body.outcome_reason}
    payload = {k: v for k, v in fields.items() if v is not None}
    res = core.change_proposal_stage(RequestContext(user_id), proposal_id, body.stage, payload)
    return respond(res, "proposal")


@router.post("/proposals/{proposal_id}/vote")
def vote(
    proposal_id: str,
    body: VoteRequest,
    user_id: str = Depends(require_current_user_id),
    core: CirclesCore = Depends(get_core),
) -> Dict[str, Any]:
    return respond(core.vote_on_proposal(RequestContext(user_id), proposal_id, body.vote), "proposal")


@router.post("/proposals/{proposal_id}/implement")
def implement_as_goal(
    proposal_id: str,
    body: Optional[ImplementRequest] = None,
    user_id: str = Depends(require_current_user_id),
    core: CirclesCore = Depends(get_core),
) -> Dict[str, Any]:
    body = body or ImplementRequest()
    goal_data = {k: v for k, v in {"title": body.title, "description": body.description}.items() if v is not None}
    res = core.implement_proposal_as_goal(RequestContext(user_id), proposal_id, goal_data, outcome_reason=body.outcome_reason)
    return respond(res, "result")
