# circles_node/circles_runtime/proposal_machine.py
from __future__ import annotations

"""
ProposalStageMachine: validate a requested stage change through the
transition gate, then commit it as one conditional document update.

The update is filtered on the stage that was read (optimistic CAS), so
two concurrent change_stage calls on one proposal cannot both commit.
The loser gets PERSISTENCE_CONFLICT and may retry once.

Notifications and staleness invalidation are NOT fired here; the caller
owns those (see service.CirclesCore).
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from circles_node.storage.proposal_store import ProposalStore

from .collaborators import AuthContext, Authorization, Capability
from .models import VOTE_LIKE, VOTE_NONE, Proposal
from .results import ErrorKind, OpResult, not_found
from .stages import (
    ELIGIBLE_STAGE,
    TERMINAL_STAGES,
    Outcome,
    Stage,
    StageCaps,
    check_transition,
    outcome_for,
    parse_stage,
)

log = logging.getLogger(__name__)

_RESOLUTION_FIELDS = ("outcome", "outcome_reason", "resolved_at_stage", "goal_id")


@dataclass(frozen=True)
class StageChange:
    proposal: Proposal
    previous_stage: Stage

    @property
    def crossed_eligible_boundary(self) -> bool:
        """True when the proposal entered or left the ranking eligible stage."""
        return (self.previous_stage == ELIGIBLE_STAGE) != (self.proposal.stage == ELIGIBLE_STAGE)


def _auth_required() -> OpResult:
    return OpResult.failure(ErrorKind.AUTH_REQUIRED, "You need to be signed in to do that.")


class ProposalStageMachine:
    def __init__(
        self,
        store: ProposalStore,
        authorization: Authorization,
        *,
        goal_exists: Optional[Callable[[str], bool]] = None,
    ) -> None:
        self._store = store
        self._authz = authorization
        self._goal_exists = goal_exists

    # -----------------------------------------------------
    # Capabilities
    # -----------------------------------------------------
    def caps_for(self, user_id: str, proposal: Proposal) -> StageCaps:
        scope = proposal.circle_id

        def has(cap: Capability) -> bool:
            return bool(self._authz.has_capability(user_id, scope, cap.value))

        return StageCaps(
            is_author=bool(user_id) and user_id == proposal.created_by,
            can_review=has(Capability.PROPOSALS_REVIEW),
            can_vote=has(Capability.PROPOSALS_VOTE),
            can_rank=has(Capability.PROPOSALS_RANK),
            can_resolve=has(Capability.PROPOSALS_RESOLVE),
            can_moderate=has(Capability.PROPOSALS_MODERATE),
        )

    # -----------------------------------------------------
    # Stage changes
    # -----------------------------------------------------
    def _resolution_changes(
        self,
        prev: Stage,
        target: Stage,
        payload: Mapping[str, Any],
    ) -> Tuple[Optional[Dict[str, Any]], List[str], Optional[OpResult]]:
        changes: Dict[str, Any] = {"stage": target.value}
        unset: List[str] = []

        if target not in TERMINAL_STAGES:
            # leaving (or never reaching) a terminal stage clears the resolution
            return changes, list(_RESOLUTION_FIELDS), None

        expected = outcome_for(target)
        requested = payload.get("outcome")
        if requested is not None:
            try:
                requested_outcome = Outcome(str(requested).strip().lower())
            except ValueError:
                return None, unset, OpResult.failure(
                    ErrorKind.INVALID_TRANSITION, f"'{requested}' is not a proposal outcome.", reason="unknown_outcome"
                )
            if requested_outcome != expected:
                return None, unset, OpResult.failure(
                    ErrorKind.INVALID_TRANSITION,
                    f"A {target.value} proposal must have outcome '{expected.value}'.",
                    reason="outcome_mismatch",
                )

        changes["outcome"] = expected.value
        changes["resolved_at_stage"] = prev.value
        reason = str(payload.get("outcome_reason") or "").strip()
        if reason:
            changes["outcome_reason"] = reason
        else:
            unset.append("outcome_reason")

        if target == Stage.IMPLEMENTED:
            changes["goal_id"] = str(payload["goal_id"]).strip()
        else:
            unset.append("goal_id")
        return changes, unset, None

    def change_stage(
        self,
        ctx: AuthContext,
        proposal_id: str,
        target_stage: Stage | str,
        payload: Optional[Mapping[str, Any]] = None,
    ) -> OpResult:
        actor = ctx.current_user_id()
        if not actor:
            return _auth_required()

        payload = dict(payload or {})
        proposal = self._store.find_by_id(proposal_id)
        if proposal is None:
            return not_found("Proposal", proposal_id)

        caps = self.caps_for(actor, proposal)
        decision = check_transition(proposal.stage, target_stage, caps, payload)
        if not decision.allowed:
            log.info(
                "stage change denied proposal=%s actor=%s %s->%s reason=%s",
                proposal_id, actor, proposal.stage.value, target_stage, decision.reason,
            )
            return OpResult.failure(decision.error or ErrorKind.FORBIDDEN, decision.message, reason=decision.reason)

        target = parse_stage(target_stage)
        if target is None:
            return OpResult.failure(
                ErrorKind.INVALID_TRANSITION, f"Unknown stage '{target_stage}'.", reason="unknown_stage"
            )

        if target == Stage.IMPLEMENTED and self._goal_exists is not None:
            goal_id = str(payload["goal_id"]).strip()
            if not self._goal_exists(goal_id):
                return not_found("Goal", goal_id)

        changes, unset, err = self._resolution_changes(proposal.stage, target, payload)
        if err is not None:
            return err

        updated = self._store.update_stage(
            proposal_id,
            proposal.stage,
            changes,
            unset=unset,
            require_no_goal=(target == Stage.IMPLEMENTED),
        )
        if updated is None:
            current = self._store.find_by_id(proposal_id)
            if current is None:
                return not_found("Proposal", proposal_id)
            log.warning(
                "stage change lost race proposal=%s expected=%s found=%s target=%s",
                proposal_id, proposal.stage.value, current.stage.value, target.value,
            )
            return OpResult.failure(
                ErrorKind.PERSISTENCE_CONFLICT,
                f"The proposal changed while you were working on it (now {current.stage.value}). Please retry.",
                reason="stage_changed",
                value=current,
            )

        log.info("proposal %s moved %s -> %s by %s", proposal_id, proposal.stage.value, target.value, actor)
        return OpResult.success(
            StageChange(proposal=updated, previous_stage=proposal.stage),
            message=f"Proposal moved to {target.value} stage",
        )

    # -----------------------------------------------------
    # Voting
    # -----------------------------------------------------
    def vote(self, ctx: AuthContext, proposal_id: str, vote: Optional[str]) -> OpResult:
        actor = ctx.current_user_id()
        if not actor:
            return _auth_required()

        choice = (vote or VOTE_NONE).strip().lower()
        if choice not in (VOTE_LIKE, VOTE_NONE):
            return OpResult.failure(ErrorKind.BAD_REQUEST, f"'{vote}' is not a valid vote.", reason="invalid_vote")

        proposal = self._store.find_by_id(proposal_id)
        if proposal is None:
            return not_found("Proposal", proposal_id)

        if proposal.stage != Stage.VOTING:
            return OpResult.failure(
                ErrorKind.FORBIDDEN, "Proposal is not in the voting stage.", reason="wrong_stage"
            )
        if not self._authz.has_capability(actor, proposal.circle_id, Capability.PROPOSALS_VOTE.value):
            return OpResult.failure(
                ErrorKind.FORBIDDEN, "You are not allowed to vote on proposals in this circle.", reason="missing_capability"
            )

        weight = 1 if choice == VOTE_LIKE else None
        updated = self._store.set_reaction(proposal_id, actor, weight, required_stage=Stage.VOTING)
        if updated is None:
            current = self._store.find_by_id(proposal_id)
            if current is None:
                return not_found("Proposal", proposal_id)
            return OpResult.failure(
                ErrorKind.FORBIDDEN, "Proposal is not in the voting stage.", reason="wrong_stage"
            )

        return OpResult.success(updated, message="Vote added" if weight else "Vote removed")
