# circles_node/circles_runtime/service.py
from __future__ import annotations

"""
CirclesCore: the operations the surrounding application calls.

Every operation takes the acting user explicitly (an AuthContext) and
returns an OpResult. Follow-ups that are not part of the core mutation
(notifications, staleness invalidation, goal links) never undo it; they
surface as warnings or as logged failures.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Sequence

from circles_node import config as config_mod
from circles_node.storage.proposal_store import ProposalStore
from circles_node.storage.ranked_list_store import RankedListStore

from .collaborators import (
    AuthContext,
    Authorization,
    Capability,
    GoalDirectory,
    LoggingNotificationService,
    NotificationService,
    StaticAuthorization,
    moderate_capability,
    rank_capability,
)
from .goals import InMemoryGoalService
from .models import LIST_TYPE_GOALS, LIST_TYPE_PROPOSALS, Goal, Proposal, RankableItem
from .proposal_machine import ProposalStageMachine, StageChange
from .ranking import AggregateRankCache, AggregateRankEngine, validate_ranking
from .results import ErrorKind, OpResult, ResultWarning, not_found
from .stages import ELIGIBLE_STAGE, Outcome, Stage, check_transition, parse_stage
from .staleness import StalenessInvalidator, StaleRankingSweeper

log = logging.getLogger(__name__)

_ITEM_LABELS = {LIST_TYPE_PROPOSALS: "accepted proposals", LIST_TYPE_GOALS: "open goals"}


@dataclass(frozen=True)
class ImplementedAsGoal:
    goal: Goal
    proposal: Optional[Proposal]
    linked: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "goal": self.goal.to_dict(),
            "proposal": self.proposal.to_dict() if self.proposal else None,
            "linked": self.linked,
        }


def _auth_required() -> OpResult:
    return OpResult.failure(ErrorKind.AUTH_REQUIRED, "You need to be signed in to do that.")


def _downstream_warning(message: str, **detail: Any) -> ResultWarning:
    return ResultWarning(kind=ErrorKind.DOWNSTREAM_FAILURE, message=message, detail=detail)


class CirclesCore:
    def __init__(
        self,
        proposals: ProposalStore,
        ranked_lists: RankedListStore,
        authorization: Authorization,
        goals: GoalDirectory,
        notifier: NotificationService,
        *,
        list_types: Sequence[str] = (LIST_TYPE_PROPOSALS, LIST_TYPE_GOALS),
        cache_max_age_sec: float = 3600.0,
        staleness_inline: bool = False,
        staleness_batch_size: int = 200,
        staleness_workers: int = 2,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.proposals = proposals
        self.ranked_lists = ranked_lists
        self.authz = authorization
        self.goals = goals
        self.notifier = notifier
        self.list_types = tuple(list_types)
        self._clock = clock

        self.machine = ProposalStageMachine(
            proposals, authorization, goal_exists=lambda goal_id: self.goals.get(goal_id) is not None
        )
        self.engine = AggregateRankEngine(clock=clock)
        self.cache = AggregateRankCache(cache_max_age_sec, clock=clock)
        self.invalidator = StalenessInvalidator(
            ranked_lists,
            self.eligible_ids,
            batch_size=staleness_batch_size,
            inline=staleness_inline,
            workers=staleness_workers,
            clock=clock,
            on_invalidated=self.cache.invalidate,
        )
        self.sweeper: Optional[StaleRankingSweeper] = None

    # -----------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------
    def start_background(self, *, interval_sec: float, reminder_hours: float) -> None:
        self.sweeper = StaleRankingSweeper(
            self.invalidator,
            self.ranked_lists,
            self.notifier,
            interval_sec=interval_sec,
            reminder_hours=reminder_hours,
            clock=self._clock,
        )
        self.sweeper.start()

    def close(self) -> None:
        if self.sweeper is not None:
            self.sweeper.stop()
        self.invalidator.shutdown(wait=True)

    # -----------------------------------------------------
    # Helpers
    # -----------------------------------------------------
    def _has(self, user_id: str, scope_id: str, cap: Optional[Capability]) -> bool:
        if cap is None or not user_id:
            return False
        return bool(self.authz.has_capability(user_id, scope_id, cap.value))

    def _is_moderator(self, user_id: str, scope_id: str, list_type: str = LIST_TYPE_PROPOSALS) -> bool:
        return self._has(user_id, scope_id, moderate_capability(list_type))

    def _check_list_type(self, list_type: str) -> Optional[OpResult]:
        if list_type not in self.list_types:
            return OpResult.failure(
                ErrorKind.BAD_REQUEST, f"'{list_type}' is not a ranking type.", reason="unknown_list_type"
            )
        return None

    def _eligible_set_changed(self, scope_id: str, list_type: str) -> None:
        self.cache.invalidate(scope_id, list_type)
        self.invalidator.schedule(scope_id, list_type)

    def _notify_stage_changed(self, change: StageChange, actor: str) -> Optional[ResultWarning]:
        try:
            self.notifier.notify_stage_changed(change.proposal, change.previous_stage.value, actor)
        except Exception:
            log.exception("stage change notification failed for proposal %s", change.proposal.id)
            return _downstream_warning(
                "The stage was changed, but members could not be notified.",
                proposal_id=change.proposal.id,
                reason="notification_failed",
            )
        return None

    # -----------------------------------------------------
    # Proposals
    # -----------------------------------------------------
    def create_proposal(self, ctx: AuthContext, circle_id: str, name: str, description: str = "") -> OpResult:
        actor = ctx.current_user_id()
        if not actor:
            return _auth_required()
        if not self._has(actor, circle_id, Capability.PROPOSALS_CREATE):
            return OpResult.failure(
                ErrorKind.FORBIDDEN, "You are not allowed to create proposals in this circle.", reason="missing_capability"
            )
        name = (name or "").strip()
        if not name:
            return OpResult.failure(ErrorKind.BAD_REQUEST, "A proposal needs a name.", reason="missing_name")

        proposal = self.proposals.insert(circle_id, actor, name, (description or "").strip())
        log.info("proposal %s created in circle %s by %s", proposal.id, circle_id, actor)
        return OpResult.success(proposal, message="Proposal created")

    def get_proposal(self, proposal_id: str) -> OpResult:
        proposal = self.proposals.find_by_id(proposal_id)
        if proposal is None:
            return not_found("Proposal", proposal_id)
        return OpResult.success(proposal)

    def list_proposals(self, circle_id: str, stage: Optional[str] = None) -> OpResult:
        wanted: Optional[Stage] = None
        if stage:
            wanted = parse_stage(stage)
            if wanted is None:
                return OpResult.failure(ErrorKind.BAD_REQUEST, f"'{stage}' is not a proposal stage.", reason="unknown_stage")
        return OpResult.success(self.proposals.find_by_scope(circle_id, wanted))

    def update_proposal(
        self,
        ctx: AuthContext,
        proposal_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> OpResult:
        actor = ctx.current_user_id()
        if not actor:
            return _auth_required()
        proposal = self.proposals.find_by_id(proposal_id)
        if proposal is None:
            return not_found("Proposal", proposal_id)

        if not self._is_moderator(actor, proposal.circle_id):
            if actor != proposal.created_by:
                return OpResult.failure(
                    ErrorKind.FORBIDDEN, "Only the author can edit this proposal.", reason="not_author"
                )
            if proposal.stage != Stage.DRAFT:
                return OpResult.failure(
                    ErrorKind.FORBIDDEN, "Proposals can only be edited while in draft.", reason="wrong_stage"
                )

        changes: Dict[str, Any] = {}
        if name is not None:
            if not name.strip():
                return OpResult.failure(ErrorKind.BAD_REQUEST, "A proposal needs a name.", reason="missing_name")
            changes["name"] = name.strip()
        if description is not None:
            changes["description"] = description.strip()
        if not changes:
            return OpResult.success(proposal, message="Nothing to update")

        changes["edited_at"] = self._clock()
        updated = self.proposals.update_fields(proposal_id, changes)
        if updated is None:
            return not_found("Proposal", proposal_id)
        if updated.stage == ELIGIBLE_STAGE and "name" in changes:
            self.cache.invalidate(updated.circle_id, LIST_TYPE_PROPOSALS)
        return OpResult.success(updated, message="Proposal updated")

    def delete_proposal(self, ctx: AuthContext, proposal_id: str) -> OpResult:
        actor = ctx.current_user_id()
        if not actor:
            return _auth_required()
        proposal = self.proposals.find_by_id(proposal_id)
        if proposal is None:
            return not_found("Proposal", proposal_id)
        if actor != proposal.created_by and not self._is_moderator(actor, proposal.circle_id):
            return OpResult.failure(
                ErrorKind.FORBIDDEN, "Only the author or a moderator can delete this proposal.", reason="not_author"
            )

        deleted = self.proposals.delete(proposal_id)
        if deleted is None:
            return not_found("Proposal", proposal_id)
        if deleted.stage == ELIGIBLE_STAGE:
            self._eligible_set_changed(deleted.circle_id, LIST_TYPE_PROPOSALS)
        return OpResult.success(deleted, message="Proposal deleted")

    def change_proposal_stage(
        self,
        ctx: AuthContext,
        proposal_id: str,
        target_stage: str,
        payload: Optional[Mapping[str, Any]] = None,
    ) -> OpResult:
        res = self.machine.change_stage(ctx, proposal_id, target_stage, payload)
        if not res.ok:
            return res

        change: StageChange = res.value
        out = OpResult.success(change.proposal, message=res.message)
        warning = self._notify_stage_changed(change, str(ctx.current_user_id()))
        if warning is not None:
            out = out.with_warning(warning)
        if change.crossed_eligible_boundary:
            self._eligible_set_changed(change.proposal.circle_id, LIST_TYPE_PROPOSALS)
        return out

    def vote_on_proposal(self, ctx: AuthContext, proposal_id: str, vote: Optional[str]) -> OpResult:
        return self.machine.vote(ctx, proposal_id, vote)

    def implement_proposal_as_goal(
        self,
        ctx: AuthContext,
        proposal_id: str,
        goal_data: Optional[Mapping[str, Any]] = None,
        outcome_reason: str = "",
    ) -> OpResult:
        """
        Create the goal first, then link it by moving the proposal to
        implemented. A failed link leaves the goal in place and reports
        reason "goal_created_link_failed" with the goal in the value;
        retrying is up to the user.
        """
        actor = ctx.current_user_id()
        if not actor:
            return _auth_required()
        proposal = self.proposals.find_by_id(proposal_id)
        if proposal is None:
            return not_found("Proposal", proposal_id)

        # do not create a goal the actor could never link
        caps = self.machine.caps_for(actor, proposal)
        decision = check_transition(proposal.stage, Stage.IMPLEMENTED, caps, {"goal_id": "pending"})
        if not decision.allowed:
            return OpResult.failure(decision.error or ErrorKind.FORBIDDEN, decision.message, reason=decision.reason)

        data: Dict[str, Any] = {
            "title": proposal.name,
            "description": proposal.description,
            **dict(goal_data or {}),
            "circle_id": proposal.circle_id,
            "created_by": actor,
            "proposal_id": proposal.id,
        }
        followers = [proposal.created_by, actor, *sorted(proposal.reactions)]
        try:
            goal = self.goals.create(data, followers)
        except Exception:
            log.exception("goal creation failed for proposal %s", proposal_id)
            return OpResult.failure(
                ErrorKind.DOWNSTREAM_FAILURE, "The goal could not be created. Please try again.", reason="goal_create_failed"
            )
        # a new open goal changes the goals eligible set whether or not the link succeeds
        self._eligible_set_changed(goal.circle_id, LIST_TYPE_GOALS)

        payload = {"goal_id": goal.id, "outcome": Outcome.ACCEPTED.value}
        if outcome_reason:
            payload["outcome_reason"] = outcome_reason
        res = self.change_proposal_stage(ctx, proposal_id, Stage.IMPLEMENTED.value, payload)

        if not res.ok:
            log.warning(
                "goal %s created but proposal %s not linked: %s (%s)", goal.id, proposal_id, res.error, res.reason
            )
            current = self.proposals.find_by_id(proposal_id)
            return OpResult(
                ok=False,
                value=ImplementedAsGoal(goal=goal, proposal=current, linked=False),
                error=res.error,
                reason="goal_created_link_failed",
                message=f"The goal was created, but the proposal could not be marked implemented: {res.message}",
                warnings=[
                    _downstream_warning(
                        "Goal exists without a link to its proposal.", goal_id=goal.id, cause=res.reason
                    )
                ],
            )

        out = OpResult.success(
            ImplementedAsGoal(goal=goal, proposal=res.value, linked=True),
            message="Proposal implemented as goal",
            warnings=res.warnings,
        )
        try:
            self.notifier.notify_proposal_implemented(res.value, goal, actor)
        except Exception:
            log.exception("implemented notification failed for proposal %s", proposal_id)
            out = out.with_warning(
                _downstream_warning(
                    "The proposal was implemented, but followers could not be notified.",
                    proposal_id=proposal_id,
                    reason="notification_failed",
                )
            )
        return out

    # -----------------------------------------------------
    # Goals
    # -----------------------------------------------------
    def complete_goal(self, ctx: AuthContext, goal_id: str) -> OpResult:
        actor = ctx.current_user_id()
        if not actor:
            return _auth_required()
        goal = self.goals.get(goal_id)
        if goal is None:
            return not_found("Goal", goal_id)
        if actor != goal.created_by and not self._is_moderator(actor, goal.circle_id, LIST_TYPE_GOALS):
            return OpResult.failure(
                ErrorKind.FORBIDDEN, "Only the goal's creator or a moderator can complete it.", reason="not_author"
            )
        done = self.goals.complete(goal_id)
        if done is None:
            return OpResult.failure(
                ErrorKind.INVALID_TRANSITION, "This goal is already completed.", reason="goal_not_open"
            )
        self._eligible_set_changed(done.circle_id, LIST_TYPE_GOALS)
        return OpResult.success(done, message="Goal completed")

    # -----------------------------------------------------
    # Ranking
    # -----------------------------------------------------
    def _eligible_items(self, scope_id: str, list_type: str) -> List[RankableItem]:
        if list_type == LIST_TYPE_PROPOSALS:
            return [
                RankableItem(id=p.id, created_at=p.created_at, name=p.name)
                for p in self.proposals.find_by_scope_and_stage(scope_id, ELIGIBLE_STAGE)
            ]
        if list_type == LIST_TYPE_GOALS:
            return [RankableItem(id=g.id, created_at=g.created_at, name=g.title) for g in self.goals.list_open(scope_id)]
        return []

    def eligible_ids(self, scope_id: str, list_type: str) -> FrozenSet[str]:
        return frozenset(item.id for item in self._eligible_items(scope_id, list_type))

    def get_ranking_eligible_items(self, scope_id: str, list_type: str) -> OpResult:
        bad = self._check_list_type(list_type)
        if bad is not None:
            return bad
        return OpResult.success(self._eligible_items(scope_id, list_type))

    def get_user_ranked_list(self, scope_id: str, list_type: str, user_id: str) -> OpResult:
        bad = self._check_list_type(list_type)
        if bad is not None:
            return bad
        return OpResult.success(self.ranked_lists.find(scope_id, list_type, user_id))

    def save_user_ranked_list(self, ctx: AuthContext, scope_id: str, list_type: str, ordered_ids: Sequence[str]) -> OpResult:
        actor = ctx.current_user_id()
        if not actor:
            return _auth_required()
        bad = self._check_list_type(list_type)
        if bad is not None:
            return bad
        if not self._has(actor, scope_id, rank_capability(list_type)):
            return OpResult.failure(
                ErrorKind.FORBIDDEN, f"You are not allowed to rank {list_type} in this circle.", reason="missing_capability"
            )

        checked = validate_ranking(
            ordered_ids, self.eligible_ids(scope_id, list_type), item_label=_ITEM_LABELS.get(list_type, "items")
        )
        if not checked.ok:
            return checked

        saved = self.ranked_lists.save(scope_id, list_type, actor, ordered_ids)
        self.cache.invalidate(scope_id, list_type)
        log.info("ranking saved %s/%s by %s (%d items)", scope_id, list_type, actor, len(saved.list))
        return OpResult.success(saved, message="Ranking saved")

    def get_aggregate_ranking(self, ctx: AuthContext, scope_id: str, list_type: str) -> OpResult:
        bad = self._check_list_type(list_type)
        if bad is not None:
            return bad

        generation = self.cache.generation(scope_id, list_type)
        items = self._eligible_items(scope_id, list_type)
        eligible = frozenset(it.id for it in items)
        snapshot = self.cache.get(scope_id, list_type, eligible)
        if snapshot is None:
            cap = rank_capability(list_type)
            lists = [
                rl for rl in self.ranked_lists.find_valid(scope_id, list_type) if self._has(rl.user_id, scope_id, cap)
            ]
            snapshot = self.engine.compute(scope_id, list_type, items, lists)
            self.cache.put(snapshot, generation)

        user_id = ctx.current_user_id()
        user_list = self.ranked_lists.find(scope_id, list_type, user_id) if user_id else None
        return OpResult.success(self.engine.annotate(snapshot, items, user_list))

    def invalidate_stale_rankings(self, scope_id: str, list_type: str, *, ctx: Optional[AuthContext] = None) -> OpResult:
        """
        Synchronous invalidation. Internal triggers pass no ctx; the
        maintenance surface passes the caller, who must be a moderator.
        """
        bad = self._check_list_type(list_type)
        if bad is not None:
            return bad
        if ctx is not None:
            actor = ctx.current_user_id()
            if not actor:
                return _auth_required()
            if not self._is_moderator(actor, scope_id, list_type):
                return OpResult.failure(
                    ErrorKind.FORBIDDEN, "Only moderators can run ranking maintenance.", reason="missing_capability"
                )
        count = self.invalidator.invalidate(scope_id, list_type)
        return OpResult.success(count, message=f"{count} ranking(s) marked stale")


def build_core(cfg: Dict[str, Any], *, clock: Callable[[], float] = time.time) -> CirclesCore:
    driver = config_mod.get_persistence_driver(cfg)
    if driver == "json":
        data_dir = config_mod.get_data_dir(cfg)
        proposals = ProposalStore.with_snapshot(data_dir, clock=clock)
        ranked_lists = RankedListStore.with_snapshot(data_dir, clock=clock)
        goals = InMemoryGoalService.with_snapshot(data_dir, clock=clock)
        log.info("persistence: json snapshots under %s", data_dir)
    else:
        if driver != "memory":
            log.warning("unknown persistence driver %r; using memory", driver)
        proposals = ProposalStore(clock=clock)
        ranked_lists = RankedListStore(clock=clock)
        goals = InMemoryGoalService(clock=clock)

    staleness = config_mod.get_staleness_settings(cfg)
    return CirclesCore(
        proposals,
        ranked_lists,
        StaticAuthorization.from_config(cfg),
        goals,
        LoggingNotificationService(),
        list_types=config_mod.get_list_types(cfg),
        cache_max_age_sec=config_mod.get_cache_max_age(cfg),
        staleness_inline=staleness["inline"],
        staleness_batch_size=staleness["batch_size"],
        staleness_workers=staleness["workers"],
        clock=clock,
    )
