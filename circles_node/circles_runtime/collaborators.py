# circles_node/circles_runtime/collaborators.py
from __future__ import annotations

"""
Interfaces the core consumes, plus the small default implementations the
node ships with.

- RequestContext   who is acting (explicit, per request; no global user)
- Authorization    has_capability(user_id, scope_id, capability) -> bool
- GoalService      create(goal_data, follower_ids) -> Goal
- GoalDirectory    GoalService plus get / list_open / complete
- NotificationService  fire-and-forget notify_* hooks

Capability strings follow "<feature>.<action>", e.g. "proposals.review".
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Protocol, Set

from .models import Goal, Proposal, RankedList

log = logging.getLogger(__name__)


class Capability(str, Enum):
    # Proposals
    PROPOSALS_VIEW = "proposals.view"
    PROPOSALS_CREATE = "proposals.create"
    PROPOSALS_REVIEW = "proposals.review"
    PROPOSALS_VOTE = "proposals.vote"
    PROPOSALS_RANK = "proposals.rank"
    PROPOSALS_RESOLVE = "proposals.resolve"
    PROPOSALS_MODERATE = "proposals.moderate"

    # Goals
    GOALS_CREATE = "goals.create"
    GOALS_RANK = "goals.rank"
    GOALS_MODERATE = "goals.moderate"


def rank_capability(list_type: str) -> Optional[Capability]:
    try:
        return Capability(f"{list_type}.rank")
    except ValueError:
        return None


def moderate_capability(list_type: str) -> Optional[Capability]:
    try:
        return Capability(f"{list_type}.moderate")
    except ValueError:
        return None


# -----------------------
# Request identity
# -----------------------


class AuthContext(Protocol):
    def current_user_id(self) -> Optional[str]: ...


@dataclass(frozen=True)
class RequestContext:
    user_id: Optional[str] = None

    def current_user_id(self) -> Optional[str]:
        return self.user_id


# -----------------------
# Authorization
# -----------------------


class Authorization(Protocol):
    def has_capability(self, user_id: str, scope_id: str, capability: str) -> bool: ...


class StaticAuthorization:
    """
    Grant table: scope -> user -> capabilities. "*" as a scope applies to
    every scope. Users listed in `moderators` hold every capability
    everywhere.

    Config shape (circles_config.yaml):

        authorization:
          moderators: ["@root"]
          grants:
            circle-1:
              "@alice": ["proposals.create", "proposals.review"]
    """

    def __init__(
        self,
        grants: Optional[Mapping[str, Mapping[str, Iterable[str]]]] = None,
        moderators: Iterable[str] = (),
    ) -> None:
        self._grants: Dict[str, Dict[str, Set[str]]] = {}
        for scope, users in (grants or {}).items():
            for user, caps in (users or {}).items():
                self.grant(str(user), str(scope), *[str(c) for c in caps or []])
        self._moderators: FrozenSet[str] = frozenset(str(m) for m in moderators)

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> "StaticAuthorization":
        section = cfg.get("authorization", {}) or {}
        return cls(grants=section.get("grants") or {}, moderators=section.get("moderators") or [])

    def grant(self, user_id: str, scope_id: str, *capabilities: str | Capability) -> None:
        caps = self._grants.setdefault(scope_id, {}).setdefault(user_id, set())
        for c in capabilities:
            caps.add(c.value if isinstance(c, Capability) else str(c))

    def revoke(self, user_id: str, scope_id: str, *capabilities: str | Capability) -> None:
        caps = self._grants.get(scope_id, {}).get(user_id)
        if not caps:
            return
        for c in capabilities:
            caps.discard(c.value if isinstance(c, Capability) else str(c))

    def has_capability(self, user_id: str, scope_id: str, capability: str | Capability) -> bool:
        if not user_id:
            return False
        if user_id in self._moderators:
            return True
        cap = capability.value if isinstance(capability, Capability) else str(capability)
        for scope in (scope_id, "*"):
            if cap in self._grants.get(scope, {}).get(user_id, set()):
                return True
        return False


# -----------------------
# Goals
# -----------------------


class GoalService(Protocol):
    def create(self, goal_data: Mapping[str, Any], follower_ids: Iterable[str]) -> Goal: ...


class GoalDirectory(GoalService, Protocol):
    """What the core needs for the "goals" list type on top of create()."""

    def get(self, goal_id: str) -> Optional[Goal]: ...

    def list_open(self, circle_id: str) -> List[Goal]: ...

    def complete(self, goal_id: str) -> Optional[Goal]: ...


# -----------------------
# Notifications
# -----------------------


class NotificationService(Protocol):
    def notify_stage_changed(self, proposal: Proposal, previous_stage: str, actor_id: str) -> None: ...

    def notify_proposal_implemented(self, proposal: Proposal, goal: Goal, actor_id: str) -> None: ...

    def notify_ranking_stale(self, ranked_list: RankedList, unranked_count: int) -> None: ...


class LoggingNotificationService:
    """Default sink: records each notification in the log and in `sent`."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []

    def _record(self, kind: str, **fields: Any) -> None:
        self.sent.append({"kind": kind, **fields})
        log.info("[notify] %s %s", kind, fields)

    def notify_stage_changed(self, proposal: Proposal, previous_stage: str, actor_id: str) -> None:
        self._record(
            "proposal_stage_changed",
            proposal_id=proposal.id,
            circle_id=proposal.circle_id,
            from_stage=previous_stage,
            to_stage=proposal.stage.value,
            actor_id=actor_id,
            recipients=[proposal.created_by],
        )

    def notify_proposal_implemented(self, proposal: Proposal, goal: Goal, actor_id: str) -> None:
        self._record(
            "proposal_implemented",
            proposal_id=proposal.id,
            goal_id=goal.id,
            circle_id=proposal.circle_id,
            actor_id=actor_id,
            recipients=sorted({proposal.created_by, *goal.follower_ids}),
        )

    def notify_ranking_stale(self, ranked_list: RankedList, unranked_count: int) -> None:
        self._record(
            "ranking_stale_reminder",
            circle_id=ranked_list.entity_id,
            list_type=ranked_list.type,
            recipients=[ranked_list.user_id],
            unranked_count=unranked_count,
        )
