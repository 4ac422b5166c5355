# circles_node/circles_runtime/stages.py
from __future__ import annotations

"""
Proposal stages & the stage transition gate.

Lifecycle:
  draft -> review -> voting -> accepted -> implemented
                 \\-> rejected  \\-> rejected  \\-> rejected

Every permission decision about moving a proposal between stages goes
through check_transition(). Call sites never re-derive the rules.

Reason codes on a denial:
- unknown_stage       target is not a proposal stage
- same_stage          proposal already holds the target stage
- terminal_stage      source stage is implemented/rejected
- wrong_stage         no edge from source to target
- missing_goal_id     move to implemented without payload["goal_id"]
- missing_capability  edge exists, actor lacks the capability for it
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

from .results import ErrorKind


class Stage(str, Enum):
    DRAFT = "draft"
    REVIEW = "review"
    VOTING = "voting"
    ACCEPTED = "accepted"
    IMPLEMENTED = "implemented"
    REJECTED = "rejected"


class Outcome(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"


TERMINAL_STAGES: FrozenSet[Stage] = frozenset({Stage.IMPLEMENTED, Stage.REJECTED})

# Stage whose members form the ranking eligible set for proposals.
ELIGIBLE_STAGE: Stage = Stage.ACCEPTED


class StageCapability(str, Enum):
    IS_AUTHOR = "is_author"
    CAN_REVIEW = "can_review"
    CAN_VOTE = "can_vote"
    CAN_RANK = "can_rank"
    CAN_RESOLVE = "can_resolve"
    CAN_MODERATE = "can_moderate"


@dataclass(frozen=True)
class StageCaps:
    is_author: bool = False
    can_review: bool = False
    can_vote: bool = False
    can_rank: bool = False
    can_resolve: bool = False
    can_moderate: bool = False

    def has(self, cap: StageCapability) -> bool:
        return bool(getattr(self, cap.value))

    def to_dict(self) -> Dict[str, bool]:
        return {c.value: self.has(c) for c in StageCapability}

    @classmethod
    def from_any(cls, obj: object) -> "StageCaps":
        if isinstance(obj, StageCaps):
            return obj
        if isinstance(obj, dict):
            return cls(**{c.value: bool(obj.get(c.value, False)) for c in StageCapability})
        return cls()


# (from, to) -> capabilities of which any one suffices
TRANSITION_TABLE: Dict[Tuple[Stage, Stage], FrozenSet[StageCapability]] = {
    (Stage.DRAFT, Stage.REVIEW): frozenset({StageCapability.IS_AUTHOR}),
    (Stage.REVIEW, Stage.VOTING): frozenset({StageCapability.CAN_REVIEW}),
    (Stage.REVIEW, Stage.REJECTED): frozenset({StageCapability.CAN_REVIEW}),
    (Stage.VOTING, Stage.ACCEPTED): frozenset({StageCapability.CAN_VOTE, StageCapability.CAN_RESOLVE}),
    (Stage.VOTING, Stage.REJECTED): frozenset({StageCapability.CAN_VOTE, StageCapability.CAN_RESOLVE}),
    (Stage.ACCEPTED, Stage.IMPLEMENTED): frozenset({StageCapability.CAN_RANK, StageCapability.CAN_RESOLVE}),
    (Stage.ACCEPTED, Stage.REJECTED): frozenset({StageCapability.CAN_RANK, StageCapability.CAN_RESOLVE}),
}

_CAP_LABELS: Dict[StageCapability, str] = {
    StageCapability.IS_AUTHOR: "be the author",
    StageCapability.CAN_REVIEW: "review proposals",
    StageCapability.CAN_VOTE: "vote on proposals",
    StageCapability.CAN_RANK: "rank proposals",
    StageCapability.CAN_RESOLVE: "resolve proposals",
    StageCapability.CAN_MODERATE: "moderate proposals",
}


@dataclass(frozen=True)
class TransitionDecision:
    allowed: bool
    reason: str = "allowed"
    message: str = ""
    error: Optional[ErrorKind] = None

    def __bool__(self) -> bool:
        return self.allowed


def parse_stage(value: Any) -> Optional[Stage]:
    if isinstance(value, Stage):
        return value
    try:
        return Stage(str(value).strip().lower())
    except ValueError:
        return None


def _deny(error: ErrorKind, reason: str, message: str) -> TransitionDecision:
    return TransitionDecision(allowed=False, reason=reason, message=message, error=error)


def _requires_goal_id(dst: Stage) -> bool:
    return dst == Stage.IMPLEMENTED


def _has_goal_id(payload: Optional[Mapping[str, Any]]) -> bool:
    if not payload:
        return False
    gid = payload.get("goal_id")
    return bool(gid and str(gid).strip())


def check_transition(
    stage: Stage | str,
    target: Stage | str,
    caps: StageCaps,
    payload: Optional[Mapping[str, Any]] = None,
) -> TransitionDecision:
    """
    Full decision with a reason code and a human-readable message.

    Moderators may take any edge between two distinct stages. The goal id
    precondition on entering implemented binds moderators as well, since
    it is about the payload rather than about who is asking.
    """
    src = parse_stage(stage)
    dst = parse_stage(target)
    if src is None or dst is None:
        bad = target if dst is None else stage
        return _deny(ErrorKind.INVALID_TRANSITION, "unknown_stage", f"'{bad}' is not a proposal stage.")

    if src == dst:
        return _deny(ErrorKind.INVALID_TRANSITION, "same_stage", f"Proposal is already in the {src.value} stage.")

    if _requires_goal_id(dst) and not _has_goal_id(payload):
        return _deny(
            ErrorKind.INVALID_TRANSITION,
            "missing_goal_id",
            "A proposal can only be marked implemented together with the goal that implements it.",
        )

    if caps.can_moderate:
        return TransitionDecision(allowed=True, reason="moderator")

    if src in TERMINAL_STAGES:
        return _deny(
            ErrorKind.INVALID_TRANSITION,
            "terminal_stage",
            f"Proposal is {src.value}; only moderators can move it to another stage.",
        )

    needed = TRANSITION_TABLE.get((src, dst))
    if needed is None:
        return _deny(
            ErrorKind.INVALID_TRANSITION,
            "wrong_stage",
            f"A proposal in the {src.value} stage cannot be moved to {dst.value}.",
        )

    if any(caps.has(c) for c in needed):
        return TransitionDecision(allowed=True)

    labels = " or ".join(_CAP_LABELS[c] for c in sorted(needed, key=lambda c: c.value))
    return _deny(
        ErrorKind.FORBIDDEN,
        "missing_capability",
        f"Moving a proposal from {src.value} to {dst.value} requires permission to {labels}.",
    )


def can_transition(
    stage: Stage | str,
    target: Stage | str,
    caps: StageCaps,
    payload: Optional[Mapping[str, Any]] = None,
) -> bool:
    return check_transition(stage, target, caps, payload).allowed


def allowed_targets(stage: Stage | str, caps: StageCaps, payload: Optional[Mapping[str, Any]] = None) -> List[Stage]:
    """Stages the actor could move a proposal to from `stage` (for UI menus)."""
    return [s for s in Stage if can_transition(stage, s, caps, payload)]


def outcome_for(target: Stage) -> Optional[Outcome]:
    if target == Stage.IMPLEMENTED:
        return Outcome.ACCEPTED
    if target == Stage.REJECTED:
        return Outcome.REJECTED
    return None
