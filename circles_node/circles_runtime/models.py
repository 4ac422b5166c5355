# circles_node/circles_runtime/models.py
from __future__ import annotations

"""
Document shapes for proposals, ranked lists, goals and rankable items.

Stores persist plain dicts (to_dict / from_dict); the runtime works on
these dataclasses. Timestamps are epoch seconds (float).
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .stages import Outcome, Stage, parse_stage

LIST_TYPE_PROPOSALS = "proposals"
LIST_TYPE_GOALS = "goals"

GOAL_STATUS_OPEN = "open"
GOAL_STATUS_COMPLETED = "completed"

VOTE_LIKE = "like"
VOTE_NONE = "none"

RankedListKey = Tuple[str, str, str]


def _opt_str(v: Any) -> Optional[str]:
    if v is None:
        return None
    s = str(v)
    return s if s else None


def _opt_float(v: Any) -> Optional[float]:
    if v is None:
        return None
    return float(v)


@dataclass(frozen=True)
class Proposal:
    id: str
    circle_id: str
    created_by: str
    name: str = ""
    description: str = ""
    stage: Stage = Stage.DRAFT
    outcome: Optional[Outcome] = None
    outcome_reason: Optional[str] = None
    resolved_at_stage: Optional[Stage] = None
    goal_id: Optional[str] = None
    reactions: Dict[str, int] = field(default_factory=dict)
    created_at: float = 0.0
    edited_at: Optional[float] = None

    @property
    def like_count(self) -> int:
        return sum(int(w) for w in self.reactions.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "circle_id": self.circle_id,
            "created_by": self.created_by,
            "name": self.name,
            "description": self.description,
            "stage": self.stage.value,
            "outcome": self.outcome.value if self.outcome else None,
            "outcome_reason": self.outcome_reason,
            "resolved_at_stage": self.resolved_at_stage.value if self.resolved_at_stage else None,
            "goal_id": self.goal_id,
            "reactions": dict(self.reactions),
            "created_at": self.created_at,
            "edited_at": self.edited_at,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Proposal":
        outcome = raw.get("outcome")
        return cls(
            id=str(raw["id"]),
            circle_id=str(raw.get("circle_id", "")),
            created_by=str(raw.get("created_by", "")),
            name=str(raw.get("name", "")),
            description=str(raw.get("description", "")),
            stage=parse_stage(raw.get("stage")) or Stage.DRAFT,
            outcome=Outcome(outcome) if outcome else None,
            outcome_reason=_opt_str(raw.get("outcome_reason")),
            resolved_at_stage=parse_stage(raw["resolved_at_stage"]) if raw.get("resolved_at_stage") else None,
            goal_id=_opt_str(raw.get("goal_id")),
            reactions={str(k): int(v) for k, v in dict(raw.get("reactions") or {}).items()},
            created_at=float(raw.get("created_at") or 0.0),
            edited_at=_opt_float(raw.get("edited_at")),
        )


@dataclass(frozen=True)
class RankedList:
    entity_id: str
    type: str
    user_id: str
    list: List[str] = field(default_factory=list)
    is_valid: bool = True
    became_stale_at: Optional[float] = None
    last_stale_reminder_at: Optional[float] = None
    created_at: float = 0.0
    updated_at: float = 0.0

    @property
    def key(self) -> RankedListKey:
        return (self.entity_id, self.type, self.user_id)

    def position_of(self, item_id: str) -> Optional[int]:
        """1-based position of item_id in this list, None when absent."""
        try:
            return self.list.index(item_id) + 1
        except ValueError:
            return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "type": self.type,
            "user_id": self.user_id,
            "list": list(self.list),
            "is_valid": self.is_valid,
            "became_stale_at": self.became_stale_at,
            "last_stale_reminder_at": self.last_stale_reminder_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "RankedList":
        return cls(
            entity_id=str(raw["entity_id"]),
            type=str(raw["type"]),
            user_id=str(raw["user_id"]),
            list=[str(x) for x in raw.get("list") or []],
            is_valid=bool(raw.get("is_valid", True)),
            became_stale_at=_opt_float(raw.get("became_stale_at")),
            last_stale_reminder_at=_opt_float(raw.get("last_stale_reminder_at")),
            created_at=float(raw.get("created_at") or 0.0),
            updated_at=float(raw.get("updated_at") or 0.0),
        )


@dataclass(frozen=True)
class RankableItem:
    """Minimal view of anything that can sit in a ranked list."""

    id: str
    created_at: float
    name: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "created_at": self.created_at, "name": self.name}


@dataclass(frozen=True)
class Goal:
    id: str
    circle_id: str
    title: str
    description: str = ""
    created_by: str = ""
    status: str = GOAL_STATUS_OPEN
    proposal_id: Optional[str] = None
    follower_ids: List[str] = field(default_factory=list)
    created_at: float = 0.0
    completed_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "circle_id": self.circle_id,
            "title": self.title,
            "description": self.description,
            "created_by": self.created_by,
            "status": self.status,
            "proposal_id": self.proposal_id,
            "follower_ids": list(self.follower_ids),
            "created_at": self.created_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Goal":
        return cls(
            id=str(raw["id"]),
            circle_id=str(raw.get("circle_id", "")),
            title=str(raw.get("title", "")),
            description=str(raw.get("description", "")),
            created_by=str(raw.get("created_by", "")),
            status=str(raw.get("status", GOAL_STATUS_OPEN)),
            proposal_id=_opt_str(raw.get("proposal_id")),
            follower_ids=[str(x) for x in raw.get("follower_ids") or []],
            created_at=float(raw.get("created_at") or 0.0),
            completed_at=_opt_float(raw.get("completed_at")),
        )
