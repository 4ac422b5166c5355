# circles_node/circles_runtime/goals.py
from __future__ import annotations

"""
Built-in GoalService. Goals only matter to the core as the target of
"implement proposal as goal" and as the rankable items of the "goals"
list type (open goals of a circle).
"""

import logging
import time
import uuid
from typing import Any, Callable, Iterable, List, Mapping, Optional

from circles_node.storage.documents import DocumentCollection
from circles_node.storage.snapshot import SnapshotFile

from .models import GOAL_STATUS_COMPLETED, GOAL_STATUS_OPEN, Goal

log = logging.getLogger(__name__)


class InMemoryGoalService:
    def __init__(
        self,
        collection: Optional[DocumentCollection] = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._docs = collection if collection is not None else DocumentCollection("goals")
        self._clock = clock

    @classmethod
    def with_snapshot(cls, data_dir: str, **kwargs: Any) -> "InMemoryGoalService":
        return cls(DocumentCollection("goals", SnapshotFile(data_dir, "goals.json")), **kwargs)

    def create(self, goal_data: Mapping[str, Any], follower_ids: Iterable[str]) -> Goal:
        title = str(goal_data.get("title", "")).strip()
        circle_id = str(goal_data.get("circle_id", "")).strip()
        if not title or not circle_id:
            raise ValueError("goal requires circle_id and title")

        followers: List[str] = []
        for f in follower_ids:
            if f and f not in followers:
                followers.append(str(f))

        goal = Goal(
            id=uuid.uuid4().hex,
            circle_id=circle_id,
            title=title,
            description=str(goal_data.get("description", "")),
            created_by=str(goal_data.get("created_by", "")),
            status=GOAL_STATUS_OPEN,
            proposal_id=goal_data.get("proposal_id") or None,
            follower_ids=followers,
            created_at=self._clock(),
        )
        self._docs.insert(goal.id, goal.to_dict())
        log.info("created goal %s in circle %s (proposal=%s)", goal.id, circle_id, goal.proposal_id)
        return goal

    def get(self, goal_id: str) -> Optional[Goal]:
        raw = self._docs.get(goal_id)
        return Goal.from_dict(raw) if raw else None

    def list_open(self, circle_id: str) -> List[Goal]:
        docs = self._docs.find(lambda d: d.get("circle_id") == circle_id and d.get("status") == GOAL_STATUS_OPEN)
        goals = [Goal.from_dict(d) for d in docs]
        goals.sort(key=lambda g: (g.created_at, g.id))
        return goals

    def complete(self, goal_id: str) -> Optional[Goal]:
        raw = self._docs.update_if(
            goal_id,
            lambda d: d.get("status") == GOAL_STATUS_OPEN,
            {"status": GOAL_STATUS_COMPLETED, "completed_at": self._clock()},
        )
        return Goal.from_dict(raw) if raw else None
