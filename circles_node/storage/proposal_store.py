from __future__ import annotations

"""
ProposalStore: the only owner of Proposal documents.

Every mutation is one atomic document operation. Stage changes are
compare-and-swap on the stage that the caller read, so two racing
transitions cannot both commit.
"""

import logging
import time
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional

from circles_node.circles_runtime.models import Proposal
from circles_node.circles_runtime.stages import Stage

from .documents import DocumentCollection
from .snapshot import SnapshotFile

log = logging.getLogger(__name__)


def _new_proposal_id() -> str:
    return uuid.uuid4().hex


class ProposalStore:
    def __init__(
        self,
        collection: Optional[DocumentCollection] = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._docs = collection if collection is not None else DocumentCollection("proposals")
        self._clock = clock

    @classmethod
    def with_snapshot(cls, data_dir: str, **kwargs: Any) -> "ProposalStore":
        return cls(DocumentCollection("proposals", SnapshotFile(data_dir, "proposals.json")), **kwargs)

    # -----------------------------------------------------
    # Reads
    # -----------------------------------------------------
    def find_by_id(self, proposal_id: str) -> Optional[Proposal]:
        raw = self._docs.get(proposal_id)
        return Proposal.from_dict(raw) if raw else None

    def find_by_scope(self, circle_id: str, stage: Optional[Stage] = None) -> List[Proposal]:
        def _match(d: Dict[str, Any]) -> bool:
            if d.get("circle_id") != circle_id:
                return False
            return stage is None or d.get("stage") == stage.value

        out = [Proposal.from_dict(d) for d in self._docs.find(_match)]
        out.sort(key=lambda p: (p.created_at, p.id))
        return out

    def find_by_scope_and_stage(self, circle_id: str, stage: Stage) -> List[Proposal]:
        return self.find_by_scope(circle_id, stage)

    # -----------------------------------------------------
    # Writes
    # -----------------------------------------------------
    def insert(
        self,
        circle_id: str,
        created_by: str,
        name: str,
        description: str = "",
        *,
        proposal_id: Optional[str] = None,
        created_at: Optional[float] = None,
    ) -> Proposal:
        pid = proposal_id or _new_proposal_id()
        doc = Proposal(
            id=pid,
            circle_id=circle_id,
            created_by=created_by,
            name=name,
            description=description,
            stage=Stage.DRAFT,
            created_at=self._clock() if created_at is None else float(created_at),
        ).to_dict()
        return Proposal.from_dict(self._docs.insert(pid, doc))

    def update_fields(self, proposal_id: str, changes: Dict[str, Any]) -> Optional[Proposal]:
        raw = self._docs.update_if(proposal_id, None, changes)
        return Proposal.from_dict(raw) if raw else None

    def update_stage(
        self,
        proposal_id: str,
        expected_stage: Stage,
        changes: Dict[str, Any],
        *,
        unset: Iterable[str] = (),
        require_no_goal: bool = False,
    ) -> Optional[Proposal]:
        """
        Apply `changes` iff the stored stage is still `expected_stage`
        (and, with require_no_goal, no goal has been linked yet).
        None means the filter did not match: the caller lost a race or
        the document is gone.
        """

        def _still_current(d: Dict[str, Any]) -> bool:
            if d.get("stage") != expected_stage.value:
                return False
            if require_no_goal and d.get("goal_id"):
                return False
            return True

        raw = self._docs.update_if(proposal_id, _still_current, changes, unset=unset)
        return Proposal.from_dict(raw) if raw else None

    def set_reaction(self, proposal_id: str, voter_id: str, weight: Optional[int], *, required_stage: Stage) -> Optional[Proposal]:
        """
        Set (weight) or clear (None) one voter's reaction, only while the
        proposal is in `required_stage`.
        """

        def _mutate(d: Dict[str, Any]) -> None:
            reactions = d.setdefault("reactions", {})
            if not isinstance(reactions, dict):
                reactions = {}
                d["reactions"] = reactions
            if weight is None:
                reactions.pop(voter_id, None)
            else:
                reactions[voter_id] = int(weight)

        raw = self._docs.modify_if(proposal_id, lambda d: d.get("stage") == required_stage.value, _mutate)
        return Proposal.from_dict(raw) if raw else None

    def delete(self, proposal_id: str) -> Optional[Proposal]:
        raw = self._docs.delete(proposal_id)
        if raw is None:
            return None
        log.info("deleted proposal %s (circle=%s stage=%s)", proposal_id, raw.get("circle_id"), raw.get("stage"))
        return Proposal.from_dict(raw)
