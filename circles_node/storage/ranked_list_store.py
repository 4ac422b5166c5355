from __future__ import annotations

"""
RankedListStore: one ranked list per (entity_id, type, user_id).

save() is a single upsert: list, is_valid and updated_at are set on every
call, created_at only on insert. Concurrent saves by the same user are
last-write-wins.

Invalidation is conditional: a list is flipped to invalid only if it is
still valid and still holds exactly the contents the invalidator judged
stale, so a resubmission racing with a scan is never clobbered.
"""

import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

from circles_node.circles_runtime.models import RankedList, RankedListKey

from .documents import DocumentCollection
from .snapshot import SnapshotFile

log = logging.getLogger(__name__)

_STALENESS_FIELDS = ("became_stale_at", "last_stale_reminder_at")


def ranked_list_doc_id(entity_id: str, list_type: str, user_id: str) -> str:
    return json.dumps([entity_id, list_type, user_id], separators=(",", ":"))


class RankedListStore:
    def __init__(
        self,
        collection: Optional[DocumentCollection] = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._docs = collection if collection is not None else DocumentCollection("ranked_lists")
        self._clock = clock

    @classmethod
    def with_snapshot(cls, data_dir: str, **kwargs: Any) -> "RankedListStore":
        return cls(DocumentCollection("ranked_lists", SnapshotFile(data_dir, "ranked_lists.json")), **kwargs)

    # -----------------------------------------------------
    # Reads
    # -----------------------------------------------------
    def find(self, entity_id: str, list_type: str, user_id: str) -> Optional[RankedList]:
        raw = self._docs.get(ranked_list_doc_id(entity_id, list_type, user_id))
        return RankedList.from_dict(raw) if raw else None

    def find_for_scope(self, entity_id: str, list_type: str, *, valid_only: bool = False) -> List[RankedList]:
        def _match(d: Dict[str, Any]) -> bool:
            if d.get("entity_id") != entity_id or d.get("type") != list_type:
                return False
            return bool(d.get("is_valid", True)) or not valid_only

        out = [RankedList.from_dict(d) for d in self._docs.find(_match)]
        out.sort(key=lambda r: r.user_id)
        return out

    def find_valid(self, entity_id: str, list_type: str) -> List[RankedList]:
        return self.find_for_scope(entity_id, list_type, valid_only=True)

    def scopes(self) -> List[Tuple[str, str]]:
        seen: Set[Tuple[str, str]] = set()
        for d in self._docs.find():
            seen.add((str(d.get("entity_id", "")), str(d.get("type", ""))))
        return sorted(seen)

    # -----------------------------------------------------
    # Writes
    # -----------------------------------------------------
    def save(self, entity_id: str, list_type: str, user_id: str, ordered_ids: Sequence[str]) -> RankedList:
        now = self._clock()
        raw = self._docs.upsert(
            ranked_list_doc_id(entity_id, list_type, user_id),
            set_fields={"list": [str(x) for x in ordered_ids], "is_valid": True, "updated_at": now},
            set_on_insert={"entity_id": entity_id, "type": list_type, "user_id": user_id, "created_at": now},
            unset=_STALENESS_FIELDS,
        )
        return RankedList.from_dict(raw)

    def mark_stale(self, key: RankedListKey, expected_list: Sequence[str], *, now: Optional[float] = None) -> bool:
        entity_id, list_type, user_id = key
        expected = [str(x) for x in expected_list]

        def _unchanged(d: Dict[str, Any]) -> bool:
            return bool(d.get("is_valid", True)) and list(d.get("list") or []) == expected

        raw = self._docs.update_if(
            ranked_list_doc_id(entity_id, list_type, user_id),
            _unchanged,
            {"is_valid": False, "became_stale_at": self._clock() if now is None else now},
        )
        return raw is not None

    def mark_reminder_sent(self, key: RankedListKey, became_stale_at: float, *, now: Optional[float] = None) -> bool:
        """Stamp the reminder only if the list is still in the same stale period."""
        entity_id, list_type, user_id = key

        def _same_period(d: Dict[str, Any]) -> bool:
            return not d.get("is_valid", True) and d.get("became_stale_at") == became_stale_at

        raw = self._docs.update_if(
            ranked_list_doc_id(entity_id, list_type, user_id),
            _same_period,
            {"last_stale_reminder_at": self._clock() if now is None else now},
        )
        return raw is not None

