# circles_node/circles_runtime/ranking.py
from __future__ import annotations

"""
Collaborative ranking: submission validation, Borda aggregation and the
per-scope aggregate cache.

Scoring
-------
For every valid ranked list of length N, the item at 0-based position i
scores N - i. Items missing from a list score nothing from it. The
aggregate order is total score descending, then item creation time
ascending, then item id, so the same inputs always produce the same
order.

Every eligible item gets an aggregate rank, including items no list has
scored yet (score 0).
"""

import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from .models import RankableItem, RankedList
from .results import ErrorKind, OpResult

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_ranking(submitted_ids: Sequence[str], eligible_ids: Iterable[str], *, item_label: str = "items") -> OpResult:
    """
    OK iff submitted_ids is a permutation of eligible_ids. Order does not
    affect validity; it is the ranking itself.
    """
    submitted = [str(x) for x in submitted_ids]
    eligible = {str(x) for x in eligible_ids}
    message = f"Please rank all {len(eligible)} {item_label} before saving your ranking."

    dupes = sorted(k for k, n in Counter(submitted).items() if n > 1)
    if dupes:
        return OpResult.failure(ErrorKind.INCOMPLETE_RANKING, message, reason="duplicate_items", value={"duplicates": dupes})

    got = set(submitted)
    missing = sorted(eligible - got)
    unknown = sorted(got - eligible)
    if missing or unknown:
        return OpResult.failure(
            ErrorKind.INCOMPLETE_RANKING,
            message,
            reason="missing_items" if missing else "unknown_items",
            value={"missing": missing, "unknown": unknown},
        )
    return OpResult.success()


def list_matches_eligible(ranked: Sequence[str], eligible_ids: FrozenSet[str]) -> bool:
    return len(ranked) == len(eligible_ids) and set(ranked) == eligible_ids


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AggregateSnapshot:
    entity_id: str
    list_type: str
    order: Tuple[str, ...]
    scores: Dict[str, int]
    total_rankers: int
    eligible_ids: FrozenSet[str]
    computed_at: float

    @property
    def rank_map(self) -> Dict[str, int]:
        return {item_id: i + 1 for i, item_id in enumerate(self.order)}


@dataclass(frozen=True)
class RankedEntry:
    item_id: str
    aggregate_rank: int
    score: int
    user_rank: Optional[int] = None
    name: str = ""

    def to_dict(self) -> Dict[str, object]:
        return {
            "item_id": self.item_id,
            "name": self.name,
            "aggregate_rank": self.aggregate_rank,
            "score": self.score,
            "user_rank": self.user_rank,
        }


@dataclass(frozen=True)
class RankingStats:
    total_rankers: int
    has_user_ranked: bool
    unranked_count: int
    eligible_count: int

    def to_dict(self) -> Dict[str, object]:
        return {
            "total_rankers": self.total_rankers,
            "has_user_ranked": self.has_user_ranked,
            "unranked_count": self.unranked_count,
            "eligible_count": self.eligible_count,
        }


@dataclass(frozen=True)
class AggregateRanking:
    entity_id: str
    list_type: str
    entries: List[RankedEntry] = field(default_factory=list)
    stats: RankingStats = field(default_factory=lambda: RankingStats(0, False, 0, 0))
    computed_at: float = 0.0

    @property
    def order(self) -> List[str]:
        return [e.item_id for e in self.entries]

    @property
    def aggregate_ranks(self) -> Dict[str, int]:
        return {e.item_id: e.aggregate_rank for e in self.entries}

    @property
    def user_ranks(self) -> Dict[str, int]:
        return {e.item_id: e.user_rank for e in self.entries if e.user_rank is not None}

    def to_dict(self) -> Dict[str, object]:
        return {
            "entity_id": self.entity_id,
            "type": self.list_type,
            "ranking": [e.to_dict() for e in self.entries],
            "stats": self.stats.to_dict(),
            "computed_at": self.computed_at,
        }


class AggregateRankEngine:
    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock

    def compute(
        self,
        entity_id: str,
        list_type: str,
        items: Sequence[RankableItem],
        ranked_lists: Iterable[RankedList],
    ) -> AggregateSnapshot:
        eligible = {item.id: item for item in items}
        scores: Dict[str, int] = {item_id: 0 for item_id in eligible}
        rankers = set()

        for rl in ranked_lists:
            if not rl.is_valid:
                continue
            rankers.add(rl.user_id)
            n = len(rl.list)
            for i, item_id in enumerate(rl.list):
                if item_id in scores:
                    scores[item_id] += n - i

        order = sorted(eligible.values(), key=lambda it: (-scores[it.id], it.created_at, it.id))
        snap = AggregateSnapshot(
            entity_id=entity_id,
            list_type=list_type,
            order=tuple(it.id for it in order),
            scores=scores,
            total_rankers=len(rankers),
            eligible_ids=frozenset(eligible),
            computed_at=self._clock(),
        )
        log.debug(
            "aggregate %s/%s: %d items, %d rankers", entity_id, list_type, len(snap.order), snap.total_rankers
        )
        return snap

    def annotate(
        self,
        snapshot: AggregateSnapshot,
        items: Sequence[RankableItem],
        user_list: Optional[RankedList],
    ) -> AggregateRanking:
        """
        Attach the requesting user's view: personal ranks come from their
        own valid list only; unranked_count counts eligible items missing
        from whatever list they have (all of them when they have none).
        """
        names = {it.id: it.name for it in items}
        has_ranked = user_list is not None and user_list.is_valid
        own = user_list.list if user_list is not None else []

        entries = [
            RankedEntry(
                item_id=item_id,
                aggregate_rank=i + 1,
                score=snapshot.scores.get(item_id, 0),
                user_rank=user_list.position_of(item_id) if has_ranked else None,
                name=names.get(item_id, ""),
            )
            for i, item_id in enumerate(snapshot.order)
        ]
        unranked = len(snapshot.eligible_ids - set(own))
        stats = RankingStats(
            total_rankers=snapshot.total_rankers,
            has_user_ranked=has_ranked,
            unranked_count=unranked,
            eligible_count=len(snapshot.eligible_ids),
        )
        return AggregateRanking(
            entity_id=snapshot.entity_id,
            list_type=snapshot.list_type,
            entries=entries,
            stats=stats,
            computed_at=snapshot.computed_at,
        )


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


class AggregateRankCache:
    """
    Derived, never authoritative. One snapshot per (entity_id, list_type),
    served while younger than max_age_sec and while its eligible set still
    matches the live one. max_age_sec == 0 disables reuse.

    Each key carries a generation that invalidate() bumps. A reader takes
    generation() before it reads any lists and hands it to put(); a
    snapshot computed across an invalidation is dropped instead of stored.
    """

    def __init__(self, max_age_sec: float = 3600.0, clock: Callable[[], float] = time.time) -> None:
        self.max_age_sec = float(max_age_sec)
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[Tuple[str, str], AggregateSnapshot] = {}
        self._generations: Dict[Tuple[str, str], int] = {}

    def generation(self, entity_id: str, list_type: str) -> int:
        with self._lock:
            return self._generations.get((entity_id, list_type), 0)

    def get(self, entity_id: str, list_type: str, eligible_ids: FrozenSet[str]) -> Optional[AggregateSnapshot]:
        if self.max_age_sec <= 0:
            return None
        with self._lock:
            snap = self._entries.get((entity_id, list_type))
        if snap is None:
            return None
        if snap.eligible_ids != eligible_ids:
            return None
        if (self._clock() - snap.computed_at) > self.max_age_sec:
            return None
        return snap

    def put(self, snapshot: AggregateSnapshot, generation: Optional[int] = None) -> bool:
        """Store unless `generation` is given and the key was invalidated since."""
        key = (snapshot.entity_id, snapshot.list_type)
        with self._lock:
            if generation is not None and self._generations.get(key, 0) != generation:
                log.debug("dropping aggregate for %s/%s computed before an invalidation", *key)
                return False
            self._entries[key] = snapshot
            return True

    def invalidate(self, entity_id: str, list_type: str) -> None:
        key = (entity_id, list_type)
        with self._lock:
            self._entries.pop(key, None)
            self._generations[key] = self._generations.get(key, 0) + 1

    def clear(self) -> None:
        with self._lock:
            for key in set(self._entries) | set(self._generations):
                self._generations[key] = self._generations.get(key, 0) + 1
            self._entries.clear()
