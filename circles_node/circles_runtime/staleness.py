# circles_node/circles_runtime/staleness.py
from __future__ import annotations

"""
Ranked-list staleness.

StalenessInvalidator
    Whenever the eligible set of a (scope, list type) changes, every valid
    ranked list of that scope whose contents no longer equal the eligible
    set is flipped to invalid with became_stale_at = now. Scans run in
    batches, stop early when the cancel event is set, and are idempotent:
    re-running a partial scan finishes the job.

    schedule() is the fire-and-forget entry point used by the request
    path. It never raises; failures are logged and corrected by the next
    successful run (the sweeper below, or the maintenance endpoint).

StaleRankingSweeper
    Background loop that re-runs invalidation for every scope holding
    ranked lists and sends one "rank the new items" reminder per stale
    period once a list has been stale for reminder_hours.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, FrozenSet, Optional

from circles_node.storage.ranked_list_store import RankedListStore

from .collaborators import NotificationService
from .ranking import list_matches_eligible

log = logging.getLogger(__name__)

EligibleIds = Callable[[str, str], FrozenSet[str]]


class StalenessInvalidator:
    def __init__(
        self,
        ranked_lists: RankedListStore,
        eligible_ids: EligibleIds,
        *,
        batch_size: int = 200,
        inline: bool = False,
        workers: int = 2,
        clock: Callable[[], float] = time.time,
        on_invalidated: Optional[Callable[[str, str], None]] = None,
    ) -> None:
        self._lists = ranked_lists
        self.eligible_ids = eligible_ids
        self.batch_size = max(1, int(batch_size))
        self.inline = bool(inline)
        self._clock = clock
        self._on_invalidated = on_invalidated
        self._pool: Optional[ThreadPoolExecutor] = None
        if not self.inline:
            self._pool = ThreadPoolExecutor(max_workers=max(1, int(workers)), thread_name_prefix="staleness")

    def invalidate(self, entity_id: str, list_type: str, cancel: Optional[threading.Event] = None) -> int:
        """Flip every valid list that no longer covers the eligible set. Returns how many were flipped."""
        eligible = frozenset(self.eligible_ids(entity_id, list_type))
        candidates = self._lists.find_valid(entity_id, list_type)
        now = self._clock()
        flipped = 0

        for start in range(0, len(candidates), self.batch_size):
            if cancel is not None and cancel.is_set():
                log.info(
                    "staleness scan %s/%s cancelled after %d of %d lists",
                    entity_id, list_type, start, len(candidates),
                )
                break
            for rl in candidates[start:start + self.batch_size]:
                if list_matches_eligible(rl.list, eligible):
                    continue
                # conditional: a resubmission since the read wins
                if self._lists.mark_stale(rl.key, rl.list, now=now):
                    flipped += 1

        if flipped:
            log.info("invalidated %d ranked list(s) for %s/%s", flipped, entity_id, list_type)
        if self._on_invalidated is not None:
            self._on_invalidated(entity_id, list_type)
        return flipped

    def _run_logged(self, entity_id: str, list_type: str) -> int:
        try:
            return self.invalidate(entity_id, list_type)
        except Exception:
            log.exception("staleness invalidation failed for %s/%s", entity_id, list_type)
            return 0

    def schedule(self, entity_id: str, list_type: str) -> Optional[Future]:
        if self._pool is None:
            self._run_logged(entity_id, list_type)
            return None
        try:
            return self._pool.submit(self._run_logged, entity_id, list_type)
        except RuntimeError:
            # pool already shut down
            log.warning("staleness pool closed; running %s/%s inline", entity_id, list_type)
            self._run_logged(entity_id, list_type)
            return None

    def shutdown(self, wait: bool = True) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=wait)


class StaleRankingSweeper:
    def __init__(
        self,
        invalidator: StalenessInvalidator,
        ranked_lists: RankedListStore,
        notifier: NotificationService,
        *,
        interval_sec: float = 300.0,
        reminder_hours: float = 24.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.invalidator = invalidator
        self._lists = ranked_lists
        self._notifier = notifier
        self.interval = float(interval_sec)
        self.reminder_after = float(reminder_hours) * 3600.0
        self._clock = clock
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self.interval <= 0:
            log.info("[staleness] sweeper disabled (interval=%s)", self.interval)
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="stale-ranking-sweeper", daemon=True)
        self._thread.start()
        log.info("[staleness] sweeper started (interval=%ss)", self.interval)

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5.0)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:
                log.exception("[staleness] sweep tick failed")
            self._stop.wait(self.interval)

    def tick(self) -> Dict[str, Any]:
        invalidated = 0
        reminded = 0
        for entity_id, list_type in self._lists.scopes():
            if self._stop.is_set():
                break
            invalidated += self.invalidator.invalidate(entity_id, list_type, cancel=self._stop)
            reminded += self._send_reminders(entity_id, list_type)
        return {"invalidated": invalidated, "reminded": reminded}

    def _send_reminders(self, entity_id: str, list_type: str) -> int:
        now = self._clock()
        due = [
            rl
            for rl in self._lists.find_for_scope(entity_id, list_type)
            if not rl.is_valid
            and rl.became_stale_at is not None
            and rl.last_stale_reminder_at is None
            and now - rl.became_stale_at >= self.reminder_after
        ]
        if not due:
            return 0

        eligible = frozenset(self.invalidator.eligible_ids(entity_id, list_type))
        sent = 0
        for rl in due:
            unranked = len(eligible - set(rl.list))
            try:
                self._notifier.notify_ranking_stale(rl, unranked)
            except Exception:
                log.exception("stale reminder failed for %s", rl.key)
                continue
            if self._lists.mark_reminder_sent(rl.key, rl.became_stale_at, now=now):
                sent += 1
        return sent
