# tests/test_staleness.py

import threading

from conftest import CIRCLE, FakeClock, ctx, make_proposal

from circles_node.circles_runtime.collaborators import LoggingNotificationService
from circles_node.circles_runtime.staleness import StaleRankingSweeper, StalenessInvalidator
from circles_node.circles_runtime.stages import Stage
from circles_node.storage.ranked_list_store import RankedListStore


def test_implemented_proposal_invalidates_rankings_containing_it(core):
    p = make_proposal(core, "P", stage=Stage.ACCEPTED)
    saved = core.save_user_ranked_list(ctx("@u1"), CIRCLE, "proposals", [p.id])
    assert saved.ok, saved.message

    goal = core.goals.create({"circle_id": CIRCLE, "title": "P goal", "created_by": "@mod"}, [])
    moved = core.change_proposal_stage(ctx("@mod"), p.id, "implemented", {"goal_id": goal.id})
    assert moved.ok
    res = core.invalidate_stale_rankings(CIRCLE, "proposals")
    assert res.ok

    rl = core.ranked_lists.find(CIRCLE, "proposals", "@u1")
    assert rl.is_valid is False
    assert rl.became_stale_at is not None


def test_entering_accepted_invalidates_existing_rankings(core):
    a = make_proposal(core, "A", stage=Stage.ACCEPTED)
    b = make_proposal(core, "B", stage=Stage.VOTING)
    core.save_user_ranked_list(ctx("@u1"), CIRCLE, "proposals", [a.id])

    core.change_proposal_stage(ctx("@voter"), b.id, "accepted")
    # staleness runs inline in tests
    assert core.ranked_lists.find(CIRCLE, "proposals", "@u1").is_valid is False


def test_only_lists_that_differ_from_eligible_set_are_flagged(core):
    a = make_proposal(core, "A", stage=Stage.ACCEPTED)
    b = make_proposal(core, "B", stage=Stage.ACCEPTED)
    core.ranked_lists.save(CIRCLE, "proposals", "@u1", [b.id, a.id])
    core.ranked_lists.save(CIRCLE, "proposals", "@u2", [a.id])
    core.ranked_lists.save(CIRCLE, "proposals", "@u3", [a.id, b.id, "gone"])

    res = core.invalidate_stale_rankings(CIRCLE, "proposals")
    assert res.value == 2
    assert core.ranked_lists.find(CIRCLE, "proposals", "@u1").is_valid is True
    assert core.ranked_lists.find(CIRCLE, "proposals", "@u2").is_valid is False
    assert core.ranked_lists.find(CIRCLE, "proposals", "@u3").is_valid is False

    # rerun is a no-op
    assert core.invalidate_stale_rankings(CIRCLE, "proposals").value == 0


def test_deleting_accepted_proposal_triggers_invalidation(core):
    a = make_proposal(core, "A", stage=Stage.ACCEPTED)
    core.save_user_ranked_list(ctx("@u1"), CIRCLE, "proposals", [a.id])
    res = core.delete_proposal(ctx("@author"), a.id)
    assert res.ok
    assert core.ranked_lists.find(CIRCLE, "proposals", "@u1").is_valid is False


def _store_with_lists(n):
    store = RankedListStore(clock=FakeClock())
    for i in range(n):
        store.save("c", "proposals", f"@u{i:03d}", ["old"])
    return store


def test_cancelled_scan_stops_and_resumes():
    store = _store_with_lists(10)
    cancel = threading.Event()
    seen = []

    def eligible(entity_id, list_type):
        return frozenset({"new"})

    inv = StalenessInvalidator(store, eligible, batch_size=3, inline=True)
    real_mark = store.mark_stale

    def counting_mark(key, expected, **kw):
        seen.append(key)
        if len(seen) == 3:
            cancel.set()
        return real_mark(key, expected, **kw)

    store.mark_stale = counting_mark
    assert inv.invalidate("c", "proposals", cancel=cancel) == 3
    assert len(store.find_valid("c", "proposals")) == 7

    assert inv.invalidate("c", "proposals") == 7
    assert store.find_valid("c", "proposals") == []


def test_schedule_logs_failures_instead_of_raising(caplog):
    store = _store_with_lists(1)

    def broken(entity_id, list_type):
        raise RuntimeError("eligible lookup failed")

    inv = StalenessInvalidator(store, broken, inline=True)
    assert inv.schedule("c", "proposals") is None
    assert "staleness invalidation failed" in caplog.text


def test_background_schedule_completes():
    store = _store_with_lists(2)
    inv = StalenessInvalidator(store, lambda e, t: frozenset(), workers=1)
    try:
        fut = inv.schedule("c", "proposals")
        assert fut.result(timeout=5) == 2
    finally:
        inv.shutdown()


def test_sweeper_sends_one_reminder_per_stale_period():
    clock = FakeClock(start=0.0, step=0.0)
    store = RankedListStore(clock=clock)
    store.save("c", "proposals", "@u1", ["a"])
    notifier = LoggingNotificationService()
    inv = StalenessInvalidator(store, lambda e, t: frozenset({"a", "b"}), inline=True, clock=clock)
    sweeper = StaleRankingSweeper(inv, store, notifier, interval_sec=0, reminder_hours=1, clock=clock)

    assert sweeper.tick() == {"invalidated": 1, "reminded": 0}
    clock.advance(3600)
    assert sweeper.tick() == {"invalidated": 0, "reminded": 1}
    assert sweeper.tick() == {"invalidated": 0, "reminded": 0}

    reminder = notifier.sent[-1]
    assert reminder["kind"] == "ranking_stale_reminder"
    assert reminder["recipients"] == ["@u1"]
    assert reminder["unranked_count"] == 1


def test_sweeper_disabled_with_zero_interval():
    store = RankedListStore()
    inv = StalenessInvalidator(store, lambda e, t: frozenset(), inline=True)
    sweeper = StaleRankingSweeper(inv, store, LoggingNotificationService(), interval_sec=0)
    sweeper.start()
    assert sweeper._thread is None
    sweeper.stop()
