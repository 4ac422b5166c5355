# tests/test_aggregate_engine.py

from circles_node.circles_runtime.models import RankableItem, RankedList
from circles_node.circles_runtime.ranking import AggregateRankCache, AggregateRankEngine

ITEMS = [
    RankableItem(id="A", created_at=10.0, name="Alpha"),
    RankableItem(id="B", created_at=20.0, name="Beta"),
    RankableItem(id="C", created_at=30.0, name="Gamma"),
]


def _list(user, order, valid=True):
    return RankedList(entity_id="c", type="proposals", user_id=user, list=list(order), is_valid=valid)


def _engine():
    return AggregateRankEngine(clock=lambda: 500.0)


def test_borda_scores_three_rankers():
    lists = [_list("@u1", "ABC"), _list("@u2", "BAC"), _list("@u3", "ACB")]
    snap = _engine().compute("c", "proposals", ITEMS, lists)
    assert snap.scores == {"A": 8, "B": 6, "C": 4}
    assert snap.order == ("A", "B", "C")
    assert snap.rank_map == {"A": 1, "B": 2, "C": 3}
    assert snap.total_rankers == 3


def test_ties_break_by_creation_time_then_id():
    items = [
        RankableItem(id="late", created_at=50.0),
        RankableItem(id="early", created_at=5.0),
        RankableItem(id="b-same", created_at=7.0),
        RankableItem(id="a-same", created_at=7.0),
    ]
    snap = _engine().compute("c", "proposals", items, [])
    assert snap.order == ("early", "a-same", "b-same", "late")


def test_invalid_lists_and_foreign_items_are_ignored():
    lists = [
        _list("@u1", "CBA"),
        _list("@u2", "CBA", valid=False),
        _list("@u3", ["X", "A", "B", "C"]),
    ]
    snap = _engine().compute("c", "proposals", ITEMS, lists)
    # u1: C3 B2 A1; u3 (N=4): A3 B2 C1
    assert snap.scores == {"A": 4, "B": 4, "C": 4}
    assert snap.order == ("A", "B", "C")
    assert snap.total_rankers == 2


def test_same_inputs_same_output():
    lists = [_list("@u1", "BCA"), _list("@u2", "CAB")]
    first = _engine().compute("c", "proposals", ITEMS, lists)
    second = _engine().compute("c", "proposals", list(reversed(ITEMS)), list(reversed(lists)))
    assert first.order == second.order
    assert first.scores == second.scores


def test_annotate_with_valid_user_list():
    lists = [_list("@u1", "ABC"), _list("@u2", "BAC"), _list("@u3", "ACB")]
    eng = _engine()
    snap = eng.compute("c", "proposals", ITEMS, lists)
    view = eng.annotate(snap, ITEMS, lists[1])
    assert view.order == ["A", "B", "C"]
    assert view.user_ranks == {"B": 1, "A": 2, "C": 3}
    assert view.stats.has_user_ranked is True
    assert view.stats.unranked_count == 0
    assert view.to_dict()["ranking"][0] == {
        "item_id": "A", "name": "Alpha", "aggregate_rank": 1, "score": 8, "user_rank": 2,
    }


def test_annotate_without_list_counts_everything_unranked():
    eng = _engine()
    snap = eng.compute("c", "proposals", ITEMS, [])
    view = eng.annotate(snap, ITEMS, None)
    assert view.stats.has_user_ranked is False
    assert view.stats.unranked_count == 3
    assert view.user_ranks == {}


def test_annotate_stale_list_counts_missing_items():
    eng = _engine()
    snap = eng.compute("c", "proposals", ITEMS, [])
    stale = _list("@u1", "AB", valid=False)
    view = eng.annotate(snap, ITEMS, stale)
    assert view.stats.has_user_ranked is False
    assert view.stats.unranked_count == 1
    assert view.user_ranks == {}


def test_cache_respects_age_and_eligible_set():
    now = [1000.0]
    cache = AggregateRankCache(max_age_sec=60, clock=lambda: now[0])
    snap = AggregateRankEngine(clock=lambda: now[0]).compute("c", "proposals", ITEMS, [])
    cache.put(snap)
    eligible = frozenset({"A", "B", "C"})

    assert cache.get("c", "proposals", eligible) is snap
    assert cache.get("c", "proposals", frozenset({"A", "B"})) is None
    now[0] += 61
    assert cache.get("c", "proposals", eligible) is None


def test_cache_disabled_and_invalidated():
    snap = _engine().compute("c", "proposals", ITEMS, [])
    off = AggregateRankCache(max_age_sec=0, clock=lambda: 500.0)
    off.put(snap)
    assert off.get("c", "proposals", snap.eligible_ids) is None

    on = AggregateRankCache(max_age_sec=60, clock=lambda: 500.0)
    on.put(snap)
    on.invalidate("c", "proposals")
    assert on.get("c", "proposals", snap.eligible_ids) is None


def test_cache_drops_snapshot_computed_across_invalidation():
    cache = AggregateRankCache(max_age_sec=60, clock=lambda: 500.0)
    snap = AggregateRankEngine(clock=lambda: 500.0).compute("c", "proposals", ITEMS, [])

    gen = cache.generation("c", "proposals")
    cache.invalidate("c", "proposals")
    assert cache.put(snap, gen) is False
    assert cache.get("c", "proposals", snap.eligible_ids) is None

    assert cache.put(snap, cache.generation("c", "proposals")) is True
    assert cache.get("c", "proposals", snap.eligible_ids) is snap


def test_cache_clear_bumps_generations():
    cache = AggregateRankCache(max_age_sec=60, clock=lambda: 500.0)
    snap = AggregateRankEngine(clock=lambda: 500.0).compute("c", "proposals", ITEMS, [])
    cache.put(snap)
    gen = cache.generation("c", "proposals")
    cache.clear()
    assert cache.put(snap, gen) is False
