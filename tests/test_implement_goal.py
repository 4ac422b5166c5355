# tests/test_implement_goal.py

from conftest import CIRCLE, ctx, make_proposal

from circles_node.circles_runtime.results import ErrorKind
from circles_node.circles_runtime.stages import Stage


def test_implement_creates_goal_and_links_it(core, notifier):
    p = make_proposal(core, "Community garden", stage=Stage.ACCEPTED)
    res = core.implement_proposal_as_goal(ctx("@resolver"), p.id, {"description": "Spring planting"})

    assert res.ok, res.message
    out = res.value
    assert out.linked is True
    assert out.goal.title == "Community garden"
    assert out.goal.description == "Spring planting"
    assert out.goal.proposal_id == p.id
    assert set(out.goal.follower_ids) == {"@author", "@resolver"}
    assert out.proposal.stage == Stage.IMPLEMENTED
    assert out.proposal.goal_id == out.goal.id

    kinds = [n["kind"] for n in notifier.sent]
    assert "proposal_stage_changed" in kinds
    assert "proposal_implemented" in kinds


def test_denied_actor_creates_no_goal(core):
    p = make_proposal(core, stage=Stage.ACCEPTED)
    res = core.implement_proposal_as_goal(ctx("@nobody"), p.id)
    assert res.error == ErrorKind.FORBIDDEN
    assert core.goals.list_open(CIRCLE) == []


def test_wrong_stage_creates_no_goal(core):
    p = make_proposal(core, stage=Stage.VOTING)
    res = core.implement_proposal_as_goal(ctx("@resolver"), p.id)
    assert res.error == ErrorKind.INVALID_TRANSITION
    assert core.goals.list_open(CIRCLE) == []


def test_link_failure_keeps_goal_and_warns(core, monkeypatch):
    p = make_proposal(core, stage=Stage.ACCEPTED)
    real_create = core.goals.create

    def create_then_race(goal_data, follower_ids):
        goal = real_create(goal_data, follower_ids)
        # someone rejects the proposal while the goal is being created
        core.proposals.update_stage(p.id, Stage.ACCEPTED, {"stage": Stage.REJECTED.value})
        return goal

    monkeypatch.setattr(core.goals, "create", create_then_race)
    res = core.implement_proposal_as_goal(ctx("@resolver"), p.id)

    assert not res.ok
    assert res.reason == "goal_created_link_failed"
    assert res.value.linked is False
    assert res.value.goal is not None
    assert res.warnings[0].kind == ErrorKind.DOWNSTREAM_FAILURE
    assert res.warnings[0].detail["goal_id"] == res.value.goal.id
    # no rollback
    assert core.goals.get(res.value.goal.id) is not None
    assert core.proposals.find_by_id(p.id).goal_id is None


def test_goal_service_failure_is_downstream(core, monkeypatch):
    p = make_proposal(core, stage=Stage.ACCEPTED)

    def broken(goal_data, follower_ids):
        raise RuntimeError("goal service down")

    monkeypatch.setattr(core.goals, "create", broken)
    res = core.implement_proposal_as_goal(ctx("@resolver"), p.id)
    assert res.error == ErrorKind.DOWNSTREAM_FAILURE
    assert core.proposals.find_by_id(p.id).stage == Stage.ACCEPTED


def test_ranked_goals_and_completion(core):
    g1 = core.goals.create({"circle_id": CIRCLE, "title": "One", "created_by": "@author"}, [])
    g2 = core.goals.create({"circle_id": CIRCLE, "title": "Two", "created_by": "@author"}, [])

    items = core.get_ranking_eligible_items(CIRCLE, "goals").value
    assert [i.id for i in items] == [g1.id, g2.id]

    assert core.save_user_ranked_list(ctx("@u1"), CIRCLE, "goals", [g2.id, g1.id]).ok
    agg = core.get_aggregate_ranking(ctx("@u1"), CIRCLE, "goals").value
    assert agg.order == [g2.id, g1.id]

    done = core.complete_goal(ctx("@author"), g1.id)
    assert done.ok
    assert core.ranked_lists.find(CIRCLE, "goals", "@u1").is_valid is False
    assert core.complete_goal(ctx("@author"), g1.id).error == ErrorKind.INVALID_TRANSITION
    assert core.complete_goal(ctx("@nobody"), g2.id).error == ErrorKind.FORBIDDEN


def _ranked_goal_list(core):
    g = core.goals.create({"circle_id": CIRCLE, "title": "Existing", "created_by": "@author"}, [])
    assert core.save_user_ranked_list(ctx("@u1"), CIRCLE, "goals", [g.id]).ok
    return g


def test_implementing_invalidates_goal_rankings(core):
    existing = _ranked_goal_list(core)
    cached = core.get_aggregate_ranking(ctx("@u1"), CIRCLE, "goals").value
    assert cached.order == [existing.id]

    p = make_proposal(core, "New goal", stage=Stage.ACCEPTED)
    res = core.implement_proposal_as_goal(ctx("@resolver"), p.id)
    assert res.ok, res.message

    assert core.ranked_lists.find(CIRCLE, "goals", "@u1").is_valid is False
    agg = core.get_aggregate_ranking(ctx("@u1"), CIRCLE, "goals").value
    assert set(agg.order) == {existing.id, res.value.goal.id}
    assert agg.stats.total_rankers == 0
    assert agg.stats.unranked_count == 1


def test_unlinked_goal_still_invalidates_goal_rankings(core, monkeypatch):
    _ranked_goal_list(core)
    p = make_proposal(core, stage=Stage.ACCEPTED)
    real_create = core.goals.create

    def create_then_race(goal_data, follower_ids):
        goal = real_create(goal_data, follower_ids)
        core.proposals.update_stage(p.id, Stage.ACCEPTED, {"stage": Stage.REJECTED.value})
        return goal

    monkeypatch.setattr(core.goals, "create", create_then_race)
    res = core.implement_proposal_as_goal(ctx("@resolver"), p.id)
    assert res.reason == "goal_created_link_failed"
    assert core.ranked_lists.find(CIRCLE, "goals", "@u1").is_valid is False
