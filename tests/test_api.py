# tests/test_api.py

import pytest
from fastapi.testclient import TestClient

from conftest import CIRCLE

from circles_node.api.main import create_app

H = lambda user: {"X-Circles-User": user}  # noqa: E731


@pytest.fixture
def client(core):
    app = create_app(core=core, cfg={})
    return TestClient(app)


def _create(client, name="Bike racks"):
    r = client.post(f"/circles/{CIRCLE}/proposals", json={"name": name}, headers=H("@author"))
    assert r.status_code == 200, r.text
    return r.json()["proposal"]


def test_health(client):
    assert client.get("/health").json() == {"ok": True}


def test_create_requires_identity(client):
    r = client.post(f"/circles/{CIRCLE}/proposals", json={"name": "x"})
    assert r.status_code == 401


def test_lifecycle_over_http(client):
    p = _create(client)
    assert p["stage"] == "draft"

    r = client.post(f"/proposals/{p['id']}/stage", json={"stage": "review"}, headers=H("@author"))
    assert r.status_code == 200
    assert r.json()["message"] == "Proposal moved to review stage"

    r = client.post(f"/proposals/{p['id']}/stage", json={"stage": "voting"}, headers=H("@reviewer"))
    assert r.json()["proposal"]["stage"] == "voting"

    r = client.post(f"/proposals/{p['id']}/vote", json={"vote": "like"}, headers=H("@voter"))
    assert r.json()["proposal"]["reactions"] == {"@voter": 1}

    r = client.post(f"/proposals/{p['id']}/stage", json={"stage": "accepted"}, headers=H("@nobody"))
    assert r.status_code == 403
    detail = r.json()["detail"]
    assert detail["error"] == "forbidden"
    assert detail["reason"] == "missing_capability"
    assert "vote on proposals" in detail["message"]

    r = client.post(f"/proposals/{p['id']}/stage", json={"stage": "accepted"}, headers=H("@voter"))
    assert r.status_code == 200

    listed = client.get(f"/circles/{CIRCLE}/proposals", params={"stage": "accepted"}).json()["proposals"]
    assert [x["id"] for x in listed] == [p["id"]]


def test_invalid_transition_is_400(client):
    p = _create(client)
    r = client.post(f"/proposals/{p['id']}/stage", json={"stage": "accepted"}, headers=H("@mod"))
    assert r.status_code == 200
    r = client.post(f"/proposals/{p['id']}/stage", json={"stage": "implemented"}, headers=H("@mod"))
    assert r.status_code == 400
    assert r.json()["detail"]["reason"] == "missing_goal_id"


def test_unknown_proposal_is_404(client):
    r = client.get("/proposals/missing")
    assert r.status_code == 404
    assert r.json()["detail"]["reason"] == "proposal_not_found"


def test_edit_and_delete(client):
    p = _create(client)
    r = client.patch(f"/proposals/{p['id']}", json={"description": "near the library"}, headers=H("@author"))
    assert r.json()["proposal"]["description"] == "near the library"
    assert r.json()["proposal"]["edited_at"] is not None

    r = client.patch(f"/proposals/{p['id']}", json={"name": "Mine now"}, headers=H("@voter"))
    assert r.status_code == 403

    r = client.delete(f"/proposals/{p['id']}", headers=H("@author"))
    assert r.status_code == 200
    assert client.get(f"/proposals/{p['id']}").status_code == 404


def test_ranking_round_trip(client):
    ids = []
    for name in ("A", "B"):
        p = _create(client, name)
        client.post(f"/proposals/{p['id']}/stage", json={"stage": "accepted"}, headers=H("@mod"))
        ids.append(p["id"])

    eligible = client.get(f"/circles/{CIRCLE}/rankings/proposals/eligible").json()["items"]
    assert [i["id"] for i in eligible] == ids

    r = client.put(
        f"/circles/{CIRCLE}/rankings/proposals/mine", json={"ordered_ids": ids[:1]}, headers=H("@u1")
    )
    assert r.status_code == 400
    assert r.json()["detail"]["error"] == "incomplete_ranking"
    assert "Please rank all 2 accepted proposals" in r.json()["detail"]["message"]

    r = client.put(
        f"/circles/{CIRCLE}/rankings/proposals/mine", json={"ordered_ids": ids[::-1]}, headers=H("@u1")
    )
    assert r.status_code == 200
    mine = client.get(f"/circles/{CIRCLE}/rankings/proposals/mine", headers=H("@u1")).json()["ranked_list"]
    assert mine["list"] == ids[::-1]

    agg = client.get(f"/circles/{CIRCLE}/rankings/proposals", headers=H("@u1")).json()["aggregate"]
    assert [e["item_id"] for e in agg["ranking"]] == ids[::-1]
    assert agg["stats"]["has_user_ranked"] is True


def test_invalidate_endpoint_requires_moderator(client):
    r = client.post(f"/circles/{CIRCLE}/rankings/proposals/invalidate", headers=H("@u1"))
    assert r.status_code == 403
    r = client.post(f"/circles/{CIRCLE}/rankings/proposals/invalidate", headers=H("@mod"))
    assert r.json()["invalidated"] == 0


def test_implement_and_complete_goal(client):
    p = _create(client)
    client.post(f"/proposals/{p['id']}/stage", json={"stage": "accepted"}, headers=H("@mod"))
    r = client.post(f"/proposals/{p['id']}/implement", json={"title": "Install racks"}, headers=H("@resolver"))
    assert r.status_code == 200, r.text
    result = r.json()["result"]
    assert result["linked"] is True
    assert result["proposal"]["stage"] == "implemented"
    goal_id = result["goal"]["id"]

    goals = client.get(f"/circles/{CIRCLE}/goals").json()["goals"]
    assert [g["title"] for g in goals] == ["Install racks"]

    r = client.post(f"/goals/{goal_id}/complete", headers=H("@resolver"))
    assert r.json()["goal"]["status"] == "completed"
