import asyncio

import pytest
import server

from conftest import auth, register


def _rate(client, token, target_id, value, **extra):
    return client.post("/api/rating", json={"targetUserId": target_id, "rating": value, **extra}, headers=auth(token))


def _profile(client, token):
    return client.get("/api/profile", headers=auth(token)).json()


def test_average_is_recomputed_after_each_rating(client):
    token_a, _ = register(client, "a@example.com")
    token_b, user_b = register(client, "b@example.com")

    expected = [(5, 5.0, 1), (3, 4.0, 2), (4, 4.0, 3)]
    for value, avg, count in expected:
        r = _rate(client, token_a, user_b["id"], value)
        assert r.status_code == 201
        assert r.json()["target"] == {"rating": avg, "totalRatings": count}
        profile = _profile(client, token_b)
        assert profile["rating"] == avg
        assert profile["totalRatings"] == count


def test_stored_rating_matches_mean_of_ratings(client, db):
    token_a, _ = register(client, "a@example.com")
    token_c, _ = register(client, "c@example.com")
    _, user_b = register(client, "b@example.com")

    for token, value in ((token_a, 5), (token_c, 2), (token_a, 2)):
        _rate(client, token, user_b["id"], value)

    stored = asyncio.run(db.users.find_one({"_id": user_b["id"]}))
    ratings = asyncio.run(db.ratings.find({"toUserId": user_b["id"]}).to_list(length=None))
    assert stored["totalRatings"] == len(ratings) == 3
    assert stored["rating"] == pytest.approx(sum(r["rating"] for r in ratings) / len(ratings))


def test_rating_unknown_target_is_not_found(client):
    token_a, _ = register(client, "a@example.com")
    r = _rate(client, token_a, "nobody", 4)
    assert r.status_code == 404
    assert r.json() == {"error": "user_not_found"}


def test_rating_yourself_is_allowed_by_default(client):
    token_a, user_a = register(client, "a@example.com")
    r = _rate(client, token_a, user_a["id"], 5)
    assert r.status_code == 201
    assert _profile(client, token_a)["totalRatings"] == 1


def test_rating_yourself_rejected_when_enabled(client, monkeypatch):
    monkeypatch.setattr(server, "REJECT_SELF_TARGETING", True)
    token_a, user_a = register(client, "a@example.com")
    r = _rate(client, token_a, user_a["id"], 5)
    assert r.status_code == 400
    assert r.json() == {"error": "cannot_rate_yourself"}


@pytest.mark.parametrize("value", [0, 6])
def test_rating_out_of_range_is_invalid(client, value):
    token_a, _ = register(client, "a@example.com")
    _, user_b = register(client, "b@example.com")
    r = _rate(client, token_a, user_b["id"], value)
    assert r.status_code == 422
    assert r.json()["error"] == "invalid_input"


def test_list_ratings_includes_rater(client):
    token_a, user_a = register(client, "a@example.com", name="Alice")
    token_b, user_b = register(client, "b@example.com", name="Bob")
    _rate(client, token_a, user_b["id"], 4, feedback="Great teacher", swapRequestId="sr-1")
    _rate(client, token_b, user_a["id"], 5)

    r = client.get(f"/api/ratings/{user_b['id']}", headers=auth(token_a))
    assert r.status_code == 200
    items = r.json()
    assert len(items) == 1
    assert items[0]["rating"] == 4
    assert items[0]["feedback"] == "Great teacher"
    assert items[0]["swapRequestId"] == "sr-1"
    assert items[0]["fromUser"] == {"id": user_a["id"], "name": "Alice"}


def test_rating_requires_accepted_swap_when_enabled(client, monkeypatch):
    monkeypatch.setattr(server, "RATING_REQUIRES_ACCEPTED_SWAP", True)
    token_a, _ = register(client, "a@example.com")
    token_b, user_b = register(client, "b@example.com")

    r = _rate(client, token_a, user_b["id"], 5)
    assert r.status_code == 400
    assert r.json() == {"error": "swap_not_eligible"}

    sr_id = client.post(
        "/api/swap-request",
        json={"targetUserId": user_b["id"], "offeredSkill": "Guitar", "requestedSkill": "Spanish"},
        headers=auth(token_a),
    ).json()["swapRequest"]["id"]
    assert _rate(client, token_a, user_b["id"], 5, swapRequestId=sr_id).status_code == 400

    client.put(f"/api/swap-request/{sr_id}", json={"status": "accepted"}, headers=auth(token_b))
    assert _rate(client, token_a, user_b["id"], 5, swapRequestId=sr_id).status_code == 201


def test_interleaved_submissions_keep_mean_consistent(client, db):
    _, user_b = register(client, "b@example.com")
    uid = user_b["id"]

    async def interleave():
        first = await server.add_to_rating_totals(uid, 5)
        second = await server.add_to_rating_totals(uid, 1)
        await server.publish_mean(uid, second)
        # the earlier submission finishes last with its now-stale totals
        await server.publish_mean(uid, first)
        return await db.users.find_one({"_id": uid})

    stored = asyncio.run(interleave())
    assert stored["totalRatings"] == 2
    assert stored["ratingSum"] == 6
    assert stored["rating"] == 3.0


def test_rating_is_exact_mean_not_rounded(client):
    token_a, _ = register(client, "a@example.com")
    token_b, user_b = register(client, "b@example.com")
    for value in (5, 4, 1):
        _rate(client, token_a, user_b["id"], value)
    assert _profile(client, token_b)["rating"] == pytest.approx(10 / 3)
    assert _profile(client, token_b)["rating"] != 3.33
