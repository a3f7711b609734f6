import httpx
import pytest
from prometheus_client.parser import text_string_to_metric_families

from iptrust.db.session import get_session
from iptrust.security.ip_utils import IdentityHasher

VISITOR = "198.51.100.23"


@pytest.fixture
async def app(trust_engine, session_factory):
    from iptrust.main import app as fastapi_app

    async def _session():
        async with session_factory() as s:
            yield s

    previous = fastapi_app.state.engine
    fastapi_app.dependency_overrides[get_session] = _session
    fastapi_app.state.engine = trust_engine
    yield fastapi_app
    await trust_engine.drain()
    fastapi_app.dependency_overrides.clear()
    fastapi_app.state.engine = previous


@pytest.fixture
async def client(app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c


async def _visit(client, trust_engine, ip=VISITOR):
    r = await client.get("/_debug/whoami", headers={"X-Forwarded-For": ip})
    assert r.status_code == 200
    await trust_engine.drain()
    return r.json()


async def test_health(client):
    r = await client.get("/health")
    assert r.status_code == 200 and r.json() == {"status": "ok"}


async def test_metrics_exposes_engine_series(client):
    for _ in range(3):
        await client.get("/health")
    r = await client.get("/metrics")
    assert r.status_code == 200
    names = {fam.name for fam in text_string_to_metric_families(r.text)}
    assert {"reputation_refresh", "bot_detections", "access_denied", "request_latency_seconds"} <= names


async def test_whoami_honours_trusted_proxy(client, trust_engine):
    body = await _visit(client, trust_engine)
    assert body["ip"] == VISITOR
    assert body["hash"] == IdentityHasher("test-salt").hash(VISITOR)
    assert body["short_hash"] == body["hash"][:10].upper()
    assert body["bot"]["is_bot"] is True
    assert body["bot"]["reason"] == "httpx client"


async def test_tracking_failure_does_not_break_request(client, trust_engine, monkeypatch):
    async def broken_touch(*args, **kwargs):
        raise RuntimeError("db down")

    monkeypatch.setattr(trust_engine, "touch", broken_touch)
    r = await client.get("/_debug/whoami")
    assert r.status_code == 200
    assert r.json()["bot"] is None


async def test_profile_moderation_flow(client, trust_engine, upstream):
    visitor = await _visit(client, trust_engine)
    h = visitor["hash"]

    r = await client.get(f"/ip-profiles/{h}")
    assert r.status_code == 200
    profile = r.json()
    assert profile["ip"] == VISITOR
    assert profile["reputation"]["status"] == "clean"
    assert profile["bot"]["reason"] == "httpx client"
    assert upstream.reputation_rounds() >= 1

    r = await client.post(f"/ip-profiles/{h}/override", json={"override": "banned"})
    assert r.status_code == 200
    assert r.json()["reputation"]["status"] == "banned"

    r = await client.post(f"/ip-profiles/{h}/override", json={"override": None})
    assert r.json()["reputation"]["status"] == "clean"

    rounds = upstream.reputation_rounds()
    r = await client.post(f"/ip-profiles/{h}/refresh", params={"force": "true"})
    assert r.status_code == 200
    assert r.json()["auto_status"] == "clean"
    assert upstream.reputation_rounds() == rounds + 1

    r = await client.get("/ip-profiles", params={"search": VISITOR})
    assert r.json()["total"] == 1

    r = await client.delete(f"/ip-profiles/{h}")
    assert r.status_code == 200 and r.json()["deleted"] is True
    assert (await client.get(f"/ip-profiles/{h}")).status_code == 404
    assert (await client.post(f"/ip-profiles/{h}/refresh")).status_code == 404


async def test_review_queue_endpoint(client, trust_engine, upstream):
    upstream.set("api.ipapi.is", {"is_vpn": True})
    visitor = await _visit(client, trust_engine)
    r = await client.get("/ip-profiles/review")
    body = r.json()
    assert body["total"] >= 1
    assert visitor["hash"] in [item["hash"] for item in body["items"]]

    await client.post(f"/ip-profiles/{visitor['hash']}/override", json={"override": "safe"})
    body = (await client.get("/ip-profiles/review")).json()
    assert visitor["hash"] not in [item["hash"] for item in body["items"]]
    cleared = (await client.get("/ip-profiles/cleared")).json()
    assert cleared["total"] == 1


async def test_override_rejects_unknown_values(client):
    r = await client.post("/ip-profiles/whatever/override", json={"override": "maybe"})
    assert r.status_code == 422
    r = await client.post("/ip-profiles/whatever/override", json={"override": "safe"})
    assert r.status_code == 404


async def test_claim_endpoints(client, trust_engine):
    h = (await _visit(client, trust_engine))["hash"]
    r = await client.post(f"/ip-profiles/{h}/claim", json={"user_id": 3})
    assert r.json()["updated"] is True
    assert (await client.get(f"/ip-profiles/{h}/claim")).json()["user_id"] == 3
    r = await client.delete(f"/ip-profiles/{h}/claim", params={"expected_user_id": 4})
    assert r.json()["reason"] == "mismatch"
    r = await client.delete(f"/ip-profiles/{h}/claim")
    assert r.json()["updated"] is True


async def test_access_check_and_bans(client):
    r = await client.post("/bans/ip", json={"ip": "192.0.2.1", "scope": "global", "reason": "flood"})
    assert r.status_code == 201
    ip_ban = r.json()
    assert ip_ban["value"] is None and ip_ban["lifted_at"] is None

    r = await client.get("/access/check", params={"ip": "192.0.2.1"})
    assert r.json()["allowed"] is False and r.json()["subject"] == "ip"

    r = await client.post("/bans/user", json={"user_id": 5, "scope": "action", "value": "comment"})
    assert r.status_code == 201
    user_ban = r.json()

    r = await client.get("/access/check", params={"ip": "192.0.2.1", "user_id": 5, "action": "comment"})
    assert r.json()["subject"] == "user"
    r = await client.get("/access/check", params={"user_id": 5, "action": "like"})
    assert r.json()["allowed"] is True

    r = await client.post(f"/bans/ip/{ip_ban['id']}/lift")
    assert r.json() == {"changed": 1}
    r = await client.get("/access/check", params={"ip": "192.0.2.1"})
    assert r.json()["allowed"] is True

    assert (await client.post(f"/bans/user/{user_ban['id']}/lift")).json() == {"changed": 1}
    assert (await client.post("/bans/user/unknown/lift")).json() == {"changed": 0}


async def test_access_check_with_tags(client):
    await client.post("/bans/ip", json={"ip": "192.0.2.8", "scope": "tag", "value": "spam"})
    r = await client.get("/access/check", params=[("ip", "192.0.2.8"), ("tags", "news"), ("tags", "spam")])
    assert r.json()["allowed"] is False
    assert r.json()["ban"]["value"] == "spam"


async def test_ban_validation(client):
    assert (await client.post("/bans/ip", json={"ip": "192.0.2.1", "scope": "planet"})).status_code == 422
    assert (await client.post("/bans/ip", json={"ip": "192.0.2.1", "scope": "action"})).status_code == 400
    assert (await client.get("/bans/ip/missing")).status_code == 404


async def test_appeals(client):
    r = await client.post("/appeals", json={"message": "I was on a shared connection", "scope": "global"})
    assert r.status_code == 201
    appeal = r.json()
    assert appeal["status"] == "pending"
    assert appeal["ip"] == "127.0.0.1"

    r = await client.post("/appeals", json={"message": "again"})
    assert r.status_code == 409

    listing = (await client.get("/appeals", params={"status": "pending"})).json()
    assert listing["total"] == 1

    r = await client.post(f"/appeals/{appeal['id']}/resolve", json={"status": "accepted", "resolved_by": "mod"})
    assert r.json() == {"changed": 1}
    assert (await client.get(f"/appeals/{appeal['id']}")).json()["status"] == "accepted"
    assert (await client.post("/appeals", json={"message": ""})).status_code == 422


async def test_repository_value_errors_map_to_400(client, trust_engine, monkeypatch):
    from iptrust.repositories import ban_appeals, ip_profiles

    async def rejects(*args, **kwargs):
        raise ValueError("Invalid user id for IP profile linkage")

    h = (await _visit(client, trust_engine))["hash"]
    monkeypatch.setattr(ip_profiles, "link_profile_to_user", rejects)
    r = await client.post(f"/ip-profiles/{h}/claim", json={"user_id": 3})
    assert r.status_code == 400
    assert r.json()["detail"] == "Invalid user id for IP profile linkage"

    monkeypatch.setattr(ban_appeals, "resolve_appeal", rejects)
    r = await client.post("/appeals/any/resolve", json={"status": "rejected"})
    assert r.status_code == 400
