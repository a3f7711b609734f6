from sqlalchemy import func, select

from iptrust.db.models import Comment, IpProfile, Like, Page, PageSubmission, PageView
from iptrust.repositories import bans, ip_profiles
from iptrust.security.bot_signatures import classify_user_agent

IP = "198.51.100.20"


async def _sighting(session, ip=IP, ua=None):
    p = await ip_profiles.record_sighting(
        session, ip=ip, hash_value=f"h{ip}", detection=classify_user_agent(ua) if ua else None
    )
    await session.commit()
    return p


async def _count(session):
    return (await session.execute(select(func.count()).select_from(IpProfile))).scalar_one()


async def test_sighting_is_idempotent(session):
    first = await _sighting(session, ua="curl/8.0.1")
    second = await _sighting(session, ua="Mozilla/5.0 (X11; Linux x86_64) Firefox/125.0")
    assert first.id == second.id
    assert await _count(session) == 1
    assert second.is_bot is False
    assert second.last_user_agent.startswith("Mozilla/5.0")


async def test_sighting_without_agent_keeps_bot_fields(session):
    await _sighting(session, ua="curl/8.0.1")
    p = await _sighting(session)
    assert p.is_bot is True
    assert p.bot_reason == "curl client"


async def test_duplicate_insert_race_recovers(session_factory, monkeypatch):
    async with session_factory() as s:
        await _sighting(s)

    real = ip_profiles.get_by_ip
    misses = {"n": 0}

    async def stale_lookup(session, ip):
        # first lookup misses, as if another request inserted just after it
        if misses["n"] == 0:
            misses["n"] += 1
            return None
        return await real(session, ip)

    monkeypatch.setattr(ip_profiles, "get_by_ip", stale_lookup)
    async with session_factory() as s:
        p = await ip_profiles.record_sighting(s, ip=IP, hash_value=f"h{IP}", detection=classify_user_agent("-"))
        await s.commit()
        assert p.is_bot is True
    monkeypatch.undo()

    async with session_factory() as s:
        assert await _count(s) == 1


async def test_override_precedence(session):
    p = await _sighting(session)
    await ip_profiles.save_reputation(
        session,
        p.id,
        auto_status="suspicious",
        summary="Signals detected: VPN.",
        details={"ipapi": {"is_vpn": True}},
        flags={"is_vpn": True},
    )
    await session.commit()

    assert await ip_profiles.mark_safe(session, p.hash) is True
    await session.commit()
    await session.refresh(p)
    assert p.reputation_status == "safe"
    assert p.reputation_override == "safe"

    assert await ip_profiles.mark_banned(session, p.hash) is True
    await session.refresh(p)
    assert p.reputation_status == "banned"

    assert await ip_profiles.clear_override(session, p.hash) is True
    await session.refresh(p)
    assert p.reputation_override is None
    assert p.reputation_status == "suspicious"

    assert await ip_profiles.mark_safe(session, "no-such-hash") is False
    assert await ip_profiles.mark_safe(session, "") is False


async def test_review_queue(session):
    flagged = await _sighting(session, ip="198.51.100.31")
    cleared = await _sighting(session, ip="198.51.100.32")
    await _sighting(session, ip="198.51.100.33")
    for p in (flagged, cleared):
        await ip_profiles.save_reputation(
            session, p.id, auto_status="suspicious", summary="x", details=None, flags={"is_tor": True}
        )
    await ip_profiles.mark_safe(session, cleared.hash)
    await session.commit()

    rows = await ip_profiles.list_for_review(session)
    assert [r.hash for r in rows] == [flagged.hash]
    assert await ip_profiles.count_for_review(session) == 1
    assert await ip_profiles.count_cleared(session) == 1
    assert [r.hash for r in await ip_profiles.fetch_recently_cleared(session)] == [cleared.hash]
    assert await ip_profiles.count_checked(session) == 2
    assert len(await ip_profiles.fetch_recent_checks(session, limit=1)) == 1


async def test_profile_details_aggregate_activity(session):
    p = await _sighting(session)
    page = Page(slug_id="home", title="Home")
    session.add(page)
    await session.flush()
    session.add_all(
        [
            PageView(page_id=page.id, ip=IP),
            PageView(page_id=page.id, ip=IP),
            PageView(page_id=page.id, ip="10.9.9.9"),
            Like(page_id=page.id, ip=IP),
            Comment(page_id=page.id, ip=IP, body="word " * 100, status="approved"),
            Comment(page_id=page.id, ip=IP, body="hidden", status="pending"),
            PageSubmission(page_id=None, ip=IP, title="Draft", status="pending", target_slug_id="draft"),
        ]
    )
    await session.commit()
    await bans.ban_ip(session, ip=IP, scope="action", value="comment", reason="spam")
    await session.commit()

    data = await ip_profiles.get_profile_by_hash(session, p.hash)
    assert data["short_hash"] == p.hash[:10].upper()
    assert data["stats"]["views"] == {"total": 2, "unique_pages": 1, "last_at": data["stats"]["views"]["last_at"]}
    assert data["stats"]["likes"]["total"] == 1
    assert data["stats"]["comments"]["total"] == 1
    assert data["stats"]["submissions"]["by_status"] == {"pending": 1}
    excerpt = data["recent"]["comments"][0]["excerpt"]
    assert len(excerpt) == 160 and excerpt.endswith("…")
    assert data["recent"]["submissions"][0]["slug"] == "draft"
    assert data["recent"]["views"][0]["slug"] == "home"
    assert [b["value"] for b in data["bans"]] == ["comment"]
    assert data["claim"] == {"claimed": False, "user_id": None, "claimed_at": None}

    listed = await ip_profiles.fetch_profiles(session, search=IP[:8])
    assert listed[0]["stats"] == {"approved_comments": 1, "submissions": 1, "likes": 1, "views": 2}
    assert await ip_profiles.count_profiles(session, search="nomatch") == 0
    assert (await ip_profiles.get_profile_by_ip(session, IP))["hash"] == p.hash


async def test_claim_link_unlink(session):
    p = await _sighting(session)
    assert (await ip_profiles.claim_profile(session, p.hash, 7)) == {"updated": True}
    assert (await ip_profiles.claim_profile(session, p.hash, 8)) == {"updated": False}
    claim = await ip_profiles.get_claim(session, p.hash)
    assert claim["claimed"] is True and claim["user_id"] == 7

    assert (await ip_profiles.link_profile_to_user(session, p.hash, 7))["reason"] == "already_linked"
    assert (await ip_profiles.link_profile_to_user(session, p.hash, 9))["reason"] == "already_claimed"
    forced = await ip_profiles.link_profile_to_user(session, p.hash, 9, force=True)
    assert forced == {"updated": True, "previous_user_id": 7}
    assert (await ip_profiles.link_profile_to_user(session, "missing", 9))["reason"] == "not_found"
    assert (await ip_profiles.link_profile_to_user(session, "", 9))["reason"] == "invalid"

    mismatch = await ip_profiles.unlink_profile(session, p.hash, expected_user_id=7)
    assert mismatch == {"updated": False, "reason": "mismatch", "current_user_id": 9}
    done = await ip_profiles.unlink_profile(session, p.hash, expected_user_id=9)
    assert done == {"updated": True, "previous_user_id": 9}
    assert (await ip_profiles.get_claim(session, p.hash))["claimed"] is False


async def test_claim_rejects_bad_user_id(session):
    import pytest

    p = await _sighting(session)
    with pytest.raises(ValueError):
        await ip_profiles.claim_profile(session, p.hash, "abc")


async def test_delete_profile(session):
    p = await _sighting(session)
    assert await ip_profiles.delete_profile(session, p.hash) == {"hash": p.hash, "ip": IP}
    await session.commit()
    assert await ip_profiles.delete_profile(session, p.hash) is None


def test_build_excerpt():
    assert ip_profiles.build_excerpt("  a \n  b  ") == "a b"
    assert ip_profiles.build_excerpt(None) == ""
    assert ip_profiles.build_excerpt("x" * 10, limit=5) == "xxxx…"


def test_page_window():
    assert ip_profiles.page_window(-1, -5, 20) == (20, 0)
    assert ip_profiles.page_window("10", 3, 20) == (20, 3)
    assert ip_profiles.page_window(5, 2, 20) == (5, 2)
