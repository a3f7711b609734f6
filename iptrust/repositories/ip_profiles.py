# iptrust/repositories/ip_profiles.py
"""
Persistence for IP profiles: sighting upserts, reputation writes, moderator
overrides, claim linkage and the read-side views used by moderation screens.
"""
import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import case, delete, desc, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from iptrust.db.models import (
    OVERRIDES,
    Comment,
    IpProfile,
    Like,
    Page,
    PageSubmission,
    PageView,
    utcnow,
)
from iptrust.repositories.bans import ban_as_dict, get_active_ip_bans, normalize_user_id
from iptrust.security.bot_signatures import BotDetection
from iptrust.security.ip_utils import normalize_ip, short_label

RECENT_LIMIT = 5
EXCERPT_LIMIT = 160

_WS = re.compile(r"\s+")


def normalize_override(value) -> Optional[str]:
    if not value:
        return None
    lowered = str(value).strip().lower()
    return lowered if lowered in OVERRIDES else None


def page_window(limit, offset, default_limit: int):
    limit = limit if isinstance(limit, int) and not isinstance(limit, bool) and limit > 0 else default_limit
    offset = offset if isinstance(offset, int) and not isinstance(offset, bool) and offset >= 0 else 0
    return limit, offset


def build_excerpt(text: Optional[str], limit: int = EXCERPT_LIMIT) -> str:
    if not text:
        return ""
    normalized = _WS.sub(" ", str(text)).strip()
    if len(normalized) <= limit:
        return normalized
    return normalized[: max(0, limit - 1)].rstrip() + "…"


def _flags(p: IpProfile) -> Dict[str, bool]:
    return {
        "is_vpn": bool(p.is_vpn),
        "is_proxy": bool(p.is_proxy),
        "is_tor": bool(p.is_tor),
        "is_datacenter": bool(p.is_datacenter),
        "is_abuser": bool(p.is_abuser),
    }


def profile_as_dict(p: IpProfile, *, include_ip: bool = True) -> Dict[str, Any]:
    data = {
        "id": p.public_id,
        "hash": p.hash,
        "short_hash": short_label(p.hash),
        "created_at": p.created_at,
        "last_seen_at": p.last_seen_at,
        "reputation": {
            "status": p.reputation_status or "unknown",
            "auto_status": p.reputation_auto_status or "unknown",
            "override": normalize_override(p.reputation_override),
            "summary": p.reputation_summary,
            "last_checked_at": p.reputation_checked_at,
            "flags": _flags(p),
        },
        "bot": {
            "is_bot": bool(p.is_bot),
            "reason": p.bot_reason,
            "user_agent": p.last_user_agent,
        },
    }
    if include_ip:
        data["ip"] = p.ip
    return data


def _claim(p: IpProfile) -> Dict[str, Any]:
    uid = normalize_user_id(p.claimed_user_id)
    return {"claimed": uid is not None, "user_id": uid, "claimed_at": p.claimed_at}


# --- Raw lookups -------------------------------------------------------------

async def get_by_ip(session: AsyncSession, ip) -> Optional[IpProfile]:
    normalized = normalize_ip(ip)
    if not normalized:
        return None
    q = select(IpProfile).where(IpProfile.ip == normalized)
    return (await session.execute(q)).scalars().first()


async def get_by_hash(session: AsyncSession, hash_value) -> Optional[IpProfile]:
    normalized = normalize_ip(hash_value)
    if not normalized:
        return None
    q = select(IpProfile).where(IpProfile.hash == normalized)
    return (await session.execute(q)).scalars().first()


# --- Sightings ---------------------------------------------------------------

def _apply_detection(values: Dict[str, Any], detection: Optional[BotDetection]) -> None:
    if detection is None or detection.user_agent is None:
        return
    values["last_user_agent"] = detection.user_agent
    values["is_bot"] = bool(detection.is_bot)
    values["bot_reason"] = detection.reason or None


async def record_sighting(
    session: AsyncSession, *, ip: str, hash_value: str, detection: Optional[BotDetection] = None
) -> IpProfile:
    """
    Update last-seen (and the user-agent fields when one was supplied) or
    create the row on first sighting. A concurrent first sighting loses the
    unique-constraint race; the transaction is rolled back and the winner's
    row is updated instead. Run on a session with no other pending work.
    """
    values: Dict[str, Any] = {"last_seen_at": utcnow()}
    _apply_detection(values, detection)

    existing = await get_by_ip(session, ip)
    if existing is None:
        created = IpProfile(ip=ip, hash=hash_value, **values)
        session.add(created)
        try:
            await session.flush()
            return created
        except IntegrityError:
            await session.rollback()
            existing = await get_by_ip(session, ip)
            if existing is None:
                raise

    await session.execute(update(IpProfile).where(IpProfile.id == existing.id).values(**values))
    await session.refresh(existing)
    return existing


# --- Reputation writes -------------------------------------------------------

async def save_reputation(
    session: AsyncSession,
    profile_id: int,
    *,
    auto_status: str,
    summary: str,
    details: Optional[Dict[str, Any]],
    flags: Dict[str, bool],
    checked_at: Optional[datetime] = None,
) -> None:
    # status follows whatever override is stored at write time
    status = case(
        (IpProfile.reputation_override.in_(OVERRIDES), IpProfile.reputation_override),
        else_=auto_status,
    )
    await session.execute(
        update(IpProfile)
        .where(IpProfile.id == profile_id)
        .values(
            reputation_checked_at=checked_at or utcnow(),
            reputation_auto_status=auto_status,
            reputation_status=status,
            reputation_summary=summary,
            reputation_details=details,
            **flags,
        )
    )


async def save_failed_check(
    session: AsyncSession, profile_id: int, *, summary: str, checked_at: Optional[datetime] = None
) -> None:
    await session.execute(
        update(IpProfile)
        .where(IpProfile.id == profile_id)
        .values(reputation_checked_at=checked_at or utcnow(), reputation_summary=summary)
    )


# --- Overrides ---------------------------------------------------------------

async def set_override(session: AsyncSession, hash_value, override) -> bool:
    normalized_hash = normalize_ip(hash_value)
    if not normalized_hash:
        return False
    normalized = normalize_override(override)
    status = normalized if normalized else IpProfile.reputation_auto_status
    res = await session.execute(
        update(IpProfile)
        .where(IpProfile.hash == normalized_hash)
        .values(reputation_override=normalized, reputation_status=status)
    )
    return bool(res.rowcount)


async def mark_safe(session: AsyncSession, hash_value) -> bool:
    return await set_override(session, hash_value, "safe")


async def mark_banned(session: AsyncSession, hash_value) -> bool:
    return await set_override(session, hash_value, "banned")


async def clear_override(session: AsyncSession, hash_value) -> bool:
    return await set_override(session, hash_value, None)


# --- Claim linkage -----------------------------------------------------------

def _require_user_id(user_id) -> int:
    uid = normalize_user_id(user_id)
    if uid is None:
        raise ValueError("Invalid user id for IP profile linkage")
    return uid


async def get_claim(session: AsyncSession, hash_value) -> Optional[Dict[str, Any]]:
    profile = await get_by_hash(session, hash_value)
    if profile is None:
        return None
    return _claim(profile)


async def claim_profile(session: AsyncSession, hash_value, user_id) -> Dict[str, Any]:
    normalized = normalize_ip(hash_value)
    if not normalized:
        return {"updated": False}
    uid = _require_user_id(user_id)
    res = await session.execute(
        update(IpProfile)
        .where(IpProfile.hash == normalized, IpProfile.claimed_user_id.is_(None))
        .values(claimed_user_id=uid, claimed_at=utcnow())
    )
    return {"updated": bool(res.rowcount)}


async def link_profile_to_user(session: AsyncSession, hash_value, user_id, *, force: bool = False) -> Dict[str, Any]:
    normalized = normalize_ip(hash_value)
    if not normalized:
        return {"updated": False, "reason": "invalid"}
    uid = _require_user_id(user_id)
    profile = await get_by_hash(session, normalized)
    if profile is None:
        return {"updated": False, "reason": "not_found"}
    current = normalize_user_id(profile.claimed_user_id)
    if current is not None and not force:
        if current == uid:
            return {"updated": False, "reason": "already_linked", "previous_user_id": current}
        return {"updated": False, "reason": "already_claimed", "claimed_user_id": current}
    res = await session.execute(
        update(IpProfile).where(IpProfile.hash == normalized).values(claimed_user_id=uid, claimed_at=utcnow())
    )
    return {"updated": bool(res.rowcount), "previous_user_id": current}


async def unlink_profile(session: AsyncSession, hash_value, *, expected_user_id=None) -> Dict[str, Any]:
    normalized = normalize_ip(hash_value)
    if not normalized:
        return {"updated": False, "reason": "invalid"}
    profile = await get_by_hash(session, normalized)
    if profile is None:
        return {"updated": False, "reason": "not_found"}
    current = normalize_user_id(profile.claimed_user_id)
    expected = normalize_user_id(expected_user_id)
    if expected is not None and current != expected:
        return {"updated": False, "reason": "mismatch", "current_user_id": current}
    q = update(IpProfile).where(IpProfile.hash == normalized)
    if expected is not None:
        q = q.where(IpProfile.claimed_user_id == expected)
    res = await session.execute(q.values(claimed_user_id=None, claimed_at=None))
    return {"updated": bool(res.rowcount), "previous_user_id": current}


# --- Enriched profile --------------------------------------------------------

async def _activity_stats(session: AsyncSession, ip: str) -> Dict[str, Any]:
    views = (
        await session.execute(
            select(func.count(), func.count(func.distinct(PageView.page_id)), func.max(PageView.viewed_at)).where(
                PageView.ip == ip
            )
        )
    ).one()
    likes = (
        await session.execute(
            select(func.count(), func.count(func.distinct(Like.page_id)), func.max(Like.created_at)).where(
                Like.ip == ip
            )
        )
    ).one()
    comments = (
        await session.execute(
            select(func.count(), func.max(Comment.created_at)).where(Comment.ip == ip, Comment.status == "approved")
        )
    ).one()
    submissions = (
        await session.execute(
            select(func.count(), func.max(PageSubmission.created_at)).where(PageSubmission.ip == ip)
        )
    ).one()
    by_status = (
        await session.execute(
            select(PageSubmission.status, func.count())
            .where(PageSubmission.ip == ip)
            .group_by(PageSubmission.status)
        )
    ).all()
    return {
        "views": {"total": views[0] or 0, "unique_pages": views[1] or 0, "last_at": views[2]},
        "likes": {"total": likes[0] or 0, "unique_pages": likes[1] or 0, "last_at": likes[2]},
        "comments": {"total": comments[0] or 0, "last_at": comments[1]},
        "submissions": {
            "total": submissions[0] or 0,
            "last_at": submissions[1],
            "by_status": {status: int(total or 0) for status, total in by_status},
        },
    }


async def _recent_activity(session: AsyncSession, ip: str) -> Dict[str, List[Dict[str, Any]]]:
    comment_rows = (
        await session.execute(
            select(Comment.public_id, Comment.body, Comment.created_at, Page.title, Page.slug_id)
            .join(Page, Page.id == Comment.page_id)
            .where(Comment.ip == ip, Comment.status == "approved")
            .order_by(desc(Comment.created_at))
            .limit(RECENT_LIMIT)
        )
    ).all()
    like_rows = (
        await session.execute(
            select(Like.public_id, Like.created_at, Page.title, Page.slug_id)
            .join(Page, Page.id == Like.page_id)
            .where(Like.ip == ip)
            .order_by(desc(Like.created_at))
            .limit(RECENT_LIMIT)
        )
    ).all()
    view_rows = (
        await session.execute(
            select(PageView.public_id, PageView.viewed_at, Page.title, Page.slug_id)
            .join(Page, Page.id == PageView.page_id)
            .where(PageView.ip == ip)
            .order_by(desc(PageView.viewed_at))
            .limit(RECENT_LIMIT)
        )
    ).all()
    submission_rows = (
        await session.execute(
            select(
                PageSubmission.public_id,
                PageSubmission.title,
                PageSubmission.status,
                PageSubmission.type,
                PageSubmission.created_at,
                PageSubmission.result_slug_id,
                PageSubmission.target_slug_id,
                Page.slug_id,
                Page.title,
            )
            .outerjoin(Page, Page.id == PageSubmission.page_id)
            .where(PageSubmission.ip == ip)
            .order_by(desc(PageSubmission.created_at))
            .limit(RECENT_LIMIT)
        )
    ).all()
    return {
        "comments": [
            {"id": r[0], "slug": r[4], "page_title": r[3], "created_at": r[2], "excerpt": build_excerpt(r[1])}
            for r in comment_rows
        ],
        "likes": [{"id": r[0], "slug": r[3], "page_title": r[2], "created_at": r[1]} for r in like_rows],
        "views": [{"id": r[0], "slug": r[3], "page_title": r[2], "created_at": r[1]} for r in view_rows],
        "submissions": [
            {
                "id": r[0],
                "status": r[2],
                "type": r[3],
                "created_at": r[4],
                "page_title": r[8] or r[1],
                "slug": r[5] or r[7] or r[6],
            }
            for r in submission_rows
        ],
    }


async def describe_profile(session: AsyncSession, profile: IpProfile) -> Dict[str, Any]:
    data = profile_as_dict(profile)
    data["stats"] = await _activity_stats(session, profile.ip)
    data["recent"] = await _recent_activity(session, profile.ip)
    data["bans"] = [ban_as_dict(b) for b in await get_active_ip_bans(session, profile.ip)]
    data["claim"] = _claim(profile)
    data["is_claimed"] = data["claim"]["claimed"]
    return data


async def get_profile_by_hash(session: AsyncSession, hash_value) -> Optional[Dict[str, Any]]:
    profile = await get_by_hash(session, hash_value)
    if profile is None:
        return None
    return await describe_profile(session, profile)


async def get_profile_by_ip(session: AsyncSession, ip) -> Optional[Dict[str, Any]]:
    profile = await get_by_ip(session, ip)
    if profile is None:
        return None
    return await describe_profile(session, profile)


async def delete_profile(session: AsyncSession, hash_value) -> Optional[Dict[str, str]]:
    profile = await get_by_hash(session, hash_value)
    if profile is None:
        return None
    removed = {"hash": profile.hash, "ip": profile.ip}
    await session.execute(delete(IpProfile).where(IpProfile.id == profile.id))
    return removed


# --- Listings ----------------------------------------------------------------

def _search_filter(search):
    text = search.strip() if isinstance(search, str) else ""
    if not text:
        return None
    like = f"%{text}%"
    return or_(IpProfile.hash.like(like), IpProfile.ip.like(like))


async def count_profiles(session: AsyncSession, *, search: Optional[str] = None) -> int:
    q = select(func.count()).select_from(IpProfile)
    cond = _search_filter(search)
    if cond is not None:
        q = q.where(cond)
    return (await session.execute(q)).scalar_one()


def _count_for(model, *extra):
    return (
        select(func.count())
        .select_from(model)
        .where(model.ip == IpProfile.ip, *extra)
        .correlate(IpProfile)
        .scalar_subquery()
    )


async def fetch_profiles(
    session: AsyncSession, *, search: Optional[str] = None, limit: int = 50, offset: int = 0
) -> List[Dict[str, Any]]:
    limit, offset = page_window(limit, offset, 50)
    q = select(
        IpProfile,
        _count_for(Comment, Comment.status == "approved").label("approved_comments"),
        _count_for(PageSubmission).label("submissions"),
        _count_for(Like).label("likes"),
        _count_for(PageView).label("views"),
    )
    cond = _search_filter(search)
    if cond is not None:
        q = q.where(cond)
    q = q.order_by(desc(IpProfile.last_seen_at), desc(IpProfile.id)).limit(limit).offset(offset)
    rows = (await session.execute(q)).all()
    out = []
    for profile, approved_comments, submissions, likes, views in rows:
        data = profile_as_dict(profile)
        data["stats"] = {
            "approved_comments": approved_comments or 0,
            "submissions": submissions or 0,
            "likes": likes or 0,
            "views": views or 0,
        }
        out.append(data)
    return out


def _needs_review():
    return (
        IpProfile.reputation_auto_status == "suspicious",
        or_(IpProfile.reputation_override.is_(None), IpProfile.reputation_override.notin_(OVERRIDES)),
    )


def _recency():
    return func.coalesce(IpProfile.reputation_checked_at, IpProfile.last_seen_at, IpProfile.created_at)


async def count_for_review(session: AsyncSession) -> int:
    q = select(func.count()).select_from(IpProfile).where(*_needs_review())
    return (await session.execute(q)).scalar_one()


async def list_for_review(session: AsyncSession, *, limit: int = 50, offset: int = 0) -> Sequence[IpProfile]:
    limit, offset = page_window(limit, offset, 50)
    q = (
        select(IpProfile)
        .where(*_needs_review())
        .order_by(desc(_recency()), desc(IpProfile.id))
        .limit(limit)
        .offset(offset)
    )
    return (await session.execute(q)).scalars().all()


async def count_checked(session: AsyncSession) -> int:
    q = select(func.count()).select_from(IpProfile).where(IpProfile.reputation_checked_at.is_not(None))
    return (await session.execute(q)).scalar_one()


async def fetch_recent_checks(session: AsyncSession, *, limit: int = 20, offset: int = 0) -> Sequence[IpProfile]:
    limit, offset = page_window(limit, offset, 20)
    q = (
        select(IpProfile)
        .where(IpProfile.reputation_checked_at.is_not(None))
        .order_by(desc(IpProfile.reputation_checked_at), desc(IpProfile.id))
        .limit(limit)
        .offset(offset)
    )
    return (await session.execute(q)).scalars().all()


async def count_cleared(session: AsyncSession) -> int:
    q = select(func.count()).select_from(IpProfile).where(IpProfile.reputation_override == "safe")
    return (await session.execute(q)).scalar_one()


async def fetch_recently_cleared(session: AsyncSession, *, limit: int = 10, offset: int = 0) -> Sequence[IpProfile]:
    limit, offset = page_window(limit, offset, 10)
    q = (
        select(IpProfile)
        .where(IpProfile.reputation_override == "safe")
        .order_by(desc(_recency()), desc(IpProfile.id))
        .limit(limit)
        .offset(offset)
    )
    return (await session.execute(q)).scalars().all()
