# iptrust/repositories/bans.py
"""
IP and account ban ledgers.

Both ledgers are append-mostly: a ban is active while lifted_at is NULL.
Lookups by id use the public id handed out at creation time.
"""
from typing import Any, Dict, List, Optional, Sequence, Type, Union

from sqlalchemy import delete, desc, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from iptrust.db.models import BAN_SCOPES, IpBan, UserActionBan, utcnow

AnyBan = Union[IpBan, UserActionBan]


def normalize_user_id(user_id) -> Optional[int]:
    if isinstance(user_id, bool):
        return None
    if isinstance(user_id, int):
        return user_id
    if isinstance(user_id, str) and user_id.strip().lstrip("-").isdigit():
        return int(user_id.strip())
    return None


def ban_as_dict(ban: Optional[AnyBan]) -> Optional[Dict[str, Any]]:
    if ban is None:
        return None
    data = {
        "id": ban.public_id,
        "scope": ban.scope,
        "value": ban.value,
        "reason": ban.reason,
        "created_at": ban.created_at,
        "lifted_at": ban.lifted_at,
    }
    if isinstance(ban, IpBan):
        data["ip"] = ban.ip
    else:
        data["user_id"] = ban.user_id
    return data


def _value_for(scope: str, value) -> Optional[str]:
    if scope == "global":
        return None
    text = value.strip() if isinstance(value, str) else None
    return text or None


async def _active(session: AsyncSession, model: Type[AnyBan], subject_col, subject) -> Sequence[AnyBan]:
    q = (
        select(model)
        .where(subject_col == subject, model.lifted_at.is_(None))
        .order_by(desc(model.created_at), desc(model.id))
    )
    return (await session.execute(q)).scalars().all()


async def _lift(session: AsyncSession, model: Type[AnyBan], ban_id) -> int:
    if not ban_id:
        return 0
    res = await session.execute(
        update(model)
        .where(model.public_id == str(ban_id), model.lifted_at.is_(None))
        .values(lifted_at=utcnow())
    )
    return res.rowcount or 0


async def _delete(session: AsyncSession, model: Type[AnyBan], ban_id) -> int:
    if not ban_id:
        return 0
    res = await session.execute(delete(model).where(model.public_id == str(ban_id)))
    return res.rowcount or 0


async def _get(session: AsyncSession, model: Type[AnyBan], ban_id) -> Optional[AnyBan]:
    if not ban_id:
        return None
    q = select(model).where(model.public_id == str(ban_id))
    return (await session.execute(q)).scalars().first()


# --- IP ledger ---------------------------------------------------------------

async def get_active_ip_bans(session: AsyncSession, ip: Optional[str]) -> List[IpBan]:
    if not ip:
        return []
    return list(await _active(session, IpBan, IpBan.ip, ip))


async def ban_ip(
    session: AsyncSession,
    *,
    ip: Optional[str],
    scope: Optional[str],
    value: Optional[str] = None,
    reason: Optional[str] = None,
) -> Optional[str]:
    """Returns the new ban's public id; None when ip or scope is unusable."""
    ip = ip.strip() if isinstance(ip, str) else ""
    if not ip or scope not in BAN_SCOPES:
        return None
    ban = IpBan(ip=ip, scope=scope, value=_value_for(scope, value), reason=reason or None)
    session.add(ban)
    await session.flush()
    return ban.public_id


async def lift_ip_ban(session: AsyncSession, ban_id) -> int:
    return await _lift(session, IpBan, ban_id)


async def delete_ip_ban(session: AsyncSession, ban_id) -> int:
    return await _delete(session, IpBan, ban_id)


async def get_ip_ban(session: AsyncSession, ban_id) -> Optional[IpBan]:
    return await _get(session, IpBan, ban_id)


async def count_active_ip_bans(session: AsyncSession) -> int:
    q = select(func.count()).select_from(IpBan).where(IpBan.lifted_at.is_(None))
    return (await session.execute(q)).scalar_one()


# --- Account ledger ----------------------------------------------------------

def normalize_user_scope(scope) -> str:
    return scope if scope in ("global", "tag") else "action"


async def get_active_user_action_bans(session: AsyncSession, user_id) -> List[UserActionBan]:
    uid = normalize_user_id(user_id)
    if uid is None:
        return []
    return list(await _active(session, UserActionBan, UserActionBan.user_id, uid))


async def get_active_user_action_ban(
    session: AsyncSession, *, user_id, scope, value: Optional[str] = None
) -> Optional[UserActionBan]:
    uid = normalize_user_id(user_id)
    if uid is None or not scope:
        return None
    scope = normalize_user_scope(scope)
    value = _value_for(scope, value)
    q = (
        select(UserActionBan)
        .where(
            UserActionBan.user_id == uid,
            UserActionBan.scope == scope,
            func.coalesce(UserActionBan.value, "") == (value or ""),
            UserActionBan.lifted_at.is_(None),
        )
        .order_by(desc(UserActionBan.created_at), desc(UserActionBan.id))
        .limit(1)
    )
    return (await session.execute(q)).scalars().first()


async def ban_user_action(
    session: AsyncSession,
    *,
    user_id,
    scope: Optional[str],
    value: Optional[str] = None,
    reason: Optional[str] = None,
) -> Optional[str]:
    uid = normalize_user_id(user_id)
    if uid is None or not scope:
        return None
    scope = normalize_user_scope(scope)
    ban = UserActionBan(user_id=uid, scope=scope, value=_value_for(scope, value), reason=reason or None)
    session.add(ban)
    await session.flush()
    return ban.public_id


async def lift_user_action_ban(session: AsyncSession, ban_id) -> int:
    return await _lift(session, UserActionBan, ban_id)


async def delete_user_action_ban(session: AsyncSession, ban_id) -> int:
    return await _delete(session, UserActionBan, ban_id)


async def get_user_action_ban(session: AsyncSession, ban_id) -> Optional[UserActionBan]:
    return await _get(session, UserActionBan, ban_id)
