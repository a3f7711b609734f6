# iptrust/repositories/ban_appeals.py
from typing import Any, Dict, Optional, Sequence

from sqlalchemy import desc, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from iptrust.db.models import APPEAL_STATUSES, BanAppeal, utcnow

DEFAULT_PAGE_SIZE = 20


def sanitize_status(status) -> Optional[str]:
    if not status:
        return None
    lowered = str(status).strip().lower()
    return lowered if lowered in APPEAL_STATUSES else None


def appeal_as_dict(appeal: Optional[BanAppeal]) -> Optional[Dict[str, Any]]:
    if appeal is None:
        return None
    return {
        "id": appeal.public_id,
        "ip": appeal.ip,
        "scope": appeal.scope,
        "value": appeal.value,
        "reason": appeal.reason,
        "message": appeal.message,
        "status": appeal.status,
        "resolved_at": appeal.resolved_at,
        "resolved_by": appeal.resolved_by,
        "created_at": appeal.created_at,
    }


def _filters(status, search):
    conds = []
    normalized = sanitize_status(status)
    if normalized:
        conds.append(BanAppeal.status == normalized)
    if search:
        like = f"%{search}%"
        conds.append(
            or_(
                BanAppeal.public_id.like(like),
                BanAppeal.ip.like(like),
                BanAppeal.scope.like(like),
                BanAppeal.value.like(like),
                BanAppeal.reason.like(like),
                BanAppeal.message.like(like),
            )
        )
    return conds


async def create_appeal(
    session: AsyncSession,
    *,
    ip: Optional[str] = None,
    scope: Optional[str] = None,
    value: Optional[str] = None,
    reason: Optional[str] = None,
    message: Optional[str],
) -> str:
    trimmed = (message or "").strip()
    if not trimmed:
        raise ValueError("A message is required to create a ban appeal")
    appeal = BanAppeal(
        ip=ip or None,
        scope=scope or None,
        value=value or None,
        reason=reason or None,
        message=trimmed,
        status="pending",
    )
    session.add(appeal)
    await session.flush()
    return appeal.public_id


async def _has_status(session: AsyncSession, ip: Optional[str], status: str) -> bool:
    if not ip:
        return False
    q = select(BanAppeal.id).where(BanAppeal.ip == ip, BanAppeal.status == status).limit(1)
    return (await session.execute(q)).first() is not None


async def has_pending_appeal(session: AsyncSession, ip: Optional[str]) -> bool:
    return await _has_status(session, ip, "pending")


async def has_rejected_appeal(session: AsyncSession, ip: Optional[str]) -> bool:
    return await _has_status(session, ip, "rejected")


async def get_appeal(session: AsyncSession, appeal_id) -> Optional[BanAppeal]:
    if not appeal_id:
        return None
    q = select(BanAppeal).where(BanAppeal.public_id == str(appeal_id))
    return (await session.execute(q)).scalars().first()


async def resolve_appeal(session: AsyncSession, appeal_id, *, status, resolved_by: Optional[str] = None) -> int:
    """Only pending appeals move; returns the number of rows changed."""
    normalized = sanitize_status(status)
    if not appeal_id or normalized is None or normalized == "pending":
        raise ValueError("Invalid appeal resolution status")
    res = await session.execute(
        update(BanAppeal)
        .where(BanAppeal.public_id == str(appeal_id), BanAppeal.status == "pending")
        .values(status=normalized, resolved_at=utcnow(), resolved_by=resolved_by or None)
    )
    return res.rowcount or 0


async def delete_appeal(session: AsyncSession, appeal_id) -> int:
    appeal = await get_appeal(session, appeal_id)
    if appeal is None:
        return 0
    await session.delete(appeal)
    await session.flush()
    return 1


async def count_appeals(session: AsyncSession, *, status=None, search: Optional[str] = None) -> int:
    conds = _filters(status, search)
    q = select(func.count()).select_from(BanAppeal)
    if conds:
        q = q.where(*conds)
    return (await session.execute(q)).scalar_one()


async def list_appeals(
    session: AsyncSession,
    *,
    status=None,
    search: Optional[str] = None,
    limit: int = DEFAULT_PAGE_SIZE,
    offset: int = 0,
) -> Sequence[BanAppeal]:
    limit = limit if isinstance(limit, int) and limit > 0 else DEFAULT_PAGE_SIZE
    offset = offset if isinstance(offset, int) and offset >= 0 else 0
    q = select(BanAppeal)
    conds = _filters(status, search)
    if conds:
        q = q.where(*conds)
    q = q.order_by(desc(BanAppeal.created_at), desc(BanAppeal.id)).limit(limit).offset(offset)
    return (await session.execute(q)).scalars().all()
