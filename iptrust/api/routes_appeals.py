# iptrust/api/routes_appeals.py
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, constr
from sqlalchemy.ext.asyncio import AsyncSession

from iptrust.db.session import get_session
from iptrust.repositories import ban_appeals as repo

router = APIRouter(prefix="/appeals", tags=["appeals"])


class AppealIn(BaseModel):
    message: constr(strip_whitespace=True, min_length=1, max_length=4000)
    ip: Optional[str] = None
    scope: Optional[str] = None
    value: Optional[str] = None
    reason: Optional[str] = None


class ResolveIn(BaseModel):
    status: Literal["accepted", "rejected"]
    resolved_by: Optional[str] = None


@router.post("", status_code=201)
async def create_appeal(body: AppealIn, request: Request, session: AsyncSession = Depends(get_session)):
    ip = body.ip or getattr(request.state, "client_ip", None)
    if await repo.has_pending_appeal(session, ip):
        raise HTTPException(status_code=409, detail="an appeal is already pending for this address")
    try:
        appeal_id = await repo.create_appeal(
            session, ip=ip, scope=body.scope, value=body.value, reason=body.reason, message=body.message
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    await session.commit()
    return repo.appeal_as_dict(await repo.get_appeal(session, appeal_id))


@router.get("")
async def list_appeals(
    status: Optional[str] = Query(None),
    search: Optional[str] = Query(None, max_length=128),
    limit: int = Query(20, ge=1, le=500),
    offset: int = Query(0, ge=0),
    session: AsyncSession = Depends(get_session),
):
    total = await repo.count_appeals(session, status=status, search=search)
    rows = await repo.list_appeals(session, status=status, search=search, limit=limit, offset=offset)
    return {"total": total, "items": [repo.appeal_as_dict(a) for a in rows]}


@router.get("/{appeal_id}")
async def get_appeal(appeal_id: str, session: AsyncSession = Depends(get_session)):
    appeal = await repo.get_appeal(session, appeal_id)
    if appeal is None:
        raise HTTPException(status_code=404, detail="appeal not found")
    return repo.appeal_as_dict(appeal)


@router.post("/{appeal_id}/resolve")
async def resolve_appeal(appeal_id: str, body: ResolveIn, session: AsyncSession = Depends(get_session)):
    try:
        changed = await repo.resolve_appeal(session, appeal_id, status=body.status, resolved_by=body.resolved_by)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    await session.commit()
    return {"changed": changed}
