# iptrust/api/routes_bans.py
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, constr
from sqlalchemy.ext.asyncio import AsyncSession

from iptrust.api.deps import get_engine
from iptrust.db.session import get_session
from iptrust.repositories import bans as repo
from iptrust.services.engine import TrustEngine

router = APIRouter(prefix="/bans", tags=["bans"])

_Ip = constr(strip_whitespace=True, min_length=1, max_length=64)
_Value = constr(strip_whitespace=True, max_length=128)

Scope = Literal["global", "action", "tag"]


class IpBanIn(BaseModel):
    ip: _Ip
    scope: Scope
    value: Optional[_Value] = None
    reason: Optional[str] = None


class UserBanIn(BaseModel):
    user_id: int
    scope: Scope
    value: Optional[_Value] = None
    reason: Optional[str] = None


def _check_value(scope: str, value: Optional[str]) -> None:
    if scope != "global" and not value:
        raise HTTPException(status_code=400, detail=f"a value is required for {scope} bans")


@router.post("/ip", status_code=201)
async def create_ip_ban(
    body: IpBanIn,
    session: AsyncSession = Depends(get_session),
    engine: TrustEngine = Depends(get_engine),
):
    _check_value(body.scope, body.value)
    ban_id = await engine.ban_ip(session, ip=body.ip, scope=body.scope, value=body.value, reason=body.reason)
    if ban_id is None:
        raise HTTPException(status_code=400, detail="invalid ban")
    await session.commit()
    return repo.ban_as_dict(await repo.get_ip_ban(session, ban_id))


@router.post("/user", status_code=201)
async def create_user_ban(
    body: UserBanIn,
    session: AsyncSession = Depends(get_session),
    engine: TrustEngine = Depends(get_engine),
):
    _check_value(body.scope, body.value)
    ban_id = await engine.ban_user_action(
        session, user_id=body.user_id, scope=body.scope, value=body.value, reason=body.reason
    )
    if ban_id is None:
        raise HTTPException(status_code=400, detail="invalid ban")
    await session.commit()
    return repo.ban_as_dict(await repo.get_user_action_ban(session, ban_id))


@router.get("/ip/{ban_id}")
async def get_ip_ban(ban_id: str, session: AsyncSession = Depends(get_session)):
    ban = await repo.get_ip_ban(session, ban_id)
    if ban is None:
        raise HTTPException(status_code=404, detail="ban not found")
    return repo.ban_as_dict(ban)


@router.get("/user/{ban_id}")
async def get_user_ban(ban_id: str, session: AsyncSession = Depends(get_session)):
    ban = await repo.get_user_action_ban(session, ban_id)
    if ban is None:
        raise HTTPException(status_code=404, detail="ban not found")
    return repo.ban_as_dict(ban)


@router.post("/ip/{ban_id}/lift")
async def lift_ip_ban(ban_id: str, session: AsyncSession = Depends(get_session)):
    changed = await repo.lift_ip_ban(session, ban_id)
    await session.commit()
    return {"changed": changed}


@router.post("/user/{ban_id}/lift")
async def lift_user_ban(ban_id: str, session: AsyncSession = Depends(get_session)):
    changed = await repo.lift_user_action_ban(session, ban_id)
    await session.commit()
    return {"changed": changed}


@router.delete("/ip/{ban_id}")
async def delete_ip_ban(ban_id: str, session: AsyncSession = Depends(get_session)):
    changed = await repo.delete_ip_ban(session, ban_id)
    await session.commit()
    return {"changed": changed}


@router.delete("/user/{ban_id}")
async def delete_user_ban(ban_id: str, session: AsyncSession = Depends(get_session)):
    changed = await repo.delete_user_action_ban(session, ban_id)
    await session.commit()
    return {"changed": changed}
