# iptrust/api/routes_profiles.py
from __future__ import annotations

from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from iptrust.api.deps import get_engine
from iptrust.db.session import get_session
from iptrust.repositories import ip_profiles as repo
from iptrust.services.engine import TrustEngine

router = APIRouter(prefix="/ip-profiles", tags=["ip-profiles"])


class OverrideIn(BaseModel):
    override: Optional[Literal["safe", "banned"]] = None


class ClaimIn(BaseModel):
    user_id: int
    force: bool = False


@router.get("")
async def list_profiles(
    search: Optional[str] = Query(None, max_length=128),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    session: AsyncSession = Depends(get_session),
):
    total = await repo.count_profiles(session, search=search)
    items = await repo.fetch_profiles(session, search=search, limit=limit, offset=offset)
    return {"total": total, "items": items}


@router.get("/review")
async def review_queue(
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=500),
    session: AsyncSession = Depends(get_session),
    engine: TrustEngine = Depends(get_engine),
):
    return await engine.list_for_review(session, page=page, page_size=page_size)


@router.get("/checks")
async def recent_checks(
    limit: int = Query(20, ge=1, le=500),
    offset: int = Query(0, ge=0),
    session: AsyncSession = Depends(get_session),
):
    rows = await repo.fetch_recent_checks(session, limit=limit, offset=offset)
    return {"total": await repo.count_checked(session), "items": [repo.profile_as_dict(p) for p in rows]}


@router.get("/cleared")
async def recently_cleared(
    limit: int = Query(10, ge=1, le=500),
    offset: int = Query(0, ge=0),
    session: AsyncSession = Depends(get_session),
):
    rows = await repo.fetch_recently_cleared(session, limit=limit, offset=offset)
    return {"total": await repo.count_cleared(session), "items": [repo.profile_as_dict(p) for p in rows]}


@router.get("/{hash_value}")
async def get_profile(hash_value: str, session: AsyncSession = Depends(get_session)):
    profile = await repo.get_profile_by_hash(session, hash_value)
    if profile is None:
        raise HTTPException(status_code=404, detail="profile not found")
    return profile


@router.post("/{hash_value}/refresh")
async def refresh_profile(
    hash_value: str,
    force: bool = Query(False),
    engine: TrustEngine = Depends(get_engine),
):
    snapshot = await engine.refresh_by_hash(hash_value, force=force)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="profile not found")
    return snapshot.as_dict()


@router.post("/{hash_value}/override")
async def set_override(
    hash_value: str,
    body: OverrideIn,
    session: AsyncSession = Depends(get_session),
    engine: TrustEngine = Depends(get_engine),
):
    if body.override == "safe":
        changed = await engine.mark_safe(session, hash_value)
    elif body.override == "banned":
        changed = await engine.mark_banned(session, hash_value)
    else:
        changed = await engine.clear_override(session, hash_value)
    if not changed:
        raise HTTPException(status_code=404, detail="profile not found")
    await session.commit()
    return await repo.get_profile_by_hash(session, hash_value)


@router.get("/{hash_value}/claim")
async def get_claim(hash_value: str, session: AsyncSession = Depends(get_session)):
    claim = await repo.get_claim(session, hash_value)
    if claim is None:
        raise HTTPException(status_code=404, detail="profile not found")
    return claim


@router.post("/{hash_value}/claim")
async def link_claim(hash_value: str, body: ClaimIn, session: AsyncSession = Depends(get_session)):
    try:
        result = await repo.link_profile_to_user(session, hash_value, body.user_id, force=body.force)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    if result.get("reason") == "not_found":
        raise HTTPException(status_code=404, detail="profile not found")
    await session.commit()
    return result


@router.delete("/{hash_value}/claim")
async def unlink_claim(
    hash_value: str,
    expected_user_id: Optional[int] = Query(None),
    session: AsyncSession = Depends(get_session),
):
    result = await repo.unlink_profile(session, hash_value, expected_user_id=expected_user_id)
    if result.get("reason") == "not_found":
        raise HTTPException(status_code=404, detail="profile not found")
    await session.commit()
    return result


@router.delete("/{hash_value}")
async def delete_profile(hash_value: str, session: AsyncSession = Depends(get_session)):
    removed = await repo.delete_profile(session, hash_value)
    if removed is None:
        raise HTTPException(status_code=404, detail="profile not found")
    await session.commit()
    return {"deleted": True, "hash": removed["hash"]}
