# iptrust/api/routes_access.py
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from iptrust.api.deps import get_engine
from iptrust.db.session import get_session
from iptrust.services.engine import TrustEngine

router = APIRouter(prefix="/access", tags=["access"])


@router.get("/check")
async def check_access(
    request: Request,
    ip: Optional[str] = Query(None, max_length=64),
    user_id: Optional[int] = Query(None),
    action: Optional[str] = Query(None, max_length=128),
    tags: Optional[List[str]] = Query(None),
    session: AsyncSession = Depends(get_session),
    engine: TrustEngine = Depends(get_engine),
):
    # default to the caller's own address
    if ip is None:
        ip = getattr(request.state, "client_ip", None)
    decision = await engine.resolve_access(session, ip=ip, user_id=user_id, action=action, tags=tags)
    return decision.as_dict()
