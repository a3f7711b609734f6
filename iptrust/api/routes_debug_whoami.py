# iptrust/api/routes_debug_whoami.py
from fastapi import APIRouter, Request

from iptrust.security.ip_utils import get_client_info, short_label

router = APIRouter()


@router.get("/_debug/whoami")
async def whoami(request: Request):
    engine = getattr(request.app.state, "engine", None)
    ip, ip_hash = get_client_info(request, engine.hasher if engine is not None else None)
    return {
        "ip": ip,
        "hash": ip_hash,
        "short_hash": short_label(ip_hash),
        "bot": getattr(request.state, "bot", None),
    }
