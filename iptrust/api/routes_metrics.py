# iptrust/api/routes_metrics.py
from fastapi import APIRouter, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

router = APIRouter()


@router.get("/metrics")
async def metrics(request: Request):
    # export the registry pinned on app.state, not the process default
    m = getattr(request.app.state, "iptrust_metrics", None)
    reg = m["registry"] if isinstance(m, dict) and "registry" in m else REGISTRY
    return Response(content=generate_latest(reg), media_type=CONTENT_TYPE_LATEST)
