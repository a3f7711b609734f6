# iptrust/api/deps.py
from fastapi import Request

from iptrust.services.engine import TrustEngine


def get_engine(request: Request) -> TrustEngine:
    return request.app.state.engine
