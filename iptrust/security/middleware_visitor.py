# iptrust/security/middleware_visitor.py
import logging
from typing import Iterable, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from iptrust.core.settings import get_settings
from iptrust.security.ip_utils import get_client_ip

logger = logging.getLogger(__name__)

__all__ = ["VisitorMiddleware"]


class VisitorMiddleware(BaseHTTPMiddleware):
    """
    Records every visit against the caller's IP profile.

    - Resolves the client ip (X-Forwarded-For only from trusted proxies).
    - Calls ``engine.touch`` which hashes the ip, classifies the user-agent and
      schedules a reputation refresh in the background.
    - Leaves ``client_ip``, ``ip_hash`` and ``bot`` on ``request.state``.

    Tracking problems are logged and the request continues untouched.
    """

    def __init__(self, app, exclude_paths: Optional[Iterable[str]] = None, enabled: Optional[bool] = None):
        super().__init__(app)
        settings = get_settings()
        if exclude_paths is None:
            exclude_paths = settings.visitor_exclude_paths()
        elif isinstance(exclude_paths, str):
            exclude_paths = [p.strip() for p in exclude_paths.split(",") if p.strip()]
        self.exclude_paths = tuple(exclude_paths)
        self.enabled = settings.VISITOR_TRACKING_ENABLED if enabled is None else enabled
        self.trusted_cidrs = settings.trusted_proxy_cidrs()

    def _excluded(self, path: str) -> bool:
        return any(path == p or path.startswith(p.rstrip("/") + "/") for p in self.exclude_paths)

    async def dispatch(self, request: Request, call_next):
        ip = get_client_ip(request, self.trusted_cidrs)
        request.state.client_ip = ip
        request.state.ip_hash = None
        request.state.bot = None

        engine = getattr(request.app.state, "engine", None)
        if self.enabled and engine is not None and not self._excluded(request.url.path):
            try:
                touched = await engine.touch(ip, request.headers.get("user-agent"))
            except Exception:
                logger.exception("Visitor tracking failed")
            else:
                if touched is not None:
                    request.state.ip_hash = touched["hash"]
                    request.state.bot = touched["bot"]

        response: Response = await call_next(request)
        return response
