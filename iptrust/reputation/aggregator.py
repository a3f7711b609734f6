"""
IP reputation fan-out.

Three upstream services are queried concurrently, each on its own client and
its own deadline:

  - ipapi.is          VPN / proxy / Tor / datacenter / abuse classifier
  - StopForumSpam     spam-report registry
  - ipwho.is          geolocation / ASN

Every call ends up as a SourceOutcome (ok + value, or failed + error string);
the outcomes are collected into a ReputationQuery before any flag is computed,
so one or two failing sources never hide what the others returned.
"""
from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from iptrust.metrics import REPUTATION_SOURCE_FAILURES

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SEC = 8.0
MIN_TIMEOUT_SEC = 2.0

SOURCE_IPAPI = "IPAPI"
SOURCE_STOP_FORUM_SPAM = "StopForumSpam"
SOURCE_GEO = "ipwho.is"


class SourceError(Exception):
    """Upstream answered, but not with something usable."""


@dataclass
class SourceOutcome:
    source: str
    ok: bool
    value: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @classmethod
    def success(cls, source: str, value: Dict[str, Any]) -> "SourceOutcome":
        return cls(source=source, ok=True, value=value)

    @classmethod
    def failure(cls, source: str, message: str) -> "SourceOutcome":
        return cls(source=source, ok=False, error=f"{source}: {message}")


@dataclass
class ReputationFlags:
    is_vpn: bool = False
    is_proxy: bool = False
    is_tor: bool = False
    is_datacenter: bool = False
    is_abuser: bool = False

    def any(self) -> bool:
        return self.is_vpn or self.is_proxy or self.is_tor or self.is_datacenter or self.is_abuser

    def as_dict(self) -> Dict[str, bool]:
        return {
            "is_vpn": self.is_vpn,
            "is_proxy": self.is_proxy,
            "is_tor": self.is_tor,
            "is_datacenter": self.is_datacenter,
            "is_abuser": self.is_abuser,
        }


@dataclass
class ReputationQuery:
    ipapi: SourceOutcome
    stop_forum_spam: SourceOutcome
    geo: SourceOutcome
    errors: List[str] = field(default_factory=list)

    @property
    def ipapi_result(self) -> Optional[Dict[str, Any]]:
        return self.ipapi.value if self.ipapi.ok else None

    @property
    def stop_forum_spam_result(self) -> Optional[Dict[str, Any]]:
        return self.stop_forum_spam.value if self.stop_forum_spam.ok else None

    @property
    def geo_result(self) -> Optional[Dict[str, Any]]:
        return self.geo.value if self.geo.ok else None

    @property
    def has_data(self) -> bool:
        return self.ipapi.ok or self.stop_forum_spam.ok or self.geo.ok

    def payload(self) -> Dict[str, Any]:
        """JSON-serialisable form persisted as the raw source payload."""
        return {
            "ipapi": self.ipapi_result,
            "stopForumSpam": self.stop_forum_spam_result,
            "ipwhois": self.geo_result,
            "errors": list(self.errors),
        }


def to_number(value) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return None
    return numeric if math.isfinite(numeric) else None


def compute_flags(query: ReputationQuery) -> ReputationFlags:
    ipapi = query.ipapi_result or {}
    sfs = query.stop_forum_spam_result or {}
    return ReputationFlags(
        is_vpn=bool(ipapi.get("is_vpn")),
        is_proxy=bool(ipapi.get("is_proxy")),
        is_tor=bool(ipapi.get("is_tor")),
        is_datacenter=bool(ipapi.get("is_datacenter")),
        is_abuser=bool(ipapi.get("is_abuser")) or bool(sfs.get("appears")),
    )


def compute_auto_status(query: ReputationQuery, flags: ReputationFlags) -> str:
    if not query.has_data:
        return "unknown"
    return "suspicious" if flags.any() else "clean"


def resolve_status(auto_status: str, override: Optional[str]) -> str:
    if override in ("safe", "banned"):
        return override
    return auto_status or "unknown"


def _describe(exc: BaseException, timeout: float) -> str:
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return f"timed out after {timeout:g}s"
    if isinstance(exc, httpx.HTTPStatusError):
        return f"request failed ({exc.response.status_code})"
    message = str(exc).strip()
    return message or type(exc).__name__


class ReputationAggregator:
    def __init__(
        self,
        *,
        ipapi_endpoint: str = "https://api.ipapi.is",
        stop_forum_spam_endpoint: str = "https://api.stopforumspam.com/api",
        geo_endpoint: str = "https://ipwho.is",
        timeout: float = DEFAULT_TIMEOUT_SEC,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.ipapi_endpoint = ipapi_endpoint
        self.stop_forum_spam_endpoint = stop_forum_spam_endpoint
        self.geo_endpoint = geo_endpoint.rstrip("/")
        self.timeout = max(MIN_TIMEOUT_SEC, float(timeout))
        self._transport = transport

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "ReputationAggregator":
        return cls(
            ipapi_endpoint=settings.IP_REPUTATION_ENDPOINT,
            stop_forum_spam_endpoint=settings.STOP_FORUM_SPAM_ENDPOINT,
            geo_endpoint=settings.IP_GEOLOCATION_ENDPOINT,
            timeout=settings.reputation_timeout,
            **kwargs,
        )

    async def query(self, ip: str) -> ReputationQuery:
        ipapi, sfs, geo = await asyncio.gather(
            self._capture(SOURCE_IPAPI, self._query_ipapi(ip)),
            self._capture(SOURCE_STOP_FORUM_SPAM, self._query_stop_forum_spam(ip)),
            self._capture(SOURCE_GEO, self._query_geo(ip)),
        )
        errors = [o.error for o in (ipapi, sfs, geo) if not o.ok and o.error]
        return ReputationQuery(ipapi=ipapi, stop_forum_spam=sfs, geo=geo, errors=errors)

    async def _capture(self, source: str, coro) -> SourceOutcome:
        try:
            value = await asyncio.wait_for(coro, timeout=self.timeout)
        except (asyncio.TimeoutError, httpx.HTTPError, SourceError, ValueError) as exc:
            REPUTATION_SOURCE_FAILURES.labels(source=source).inc()
            logger.warning("Reputation source %s failed: %s", source, _describe(exc, self.timeout))
            return SourceOutcome.failure(source, _describe(exc, self.timeout))
        except Exception as exc:
            # one source must never sink the others
            REPUTATION_SOURCE_FAILURES.labels(source=source).inc()
            logger.exception("Reputation source %s raised unexpectedly", source)
            return SourceOutcome.failure(source, str(exc) or type(exc).__name__)
        return SourceOutcome.success(source, value)

    async def _get_json(self, url: str, params: Optional[dict] = None, headers: Optional[dict] = None):
        hdrs = {"Accept": "application/json"}
        hdrs.update(headers or {})
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            resp = await client.get(url, params=params, headers=hdrs)
            resp.raise_for_status()
            return resp.json()

    async def _query_ipapi(self, ip: str) -> Dict[str, Any]:
        data = await self._get_json(self.ipapi_endpoint, params={"q": ip})
        if not isinstance(data, dict):
            raise SourceError("invalid IPAPI response")
        return data

    async def _query_stop_forum_spam(self, ip: str) -> Dict[str, Any]:
        data = await self._get_json(
            self.stop_forum_spam_endpoint,
            params={"ip": ip, "json": "1"},
            headers={"User-Agent": "iptrust-ip-check"},
        )
        if not isinstance(data, dict) or data.get("success") != 1 or not isinstance(data.get("ip"), dict):
            raise SourceError("invalid StopForumSpam response")
        entry = data["ip"]
        return {
            "appears": bool(entry.get("appears")),
            "confidence": to_number(entry.get("confidence")),
            "frequency": to_number(entry.get("frequency")),
            "last_seen_at": entry.get("lastseen") or None,
            "raw": entry,
        }

    async def _query_geo(self, ip: str) -> Dict[str, Any]:
        data = await self._get_json(f"{self.geo_endpoint}/{quote(ip, safe='')}")
        if not isinstance(data, dict) or data.get("success") is False:
            message = data.get("message") if isinstance(data, dict) else None
            raise SourceError(message or "invalid ipwho.is response")
        connection = data.get("connection") if isinstance(data.get("connection"), dict) else {}
        timezone = data.get("timezone") if isinstance(data.get("timezone"), dict) else {}
        return {
            "country": data.get("country") or None,
            "region": data.get("region") or None,
            "city": data.get("city") or None,
            "connection": {
                "isp": connection.get("isp") or None,
                "org": connection.get("org") or None,
                "asn": connection.get("asn") or None,
            },
            "timezone": timezone.get("id") or None,
            "raw": data,
        }
