"""
Remote-assisted bot classification.

Local signatures are authoritative: a local hit returns immediately. Otherwise
the external classification service is asked once per distinct normalized
user-agent and the answer (positive or negative) is memoized in a bounded,
insertion-ordered cache. Any failure of the remote call fails open to the
local (non-bot) result and is not cached.
"""
from __future__ import annotations

import asyncio
import logging
import re
from typing import Optional, Tuple

import httpx
from cachetools import FIFOCache

from iptrust.metrics import BOT_CACHE_SIZE, BOT_DETECTIONS
from iptrust.security.bot_signatures import BotDetection, BotSignatureMatcher

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://api.apicagent.com"
DEFAULT_TIMEOUT_SEC = 2.0
MIN_TIMEOUT_SEC = 0.5
DEFAULT_CACHE_SIZE = 250

_REMOTE_BOT_HINT = re.compile(r"bot|crawler|spider|scraper", re.IGNORECASE)


def _text(value) -> str:
    return value.strip() if isinstance(value, str) else ""


def parse_remote_response(data) -> Tuple[bool, Optional[str]]:
    """(is_bot, reason) from the classification service payload."""
    if not isinstance(data, dict):
        return False, None
    category = _text(data.get("category"))
    name = _text(data.get("name"))
    producer = data.get("producer")
    producer_name = _text(producer.get("name")) if isinstance(producer, dict) else ""
    client = data.get("client")
    client_type = _text(client.get("type")) if isinstance(client, dict) else ""

    hints = " ".join(p for p in (category, name, client_type) if p)
    if not _REMOTE_BOT_HINT.search(hints):
        return False, None

    parts = []
    if category:
        parts.append(category)
    if name and name.lower() != category.lower():
        parts.append(name)
    if producer_name:
        parts.append(producer_name)
    reason = f"API: {' · '.join(parts)}" if parts else "API: bot detected"
    return True, reason


class RemoteBotClassifier:
    def __init__(
        self,
        matcher: Optional[BotSignatureMatcher] = None,
        *,
        endpoint: str = DEFAULT_ENDPOINT,
        timeout: float = DEFAULT_TIMEOUT_SEC,
        cache_max_size: int = DEFAULT_CACHE_SIZE,
        enabled: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.matcher = matcher or BotSignatureMatcher()
        self.endpoint = endpoint.rstrip("/")
        self.timeout = max(MIN_TIMEOUT_SEC, float(timeout))
        self.enabled = enabled
        self.cache: FIFOCache = FIFOCache(maxsize=max(1, int(cache_max_size)))
        self._transport = transport

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "RemoteBotClassifier":
        return cls(
            BotSignatureMatcher(max_length=settings.USER_AGENT_MAX_LENGTH),
            endpoint=settings.BOT_DETECTION_ENDPOINT,
            timeout=settings.bot_detection_timeout,
            cache_max_size=settings.BOT_CACHE_MAX_SIZE,
            enabled=settings.BOT_DETECTION_REMOTE_ENABLED,
            **kwargs,
        )

    def classify_local(self, user_agent) -> BotDetection:
        return self.matcher.classify(user_agent)

    async def classify(self, user_agent, *, suppress_log: bool = False, skip_remote: bool = False) -> BotDetection:
        local = self.matcher.classify(user_agent)
        if local.is_bot:
            BOT_DETECTIONS.labels(source="local").inc()
            return local
        if local.user_agent is None or skip_remote or not self.enabled:
            return local

        key = local.user_agent
        if key in self.cache:
            cached = self.cache[key]
            if cached.is_bot:
                BOT_DETECTIONS.labels(source="cache").inc()
            return cached

        try:
            data = await asyncio.wait_for(self._query(key), timeout=self.timeout)
        except (asyncio.TimeoutError, httpx.HTTPError, ValueError) as exc:
            if not suppress_log:
                logger.warning("Remote bot detection failed: %s", exc)
            return local

        is_bot, reason = parse_remote_response(data)
        result = BotDetection(is_bot, reason, key)
        self.cache[key] = result
        BOT_CACHE_SIZE.set(len(self.cache))
        if is_bot:
            BOT_DETECTIONS.labels(source="remote").inc()
        return result

    async def _query(self, user_agent: str):
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            resp = await client.get(
                self.endpoint,
                params={"ua": user_agent},
                headers={"Accept": "application/json"},
            )
            resp.raise_for_status()
            return resp.json()

    def clear(self) -> None:
        self.cache.clear()
        BOT_CACHE_SIZE.set(0)
