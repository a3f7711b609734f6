"""
Access ban resolution.

Active bans are scanned most recent first and the first matching ban wins:

    global  matches every request
    action  matches when the attempted action equals the ban value
    tag     matches when the ban value is among the request tags

Precedence is by recency, not by scope. A newer non-matching ban is skipped,
so an older global ban is still found further down the list.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from iptrust.metrics import ACCESS_DENIED
from iptrust.repositories import bans as ban_repo

logger = logging.getLogger(__name__)


def _normalize_tags(tags) -> Sequence[str]:
    if not tags:
        return ()
    if isinstance(tags, str):
        tags = [tags]
    return tuple(t.strip() for t in tags if isinstance(t, str) and t.strip())


def match_ban(bans: Iterable[Any], *, action: Optional[str] = None, tags=None):
    """First ban in ``bans`` that applies to (action, tags), or None."""
    tag_set = _normalize_tags(tags)
    for ban in bans:
        if ban.scope == "global":
            return ban
        if ban.scope == "action" and action and ban.value == action:
            return ban
        if ban.scope == "tag" and tag_set and ban.value in tag_set:
            return ban
    return None


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    subject: Optional[str] = None
    ban: Optional[Dict[str, Any]] = None

    def as_dict(self) -> Dict[str, Any]:
        return {"allowed": self.allowed, "subject": self.subject, "ban": self.ban}


ALLOWED = AccessDecision(allowed=True)


class AccessBanResolver:
    async def is_ip_banned(self, session: AsyncSession, ip, *, action=None, tags=None):
        if not ip:
            return None
        return match_ban(await ban_repo.get_active_ip_bans(session, ip), action=action, tags=tags)

    async def is_user_banned(self, session: AsyncSession, user_id, *, action=None, tags=None):
        if ban_repo.normalize_user_id(user_id) is None:
            return None
        return match_ban(await ban_repo.get_active_user_action_bans(session, user_id), action=action, tags=tags)

    async def resolve(
        self,
        session: AsyncSession,
        *,
        ip: Optional[str] = None,
        user_id=None,
        action: Optional[str] = None,
        tags=None,
    ) -> AccessDecision:
        # account bans outrank ip bans
        user_ban = await self.is_user_banned(session, user_id, action=action, tags=tags)
        if user_ban is not None:
            ACCESS_DENIED.labels(subject="user").inc()
            logger.info("Access denied for user %s (ban %s)", user_id, user_ban.public_id)
            return AccessDecision(False, "user", ban_repo.ban_as_dict(user_ban))

        ip_ban = await self.is_ip_banned(session, ip, action=action, tags=tags)
        if ip_ban is not None:
            ACCESS_DENIED.labels(subject="ip").inc()
            logger.info("Access denied by ip ban %s", ip_ban.public_id)
            return AccessDecision(False, "ip", ban_repo.ban_as_dict(ip_ban))

        return ALLOWED
