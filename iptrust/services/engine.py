# iptrust/services/engine.py
"""
TrustEngine: the one object the rest of the wiki talks to.

It owns the process-lifetime state (bot classification cache, in-flight
refresh registry) and wires the hasher, classifiers, aggregator and
repositories together. Build one per process and hand it to request
handlers; ``reset()`` clears the in-memory state between tests.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from iptrust.core.settings import Settings, get_settings
from iptrust.repositories import bans as ban_repo
from iptrust.repositories import ip_profiles
from iptrust.reputation.aggregator import ReputationAggregator
from iptrust.reputation.refresh import RefreshCoordinator, ReputationSnapshot
from iptrust.security.access import AccessBanResolver, AccessDecision
from iptrust.security.bot_classifier import RemoteBotClassifier
from iptrust.security.ip_utils import IdentityHasher, normalize_ip

logger = logging.getLogger(__name__)

REVIEW_PAGE_SIZE = 50


class TrustEngine:
    def __init__(
        self,
        *,
        session_factory,
        hasher: IdentityHasher,
        bot_classifier: RemoteBotClassifier,
        refresher: RefreshCoordinator,
        access: Optional[AccessBanResolver] = None,
    ):
        self.session_factory = session_factory
        self.hasher = hasher
        self.bot_classifier = bot_classifier
        self.refresher = refresher
        self.access = access or AccessBanResolver()

    @classmethod
    def from_settings(
        cls,
        session_factory,
        settings: Optional[Settings] = None,
        *,
        bot_transport=None,
        reputation_transport=None,
    ) -> "TrustEngine":
        settings = settings or get_settings()
        aggregator = ReputationAggregator.from_settings(settings, transport=reputation_transport)
        return cls(
            session_factory=session_factory,
            hasher=IdentityHasher(settings.IP_PROFILE_SALT),
            bot_classifier=RemoteBotClassifier.from_settings(settings, transport=bot_transport),
            refresher=RefreshCoordinator(
                aggregator,
                session_factory,
                refresh_interval=settings.refresh_interval_seconds,
            ),
        )

    # --- visitor tracking ----------------------------------------------------

    async def touch(self, ip, user_agent=None, *, skip_refresh: bool = False) -> Optional[Dict[str, Any]]:
        """
        Record one sighting of ``ip``: hash it, classify the user-agent, upsert
        the profile, then schedule a reputation refresh without awaiting it.
        Returns None for an unusable ip.
        """
        normalized = normalize_ip(ip)
        if not normalized:
            return None
        hash_value = self.hasher.hash(normalized)
        detection = await self.bot_classifier.classify(user_agent, suppress_log=True)

        async with self.session_factory() as session:
            profile = await ip_profiles.record_sighting(
                session, ip=normalized, hash_value=hash_value, detection=detection
            )
            result = {
                "id": profile.public_id,
                "hash": profile.hash,
                "short_hash": self.hasher.short_label(profile.hash),
                "bot": detection.as_dict(),
            }
            await session.commit()

        if not skip_refresh:
            self.refresher.schedule(normalized)
        return result

    # --- reputation ----------------------------------------------------------

    async def refresh(self, ip, *, force: bool = False) -> Optional[ReputationSnapshot]:
        return await self.refresher.refresh(ip, force=force)

    async def refresh_by_hash(self, hash_value, *, force: bool = False) -> Optional[ReputationSnapshot]:
        async with self.session_factory() as session:
            profile = await ip_profiles.get_by_hash(session, hash_value)
            ip = profile.ip if profile is not None else None
        if not ip:
            return None
        return await self.refresher.refresh(ip, force=force)

    # --- read side -----------------------------------------------------------

    async def get_profile(self, session: AsyncSession, ip_or_hash) -> Optional[Dict[str, Any]]:
        key = normalize_ip(ip_or_hash)
        if not key:
            return None
        found = await ip_profiles.get_profile_by_hash(session, key)
        if found is None:
            found = await ip_profiles.get_profile_by_ip(session, key)
        return found

    async def list_for_review(
        self, session: AsyncSession, page: int = 1, page_size: int = REVIEW_PAGE_SIZE
    ) -> Dict[str, Any]:
        page = page if isinstance(page, int) and page > 0 else 1
        limit, _ = ip_profiles.page_window(page_size, 0, REVIEW_PAGE_SIZE)
        rows = await ip_profiles.list_for_review(session, limit=limit, offset=(page - 1) * limit)
        total = await ip_profiles.count_for_review(session)
        return {
            "items": [ip_profiles.profile_as_dict(p) for p in rows],
            "total": total,
            "page": page,
            "page_size": limit,
        }

    # --- overrides -----------------------------------------------------------

    async def mark_safe(self, session: AsyncSession, hash_value) -> bool:
        return await ip_profiles.mark_safe(session, hash_value)

    async def mark_banned(self, session: AsyncSession, hash_value) -> bool:
        return await ip_profiles.mark_banned(session, hash_value)

    async def clear_override(self, session: AsyncSession, hash_value) -> bool:
        return await ip_profiles.clear_override(session, hash_value)

    # --- bans ----------------------------------------------------------------

    async def resolve_access(
        self, session: AsyncSession, *, ip=None, user_id=None, action=None, tags=None
    ) -> AccessDecision:
        return await self.access.resolve(session, ip=normalize_ip(ip) or None, user_id=user_id, action=action, tags=tags)

    async def ban_ip(self, session: AsyncSession, **kwargs) -> Optional[str]:
        return await ban_repo.ban_ip(session, **kwargs)

    async def ban_user_action(self, session: AsyncSession, **kwargs) -> Optional[str]:
        return await ban_repo.ban_user_action(session, **kwargs)

    async def lift_ban(self, session: AsyncSession, ban_id) -> int:
        """Lift a ban from whichever ledger holds ``ban_id``; 0 when none does."""
        changed = await ban_repo.lift_ip_ban(session, ban_id)
        if not changed:
            changed = await ban_repo.lift_user_action_ban(session, ban_id)
        return changed

    # --- lifecycle -----------------------------------------------------------

    async def drain(self) -> None:
        await self.refresher.drain()

    def reset(self) -> None:
        self.bot_classifier.clear()
        self.refresher.reset()
