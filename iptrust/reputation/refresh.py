"""
Reputation refresh coordination.

RefreshCoordinator owns the process-wide in-flight registry. It gates unforced
refreshes on the staleness window, collapses concurrent refreshes of the same
(ip, force) pair into one shared task, and persists aggregator output. The
database is read and written in two short sessions so that no connection is
held while the upstream calls are running.

The registry is per process. Several instances behind a load balancer will
each run their own refresh for the same IP.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Set, Tuple

from iptrust.metrics import REPUTATION_REFRESHES
from iptrust.repositories import ip_profiles
from iptrust.security.ip_utils import normalize_ip, short_label

from .aggregator import ReputationAggregator, compute_auto_status, compute_flags, resolve_status
from .summary import build_summary, failed_check_summary

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_INTERVAL_SEC = 12 * 60 * 60
MIN_REFRESH_INTERVAL_SEC = 60 * 60


@dataclass
class ReputationSnapshot:
    status: str
    auto_status: str
    summary: Optional[str]
    override: Optional[str]
    last_checked_at: Optional[datetime]
    flags: Optional[Dict[str, bool]] = None
    raw: Optional[Dict[str, Any]] = None
    error: bool = False
    cached: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class _ProfileState:
    id: int
    hash: str
    status: str
    auto_status: str
    override: Optional[str]
    summary: Optional[str]
    checked_at: Optional[datetime]


class RefreshCoordinator:
    def __init__(
        self,
        aggregator: ReputationAggregator,
        session_factory,
        *,
        refresh_interval: float = DEFAULT_REFRESH_INTERVAL_SEC,
    ):
        self.aggregator = aggregator
        self.session_factory = session_factory
        self.refresh_interval = timedelta(seconds=max(MIN_REFRESH_INTERVAL_SEC, float(refresh_interval)))
        self._in_flight: Dict[Tuple[str, bool], asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def refresh(self, ip, *, force: bool = False) -> Optional[ReputationSnapshot]:
        normalized = normalize_ip(ip)
        if not normalized:
            return None
        key = (normalized, bool(force))
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._run_and_release(key, normalized, bool(force)))
            self._in_flight[key] = task
        # a cancelled waiter must not cancel the shared work
        return await asyncio.shield(task)

    def schedule(self, ip, *, force: bool = False) -> Optional[asyncio.Task]:
        """Start a refresh in the background. Failures are logged, never raised."""
        if not normalize_ip(ip):
            return None
        task = asyncio.ensure_future(self.refresh(ip, force=force))
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            REPUTATION_REFRESHES.labels(outcome="failed").inc()
            logger.error("Unable to refresh IP reputation", exc_info=exc)

    async def drain(self) -> None:
        """Wait for every scheduled background refresh to settle."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def reset(self) -> None:
        for task in list(self._background):
            task.cancel()
        self._background.clear()
        self._in_flight.clear()

    async def _run_and_release(self, key, ip: str, force: bool) -> Optional[ReputationSnapshot]:
        try:
            return await self._run(ip, force)
        finally:
            if self._in_flight.get(key) is asyncio.current_task():
                del self._in_flight[key]

    async def _load(self, ip: str) -> Optional[_ProfileState]:
        async with self.session_factory() as session:
            profile = await ip_profiles.get_by_ip(session, ip)
            if profile is None:
                return None
            return _ProfileState(
                id=profile.id,
                hash=profile.hash,
                status=profile.reputation_status or "unknown",
                auto_status=profile.reputation_auto_status or "unknown",
                override=ip_profiles.normalize_override(profile.reputation_override),
                summary=profile.reputation_summary,
                checked_at=_as_utc(profile.reputation_checked_at),
            )

    def _is_fresh(self, state: _ProfileState, now: datetime) -> bool:
        return state.checked_at is not None and now - state.checked_at < self.refresh_interval

    async def _run(self, ip: str, force: bool) -> Optional[ReputationSnapshot]:
        state = await self._load(ip)
        if state is None:
            return None

        now = datetime.now(timezone.utc)
        if not force and self._is_fresh(state, now):
            REPUTATION_REFRESHES.labels(outcome="cached").inc()
            return ReputationSnapshot(
                status=state.status,
                auto_status=state.auto_status,
                summary=state.summary,
                override=state.override,
                last_checked_at=state.checked_at,
                cached=True,
            )

        label = short_label(state.hash)
        try:
            query = await self.aggregator.query(ip)
        except Exception as exc:
            logger.exception("Reputation lookup for profile %s failed", label)
            return await self._degrade(state, failed_check_summary(str(exc) or type(exc).__name__))

        flags = compute_flags(query)
        if not query.has_data:
            # total failure keeps the previous classification in place
            logger.warning("No reputation source answered for profile %s", label)
            return await self._degrade(state, build_summary(query, flags))

        auto_status = compute_auto_status(query, flags)
        summary = build_summary(query, flags)
        payload = query.payload()
        checked_at = datetime.now(timezone.utc)
        async with self.session_factory() as session:
            await ip_profiles.save_reputation(
                session,
                state.id,
                auto_status=auto_status,
                summary=summary,
                details=payload,
                flags=flags.as_dict(),
                checked_at=checked_at,
            )
            await session.commit()

        REPUTATION_REFRESHES.labels(outcome="fresh").inc()
        logger.info("Reputation for profile %s refreshed: %s", label, auto_status)
        return ReputationSnapshot(
            status=resolve_status(auto_status, state.override),
            auto_status=auto_status,
            summary=summary,
            override=state.override,
            last_checked_at=checked_at,
            flags=flags.as_dict(),
            raw=payload,
        )

    async def _degrade(self, state: _ProfileState, summary: str) -> ReputationSnapshot:
        checked_at = datetime.now(timezone.utc)
        async with self.session_factory() as session:
            await ip_profiles.save_failed_check(session, state.id, summary=summary, checked_at=checked_at)
            await session.commit()
        REPUTATION_REFRESHES.labels(outcome="degraded").inc()
        return ReputationSnapshot(
            status=state.status,
            auto_status=state.auto_status,
            summary=summary,
            override=state.override,
            last_checked_at=checked_at,
            error=True,
        )
