# iptrust/db/models.py
import uuid
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# BIGINT on Postgres, INTEGER on SQLite so rowid autoincrement still works
PkType = BigInteger().with_variant(Integer, "sqlite")
JsonType = JSON().with_variant(JSONB(), "postgresql")

BAN_SCOPES = ("global", "action", "tag")
REPUTATION_STATUSES = ("unknown", "clean", "suspicious", "safe", "banned")
OVERRIDES = ("safe", "banned")
APPEAL_STATUSES = ("pending", "accepted", "rejected")


def _public_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class IpProfile(Base):
    __tablename__ = "ip_profiles"

    id: Mapped[int] = mapped_column(PkType, primary_key=True, autoincrement=True)
    public_id: Mapped[str] = mapped_column(String(32), unique=True, default=_public_id)
    ip: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)

    claimed_user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    last_user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_bot: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    bot_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    reputation_status: Mapped[str] = mapped_column(String(16), default="unknown", nullable=False)
    reputation_auto_status: Mapped[str] = mapped_column(String(16), default="unknown", nullable=False)
    reputation_override: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    reputation_summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reputation_details: Mapped[Optional[Dict[str, Any]]] = mapped_column(JsonType, nullable=True)
    reputation_checked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    is_vpn: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_proxy: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_tor: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_datacenter: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_abuser: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (
        Index("ix_ip_profiles_review", "reputation_auto_status", "reputation_override"),
        Index("ix_ip_profiles_last_seen", "last_seen_at"),
    )


class _BanColumns:
    id: Mapped[int] = mapped_column(PkType, primary_key=True, autoincrement=True)
    public_id: Mapped[str] = mapped_column(String(32), unique=True, default=_public_id)
    scope: Mapped[str] = mapped_column(String(16), nullable=False)
    value: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    lifted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class IpBan(_BanColumns, Base):
    __tablename__ = "ip_bans"

    ip: Mapped[str] = mapped_column(String(64), nullable=False)

    __table_args__ = (
        CheckConstraint("scope IN ('global','action','tag')", name="ck_ip_bans_scope"),
        Index("ix_ip_bans_active", "ip", "scope", "value", "lifted_at"),
    )


class UserActionBan(_BanColumns, Base):
    __tablename__ = "user_action_bans"

    user_id: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        CheckConstraint("scope IN ('global','action','tag')", name="ck_user_action_bans_scope"),
        Index("ix_user_action_bans_user", "user_id", "scope", "value", "lifted_at"),
    )


class BanAppeal(Base):
    __tablename__ = "ban_appeals"

    id: Mapped[int] = mapped_column(PkType, primary_key=True, autoincrement=True)
    public_id: Mapped[str] = mapped_column(String(32), unique=True, default=_public_id)
    ip: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    scope: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    value: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="pending", nullable=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    __table_args__ = (
        CheckConstraint("status IN ('pending','accepted','rejected')", name="ck_ban_appeals_status"),
        Index("ix_ban_appeals_ip_status", "ip", "status"),
    )


# --- Wiki activity tables --------------------------------------------------
# Owned and written by the wiki itself; the trust engine only reads them to
# build per-IP activity aggregates.

class Page(Base):
    __tablename__ = "pages"
    __table_args__ = {"info": {"external": True}}

    id: Mapped[int] = mapped_column(PkType, primary_key=True, autoincrement=True)
    slug_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)


class PageView(Base):
    __tablename__ = "page_views"
    __table_args__ = {"info": {"external": True}}

    id: Mapped[int] = mapped_column(PkType, primary_key=True, autoincrement=True)
    public_id: Mapped[str] = mapped_column(String(32), unique=True, default=_public_id)
    page_id: Mapped[int] = mapped_column(ForeignKey("pages.id", ondelete="CASCADE"), nullable=False)
    ip: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    viewed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class Like(Base):
    __tablename__ = "likes"
    __table_args__ = {"info": {"external": True}}

    id: Mapped[int] = mapped_column(PkType, primary_key=True, autoincrement=True)
    public_id: Mapped[str] = mapped_column(String(32), unique=True, default=_public_id)
    page_id: Mapped[int] = mapped_column(ForeignKey("pages.id", ondelete="CASCADE"), nullable=False)
    ip: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class Comment(Base):
    __tablename__ = "comments"
    __table_args__ = {"info": {"external": True}}

    id: Mapped[int] = mapped_column(PkType, primary_key=True, autoincrement=True)
    public_id: Mapped[str] = mapped_column(String(32), unique=True, default=_public_id)
    page_id: Mapped[int] = mapped_column(ForeignKey("pages.id", ondelete="CASCADE"), nullable=False)
    ip: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="pending", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class PageSubmission(Base):
    __tablename__ = "page_submissions"
    __table_args__ = {"info": {"external": True}}

    id: Mapped[int] = mapped_column(PkType, primary_key=True, autoincrement=True)
    public_id: Mapped[str] = mapped_column(String(32), unique=True, default=_public_id)
    page_id: Mapped[Optional[int]] = mapped_column(ForeignKey("pages.id", ondelete="SET NULL"), nullable=True)
    ip: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    type: Mapped[str] = mapped_column(String(16), default="create", nullable=False)
    title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="pending", nullable=False)
    result_slug_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    target_slug_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
