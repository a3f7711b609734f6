# migrations/versions/0001_create_trust_tables.py
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers:
revision = "0001_create_trust_tables"
down_revision = None
branch_labels = None
depends_on = None


def _ban_columns():
    return [
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("public_id", sa.String(length=32), nullable=False, unique=True),
        sa.Column("scope", sa.String(length=16), nullable=False),
        sa.Column("value", sa.String(length=128), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("lifted_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        "ip_profiles",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("public_id", sa.String(length=32), nullable=False, unique=True),
        sa.Column("ip", sa.String(length=64), nullable=False, unique=True),
        sa.Column("hash", sa.String(length=64), nullable=False, unique=True),
        sa.Column("claimed_user_id", sa.Integer(), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("last_user_agent", sa.Text(), nullable=True),
        sa.Column("is_bot", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("bot_reason", sa.Text(), nullable=True),
        sa.Column("reputation_status", sa.String(length=16), server_default="unknown", nullable=False),
        sa.Column("reputation_auto_status", sa.String(length=16), server_default="unknown", nullable=False),
        sa.Column("reputation_override", sa.String(length=16), nullable=True),
        sa.Column("reputation_summary", sa.Text(), nullable=True),
        sa.Column("reputation_details", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("reputation_checked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_vpn", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("is_proxy", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("is_tor", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("is_datacenter", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("is_abuser", sa.Boolean(), server_default=sa.false(), nullable=False),
    )
    op.create_index("ix_ip_profiles_review", "ip_profiles", ["reputation_auto_status", "reputation_override"])
    op.create_index("ix_ip_profiles_last_seen", "ip_profiles", ["last_seen_at"])

    op.create_table(
        "ip_bans",
        *_ban_columns(),
        sa.Column("ip", sa.String(length=64), nullable=False),
        sa.CheckConstraint("scope IN ('global','action','tag')", name="ck_ip_bans_scope"),
    )
    op.create_index("ix_ip_bans_active", "ip_bans", ["ip", "scope", "value", "lifted_at"])

    op.create_table(
        "user_action_bans",
        *_ban_columns(),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.CheckConstraint("scope IN ('global','action','tag')", name="ck_user_action_bans_scope"),
    )
    op.create_index("ix_user_action_bans_user", "user_action_bans", ["user_id", "scope", "value", "lifted_at"])

    op.create_table(
        "ban_appeals",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("public_id", sa.String(length=32), nullable=False, unique=True),
        sa.Column("ip", sa.String(length=64), nullable=True),
        sa.Column("scope", sa.String(length=16), nullable=True),
        sa.Column("value", sa.String(length=128), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=16), server_default="pending", nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint("status IN ('pending','accepted','rejected')", name="ck_ban_appeals_status"),
    )
    op.create_index("ix_ban_appeals_ip_status", "ban_appeals", ["ip", "status"])


def downgrade() -> None:
    op.drop_index("ix_ban_appeals_ip_status", table_name="ban_appeals")
    op.drop_table("ban_appeals")
    op.drop_index("ix_user_action_bans_user", table_name="user_action_bans")
    op.drop_table("user_action_bans")
    op.drop_index("ix_ip_bans_active", table_name="ip_bans")
    op.drop_table("ip_bans")
    op.drop_index("ix_ip_profiles_last_seen", table_name="ip_profiles")
    op.drop_index("ix_ip_profiles_review", table_name="ip_profiles")
    op.drop_table("ip_profiles")
