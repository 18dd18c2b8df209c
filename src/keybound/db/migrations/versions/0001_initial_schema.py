"""Initial keybound schema.

Revision ID: 0001
Revises: None
Create Date: 2026-01-01 00:00:00.000000
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "keybound_devices",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("public_key_jwk", sa.Text, nullable=False),
        sa.Column("thumbprint", sa.String(64), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("failed_attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("last_ip", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.Text, nullable=True),
        sa.UniqueConstraint("thumbprint", name="uq_keybound_devices_thumbprint"),
    )
    op.create_index("ix_keybound_devices_status", "keybound_devices", ["status"])

    op.create_table(
        "keybound_challenges",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("device_id", sa.String(32), nullable=False),
        sa.Column("nonce", sa.String(64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("consumed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_keybound_challenges_expires_at", "keybound_challenges", ["expires_at"])
    op.create_index(
        "ix_keybound_challenges_device_id_expires_at",
        "keybound_challenges",
        ["device_id", "expires_at"],
    )

    op.create_table(
        "keybound_sessions",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("device_id", sa.String(32), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ip", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.Text, nullable=True),
    )
    op.create_index("ix_keybound_sessions_expires_at", "keybound_sessions", ["expires_at"])
    op.create_index(
        "ix_keybound_sessions_device_id_expires_at",
        "keybound_sessions",
        ["device_id", "expires_at"],
    )

    op.create_table(
        "keybound_users",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("device_id", sa.String(32), nullable=False),
        sa.Column("public_id", sa.String(64), nullable=False),
        sa.Column("display_name", sa.String(64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("public_id", name="uq_keybound_users_public_id"),
        sa.UniqueConstraint("display_name", name="uq_keybound_users_display_name"),
    )
    op.create_index("ix_keybound_users_device_id", "keybound_users", ["device_id"], unique=True)


def downgrade() -> None:
    op.drop_table("keybound_users")
    op.drop_table("keybound_sessions")
    op.drop_table("keybound_challenges")
    op.drop_table("keybound_devices")
