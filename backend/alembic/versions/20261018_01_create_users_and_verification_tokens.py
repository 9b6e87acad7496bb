"""Create users and verification_tokens.

Revision ID: 20261018_01
Revises:
Create Date: 2026-10-18 09:00:00
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "20261018_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_email_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("email_verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_users_id", "users", ["id"])
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "verification_tokens",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("hashed_token", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("purpose", sa.String(length=32), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("is_valid", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("invalidated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("invalidation_reason", sa.String(length=32), nullable=True),
        sa.UniqueConstraint("hashed_token", name="uq_verification_tokens_hashed_token"),
        sa.UniqueConstraint(
            "user_id", "purpose", "sequence", name="uq_verification_tokens_user_purpose_sequence"
        ),
    )
    op.create_index("ix_verification_tokens_user_id", "verification_tokens", ["user_id"])
    # supports external expiry sweeps
    op.create_index(
        "ix_verification_tokens_purpose_valid_expires",
        "verification_tokens",
        ["purpose", "is_valid", "expires_at"],
    )
    op.create_index(
        "uq_verification_tokens_single_valid",
        "verification_tokens",
        ["user_id", "purpose"],
        unique=True,
        postgresql_where=sa.text("is_valid"),
        sqlite_where=sa.text("is_valid"),
    )


def downgrade() -> None:
    op.drop_index("uq_verification_tokens_single_valid", table_name="verification_tokens")
    op.drop_index("ix_verification_tokens_purpose_valid_expires", table_name="verification_tokens")
    op.drop_index("ix_verification_tokens_user_id", table_name="verification_tokens")
    op.drop_table("verification_tokens")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_index("ix_users_id", table_name="users")
    op.drop_table("users")
