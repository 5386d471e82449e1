"""Add brute-force lockout tracking.

Revision ID: 0002_account_lockout
Revises: 0001_archive_core
Create Date: 2025-01-08 00:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = "0002_account_lockout"
down_revision = "0001_archive_core"
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create the per-identity lockout table."""
    op.create_table(
        "account_lockouts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("identity", sa.String(length=255), nullable=False, unique=True),
        sa.Column("failed_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lockout_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    """Drop the lockout table."""
    op.drop_table("account_lockouts")
