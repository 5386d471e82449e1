"""Add encrypted contact columns to accounts.

Deployments at this revision or later set ``database.schema_version: 3`` so
the account registry stores email addresses as ciphertext plus lookup hash.

Revision ID: 0003_encrypted_contacts
Revises: 0002_account_lockout
Create Date: 2025-01-15 00:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = "0003_encrypted_contacts"
down_revision = "0002_account_lockout"
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Add ciphertext and keyed-hash email columns."""
    with op.batch_alter_table("accounts") as batch_op:
        batch_op.add_column(sa.Column("email_encrypted", sa.Text(), nullable=True))
        batch_op.add_column(sa.Column("email_hash", sa.String(length=64), nullable=True))
        batch_op.create_unique_constraint("uq_accounts_email_hash", ["email_hash"])


def downgrade() -> None:
    """Drop encrypted contact columns."""
    with op.batch_alter_table("accounts") as batch_op:
        batch_op.drop_constraint("uq_accounts_email_hash", type_="unique")
        batch_op.drop_column("email_hash")
        batch_op.drop_column("email_encrypted")
