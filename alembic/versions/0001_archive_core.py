"""Archive core schema.

Revision ID: 0001_archive_core
Revises: 
Create Date: 2025-01-01 00:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = "0001_archive_core"
down_revision = None
branch_labels = None
depends_on = None

_ACCESS_LEVELS = ("public", "internal", "restricted", "confidential")
_MEDIA_CATEGORIES = ("document", "image", "video", "audio", "software", "other")
_DC_TYPES = ("document", "video", "audio", "image", "software", "collection")
_AUDIT_ACTIONS = ("CREATE", "READ", "UPDATE", "DELETE", "DOWNLOAD", "SHARE", "VALIDATE")
_AUDIT_RESOURCES = ("file", "metadata", "user", "version")


def upgrade() -> None:
    """Create files, versions, metadata, audit log and accounts tables."""
    op.create_table(
        "files",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("filename", sa.String(length=500), nullable=False),
        sa.Column("file_path", sa.String(length=1000), nullable=False),
        sa.Column("file_hash", sa.String(length=128), nullable=False, unique=True),
        sa.Column("mime_type", sa.String(length=200), nullable=False),
        sa.Column("file_size", sa.BigInteger(), nullable=False),
        sa.Column(
            "category",
            sa.Enum(*_MEDIA_CATEGORIES, name="media_category", native_enum=False),
            nullable=False,
        ),
        sa.Column("owner_id", sa.String(length=200), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("current_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "access_level",
            sa.Enum(*_ACCESS_LEVELS, name="access_level", native_enum=False),
            nullable=False,
            server_default="public",
        ),
        sa.Column("rating", sa.Float(), nullable=False, server_default="0"),
        sa.Column("is_accessible", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("accessible_before_delete", sa.Boolean(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_files_category", "files", ["category"])
    op.create_index("ix_files_created_at", "files", ["created_at"])
    op.create_index("ix_files_is_deleted", "files", ["is_deleted"])

    op.create_table(
        "file_versions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "file_id",
            sa.Uuid(),
            sa.ForeignKey("files.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("version_number", sa.Integer(), nullable=False),
        sa.Column("file_hash", sa.String(length=128), nullable=False),
        sa.Column("file_path", sa.String(length=1000), nullable=False),
        sa.Column("file_size", sa.BigInteger(), nullable=False),
        sa.Column("created_by", sa.String(length=200), nullable=True),
        sa.Column("change_summary", sa.Text(), nullable=True),
        sa.Column("change_details", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("file_id", "version_number", name="uq_file_versions_number"),
    )

    op.create_table(
        "metadata_descriptive",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "file_id",
            sa.Uuid(),
            sa.ForeignKey("files.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("identifier", sa.String(length=200), nullable=False),
        sa.Column("title", sa.String(length=500), nullable=False),
        sa.Column("creator", sa.String(length=500), nullable=False),
        sa.Column("subject", sa.Text(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("publisher", sa.String(length=500), nullable=True),
        sa.Column("contributor", sa.String(length=500), nullable=True),
        sa.Column("date_created", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "type",
            sa.Enum(*_DC_TYPES, name="dublin_core_type", native_enum=False),
            nullable=False,
        ),
        sa.Column("format", sa.String(length=200), nullable=False),
        sa.Column("language", sa.String(length=20), nullable=False),
        sa.Column("rights", sa.Text(), nullable=False),
        sa.Column("source", sa.Text(), nullable=True),
        sa.Column("dc_xml", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "metadata_preservation",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "file_id",
            sa.Uuid(),
            sa.ForeignKey("files.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("object_identifier", sa.String(length=200), nullable=False),
        sa.Column("format_name", sa.String(length=200), nullable=False),
        sa.Column("format_registry", sa.String(length=100), nullable=False),
        sa.Column("digest_algorithm", sa.String(length=50), nullable=False),
        sa.Column("message_digest", sa.String(length=128), nullable=False),
        sa.Column("digest_validated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "preservation_level",
            sa.Enum("bit", "reference", "full", name="preservation_level", native_enum=False),
            nullable=False,
        ),
        sa.Column("events", sa.JSON(), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "audit_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("actor_id", sa.String(length=200), nullable=True),
        sa.Column(
            "action",
            sa.Enum(*_AUDIT_ACTIONS, name="audit_action", native_enum=False),
            nullable=False,
        ),
        sa.Column(
            "resource_type",
            sa.Enum(*_AUDIT_RESOURCES, name="audit_resource_type", native_enum=False),
            nullable=False,
        ),
        sa.Column("resource_id", sa.String(length=255), nullable=False),
        sa.Column("previous_value", sa.JSON(), nullable=True),
        sa.Column("new_value", sa.JSON(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_audit_log_resource", "audit_log", ["resource_id", "created_at"])
    op.create_index("ix_audit_log_actor", "audit_log", ["actor_id", "created_at"])
    op.create_index("ix_audit_log_action", "audit_log", ["action"])

    op.create_table(
        "accounts",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("username", sa.String(length=100), nullable=False, unique=True),
        sa.Column("email", sa.String(length=320), nullable=True, unique=True),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column(
            "role",
            sa.Enum("reader", "curator", "admin", name="account_role", native_enum=False),
            nullable=False,
            server_default="reader",
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    """Drop archive core tables."""
    op.drop_table("accounts")
    op.drop_index("ix_audit_log_action", table_name="audit_log")
    op.drop_index("ix_audit_log_actor", table_name="audit_log")
    op.drop_index("ix_audit_log_resource", table_name="audit_log")
    op.drop_table("audit_log")
    op.drop_table("metadata_preservation")
    op.drop_table("metadata_descriptive")
    op.drop_table("file_versions")
    op.drop_index("ix_files_is_deleted", table_name="files")
    op.drop_index("ix_files_created_at", table_name="files")
    op.drop_index("ix_files_category", table_name="files")
    op.drop_table("files")
