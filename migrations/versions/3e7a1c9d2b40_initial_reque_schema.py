"""initial reque schema: users, requests, comments, activity, attachments, audit

Revision ID: 3e7a1c9d2b40
Revises:
Create Date: 2026-10-17 09:12:44.204118

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3e7a1c9d2b40'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create all ReQue tables."""
    # Check if tables already exist (idempotent)
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    existing_tables = set(inspector.get_table_names())

    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("email", sa.String(320), nullable=False, unique=True),
            sa.Column("password_hash", sa.String(255), nullable=False),
            sa.Column("full_name", sa.String(255), nullable=True),
            sa.Column("avatar_url", sa.String(1024), nullable=True),
            sa.Column("role", sa.String(32), nullable=False, server_default="user"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.CheckConstraint("role IN ('admin', 'team_member', 'user', 'guest')", name="ck_users_role"),
        )
        op.create_index("idx_users_role", "users", ["role"])

    if "requests" not in existing_tables:
        op.create_table(
            "requests",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("title", sa.String(255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("status", sa.String(32), nullable=False, server_default="new"),
            sa.Column("priority", sa.String(16), nullable=False, server_default="normal"),
            sa.Column("due_date", sa.Date(), nullable=True),
            sa.Column("created_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
            sa.Column("assigned_to_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.CheckConstraint(
                "status IN ('new', 'in_progress', 'under_review', 'completed', 'rejected')",
                name="ck_requests_status",
            ),
            sa.CheckConstraint("priority IN ('normal', 'high', 'urgent')", name="ck_requests_priority"),
        )
        op.create_index("idx_requests_created_by", "requests", ["created_by_user_id"])
        op.create_index("idx_requests_assigned_to", "requests", ["assigned_to_user_id"])
        op.create_index("idx_requests_status", "requests", ["status"])
        op.create_index("idx_requests_priority", "requests", ["priority"])
        op.create_index("idx_requests_due_date", "requests", ["due_date"])
        op.create_index("idx_requests_created_at", "requests", ["created_at"])

    if "request_comments" not in existing_tables:
        op.create_table(
            "request_comments",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("request_id", sa.Integer(), sa.ForeignKey("requests.id", ondelete="CASCADE"), nullable=False),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
            sa.Column("comment_text", sa.Text(), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )
        op.create_index("idx_comments_request_id", "request_comments", ["request_id"])
        op.create_index("idx_comments_user_id", "request_comments", ["user_id"])
        op.create_index("idx_comments_created_at", "request_comments", ["created_at"])

    if "request_activity" not in existing_tables:
        op.create_table(
            "request_activity",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("request_id", sa.Integer(), sa.ForeignKey("requests.id", ondelete="CASCADE"), nullable=False),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("activity_type", sa.String(64), nullable=False),
            sa.Column("old_value", sa.Text(), nullable=True),
            sa.Column("new_value", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )
        op.create_index("idx_activity_request_id", "request_activity", ["request_id"])
        op.create_index("idx_activity_user_id", "request_activity", ["user_id"])
        op.create_index("idx_activity_created_at", "request_activity", ["created_at"])

    if "request_attachments" not in existing_tables:
        op.create_table(
            "request_attachments",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("request_id", sa.Integer(), sa.ForeignKey("requests.id", ondelete="CASCADE"), nullable=False),
            sa.Column("storage_key", sa.String(512), nullable=False),
            sa.Column("filename", sa.String(255), nullable=False),
            sa.Column("file_size", sa.BigInteger(), nullable=True),
            sa.Column("mime_type", sa.String(128), nullable=True),
            sa.Column("sha256", sa.String(64), nullable=False),
            sa.Column("uploaded_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )
        op.create_index("idx_attachments_request_id", "request_attachments", ["request_id"])
        op.create_index("idx_attachments_uploaded_by", "request_attachments", ["uploaded_by_user_id"])

    if "audit_events" not in existing_tables:
        op.create_table(
            "audit_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("request_id", sa.String(64), nullable=True),
            sa.Column("actor_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("actor_user_email", sa.String(320), nullable=True),
            sa.Column("action", sa.String(128), nullable=False),
            sa.Column("entity_type", sa.String(128), nullable=True),
            sa.Column("entity_id", sa.String(128), nullable=True),
            sa.Column("reason", sa.String(512), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("client_ip", sa.String(64), nullable=True),
            sa.UniqueConstraint("request_id", "id", name="uq_audit_request_id_id"),
        )
        op.create_index("idx_audit_events_created_at", "audit_events", ["created_at"])


def downgrade() -> None:
    """Drop all ReQue tables."""
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    existing_tables = set(inspector.get_table_names())

    for table in (
        "audit_events",
        "request_attachments",
        "request_activity",
        "request_comments",
        "requests",
        "users",
    ):
        if table in existing_tables:
            op.drop_table(table)
