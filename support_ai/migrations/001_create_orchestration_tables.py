"""Create conversation, retrieval, tool and fanout tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from pgvector.sqlalchemy import Vector
from sqlalchemy.dialects import postgresql


revision = "001_create_orchestration_tables"
down_revision = None
branch_labels = None
depends_on = None

EMBEDDING_DIMENSIONS = 384

_NOW = sa.text("now()")


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at", sa.DateTime(timezone=True), nullable=False, server_default=_NOW
    )


def upgrade() -> None:
    """Create the engine's tables, indexes and the ``vector`` extension."""

    op.execute("CREATE EXTENSION IF NOT EXISTS vector")

    op.create_table(
        "conversations",
        sa.Column("id", sa.BigInteger, sa.Identity(), primary_key=True),
        sa.Column("slug", sa.String(length=64), nullable=False),
        sa.Column(
            "subject",
            sa.Text,
            nullable=False,
            server_default=sa.text("'Chat'"),
        ),
        sa.Column(
            "summary",
            postgresql.JSONB,
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column(
            "status",
            sa.String(length=16),
            nullable=False,
            server_default=sa.text("'open'"),
        ),
        sa.Column(
            "assigned_to_ai",
            sa.Boolean,
            nullable=False,
            server_default=sa.text("true"),
        ),
        sa.Column("assigned_to_user_id", sa.String(length=255), nullable=True),
        sa.Column("owner_before_close", postgresql.JSONB, nullable=True),
        sa.Column(
            "is_prompt", sa.Boolean, nullable=False, server_default=sa.text("false")
        ),
        sa.Column("customer_email", sa.String(length=320), nullable=True),
        sa.Column("customer_last_read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("embedding", Vector(EMBEDDING_DIMENSIONS), nullable=True),
        _created_at(),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), nullable=False, server_default=_NOW
        ),
        sa.CheckConstraint(
            "status IN ('open', 'closed', 'spam')", name="ck_conversations_status"
        ),
        sa.CheckConstraint(
            "NOT (assigned_to_ai AND assigned_to_user_id IS NOT NULL)",
            name="ck_conversations_single_owner",
        ),
    )
    op.create_index("ix_conversations_slug_unique", "conversations", ["slug"], unique=True)
    op.create_index("ix_conversations_status", "conversations", ["status"])

    op.create_table(
        "messages",
        sa.Column("id", sa.BigInteger, sa.Identity(), primary_key=True),
        sa.Column(
            "conversation_id",
            sa.BigInteger,
            sa.ForeignKey("conversations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("role", sa.String(length=32), nullable=False),
        sa.Column("body", sa.Text, nullable=False, server_default=sa.text("''")),
        sa.Column("cleaned_up_text", sa.Text, nullable=True),
        sa.Column("client_message_id", sa.String(length=128), nullable=True),
        sa.Column(
            "response_to_id",
            sa.BigInteger,
            sa.ForeignKey("messages.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("tool_result", postgresql.JSONB, nullable=True),
        sa.Column("staff_user_id", sa.String(length=255), nullable=True),
        sa.Column(
            "is_flagged_as_bad",
            sa.Boolean,
            nullable=False,
            server_default=sa.text("false"),
        ),
        sa.Column("reason", sa.Text, nullable=True),
        _created_at(),
        sa.CheckConstraint(
            "role IN ('user', 'ai_assistant', 'staff', 'tool')", name="ck_messages_role"
        ),
        sa.CheckConstraint(
            "(role = 'tool') = (tool_result IS NOT NULL)", name="ck_messages_tool_result"
        ),
    )
    op.create_index(
        "ix_messages_conversation_created", "messages", ["conversation_id", "created_at"]
    )
    op.create_index(
        "ix_messages_client_message_id_unique",
        "messages",
        ["conversation_id", "client_message_id"],
        unique=True,
        postgresql_where=sa.text("client_message_id IS NOT NULL"),
    )
    op.create_index("ix_messages_response_to_id", "messages", ["response_to_id"])

    op.create_table(
        "escalation_events",
        sa.Column("id", sa.BigInteger, sa.Identity(), primary_key=True),
        sa.Column(
            "conversation_id",
            sa.BigInteger,
            sa.ForeignKey("conversations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("trigger", sa.String(length=32), nullable=False),
        sa.Column("reason", sa.Text, nullable=True),
        sa.Column("previous_state", postgresql.JSONB, nullable=False),
        sa.Column("new_state", postgresql.JSONB, nullable=False),
        _created_at(),
    )
    op.create_index(
        "ix_escalation_events_conversation_id", "escalation_events", ["conversation_id"]
    )

    op.create_table(
        "notifications",
        sa.Column("id", sa.BigInteger, sa.Identity(), primary_key=True),
        sa.Column(
            "conversation_id",
            sa.BigInteger,
            sa.ForeignKey("conversations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "message_id",
            sa.BigInteger,
            sa.ForeignKey("messages.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("text", sa.Text, nullable=False),
        _created_at(),
    )
    op.create_index(
        "ix_notifications_message_id_unique", "notifications", ["message_id"], unique=True
    )

    op.create_table(
        "knowledge_bank",
        sa.Column("id", sa.BigInteger, sa.Identity(), primary_key=True),
        sa.Column("content", sa.Text, nullable=False),
        sa.Column("embedding", Vector(EMBEDDING_DIMENSIONS), nullable=True),
        sa.Column("enabled", sa.Boolean, nullable=False, server_default=sa.text("true")),
        _created_at(),
    )

    op.create_table(
        "style_linters",
        sa.Column("id", sa.BigInteger, sa.Identity(), primary_key=True),
        sa.Column("before", sa.Text, nullable=False),
        sa.Column("after", sa.Text, nullable=False),
        _created_at(),
    )

    op.create_table(
        "tools",
        sa.Column("id", sa.BigInteger, sa.Identity(), primary_key=True),
        sa.Column("slug", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text, nullable=False),
        sa.Column(
            "parameters",
            postgresql.JSONB,
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column(
            "request_method",
            sa.String(length=8),
            nullable=False,
            server_default=sa.text("'GET'"),
        ),
        sa.Column("url", sa.Text, nullable=False),
        sa.Column("auth_token", sa.Text, nullable=True),
        sa.Column(
            "available_in_chat", sa.Boolean, nullable=False, server_default=sa.text("true")
        ),
        sa.Column("enabled", sa.Boolean, nullable=False, server_default=sa.text("true")),
        _created_at(),
    )
    op.create_index("ix_tools_slug_unique", "tools", ["slug"], unique=True)

    op.create_table(
        "embedding_cache",
        sa.Column("key", sa.String(length=64), primary_key=True),
        sa.Column("embedding", Vector(EMBEDDING_DIMENSIONS), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_embedding_cache_expires_at", "embedding_cache", ["expires_at"])

    op.create_table(
        "fanout_jobs",
        sa.Column("id", sa.BigInteger, sa.Identity(), primary_key=True),
        sa.Column("key", sa.String(length=128), nullable=False),
        sa.Column("kind", sa.String(length=64), nullable=False),
        sa.Column("message_id", sa.BigInteger, nullable=False),
        sa.Column("conversation_id", sa.BigInteger, nullable=False),
        sa.Column(
            "payload",
            postgresql.JSONB,
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column(
            "status",
            sa.String(length=16),
            nullable=False,
            server_default=sa.text("'pending'"),
        ),
        sa.Column("attempts", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
    )
    op.create_index("ix_fanout_jobs_key_unique", "fanout_jobs", ["key"], unique=True)
    op.create_index("ix_fanout_jobs_status_id", "fanout_jobs", ["status", "id"])


def downgrade() -> None:
    """Drop every table created by :func:`upgrade`."""

    op.drop_index("ix_fanout_jobs_status_id", table_name="fanout_jobs")
    op.drop_index("ix_fanout_jobs_key_unique", table_name="fanout_jobs")
    op.drop_table("fanout_jobs")

    op.drop_index("ix_embedding_cache_expires_at", table_name="embedding_cache")
    op.drop_table("embedding_cache")

    op.drop_index("ix_tools_slug_unique", table_name="tools")
    op.drop_table("tools")

    op.drop_table("style_linters")
    op.drop_table("knowledge_bank")

    op.drop_index("ix_notifications_message_id_unique", table_name="notifications")
    op.drop_table("notifications")

    op.drop_index("ix_escalation_events_conversation_id", table_name="escalation_events")
    op.drop_table("escalation_events")

    op.drop_index("ix_messages_response_to_id", table_name="messages")
    op.drop_index("ix_messages_client_message_id_unique", table_name="messages")
    op.drop_index("ix_messages_conversation_created", table_name="messages")
    op.drop_table("messages")

    op.drop_index("ix_conversations_status", table_name="conversations")
    op.drop_index("ix_conversations_slug_unique", table_name="conversations")
    op.drop_table("conversations")
