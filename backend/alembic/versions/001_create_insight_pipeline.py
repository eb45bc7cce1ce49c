"""create insight extraction pipeline tables

Revision ID: 001_create_insight_pipeline
Revises:
Create Date: 2026-10-18
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "001_create_insight_pipeline"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _uuid_pk():
    return sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True)


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.text("now()")),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        _uuid_pk(),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("full_name", sa.String(length=255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "conversations",
        _uuid_pk(),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("title", sa.String(length=255), nullable=True),
        sa.Column("challenge_id", sa.String(length=64), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_conversations_user_id", "conversations", ["user_id"])
    op.create_index("ix_conversations_created_at", "conversations", ["created_at"])

    op.create_table(
        "conversation_threads",
        _uuid_pk(),
        sa.Column(
            "conversation_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("conversations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("is_shared", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_conversation_threads_conversation_id", "conversation_threads", ["conversation_id"])
    op.create_index("ix_conversation_threads_user_id", "conversation_threads", ["user_id"])

    op.create_table(
        "conversation_plans",
        _uuid_pk(),
        sa.Column(
            "conversation_thread_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("conversation_threads.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("title", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=50), nullable=False, server_default="active"),
        *_timestamps(),
    )
    op.create_index(
        "ix_conversation_plans_conversation_thread_id",
        "conversation_plans",
        ["conversation_thread_id"],
        unique=True,
    )

    op.create_table(
        "conversation_plan_steps",
        _uuid_pk(),
        sa.Column(
            "plan_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("conversation_plans.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("step_identifier", sa.String(length=100), nullable=False),
        sa.Column("step_order", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("objective", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=50), nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("now()")),
        sa.Column("activated_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_conversation_plan_steps_plan_id", "conversation_plan_steps", ["plan_id"])

    op.create_table(
        "insight_types",
        _uuid_pk(),
        sa.Column("name", sa.String(length=50), nullable=False, unique=True),
    )
    op.bulk_insert(
        sa.table("insight_types", sa.column("id", postgresql.UUID(as_uuid=True)), sa.column("name", sa.String)),
        [
            {"id": "8c0a1f6e-3d4b-4c1a-9f35-0a8d5b1e7c01", "name": "idea"},
            {"id": "8c0a1f6e-3d4b-4c1a-9f35-0a8d5b1e7c02", "name": "pain"},
            {"id": "8c0a1f6e-3d4b-4c1a-9f35-0a8d5b1e7c03", "name": "gain"},
            {"id": "8c0a1f6e-3d4b-4c1a-9f35-0a8d5b1e7c04", "name": "opportunity"},
            {"id": "8c0a1f6e-3d4b-4c1a-9f35-0a8d5b1e7c05", "name": "risk"},
            {"id": "8c0a1f6e-3d4b-4c1a-9f35-0a8d5b1e7c06", "name": "signal"},
            {"id": "8c0a1f6e-3d4b-4c1a-9f35-0a8d5b1e7c07", "name": "solution"},
            {"id": "8c0a1f6e-3d4b-4c1a-9f35-0a8d5b1e7c08", "name": "question"},
        ],
    )

    op.create_table(
        "insights",
        _uuid_pk(),
        sa.Column(
            "conversation_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("conversations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "conversation_thread_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("conversation_threads.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("content", sa.Text(), nullable=False, server_default=""),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column(
            "insight_type_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("insight_types.id"),
            nullable=False,
        ),
        sa.Column("category", sa.String(length=100), nullable=True),
        sa.Column("status", sa.String(length=50), nullable=False, server_default="new"),
        sa.Column("priority", sa.String(length=50), nullable=True),
        sa.Column("challenge_id", sa.String(length=64), nullable=True),
        sa.Column(
            "related_challenge_ids",
            postgresql.ARRAY(sa.String()),
            nullable=False,
            server_default=sa.text("'{}'"),
        ),
        sa.Column("source_message_id", sa.String(length=64), nullable=True),
        sa.Column(
            "plan_step_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("conversation_plan_steps.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("content_embedding", postgresql.ARRAY(sa.Float()), nullable=True),
        sa.Column("summary_embedding", postgresql.ARRAY(sa.Float()), nullable=True),
        sa.Column("embedding_updated_at", sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_insights_conversation_id", "insights", ["conversation_id"])
    op.create_index("ix_insights_conversation_thread_id", "insights", ["conversation_thread_id"])
    op.create_index("ix_insights_created_at", "insights", ["created_at"])

    op.create_table(
        "insight_authors",
        _uuid_pk(),
        sa.Column(
            "insight_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("insights.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("display_name", sa.String(length=255), nullable=True),
    )
    op.create_index("ix_insight_authors_insight_id", "insight_authors", ["insight_id"])

    op.create_table(
        "insight_kpis",
        _uuid_pk(),
        sa.Column(
            "insight_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("insights.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("metric_data", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_insight_kpis_insight_id", "insight_kpis", ["insight_id"])

    op.create_table(
        "insight_extraction_jobs",
        _uuid_pk(),
        sa.Column(
            "conversation_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("conversations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("message_id", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=50), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("model_config_id", sa.String(length=255), nullable=True),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("finished_at", sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_insight_extraction_jobs_conversation_id", "insight_extraction_jobs", ["conversation_id"])
    op.create_index("ix_insight_extraction_jobs_status", "insight_extraction_jobs", ["status"])
    # One pending/processing job per conversation: the extraction lease
    op.create_index(
        "uq_insight_extraction_jobs_active_conversation",
        "insight_extraction_jobs",
        ["conversation_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('pending', 'processing')"),
    )

    op.create_table(
        "agent_logs",
        _uuid_pk(),
        sa.Column("conversation_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("message_id", sa.String(length=64), nullable=True),
        sa.Column("interaction_type", sa.String(length=100), nullable=False),
        sa.Column("status", sa.String(length=50), nullable=False, server_default="processing"),
        sa.Column("request_payload", postgresql.JSONB(), nullable=True),
        sa.Column("response_payload", postgresql.JSONB(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("model_config_id", sa.String(length=255), nullable=True),
        sa.Column("latency_seconds", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("now()")),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_agent_logs_conversation_id", "agent_logs", ["conversation_id"])
    op.create_index("ix_agent_logs_interaction_type", "agent_logs", ["interaction_type"])
    op.create_index("ix_agent_logs_created_at", "agent_logs", ["created_at"])

    op.create_table(
        "knowledge_graph_edges",
        _uuid_pk(),
        sa.Column("source_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("source_type", sa.String(length=50), nullable=False),
        sa.Column("target_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("target_type", sa.String(length=50), nullable=False),
        sa.Column("relationship_type", sa.String(length=100), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_knowledge_graph_edges_source_id", "knowledge_graph_edges", ["source_id"])
    op.create_index("ix_knowledge_graph_edges_target_id", "knowledge_graph_edges", ["target_id"])


def downgrade() -> None:
    op.drop_table("knowledge_graph_edges")
    op.drop_table("agent_logs")
    op.drop_index("uq_insight_extraction_jobs_active_conversation", table_name="insight_extraction_jobs")
    op.drop_table("insight_extraction_jobs")
    op.drop_table("insight_kpis")
    op.drop_table("insight_authors")
    op.drop_table("insights")
    op.drop_table("insight_types")
    op.drop_table("conversation_plan_steps")
    op.drop_table("conversation_plans")
    op.drop_table("conversation_threads")
    op.drop_table("conversations")
    op.drop_table("users")
