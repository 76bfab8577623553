from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "3a7f2c91d0b4"
down_revision = None
branch_labels = None
depends_on = None


_JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    _ = op.create_table(
        "providers",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("kind", sa.String(length=30), nullable=False),
        sa.Column("base_url", sa.Text(), nullable=True),
        sa.Column("api_key_enc", sa.Text(), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False),
        sa.Column("default_model", sa.String(length=100), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name", name="uq_providers_name"),
    )

    _ = op.create_table(
        "chat_sessions",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("owner_id", sa.String(length=64), nullable=False),
        sa.Column("provider_id", sa.String(length=36), nullable=False),
        sa.Column("provider_kind", sa.String(length=30), nullable=False),
        sa.Column("model_id", sa.String(length=200), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=True),
        sa.Column("pinned", sa.Boolean(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("live_connection_id", sa.String(length=64), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("lease_token", sa.String(length=36), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(), nullable=True),
        sa.Column("last_interaction_at", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("status IN ('active','archived')", name="ck_chat_sessions_status"),
        sa.CheckConstraint("version >= 1", name="ck_chat_sessions_version_ge_1"),
        sa.ForeignKeyConstraint(["provider_id"], ["providers.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_chat_sessions_owner_last_interaction",
        "chat_sessions",
        ["owner_id", "last_interaction_at"],
    )

    _ = op.create_table(
        "session_events",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("session_id", sa.String(length=36), nullable=False),
        sa.Column("ordered_at", sa.DateTime(), nullable=False),
        sa.Column("role", sa.String(length=20), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("attachments", _JSON, nullable=True),
        sa.Column("image_key", sa.Text(), nullable=True),
        sa.Column("image_prompt", sa.Text(), nullable=True),
        sa.Column("partial_count", sa.Integer(), nullable=True),
        sa.Column("tokens_in", sa.Integer(), nullable=True),
        sa.Column("tokens_out", sa.Integer(), nullable=True),
        sa.Column("created_by", sa.String(length=100), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("role IN ('user','assistant','system')", name="ck_session_events_role"),
        sa.CheckConstraint("tokens_in IS NULL OR tokens_in >= 0", name="ck_session_events_tokens_in_ge_0"),
        sa.CheckConstraint("tokens_out IS NULL OR tokens_out >= 0", name="ck_session_events_tokens_out_ge_0"),
        sa.ForeignKeyConstraint(["session_id"], ["chat_sessions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_session_events_session_ordered", "session_events", ["session_id", "ordered_at"])

    _ = op.create_table(
        "model_cache_entries",
        sa.Column("provider_id", sa.String(length=36), nullable=False),
        sa.Column("models", _JSON, nullable=False),
        sa.Column("last_refreshed", sa.DateTime(), nullable=True),
        sa.Column("refresh_source", sa.String(length=20), nullable=True),
        sa.Column("last_refresh_attempt", sa.DateTime(), nullable=True),
        sa.Column("last_refresh_status", sa.String(length=10), nullable=True),
        sa.Column("last_refresh_error", sa.Text(), nullable=True),
        sa.Column("capabilities_refreshed", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "refresh_source IS NULL OR refresh_source IN ('scheduled','manual')",
            name="ck_model_cache_entries_refresh_source",
        ),
        sa.CheckConstraint(
            "last_refresh_status IS NULL OR last_refresh_status IN ('ok','error')",
            name="ck_model_cache_entries_last_refresh_status",
        ),
        sa.ForeignKeyConstraint(["provider_id"], ["providers.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("provider_id"),
    )

    _ = op.create_table(
        "ws_connections",
        sa.Column("connection_id", sa.String(length=64), nullable=False),
        sa.Column("owner_id", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("connection_id"),
    )
    op.create_index(op.f("ix_ws_connections_owner_id"), "ws_connections", ["owner_id"])
    op.create_index(op.f("ix_ws_connections_expires_at"), "ws_connections", ["expires_at"])


def downgrade() -> None:
    op.drop_index(op.f("ix_ws_connections_expires_at"), table_name="ws_connections")
    op.drop_index(op.f("ix_ws_connections_owner_id"), table_name="ws_connections")
    op.drop_table("ws_connections")
    op.drop_table("model_cache_entries")
    op.drop_index("ix_session_events_session_ordered", table_name="session_events")
    op.drop_table("session_events")
    op.drop_index("ix_chat_sessions_owner_last_interaction", table_name="chat_sessions")
    op.drop_table("chat_sessions")
    op.drop_table("providers")
