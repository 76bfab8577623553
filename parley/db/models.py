# pyright: reportMissingImports=false
# pyright: reportImplicitOverride=false
# pyright: reportIncompatibleVariableOverride=false
# pyright: reportUnknownVariableType=false
from __future__ import annotations

from datetime import UTC, datetime
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from parley.db.base import Base


def _uuid_str() -> str:
    return str(uuid4())


def utc_now() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(UTC).replace(tzinfo=None)


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JSONDoc = JSON().with_variant(JSONB(), "postgresql")


class Provider(Base):
    __tablename__: str = "providers"
    __table_args__: tuple[object, ...] = (
        UniqueConstraint("name", name="uq_providers_name"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid_str)

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    # Free-form on purpose: unknown kinds resolve to the openai adapter.
    kind: Mapped[str] = mapped_column(String(30), nullable=False, default="openai")
    base_url: Mapped[str | None] = mapped_column(Text(), nullable=True)
    api_key_enc: Mapped[str | None] = mapped_column(Text(), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean(), nullable=False, default=True)
    default_model: Mapped[str] = mapped_column(String(100), nullable=False, default="")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(), default=utc_now, onupdate=utc_now, nullable=False
    )


class ChatSession(Base):
    __tablename__: str = "chat_sessions"
    __table_args__: tuple[object, ...] = (
        CheckConstraint("status IN ('active','archived')", name="ck_chat_sessions_status"),
        CheckConstraint("version >= 1", name="ck_chat_sessions_version_ge_1"),
        Index("ix_chat_sessions_owner_last_interaction", "owner_id", "last_interaction_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid_str)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)

    provider_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("providers.id", ondelete="RESTRICT"), nullable=False
    )
    provider_kind: Mapped[str] = mapped_column(String(30), nullable=False)
    model_id: Mapped[str] = mapped_column(String(200), nullable=False)

    title: Mapped[str | None] = mapped_column(String(200), nullable=True)
    pinned: Mapped[bool] = mapped_column(Boolean(), nullable=False, default=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    live_connection_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    version: Mapped[int] = mapped_column(Integer(), nullable=False, default=1)

    lease_token: Mapped[str | None] = mapped_column(String(36), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)

    last_interaction_at: Mapped[datetime] = mapped_column(
        DateTime(), default=utc_now, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(), default=utc_now, nullable=False
    )

    events: Mapped[list["SessionEvent"]] = relationship(
        "SessionEvent",
        back_populates="session",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="SessionEvent.ordered_at",
    )


class SessionEvent(Base):
    __tablename__: str = "session_events"
    __table_args__: tuple[object, ...] = (
        CheckConstraint("role IN ('user','assistant','system')", name="ck_session_events_role"),
        CheckConstraint(
            "tokens_in IS NULL OR tokens_in >= 0", name="ck_session_events_tokens_in_ge_0"
        ),
        CheckConstraint(
            "tokens_out IS NULL OR tokens_out >= 0", name="ck_session_events_tokens_out_ge_0"
        ),
        Index("ix_session_events_session_ordered", "session_id", "ordered_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid_str)
    session_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("chat_sessions.id", ondelete="CASCADE"), nullable=False
    )
    ordered_at: Mapped[datetime] = mapped_column(DateTime(), nullable=False)

    role: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[str] = mapped_column(Text(), nullable=False, default="")
    attachments: Mapped[list[dict[str, object]] | None] = mapped_column(JSONDoc, nullable=True)

    image_key: Mapped[str | None] = mapped_column(Text(), nullable=True)
    image_prompt: Mapped[str | None] = mapped_column(Text(), nullable=True)
    partial_count: Mapped[int | None] = mapped_column(Integer(), nullable=True)

    tokens_in: Mapped[int | None] = mapped_column(Integer(), nullable=True)
    tokens_out: Mapped[int | None] = mapped_column(Integer(), nullable=True)
    created_by: Mapped[str] = mapped_column(String(100), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(), default=utc_now, nullable=False
    )

    session: Mapped[ChatSession] = relationship("ChatSession", back_populates="events")


class ModelCacheEntry(Base):
    __tablename__: str = "model_cache_entries"
    __table_args__: tuple[object, ...] = (
        CheckConstraint(
            "refresh_source IS NULL OR refresh_source IN ('scheduled','manual')",
            name="ck_model_cache_entries_refresh_source",
        ),
        CheckConstraint(
            "last_refresh_status IS NULL OR last_refresh_status IN ('ok','error')",
            name="ck_model_cache_entries_last_refresh_status",
        ),
    )

    provider_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("providers.id", ondelete="CASCADE"), primary_key=True
    )
    models: Mapped[list[dict[str, object]]] = mapped_column(JSONDoc, nullable=False, default=list)

    last_refreshed: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)
    refresh_source: Mapped[str | None] = mapped_column(String(20), nullable=True)
    last_refresh_attempt: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)
    last_refresh_status: Mapped[str | None] = mapped_column(String(10), nullable=True)
    last_refresh_error: Mapped[str | None] = mapped_column(Text(), nullable=True)
    capabilities_refreshed: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(), default=utc_now, onupdate=utc_now, nullable=False
    )


class WsConnection(Base):
    __tablename__: str = "ws_connections"

    connection_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(), default=utc_now, nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(), index=True, nullable=False)
