from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import cast

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.orm import Session

from parley.core.config import settings
from parley.core.errors import NotFoundError, SessionBusyError, ValidationError, VersionConflictError
from parley.db.models import ChatSession, Provider, SessionEvent, utc_now
from parley.db.session import SessionLocal


_UNSET = object()


@dataclass(frozen=True)
class SessionView:
    id: str
    owner_id: str
    provider_id: str
    provider_kind: str
    model_id: str
    title: str | None
    pinned: bool
    status: str
    live_connection_id: str | None
    version: int
    last_interaction_at: datetime
    created_at: datetime

    @classmethod
    def from_row(cls, row: ChatSession) -> "SessionView":
        return cls(
            id=row.id,
            owner_id=row.owner_id,
            provider_id=row.provider_id,
            provider_kind=row.provider_kind,
            model_id=row.model_id,
            title=row.title,
            pinned=row.pinned,
            status=row.status,
            live_connection_id=row.live_connection_id,
            version=row.version,
            last_interaction_at=row.last_interaction_at,
            created_at=row.created_at,
        )


@dataclass(frozen=True)
class EventView:
    id: str
    session_id: str
    ordered_at: datetime
    role: str
    content: str
    attachments: list[dict[str, object]] = field(default_factory=list)
    image_key: str | None = None
    image_prompt: str | None = None
    partial_count: int | None = None
    tokens_in: int | None = None
    tokens_out: int | None = None
    created_by: str = ""

    @classmethod
    def from_row(cls, row: SessionEvent) -> "EventView":
        return cls(
            id=row.id,
            session_id=row.session_id,
            ordered_at=row.ordered_at,
            role=row.role,
            content=row.content,
            attachments=list(row.attachments or []),
            image_key=row.image_key,
            image_prompt=row.image_prompt,
            partial_count=row.partial_count,
            tokens_in=row.tokens_in,
            tokens_out=row.tokens_out,
            created_by=row.created_by,
        )


class SessionRepository:
    """Chat sessions and their append-only event log.

    Metadata writes are optimistic: the caller passes the version it read and
    the UPDATE only matches when nobody else wrote in between.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        *,
        clock: Callable[[], datetime] = utc_now,
        lease_ttl: timedelta | None = None,
    ):
        self._session_factory: Callable[[], Session] = session_factory
        self.clock: Callable[[], datetime] = clock
        self.lease_ttl: timedelta = lease_ttl or timedelta(seconds=settings.session_lease_seconds)

    def create(
        self,
        *,
        owner_id: str,
        provider_id: str,
        model_id: str,
        title: str | None = None,
    ) -> SessionView:
        now = self.clock()
        with self._session_factory() as db:
            with db.begin():
                provider = db.get(Provider, provider_id)
                if provider is None or not provider.active:
                    raise NotFoundError(f"provider {provider_id} not found")
                mid = model_id.strip() or provider.default_model
                if mid == "":
                    raise ValidationError("model_id must be non-empty")
                row = ChatSession(
                    owner_id=owner_id,
                    provider_id=provider.id,
                    provider_kind=provider.kind,
                    model_id=mid,
                    title=(title or "").strip() or None,
                    pinned=False,
                    status="active",
                    version=1,
                    last_interaction_at=now,
                    created_at=now,
                )
                db.add(row)
            return SessionView.from_row(row)

    def get(self, session_id: str) -> SessionView | None:
        with self._session_factory() as db:
            row = db.get(ChatSession, session_id)
            return SessionView.from_row(row) if row is not None else None

    def get_owned(self, session_id: str, owner_id: str) -> SessionView:
        view = self.get(session_id)
        if view is None or view.owner_id != owner_id:
            raise NotFoundError(f"session {session_id} not found")
        return view

    def list_for_owner(self, owner_id: str, *, include_archived: bool = False) -> list[SessionView]:
        with self._session_factory() as db:
            stmt = select(ChatSession).where(ChatSession.owner_id == owner_id)
            if not include_archived:
                stmt = stmt.where(ChatSession.status == "active")
            stmt = stmt.order_by(ChatSession.pinned.desc(), ChatSession.last_interaction_at.desc())
            rows = db.execute(stmt).scalars().all()
            return [SessionView.from_row(r) for r in rows]

    def update_metadata(
        self,
        session_id: str,
        *,
        expected_version: int,
        title: object = _UNSET,
        pinned: object = _UNSET,
        status: object = _UNSET,
        live_connection_id: object = _UNSET,
        touch: bool = False,
    ) -> SessionView:
        """Version-checked metadata write; raises VersionConflictError on a lost race."""
        values: dict[str, object] = {"version": ChatSession.version + 1}
        if title is not _UNSET:
            values["title"] = cast(str | None, title)
        if pinned is not _UNSET:
            values["pinned"] = bool(pinned)
        if status is not _UNSET:
            if status not in ("active", "archived"):
                raise ValidationError("status must be one of: active, archived")
            values["status"] = status
        if live_connection_id is not _UNSET:
            values["live_connection_id"] = cast(str | None, live_connection_id)
        if touch:
            values["last_interaction_at"] = self.clock()

        with self._session_factory() as db:
            with db.begin():
                res = db.execute(
                    update(ChatSession)
                    .where(ChatSession.id == session_id, ChatSession.version == expected_version)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if (res.rowcount or 0) == 0:
                    if db.get(ChatSession, session_id) is None:
                        raise NotFoundError(f"session {session_id} not found")
                    raise VersionConflictError(session_id, expected_version)
            row = db.get(ChatSession, session_id, populate_existing=True)
            if row is None:
                raise NotFoundError(f"session {session_id} not found")
            return SessionView.from_row(row)

    def acquire_lease(self, session_id: str) -> str:
        """Claim the session for one turn; raises SessionBusyError while another turn holds it."""
        now = self.clock()
        token = str(uuid.uuid4())
        with self._session_factory() as db:
            with db.begin():
                res = db.execute(
                    update(ChatSession)
                    .where(
                        ChatSession.id == session_id,
                        or_(ChatSession.lease_token.is_(None), ChatSession.lease_expires_at <= now),
                    )
                    .values(lease_token=token, lease_expires_at=now + self.lease_ttl)
                    .execution_options(synchronize_session=False)
                )
                if (res.rowcount or 0) == 0:
                    if db.get(ChatSession, session_id) is None:
                        raise NotFoundError(f"session {session_id} not found")
                    raise SessionBusyError(session_id)
        return token

    def release_lease(self, session_id: str, token: str) -> None:
        with self._session_factory() as db:
            with db.begin():
                _ = db.execute(
                    update(ChatSession)
                    .where(ChatSession.id == session_id, ChatSession.lease_token == token)
                    .values(lease_token=None, lease_expires_at=None)
                    .execution_options(synchronize_session=False)
                )

    def append_event(
        self,
        session_id: str,
        *,
        role: str,
        content: str,
        created_by: str,
        event_id: str | None = None,
        attachments: list[dict[str, object]] | None = None,
        image_key: str | None = None,
        image_prompt: str | None = None,
        partial_count: int | None = None,
        tokens_in: int | None = None,
        tokens_out: int | None = None,
    ) -> EventView:
        now = self.clock()
        with self._session_factory() as db:
            with db.begin():
                last = db.execute(
                    select(func.max(SessionEvent.ordered_at)).where(SessionEvent.session_id == session_id)
                ).scalar_one_or_none()
                # Events keep a strict order even when the clock does not move between writes.
                ordered_at = now
                if last is not None and ordered_at <= last:
                    ordered_at = last + timedelta(microseconds=1)
                row = SessionEvent(
                    id=event_id or str(uuid.uuid4()),
                    session_id=session_id,
                    ordered_at=ordered_at,
                    role=role,
                    content=content,
                    attachments=attachments or None,
                    image_key=image_key,
                    image_prompt=image_prompt,
                    partial_count=partial_count,
                    tokens_in=tokens_in,
                    tokens_out=tokens_out,
                    created_by=created_by,
                    created_at=now,
                )
                db.add(row)
            return EventView.from_row(row)

    def list_events(self, session_id: str, *, limit: int | None = None) -> list[EventView]:
        with self._session_factory() as db:
            stmt = (
                select(SessionEvent)
                .where(SessionEvent.session_id == session_id)
                .order_by(SessionEvent.ordered_at.asc())
            )
            rows = list(db.execute(stmt).scalars().all())
            if limit is not None and limit > 0:
                rows = rows[-limit:]
            return [EventView.from_row(r) for r in rows]

    def count_events(self, session_id: str, *, role: str | None = None) -> int:
        with self._session_factory() as db:
            stmt = select(func.count()).select_from(SessionEvent).where(SessionEvent.session_id == session_id)
            if role is not None:
                stmt = stmt.where(SessionEvent.role == role)
            return int(db.execute(stmt).scalar_one())

    def delete(self, session_id: str) -> None:
        with self._session_factory() as db:
            with db.begin():
                _ = db.execute(delete(SessionEvent).where(SessionEvent.session_id == session_id))
                res = db.execute(delete(ChatSession).where(ChatSession.id == session_id))
                if (res.rowcount or 0) == 0:
                    raise NotFoundError(f"session {session_id} not found")
