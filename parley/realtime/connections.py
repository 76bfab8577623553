from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import uuid4

from sqlalchemy import delete
from sqlalchemy.orm import Session

from parley.core.config import settings
from parley.db.models import WsConnection, utc_now
from parley.db.session import SessionLocal


@dataclass(frozen=True)
class ConnectionRecord:
    connection_id: str
    owner_id: str
    created_at: datetime
    expires_at: datetime


def new_connection_id() -> str:
    return uuid4().hex


class ConnectionRegistry:
    """Live websocket connections, keyed by connection id, expiring after a TTL."""

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        *,
        clock: Callable[[], datetime] = utc_now,
        ttl: timedelta | None = None,
    ):
        self._session_factory: Callable[[], Session] = session_factory
        self.clock: Callable[[], datetime] = clock
        self.ttl: timedelta = ttl or timedelta(seconds=settings.connection_ttl_seconds)

    def register(self, owner_id: str, connection_id: str | None = None) -> ConnectionRecord:
        now = self.clock()
        cid = connection_id or new_connection_id()
        with self._session_factory() as db:
            with db.begin():
                row = db.get(WsConnection, cid)
                if row is None:
                    row = WsConnection(connection_id=cid, owner_id=owner_id)
                    db.add(row)
                row.owner_id = owner_id
                row.created_at = now
                row.expires_at = now + self.ttl
            return ConnectionRecord(
                connection_id=row.connection_id,
                owner_id=row.owner_id,
                created_at=row.created_at,
                expires_at=row.expires_at,
            )

    def get(self, connection_id: str) -> ConnectionRecord | None:
        with self._session_factory() as db:
            row = db.get(WsConnection, connection_id)
            if row is None or row.expires_at <= self.clock():
                return None
            return ConnectionRecord(
                connection_id=row.connection_id,
                owner_id=row.owner_id,
                created_at=row.created_at,
                expires_at=row.expires_at,
            )

    def is_registered_to(self, connection_id: str, owner_id: str) -> bool:
        record = self.get(connection_id)
        return record is not None and record.owner_id == owner_id

    def deregister(self, connection_id: str) -> bool:
        with self._session_factory() as db:
            with db.begin():
                res = db.execute(delete(WsConnection).where(WsConnection.connection_id == connection_id))
            return (res.rowcount or 0) > 0

    def purge_expired(self) -> int:
        now = self.clock()
        with self._session_factory() as db:
            with db.begin():
                res = db.execute(delete(WsConnection).where(WsConnection.expires_at <= now))
            return int(res.rowcount or 0)
