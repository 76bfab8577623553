from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import cast

from parley.core.errors import ValidationError
from parley.core.security import JSONValue
from parley.realtime.push import PushChannel, PushResult


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AttachmentRef:
    file_key: str
    file_name: str
    file_type: str
    file_size: int = 0

    @property
    def is_image(self) -> bool:
        return self.file_type.startswith("image/")

    @property
    def is_pdf(self) -> bool:
        return self.file_type == "application/pdf"

    def to_dict(self) -> dict[str, object]:
        return {
            "fileKey": self.file_key,
            "fileName": self.file_name,
            "fileType": self.file_type,
            "fileSize": self.file_size,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, object]) -> "AttachmentRef":
        key = raw.get("fileKey")
        name = raw.get("fileName")
        ftype = raw.get("fileType")
        size = raw.get("fileSize", 0)
        if not isinstance(key, str) or key.strip() == "":
            raise ValidationError("attachment fileKey must be a non-empty string")
        if not isinstance(ftype, str) or ftype.strip() == "":
            raise ValidationError("attachment fileType must be a non-empty string")
        return cls(
            file_key=key.strip(),
            file_name=name if isinstance(name, str) and name else key.rsplit("/", 1)[-1],
            file_type=ftype.strip().lower(),
            file_size=size if isinstance(size, int) and not isinstance(size, bool) and size >= 0 else 0,
        )


@dataclass(frozen=True)
class TurnRequest:
    session_id: str
    connection_id: str
    message: str
    attachments: list[AttachmentRef] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: dict[str, object]) -> "TurnRequest":
        session_id = payload.get("sessionId")
        connection_id = payload.get("connectionId")
        message = payload.get("message", "")
        raw_attachments = payload.get("attachments") or []
        if not isinstance(session_id, str) or session_id == "":
            raise ValidationError("sessionId is required")
        if not isinstance(connection_id, str) or connection_id == "":
            raise ValidationError("connectionId is required")
        if not isinstance(message, str):
            raise ValidationError("message must be a string")
        if not isinstance(raw_attachments, list):
            raise ValidationError("attachments must be a list")
        attachments: list[AttachmentRef] = []
        for item in cast(list[object], raw_attachments):
            if not isinstance(item, dict):
                raise ValidationError("attachments must be objects")
            attachments.append(AttachmentRef.from_dict(cast(dict[str, object], item)))
        return cls(
            session_id=session_id,
            connection_id=connection_id,
            message=message,
            attachments=attachments,
        )


class TurnPush:
    """Pushes for one turn; after the first STALE result every later push is dropped."""

    def __init__(self, channel: PushChannel, connection_id: str, session_id: str):
        self.channel: PushChannel = channel
        self.connection_id: str = connection_id
        self.session_id: str = session_id
        self.stale: bool = False

    async def emit(self, event_type: str, **fields: JSONValue) -> PushResult:
        if self.stale:
            return PushResult.STALE
        payload: dict[str, JSONValue] = {"type": event_type, "sessionId": self.session_id}
        payload.update(fields)
        result = await self.channel.send(self.connection_id, payload)
        if result is PushResult.STALE:
            logger.info(
                "connection went away mid-turn session=%s connection=%s",
                self.session_id,
                self.connection_id,
            )
            self.stale = True
        return result

    async def emit_error(self, message: str, *, message_id: str | None = None) -> None:
        """Best effort: a failure delivering the error itself is only logged."""
        fields: dict[str, JSONValue] = {"message": message}
        if message_id is not None:
            fields["messageId"] = message_id
        try:
            _ = await self.emit("assistant.error", **fields)
        except Exception:
            logger.exception("failed to push assistant.error session=%s", self.session_id)
