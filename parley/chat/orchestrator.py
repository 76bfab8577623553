from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass

import httpx

from parley.chat.images import ImagePipeline
from parley.chat.sessions import EventView, SessionRepository, SessionView
from parley.chat.turn import AttachmentRef, TurnPush, TurnRequest
from parley.core.errors import NotFoundError, ParleyError, ValidationError
from parley.db.models import Provider
from parley.db.session import SessionLocal
from parley.llm.base import ChatAdapter
from parley.llm.classifier import Classifier
from parley.llm.registry import build_adapter, classifier_model, provider_config
from parley.llm.types import ChatMessage, ContentPart, ProviderConfig
from parley.metrics.prometheus import ChatTurnMetricLabels, record_chat_turn
from parley.realtime.connections import ConnectionRegistry
from parley.realtime.push import PushChannel, get_push_channel
from parley.storage.objects import ObjectStore, get_object_store, session_prefix


logger = logging.getLogger(__name__)


@dataclass
class TurnOutcome:
    session_id: str
    message_id: str
    content: str
    image: bool = False
    stale: bool = False
    error: str | None = None
    title: str | None = None
    persisted: bool = False


@dataclass
class PreparedTurn:
    owner_id: str
    request: TurnRequest
    session: SessionView
    config: ProviderConfig
    lease: str


def validate_attachment_keys(attachments: list[AttachmentRef], *, owner_id: str, session_id: str) -> None:
    prefix = session_prefix(owner_id, session_id)
    for a in attachments:
        if not a.file_key.startswith(prefix) or ".." in a.file_key.split("/"):
            raise ValidationError(f"attachment {a.file_name!r} does not belong to this session")


def load_provider_config(provider_id: str) -> ProviderConfig:
    with SessionLocal() as db:
        row = db.get(Provider, provider_id)
        if row is None or not row.active:
            raise NotFoundError(f"provider {provider_id} not found")
        try:
            return provider_config(row)
        except ValueError as e:
            raise ValidationError(str(e)) from e


class SessionOrchestrator:
    """Runs one chat turn: persist, classify, stream or generate, push, title."""

    def __init__(
        self,
        *,
        sessions: SessionRepository | None = None,
        connections: ConnectionRegistry | None = None,
        push: PushChannel | None = None,
        objects: ObjectStore | None = None,
        provider_loader: Callable[[str], ProviderConfig] = load_provider_config,
        transport: httpx.AsyncBaseTransport | None = None,
        mode: str | None = None,
    ):
        self.sessions: SessionRepository = sessions or SessionRepository()
        self.connections: ConnectionRegistry = connections or ConnectionRegistry()
        self.push: PushChannel = push or get_push_channel()
        self.objects: ObjectStore = objects or get_object_store()
        self.provider_loader: Callable[[str], ProviderConfig] = provider_loader
        self._transport: httpx.AsyncBaseTransport | None = transport
        self.mode: str | None = mode

    async def validate(self, owner_id: str, request: TurnRequest) -> SessionView:
        if request.message.strip() == "" and not request.attachments:
            raise ValidationError("message must be non-empty")
        session = await asyncio.to_thread(self.sessions.get_owned, request.session_id, owner_id)
        if session.status != "active":
            raise ValidationError("session is archived")
        validate_attachment_keys(request.attachments, owner_id=owner_id, session_id=session.id)
        registered = await asyncio.to_thread(
            self.connections.is_registered_to, request.connection_id, owner_id
        )
        if not registered:
            raise ValidationError("connection is not registered to the caller")
        return session

    def _history_message(self, event: EventView) -> ChatMessage | None:
        if not event.attachments:
            if event.content.strip() == "" and event.role == "assistant":
                return None
            return ChatMessage(role=event.role, content=event.content)

        parts: list[ContentPart] = []
        if event.content.strip():
            parts.append(ContentPart.of_text(event.content))
        for raw in event.attachments:
            try:
                a = AttachmentRef.from_dict(raw)
            except ValidationError:
                continue
            if a.is_image:
                parts.append(ContentPart.of_image(self.objects.signed_url(a.file_key)))
            elif a.is_pdf:
                try:
                    data_url = self.objects.data_url(a.file_key, a.file_type)
                    parts.append(ContentPart.of_document(a.file_name, data_url))
                except (NotFoundError, OSError):
                    logger.warning("skipping unreadable pdf attachment key=%s", a.file_key)
            else:
                logger.info("skipping unsupported attachment type=%s name=%s", a.file_type, a.file_name)
        return ChatMessage(role=event.role, content=parts)

    def build_history(self, events: list[EventView]) -> list[ChatMessage]:
        out: list[ChatMessage] = []
        for ev in events:
            msg = self._history_message(ev)
            if msg is not None:
                out.append(msg)
        return out

    async def _stream_reply(
        self,
        *,
        adapter: ChatAdapter,
        session: SessionView,
        history: list[ChatMessage],
        push: TurnPush,
        message_id: str,
        created_by: str,
    ) -> TurnOutcome:
        outcome = TurnOutcome(session_id=session.id, message_id=message_id, content="")
        labels = ChatTurnMetricLabels(provider=created_by, api=adapter.kind.value, model=session.model_id)
        started = time.monotonic()
        ttft_ms: int | None = None
        chunks = 0

        _ = await push.emit("assistant.started", messageId=message_id)
        try:
            stream = adapter.send_message(session.model_id, history)
            async for delta in stream:
                if ttft_ms is None:
                    ttft_ms = int((time.monotonic() - started) * 1000)
                chunks += 1
                # Keep draining after the socket is gone so the reply is still persisted.
                _ = await push.emit("assistant.delta", messageId=message_id, delta=delta)
            result = await stream.final_result()

            _ = await asyncio.to_thread(
                self.sessions.append_event,
                session.id,
                role="assistant",
                content=result.content,
                created_by=created_by,
                event_id=message_id,
                tokens_in=result.input_tokens,
                tokens_out=result.output_tokens,
            )
            outcome.persisted = True
            _ = await push.emit("assistant.completed", messageId=message_id, content=result.content)
            outcome.content = result.content
        except Exception as e:
            logger.exception("chat turn failed session=%s", session.id)
            outcome.error = str(e) or "Unexpected error generating response"
            await push.emit_error(outcome.error, message_id=message_id)
            record_chat_turn(
                labels=labels,
                outcome="error",
                latency_ms=int((time.monotonic() - started) * 1000),
                ttft_ms=ttft_ms,
                output_chunks=chunks,
                input_tokens=None,
                output_tokens=None,
            )
            return outcome

        outcome.stale = push.stale
        record_chat_turn(
            labels=labels,
            outcome="stale" if push.stale else "completed",
            latency_ms=int((time.monotonic() - started) * 1000),
            ttft_ms=ttft_ms,
            output_chunks=chunks,
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
        )
        return outcome

    async def _maybe_title(
        self,
        *,
        adapter: ChatAdapter,
        session: SessionView,
        history: list[ChatMessage],
        push: TurnPush,
    ) -> tuple[SessionView, str | None]:
        title = await adapter.generate_title(session.model_id, history)
        if title is None:
            return session, None
        try:
            session = await asyncio.to_thread(
                self.sessions.update_metadata, session.id, expected_version=session.version, title=title
            )
            _ = await push.emit("session.title", title=title)
        except Exception:
            logger.warning("title not applied session=%s", session.id, exc_info=True)
            return session, None
        return session, title

    async def prepare(self, owner_id: str, request: TurnRequest) -> PreparedTurn:
        """Every check that can reject a turn. On success the session lease is held by the result."""
        session = await self.validate(owner_id, request)
        lease = await asyncio.to_thread(self.sessions.acquire_lease, session.id)
        try:
            if session.live_connection_id != request.connection_id:
                session = await asyncio.to_thread(
                    self.sessions.update_metadata,
                    session.id,
                    expected_version=session.version,
                    live_connection_id=request.connection_id,
                )
            config = await asyncio.to_thread(self.provider_loader, session.provider_id)
        except BaseException:
            await asyncio.to_thread(self.sessions.release_lease, session.id, lease)
            raise
        return PreparedTurn(owner_id=owner_id, request=request, session=session, config=config, lease=lease)

    async def run(self, prepared: PreparedTurn) -> TurnOutcome:
        """Run a prepared turn and release its lease."""
        try:
            return await self._run_turn(prepared)
        finally:
            await asyncio.to_thread(self.sessions.release_lease, prepared.session.id, prepared.lease)

    async def handle_turn(self, owner_id: str, request: TurnRequest) -> TurnOutcome:
        """Run one turn. Failures before `assistant.started` raise; later ones are pushed."""
        return await self.run(await self.prepare(owner_id, request))

    async def _run_turn(self, prepared: PreparedTurn) -> TurnOutcome:
        owner_id, session, request, config = prepared.owner_id, prepared.session, prepared.request, prepared.config
        adapter = build_adapter(config, transport=self._transport, mode=self.mode)
        created_by = config.name

        first_turn = await asyncio.to_thread(self.sessions.count_events, session.id, role="user") == 0
        _ = await asyncio.to_thread(
            self.sessions.append_event,
            session.id,
            role="user",
            content=request.message,
            created_by=owner_id,
            attachments=[a.to_dict() for a in request.attachments],
        )
        session = await asyncio.to_thread(
            self.sessions.update_metadata, session.id, expected_version=session.version, touch=True
        )

        events = await asyncio.to_thread(self.sessions.list_events, session.id)
        history = await asyncio.to_thread(self.build_history, events)

        classifier = Classifier(adapter, classifier_model(config.kind))
        wants_image = await classifier.detect_image_intent(
            request.message, has_attachments=bool(request.attachments)
        )

        push = TurnPush(self.push, request.connection_id, session.id)
        message_id = str(uuid.uuid4())

        if wants_image:
            pipeline = ImagePipeline(
                adapter=adapter, classifier=classifier, sessions=self.sessions, objects=self.objects
            )
            event = await pipeline.run(
                session=session,
                prompt=request.message,
                push=push,
                message_id=message_id,
                created_by=created_by,
            )
            outcome = TurnOutcome(
                session_id=session.id,
                message_id=message_id,
                content=event.content,
                image=True,
                stale=push.stale,
                error=None if event.image_key else event.content,
                persisted=True,
            )
            record_chat_turn(
                labels=ChatTurnMetricLabels(provider=created_by, api=adapter.kind.value, model=session.model_id),
                outcome="image",
                latency_ms=None,
                ttft_ms=None,
                output_chunks=0,
                input_tokens=None,
                output_tokens=None,
            )
        else:
            outcome = await self._stream_reply(
                adapter=adapter,
                session=session,
                history=history,
                push=push,
                message_id=message_id,
                created_by=created_by,
            )

        if not outcome.persisted:
            return outcome

        try:
            session = await asyncio.to_thread(
                self.sessions.update_metadata, session.id, expected_version=session.version, touch=True
            )
        except ParleyError:
            logger.warning("post-turn metadata write skipped session=%s", session.id, exc_info=True)
            return outcome

        if first_turn and not session.title:
            title_history = history + [ChatMessage(role="assistant", content=outcome.content)]
            session, outcome.title = await self._maybe_title(
                adapter=adapter, session=session, history=title_history, push=push
            )
        return outcome
