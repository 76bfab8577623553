# pyright: reportMissingImports=false
# pyright: reportUnknownArgumentType=false
# pyright: reportUnknownMemberType=false
# pyright: reportUnknownVariableType=false
# pyright: reportCallInDefaultInitializer=false
from __future__ import annotations

import logging
from datetime import datetime
from typing import Literal

from fastapi import APIRouter, BackgroundTasks, Depends, File, Query, Response, UploadFile, status
from pydantic import Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from parley.api.v1.deps import CamelModel, http_error, require_user_id
from parley.catalog.store import ModelCatalog
from parley.chat.orchestrator import PreparedTurn, SessionOrchestrator
from parley.chat.sessions import EventView, SessionRepository, SessionView
from parley.chat.turn import AttachmentRef, TurnPush, TurnRequest
from parley.core.errors import ParleyError, ValidationError
from parley.db.models import Provider
from parley.db.session import get_db
from parley.storage.objects import get_object_store, new_object_key, session_prefix


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chat", tags=["chat"])

MAX_ATTACHMENT_BYTES = 20 * 1024 * 1024


class ProviderModelOut(CamelModel):
    id: str
    label: str
    supports_image_generation: bool | None = None
    supports_tts: bool | None = Field(default=None, alias="supportsTTS")
    supports_transcription: bool | None = None
    supports_file_upload: bool | None = None


class ProviderOut(CamelModel):
    id: str
    name: str
    kind: str
    default_model: str
    models: list[ProviderModelOut]


class SessionCreateRequest(CamelModel):
    provider_id: str
    model_id: str = ""
    title: str | None = None


class SessionPatchRequest(CamelModel):
    version: int = Field(ge=1)
    title: str | None = None
    pinned: bool | None = None
    status: Literal["active", "archived"] | None = None


class SessionOut(CamelModel):
    id: str
    provider_id: str
    provider_kind: str
    model_id: str
    title: str | None
    pinned: bool
    status: str
    version: int
    last_interaction_at: datetime
    created_at: datetime


class AttachmentIn(CamelModel):
    file_key: str
    file_name: str
    file_type: str
    file_size: int = 0


class MessageOut(CamelModel):
    id: str
    role: str
    content: str
    ordered_at: datetime
    attachments: list[AttachmentIn] = Field(default_factory=list)
    image_url: str | None = None
    image_prompt: str | None = None
    tokens_in: int | None = None
    tokens_out: int | None = None


class SendMessageRequest(CamelModel):
    connection_id: str
    message: str = ""
    attachments: list[AttachmentIn] = Field(default_factory=list)


class SendMessageResponse(CamelModel):
    session_id: str
    accepted: bool = True


def _session_out(view: SessionView) -> SessionOut:
    return SessionOut(
        id=view.id,
        provider_id=view.provider_id,
        provider_kind=view.provider_kind,
        model_id=view.model_id,
        title=view.title,
        pinned=view.pinned,
        status=view.status,
        version=view.version,
        last_interaction_at=view.last_interaction_at,
        created_at=view.created_at,
    )


def _message_out(event: EventView) -> MessageOut:
    image_url = get_object_store().signed_url(event.image_key) if event.image_key else None
    attachments: list[AttachmentIn] = []
    for raw in event.attachments:
        try:
            a = AttachmentRef.from_dict(raw)
        except ValidationError:
            continue
        attachments.append(
            AttachmentIn(file_key=a.file_key, file_name=a.file_name, file_type=a.file_type, file_size=a.file_size)
        )
    return MessageOut(
        id=event.id,
        role=event.role,
        content=event.content,
        ordered_at=event.ordered_at,
        attachments=attachments,
        image_url=image_url,
        image_prompt=event.image_prompt,
        tokens_in=event.tokens_in,
        tokens_out=event.tokens_out,
    )


def _owned_session(repo: SessionRepository, session_id: str, user_id: str) -> SessionView:
    try:
        return repo.get_owned(session_id, user_id)
    except ParleyError as e:
        raise http_error(e) from e


@router.get("/providers", response_model=list[ProviderOut], operation_id="chat_providers_list")
def chat_providers_list(
    db: Session = Depends(get_db),
    _user_id: str = Depends(require_user_id),
) -> list[ProviderOut]:
    rows = db.execute(select(Provider).where(Provider.active.is_(True)).order_by(Provider.name.asc())).scalars().all()
    entries = {e.provider_id: e for e in ModelCatalog().list_entries([r.id for r in rows])}

    out: list[ProviderOut] = []
    for row in rows:
        entry = entries.get(row.id)
        models = [
            ProviderModelOut(
                id=m.id,
                label=m.label,
                supports_image_generation=m.capability("image_generation").to_json(),
                supports_tts=m.capability("tts").to_json(),
                supports_transcription=m.capability("transcription").to_json(),
                supports_file_upload=m.capability("file_upload").to_json(),
            )
            for m in (entry.models if entry is not None else [])
            if not m.blacklisted
        ]
        out.append(
            ProviderOut(id=row.id, name=row.name, kind=row.kind, default_model=row.default_model, models=models)
        )
    return out


@router.post(
    "/sessions",
    response_model=SessionOut,
    status_code=status.HTTP_201_CREATED,
    operation_id="chat_sessions_create",
)
def chat_sessions_create(
    payload: SessionCreateRequest,
    user_id: str = Depends(require_user_id),
) -> SessionOut:
    try:
        view = SessionRepository().create(
            owner_id=user_id,
            provider_id=payload.provider_id,
            model_id=payload.model_id,
            title=payload.title,
        )
    except ParleyError as e:
        raise http_error(e) from e
    return _session_out(view)


@router.get("/sessions", response_model=list[SessionOut], operation_id="chat_sessions_list")
def chat_sessions_list(
    include_archived: bool = Query(default=False, alias="includeArchived"),
    user_id: str = Depends(require_user_id),
) -> list[SessionOut]:
    views = SessionRepository().list_for_owner(user_id, include_archived=include_archived)
    return [_session_out(v) for v in views]


@router.get("/sessions/{session_id}", response_model=SessionOut, operation_id="chat_sessions_get")
def chat_sessions_get(session_id: str, user_id: str = Depends(require_user_id)) -> SessionOut:
    return _session_out(_owned_session(SessionRepository(), session_id, user_id))


@router.patch("/sessions/{session_id}", response_model=SessionOut, operation_id="chat_sessions_patch")
def chat_sessions_patch(
    session_id: str,
    payload: SessionPatchRequest,
    user_id: str = Depends(require_user_id),
) -> SessionOut:
    repo = SessionRepository()
    _ = _owned_session(repo, session_id, user_id)

    changes: dict[str, object] = {}
    if payload.title is not None:
        changes["title"] = payload.title.strip() or None
    if payload.pinned is not None:
        changes["pinned"] = payload.pinned
    if payload.status is not None:
        changes["status"] = payload.status
    try:
        view = repo.update_metadata(session_id, expected_version=payload.version, **changes)
    except ParleyError as e:
        raise http_error(e) from e
    return _session_out(view)


@router.delete(
    "/sessions/{session_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    operation_id="chat_sessions_delete",
)
def chat_sessions_delete(session_id: str, user_id: str = Depends(require_user_id)) -> Response:
    repo = SessionRepository()
    view = _owned_session(repo, session_id, user_id)
    try:
        repo.delete(view.id)
    except ParleyError as e:
        raise http_error(e) from e
    get_object_store().delete_prefix(session_prefix(user_id, view.id))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/sessions/{session_id}/messages",
    response_model=list[MessageOut],
    operation_id="chat_messages_list",
)
def chat_messages_list(session_id: str, user_id: str = Depends(require_user_id)) -> list[MessageOut]:
    repo = SessionRepository()
    view = _owned_session(repo, session_id, user_id)
    return [_message_out(ev) for ev in repo.list_events(view.id)]


@router.post(
    "/sessions/{session_id}/attachments",
    response_model=AttachmentIn,
    status_code=status.HTTP_201_CREATED,
    operation_id="chat_attachments_upload",
)
async def chat_attachments_upload(
    session_id: str,
    file: UploadFile = File(...),
    user_id: str = Depends(require_user_id),
) -> AttachmentIn:
    view = _owned_session(SessionRepository(), session_id, user_id)
    data = await file.read(MAX_ATTACHMENT_BYTES + 1)
    if len(data) > MAX_ATTACHMENT_BYTES:
        raise http_error(ValidationError("attachment is too large"))
    filename = file.filename or "upload"
    key = new_object_key(user_id, view.id, filename)
    _ = get_object_store().put(key, data)
    return AttachmentIn(
        file_key=key,
        file_name=filename,
        file_type=(file.content_type or "application/octet-stream").lower(),
        file_size=len(data),
    )


async def _run_prepared_turn(orchestrator: SessionOrchestrator, prepared: PreparedTurn) -> None:
    request = prepared.request
    try:
        _ = await orchestrator.run(prepared)
    except Exception:
        logger.exception("chat turn failed session=%s", request.session_id)
        push = TurnPush(orchestrator.push, request.connection_id, request.session_id)
        await push.emit_error("Unexpected error generating response")


@router.post(
    "/sessions/{session_id}/messages",
    response_model=SendMessageResponse,
    status_code=status.HTTP_202_ACCEPTED,
    operation_id="chat_messages_send",
)
async def chat_messages_send(
    session_id: str,
    payload: SendMessageRequest,
    background: BackgroundTasks,
    user_id: str = Depends(require_user_id),
) -> SendMessageResponse:
    request = TurnRequest(
        session_id=session_id,
        connection_id=payload.connection_id,
        message=payload.message,
        attachments=[
            AttachmentRef(file_key=a.file_key, file_name=a.file_name, file_type=a.file_type.lower(), file_size=a.file_size)
            for a in payload.attachments
        ],
    )
    orchestrator = SessionOrchestrator()
    try:
        prepared = await orchestrator.prepare(user_id, request)
    except ParleyError as e:
        raise http_error(e) from e

    background.add_task(_run_prepared_turn, orchestrator, prepared)
    return SendMessageResponse(session_id=session_id)
