# pyright: reportMissingImports=false
# pyright: reportUnknownArgumentType=false
# pyright: reportUnknownMemberType=false
# pyright: reportUnknownVariableType=false
# pyright: reportCallInDefaultInitializer=false
# pyright: reportDeprecated=false
from __future__ import annotations

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from parley.api.v1.deps import Caller, require_admin
from parley.core.config import settings
from parley.core.credentials import encrypt_secret, mask_encrypted_secret
from parley.db.models import ChatSession, Provider, utc_now
from parley.db.session import get_db
from parley.llm.http import normalize_base_url
from parley.llm.types import ProviderKind


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/providers", tags=["admin"])

_KIND_PATTERN = "^(openai|anthropic|claude|fake)$"


class ProviderBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    kind: str = Field("openai", pattern=_KIND_PATTERN)
    base_url: str | None = Field(None, max_length=2000)
    active: bool = True
    default_model: str = Field("", max_length=100)


class ProviderCreate(ProviderBase):
    api_key: str = Field("", max_length=5000)


class ProviderUpdate(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=100)
    kind: str | None = Field(None, pattern=_KIND_PATTERN)
    base_url: str | None = Field(None, max_length=2000)
    active: bool | None = None
    default_model: str | None = Field(None, max_length=100)
    api_key: str | None = Field(None, max_length=5000)


class ProviderAdminOut(BaseModel):
    id: str
    name: str
    kind: str
    base_url: str | None
    active: bool
    default_model: str

    api_key_present: bool
    api_key_masked: str | None

    created_at: datetime
    updated_at: datetime


class ProviderListResponse(BaseModel):
    items: list[ProviderAdminOut] = Field(default_factory=list)


def _to_provider_out(row: Provider) -> ProviderAdminOut:
    enc = row.api_key_enc
    return ProviderAdminOut(
        id=row.id,
        name=row.name,
        kind=row.kind,
        base_url=row.base_url,
        active=row.active,
        default_model=row.default_model,
        api_key_present=bool(enc),
        api_key_masked=mask_encrypted_secret(enc),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _checked_base_url(raw: str | None, kind: str) -> str | None:
    if raw is None or raw.strip() == "":
        return None
    try:
        return normalize_base_url(raw, ProviderKind.parse(kind))
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="base_url_invalid")


def _get_or_404(db: Session, provider_id: str) -> Provider:
    row = db.get(Provider, provider_id)
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Provider not found")
    return row


@router.get("", operation_id="admin_providers_list", response_model=ProviderListResponse)
def admin_providers_list(
    active: bool | None = Query(None),
    _admin: Caller = Depends(require_admin),
    db: Session = Depends(get_db),
) -> ProviderListResponse:
    stmt = select(Provider)
    if active is not None:
        stmt = stmt.where(Provider.active == active)
    rows = db.execute(stmt.order_by(Provider.name.asc())).scalars().all()
    return ProviderListResponse(items=[_to_provider_out(r) for r in rows])


@router.post(
    "",
    operation_id="admin_providers_create",
    response_model=ProviderAdminOut,
    status_code=status.HTTP_201_CREATED,
)
def admin_providers_create(
    payload: ProviderCreate,
    admin: Caller = Depends(require_admin),
    db: Session = Depends(get_db),
) -> ProviderAdminOut:
    exists = db.execute(select(Provider).where(Provider.name == payload.name)).scalar_one_or_none()
    if exists is not None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Provider name already exists")

    now = utc_now()
    api_key = payload.api_key.strip()
    row = Provider(
        name=payload.name,
        kind=ProviderKind.parse(payload.kind).value,
        base_url=_checked_base_url(payload.base_url, payload.kind),
        api_key_enc=encrypt_secret(api_key, key=settings.secrets_master_key_bytes) if api_key else None,
        active=payload.active,
        default_model=payload.default_model,
        created_at=now,
        updated_at=now,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    logger.info("provider created id=%s name=%s by=%s", row.id, row.name, admin.id)
    return _to_provider_out(row)


@router.get("/{provider_id}", operation_id="admin_providers_get", response_model=ProviderAdminOut)
def admin_providers_get(
    provider_id: str,
    _admin: Caller = Depends(require_admin),
    db: Session = Depends(get_db),
) -> ProviderAdminOut:
    return _to_provider_out(_get_or_404(db, provider_id))


@router.patch("/{provider_id}", operation_id="admin_providers_update", response_model=ProviderAdminOut)
def admin_providers_update(
    provider_id: str,
    payload: ProviderUpdate,
    admin: Caller = Depends(require_admin),
    db: Session = Depends(get_db),
) -> ProviderAdminOut:
    row = _get_or_404(db, provider_id)
    changed: list[str] = []

    if payload.name is not None and payload.name != row.name:
        exists = db.execute(
            select(Provider).where(Provider.name == payload.name, Provider.id != row.id)
        ).scalar_one_or_none()
        if exists is not None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Provider name already exists")
        row.name = payload.name
        changed.append("name")
    if payload.kind is not None:
        kind = ProviderKind.parse(payload.kind).value
        if kind != row.kind:
            row.kind = kind
            changed.append("kind")
    if "base_url" in payload.model_fields_set:
        next_base_url = _checked_base_url(payload.base_url, row.kind)
        if next_base_url != row.base_url:
            row.base_url = next_base_url
            changed.append("base_url")
    if payload.active is not None and payload.active != row.active:
        row.active = payload.active
        changed.append("active")
    if payload.default_model is not None and payload.default_model != row.default_model:
        row.default_model = payload.default_model
        changed.append("default_model")
    if "api_key" in payload.model_fields_set:
        if payload.api_key is None or payload.api_key.strip() == "":
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="api_key cannot be cleared via update",
            )
        row.api_key_enc = encrypt_secret(payload.api_key.strip(), key=settings.secrets_master_key_bytes)
        changed.append("api_key")

    if not changed:
        return _to_provider_out(row)

    row.updated_at = utc_now()
    db.commit()
    db.refresh(row)
    logger.info("provider updated id=%s changed=%s by=%s", row.id, ",".join(changed), admin.id)
    return _to_provider_out(row)


@router.delete("/{provider_id}", operation_id="admin_providers_delete")
def admin_providers_delete(
    provider_id: str,
    admin: Caller = Depends(require_admin),
    db: Session = Depends(get_db),
) -> dict[str, object]:
    row = _get_or_404(db, provider_id)
    in_use = db.execute(select(ChatSession.id).where(ChatSession.provider_id == row.id).limit(1)).first()
    if in_use is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Provider has chat sessions; deactivate it instead",
        )
    db.delete(row)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Provider is still referenced")
    logger.info("provider deleted id=%s by=%s", provider_id, admin.id)
    return {"ok": True}
