# pyright: reportMissingImports=false
# pyright: reportUnknownArgumentType=false
# pyright: reportUnknownMemberType=false
# pyright: reportUnknownVariableType=false
# pyright: reportCallInDefaultInitializer=false
from __future__ import annotations

import logging
from datetime import datetime
from typing import Protocol, cast

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from parley.api.v1.deps import CamelModel, Caller, http_error, require_admin
from parley.catalog.store import CatalogEntry, ModelCatalog, ModelData
from parley.core.errors import ParleyError
from parley.db.models import Provider
from parley.db.session import get_db
from parley.workers.celery_app import celery_app
from parley.workers.tasks.catalog import refresh_all_providers


logger = logging.getLogger(__name__)


class _AsyncResult(Protocol):
    id: str | None

    def get(self, timeout: float | int | None = None) -> dict[str, object]: ...


class _RefreshTask(Protocol):
    def delay(self, provider_ids: list[str] | None = None, source: str = "scheduled") -> _AsyncResult: ...


router = APIRouter(prefix="/admin/models", tags=["admin"])


class CachedModelOut(CamelModel):
    id: str
    label: str
    source: str
    blacklisted: bool
    supports_image_generation: bool | None = None
    supports_tts: bool | None = Field(default=None, alias="supportsTTS")
    supports_transcription: bool | None = None
    supports_file_upload: bool | None = None


class CacheEntryOut(CamelModel):
    provider_id: str
    provider_name: str
    models: list[CachedModelOut]
    last_refreshed: datetime | None
    refresh_source: str | None
    last_refresh_attempt: datetime | None
    last_refresh_status: str | None
    last_refresh_error: str | None
    capabilities_refreshed: datetime | None
    stale: bool


class CacheListResponse(CamelModel):
    items: list[CacheEntryOut] = Field(default_factory=list)


class RefreshRequest(CamelModel):
    provider_ids: list[str] | None = None


class RefreshResponse(CamelModel):
    task_id: str
    succeeded: int | None = None
    failed: int | None = None


class BlacklistRequest(CamelModel):
    provider_id: str = Field(..., min_length=1)
    model_id: str = Field(..., min_length=1)
    blacklisted: bool = True


class ManualModelRequest(CamelModel):
    provider_id: str = Field(..., min_length=1)
    model_id: str = Field(..., min_length=1, max_length=200)
    label: str | None = Field(None, max_length=200)


def _model_out(m: ModelData) -> CachedModelOut:
    return CachedModelOut(
        id=m.id,
        label=m.label,
        source=m.source,
        blacklisted=m.blacklisted,
        supports_image_generation=m.capability("image_generation").to_json(),
        supports_tts=m.capability("tts").to_json(),
        supports_transcription=m.capability("transcription").to_json(),
        supports_file_upload=m.capability("file_upload").to_json(),
    )


def _entry_out(catalog: ModelCatalog, provider: Provider, entry: CatalogEntry | None) -> CacheEntryOut:
    return CacheEntryOut(
        provider_id=provider.id,
        provider_name=provider.name,
        models=[_model_out(m) for m in (entry.models if entry is not None else [])],
        last_refreshed=entry.last_refreshed if entry is not None else None,
        refresh_source=entry.refresh_source if entry is not None else None,
        last_refresh_attempt=entry.last_refresh_attempt if entry is not None else None,
        last_refresh_status=entry.last_refresh_status if entry is not None else None,
        last_refresh_error=entry.last_refresh_error if entry is not None else None,
        capabilities_refreshed=entry.capabilities_refreshed if entry is not None else None,
        stale=catalog.is_stale(entry),
    )


def _provider_or_404(db: Session, provider_id: str) -> Provider:
    row = db.get(Provider, provider_id)
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Provider not found")
    return row


@router.get("/cache", response_model=CacheListResponse, operation_id="admin_models_cache")
def admin_models_cache(
    _admin: Caller = Depends(require_admin),
    db: Session = Depends(get_db),
) -> CacheListResponse:
    providers = db.execute(select(Provider).order_by(Provider.name.asc())).scalars().all()
    catalog = ModelCatalog()
    entries = {e.provider_id: e for e in catalog.list_entries([p.id for p in providers])}
    return CacheListResponse(items=[_entry_out(catalog, p, entries.get(p.id)) for p in providers])


@router.post("/refresh", response_model=RefreshResponse, operation_id="admin_models_refresh")
def admin_models_refresh(
    payload: RefreshRequest,
    admin: Caller = Depends(require_admin),
) -> RefreshResponse:
    task = cast(_RefreshTask, refresh_all_providers)
    result = task.delay(provider_ids=payload.provider_ids or None, source="manual")
    logger.info("manual model refresh queued task=%s by=%s", result.id, admin.id)

    succeeded: int | None = None
    failed: int | None = None
    if bool(getattr(celery_app.conf, "task_always_eager", False)):
        out = result.get(timeout=5)
        raw_ok = out.get("succeeded")
        raw_failed = out.get("failed")
        succeeded = raw_ok if isinstance(raw_ok, int) else None
        failed = raw_failed if isinstance(raw_failed, int) else None

    return RefreshResponse(task_id=cast(str, result.id), succeeded=succeeded, failed=failed)


@router.post("/blacklist", response_model=CachedModelOut, operation_id="admin_models_blacklist")
def admin_models_blacklist(
    payload: BlacklistRequest,
    admin: Caller = Depends(require_admin),
    db: Session = Depends(get_db),
) -> CachedModelOut:
    _ = _provider_or_404(db, payload.provider_id)
    try:
        model = ModelCatalog().set_blacklisted(payload.provider_id, payload.model_id, payload.blacklisted)
    except ParleyError as e:
        raise http_error(e) from e
    logger.info(
        "model blacklist provider=%s model=%s blacklisted=%s by=%s",
        payload.provider_id,
        payload.model_id,
        payload.blacklisted,
        admin.id,
    )
    return _model_out(model)


@router.post(
    "/manual",
    response_model=CachedModelOut,
    status_code=status.HTTP_201_CREATED,
    operation_id="admin_models_manual_add",
)
def admin_models_manual_add(
    payload: ManualModelRequest,
    admin: Caller = Depends(require_admin),
    db: Session = Depends(get_db),
) -> CachedModelOut:
    _ = _provider_or_404(db, payload.provider_id)
    try:
        model = ModelCatalog().add_manual_model(payload.provider_id, payload.model_id, payload.label)
    except ParleyError as e:
        raise http_error(e) from e
    logger.info("manual model added provider=%s model=%s by=%s", payload.provider_id, model.id, admin.id)
    return _model_out(model)


@router.delete("/manual", operation_id="admin_models_manual_remove")
def admin_models_manual_remove(
    provider_id: str = Query(..., alias="providerId", min_length=1),
    model_id: str = Query(..., alias="modelId", min_length=1),
    admin: Caller = Depends(require_admin),
    db: Session = Depends(get_db),
) -> dict[str, object]:
    _ = _provider_or_404(db, provider_id)
    try:
        _ = ModelCatalog().remove_manual_model(provider_id, model_id)
    except ParleyError as e:
        raise http_error(e) from e
    logger.info("manual model removed provider=%s model=%s by=%s", provider_id, model_id, admin.id)
    return {"ok": True}
