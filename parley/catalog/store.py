from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import StrEnum
from typing import cast

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from parley.catalog.curator import CuratedModel
from parley.core.config import settings
from parley.core.errors import NotFoundError, ValidationError
from parley.db.models import ModelCacheEntry, utc_now
from parley.db.session import SessionLocal


class Capability(StrEnum):
    YES = "yes"
    NO = "no"
    UNKNOWN = "unknown"

    def to_json(self) -> bool | None:
        if self is Capability.YES:
            return True
        if self is Capability.NO:
            return False
        return None

    @classmethod
    def from_json(cls, raw: object) -> "Capability":
        if raw is True or raw == "yes":
            return cls.YES
        if raw is False or raw == "no":
            return cls.NO
        return cls.UNKNOWN


# Storage/wire key for each capability flag.
CAPABILITY_KEYS: dict[str, str] = {
    "image_generation": "supportsImageGeneration",
    "tts": "supportsTTS",
    "transcription": "supportsTranscription",
    "file_upload": "supportsFileUpload",
}


@dataclass(frozen=True)
class ModelData:
    id: str
    label: str
    capabilities: dict[str, Capability] = field(
        default_factory=lambda: {k: Capability.UNKNOWN for k in CAPABILITY_KEYS}
    )
    source: str = "curated"
    blacklisted: bool = False

    def capability(self, name: str) -> Capability:
        return self.capabilities.get(name, Capability.UNKNOWN)

    def with_capabilities(self, caps: dict[str, Capability]) -> "ModelData":
        merged = dict(self.capabilities)
        merged.update(caps)
        return replace(self, capabilities=merged)

    def to_dict(self) -> dict[str, object]:
        out: dict[str, object] = {"id": self.id, "label": self.label}
        for name, key in CAPABILITY_KEYS.items():
            out[key] = self.capability(name).to_json()
        out["source"] = self.source
        out["blacklisted"] = self.blacklisted
        return out

    @classmethod
    def from_dict(cls, raw: dict[str, object]) -> "ModelData":
        mid = raw.get("id")
        label = raw.get("label")
        source = raw.get("source")
        return cls(
            id=str(mid),
            label=label if isinstance(label, str) and label else str(mid),
            capabilities={name: Capability.from_json(raw.get(key)) for name, key in CAPABILITY_KEYS.items()},
            source=source if source in ("curated", "manual") else "curated",
            blacklisted=raw.get("blacklisted") is True,
        )


def merge_models(curated: Iterable[CuratedModel], existing: Iterable[ModelData]) -> list[ModelData]:
    """Combine a fresh curation result with what is already stored.

    Curated entries start over with every capability unknown; blacklist flags
    carry over by id; manual entries are appended exactly as stored and win
    over a curated entry with the same id.
    """
    existing_list = list(existing)
    blacklisted_ids = {m.id for m in existing_list if m.blacklisted}
    manual = [m for m in existing_list if m.source == "manual"]
    manual_ids = {m.id for m in manual}

    merged: list[ModelData] = []
    seen: set[str] = set()
    for c in curated:
        if c.id in manual_ids or c.id in seen:
            continue
        seen.add(c.id)
        merged.append(ModelData(id=c.id, label=c.display_name, blacklisted=c.id in blacklisted_ids))
    merged.extend(manual)
    return merged


@dataclass(frozen=True)
class CatalogEntry:
    provider_id: str
    models: list[ModelData]
    last_refreshed: datetime | None
    refresh_source: str | None
    last_refresh_attempt: datetime | None
    last_refresh_status: str | None
    last_refresh_error: str | None
    capabilities_refreshed: datetime | None

    @classmethod
    def from_row(cls, row: ModelCacheEntry) -> "CatalogEntry":
        return cls(
            provider_id=row.provider_id,
            models=_load_models(row.models),
            last_refreshed=row.last_refreshed,
            refresh_source=row.refresh_source,
            last_refresh_attempt=row.last_refresh_attempt,
            last_refresh_status=row.last_refresh_status,
            last_refresh_error=row.last_refresh_error,
            capabilities_refreshed=row.capabilities_refreshed,
        )


def _load_models(raw: object) -> list[ModelData]:
    if not isinstance(raw, list):
        return []
    out: list[ModelData] = []
    for item in cast(list[object], raw):
        if isinstance(item, dict):
            out.append(ModelData.from_dict(cast(dict[str, object], item)))
    return out


def _dump_models(models: Iterable[ModelData]) -> list[dict[str, object]]:
    return [m.to_dict() for m in models]


class ModelCatalog:
    """Persistence and freshness rules for per-provider model caches."""

    def __init__(
        self,
        session_factory: sessionmaker[Session] | Callable[[], Session] = SessionLocal,
        *,
        clock: Callable[[], datetime] = utc_now,
        stale_after: timedelta | None = None,
    ):
        self._session_factory: Callable[[], Session] = session_factory
        self.clock: Callable[[], datetime] = clock
        self.stale_after: timedelta = stale_after or timedelta(days=settings.catalog_stale_days)
        # Serializes read-modify-write of one provider's JSON model list within this process.
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard: threading.Lock = threading.Lock()

    def _lock_for(self, provider_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(provider_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[provider_id] = lock
            return lock

    def is_stale(self, entry: CatalogEntry | None) -> bool:
        if entry is None or entry.last_refreshed is None:
            return True
        return (self.clock() - entry.last_refreshed) > self.stale_after

    def get(self, provider_id: str) -> CatalogEntry | None:
        with self._session_factory() as db:
            row = db.get(ModelCacheEntry, provider_id)
            return CatalogEntry.from_row(row) if row is not None else None

    def list_entries(self, provider_ids: Iterable[str] | None = None) -> list[CatalogEntry]:
        with self._session_factory() as db:
            stmt = select(ModelCacheEntry)
            if provider_ids is not None:
                stmt = stmt.where(ModelCacheEntry.provider_id.in_(list(provider_ids)))
            rows = db.execute(stmt).scalars().all()
            return [CatalogEntry.from_row(r) for r in rows]

    def _locked_row(self, db: Session, provider_id: str) -> ModelCacheEntry | None:
        stmt = select(ModelCacheEntry).where(ModelCacheEntry.provider_id == provider_id).with_for_update()
        return db.execute(stmt).scalars().one_or_none()

    def save_refresh(self, provider_id: str, curated: list[CuratedModel], *, source: str) -> CatalogEntry:
        """Overwrite the provider's entry with a freshly merged list."""
        now = self.clock()
        with self._lock_for(provider_id), self._session_factory() as db:
            with db.begin():
                row = self._locked_row(db, provider_id)
                existing = _load_models(row.models) if row is not None else []
                merged = merge_models(curated, existing)
                if row is None:
                    row = ModelCacheEntry(provider_id=provider_id)
                    db.add(row)
                row.models = _dump_models(merged)
                row.last_refreshed = now
                row.refresh_source = source
                row.last_refresh_attempt = now
                row.last_refresh_status = "ok"
                row.last_refresh_error = None
            return CatalogEntry.from_row(row)

    def record_refresh_error(self, provider_id: str, error: str, *, source: str) -> CatalogEntry:
        """Record a failed attempt, leaving the stored models untouched."""
        now = self.clock()
        with self._lock_for(provider_id), self._session_factory() as db:
            with db.begin():
                row = self._locked_row(db, provider_id)
                if row is None:
                    row = ModelCacheEntry(provider_id=provider_id, models=[])
                    db.add(row)
                row.refresh_source = source
                row.last_refresh_attempt = now
                row.last_refresh_status = "error"
                row.last_refresh_error = error[:2000]
            return CatalogEntry.from_row(row)

    def update_model_capabilities(
        self, provider_id: str, model_id: str, caps: dict[str, Capability]
    ) -> ModelData | None:
        """Write one model's probe results as soon as they are known."""
        with self._lock_for(provider_id), self._session_factory() as db:
            with db.begin():
                row = self._locked_row(db, provider_id)
                if row is None:
                    return None
                models = _load_models(row.models)
                updated: ModelData | None = None
                for i, m in enumerate(models):
                    if m.id == model_id:
                        updated = m.with_capabilities(caps)
                        models[i] = updated
                        break
                if updated is None:
                    return None
                row.models = _dump_models(models)
            return updated

    def save_capabilities(self, provider_id: str, results: dict[str, dict[str, Capability]]) -> CatalogEntry | None:
        """Bulk write of a whole provider's probe results."""
        now = self.clock()
        with self._lock_for(provider_id), self._session_factory() as db:
            with db.begin():
                row = self._locked_row(db, provider_id)
                if row is None:
                    return None
                models = [
                    m.with_capabilities(results[m.id]) if m.id in results else m
                    for m in _load_models(row.models)
                ]
                row.models = _dump_models(models)
                row.capabilities_refreshed = now
            return CatalogEntry.from_row(row)

    def _mutate_models(
        self, provider_id: str, fn: Callable[[list[ModelData]], tuple[list[ModelData], ModelData]]
    ) -> ModelData:
        with self._lock_for(provider_id), self._session_factory() as db:
            with db.begin():
                row = self._locked_row(db, provider_id)
                if row is None:
                    row = ModelCacheEntry(provider_id=provider_id, models=[])
                    db.add(row)
                models, result = fn(_load_models(row.models))
                row.models = _dump_models(models)
            return result

    def set_blacklisted(self, provider_id: str, model_id: str, blacklisted: bool) -> ModelData:
        def _apply(models: list[ModelData]) -> tuple[list[ModelData], ModelData]:
            for i, m in enumerate(models):
                if m.id == model_id:
                    models[i] = replace(m, blacklisted=blacklisted)
                    return models, models[i]
            raise NotFoundError(f"model {model_id} is not in the catalog")

        return self._mutate_models(provider_id, _apply)

    def add_manual_model(self, provider_id: str, model_id: str, label: str | None = None) -> ModelData:
        mid = model_id.strip()
        if mid == "":
            raise ValidationError("model id must be non-empty")

        def _apply(models: list[ModelData]) -> tuple[list[ModelData], ModelData]:
            if any(m.id == mid and m.source == "manual" for m in models):
                raise ValidationError(f"model {mid} is already a manual entry")
            entry = ModelData(id=mid, label=(label or "").strip() or mid, source="manual")
            kept = [m for m in models if m.id != mid]
            kept.append(entry)
            return kept, entry

        return self._mutate_models(provider_id, _apply)

    def remove_manual_model(self, provider_id: str, model_id: str) -> ModelData:
        def _apply(models: list[ModelData]) -> tuple[list[ModelData], ModelData]:
            for i, m in enumerate(models):
                if m.id == model_id and m.source == "manual":
                    removed = models.pop(i)
                    return models, removed
            raise NotFoundError(f"manual model {model_id} not found")

        return self._mutate_models(provider_id, _apply)
