from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

import httpx
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from parley.catalog.curator import Curator
from parley.catalog.provider_adapters import ProviderListingAdapter, listing_adapter
from parley.catalog.store import ModelCatalog
from parley.core.config import settings
from parley.core.errors import ParleyError
from parley.db.models import Provider
from parley.db.session import SessionLocal
from parley.llm.registry import build_adapter, curator_models, provider_config
from parley.llm.types import ProviderConfig
from parley.metrics.prometheus import record_catalog_refresh
from parley.notify import AlertSink, default_alert_sink


logger = logging.getLogger(__name__)


@dataclass
class RefreshResult:
    provider_id: str
    provider_name: str
    success: bool
    models_count: int = 0
    error: str | None = None
    raw_models: list[str] = field(default_factory=list)
    filtered_models: list[str] = field(default_factory=list)
    curated_models: list[str] = field(default_factory=list)


@dataclass
class RefreshSummary:
    results: list[RefreshResult]

    @property
    def succeeded(self) -> list[RefreshResult]:
        return [r for r in self.results if r.success]

    @property
    def failed(self) -> list[RefreshResult]:
        return [r for r in self.results if not r.success]

    @property
    def successful_provider_ids(self) -> list[str]:
        return [r.provider_id for r in self.succeeded]


def summary_alert(summary: RefreshSummary) -> tuple[str, str]:
    """(subject, message) describing one refresh run."""
    failed = summary.failed
    succeeded = summary.succeeded
    success_lines = "\n".join(f"- {r.provider_name}: {r.models_count} models cached" for r in succeeded)

    if failed:
        plural = "" if len(failed) == 1 else "s"
        failure_lines = "\n\n".join(f"- Provider: {r.provider_name}\n  Error: {r.error}" for r in failed)
        message = (
            f"Daily model cache refresh completed with {len(failed)} failure(s):\n\n"
            f"{failure_lines}\n\n"
            f"Successful refreshes: {len(succeeded)}\n"
            f"{success_lines}"
        )
        return f"Model Cache Refresh Failed ({len(failed)} provider{plural})", message

    total = sum(r.models_count for r in succeeded)
    message = (
        f"Model cache refresh completed for {len(succeeded)} provider(s), "
        f"{total} models cached:\n{success_lines}"
    )
    return "Model Cache Refresh Succeeded", message


class CatalogRefresher:
    """List, prefilter, curate and persist each active provider's models."""

    def __init__(
        self,
        catalog: ModelCatalog | None = None,
        *,
        session_factory: Callable[[], Session] = SessionLocal,
        alert_sink: AlertSink | None = None,
        concurrency: int | None = None,
        mode: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.catalog: ModelCatalog = catalog or ModelCatalog(session_factory)
        self._session_factory: Callable[[], Session] = session_factory
        self.alert_sink: AlertSink = alert_sink or default_alert_sink()
        self.concurrency: int = max(1, concurrency or settings.catalog_refresh_concurrency)
        self.mode: str = (mode or settings.llm_mode).strip().lower()
        self._transport: httpx.AsyncBaseTransport | None = transport

    def load_providers(
        self, provider_ids: Iterable[str] | None = None
    ) -> tuple[list[ProviderConfig], list[RefreshResult]]:
        """Usable provider configs, plus a failed result for each active provider whose credentials are unusable."""
        wanted = [p for p in (provider_ids or []) if p]
        with self._session_factory() as db:
            stmt = select(Provider).where(Provider.active.is_(True)).order_by(Provider.name.asc())
            if wanted:
                stmt = stmt.where(Provider.id.in_(wanted))
            rows = db.execute(stmt).scalars().all()

        configs: list[ProviderConfig] = []
        unusable: list[RefreshResult] = []
        for row in rows:
            try:
                configs.append(provider_config(row))
            except ValueError as e:
                logger.warning("provider=%s has unusable credentials: %s", row.name, e)
                unusable.append(
                    RefreshResult(
                        provider_id=row.id,
                        provider_name=row.name,
                        success=False,
                        error=f"unusable credentials: {e}",
                    )
                )
        return configs, unusable

    def active_providers(self, provider_ids: Iterable[str] | None = None) -> list[ProviderConfig]:
        configs, _ = self.load_providers(provider_ids)
        return configs

    def _listing(self, config: ProviderConfig) -> ProviderListingAdapter:
        return listing_adapter(config, transport=self._transport, mode=self.mode)

    def _curator(self, config: ProviderConfig) -> Curator:
        primary, fallback = curator_models(config.kind)
        adapter = build_adapter(config, transport=self._transport, mode=self.mode)
        return Curator(adapter, primary_model=primary, fallback_model=fallback)

    async def _record_error(self, provider_id: str, error: str, *, source: str) -> None:
        try:
            _ = await asyncio.to_thread(self.catalog.record_refresh_error, provider_id, error, source=source)
        except SQLAlchemyError:
            logger.exception("could not record refresh error provider_id=%s", provider_id)

    async def refresh_provider(self, config: ProviderConfig, *, source: str) -> RefreshResult:
        result = RefreshResult(provider_id=config.provider_id, provider_name=config.name, success=False)
        started = time.perf_counter()
        logger.info("refreshing models provider=%s source=%s", config.name, source)
        try:
            listing = self._listing(config)
            result.raw_models = await listing.list_models()
            result.filtered_models = listing.prefilter_or_raw(result.raw_models)

            curated = await self._curator(config).curate(
                result.filtered_models, kind=config.kind, provider_name=config.name
            )
            result.curated_models = [c.id for c in curated]

            entry = await asyncio.to_thread(
                self.catalog.save_refresh, config.provider_id, curated, source=source
            )
            result.models_count = len(entry.models)
            result.success = True
        except Exception as e:
            result.error = str(e) or type(e).__name__
            if isinstance(e, (ParleyError, SQLAlchemyError)):
                logger.error("model refresh failed provider=%s err=%s", config.name, result.error)
            else:
                logger.exception("model refresh crashed provider=%s", config.name)
            await self._record_error(config.provider_id, result.error, source=source)

        record_catalog_refresh(
            kind=config.kind.value,
            source=source,
            status="ok" if result.success else "error",
            seconds=time.perf_counter() - started,
        )
        logger.info(
            "refresh done provider=%s ok=%s raw=%d filtered=%d curated=%d",
            config.name,
            result.success,
            len(result.raw_models),
            len(result.filtered_models),
            len(result.curated_models),
        )
        return result

    async def refresh_all(
        self,
        provider_ids: Iterable[str] | None = None,
        *,
        source: str = "scheduled",
    ) -> RefreshSummary:
        configs, unusable = await asyncio.to_thread(self.load_providers, provider_ids)
        if not configs and not unusable:
            logger.info("no active providers to refresh")
            return RefreshSummary(results=[])

        for failed in unusable:
            await self._record_error(failed.provider_id, failed.error or "unusable credentials", source=source)

        sem = asyncio.Semaphore(self.concurrency)

        async def _one(config: ProviderConfig) -> RefreshResult:
            async with sem:
                return await self.refresh_provider(config, source=source)

        results = await asyncio.gather(*(_one(c) for c in configs))
        summary = RefreshSummary(results=sorted([*results, *unusable], key=lambda r: r.provider_name))
        logger.info(
            "model refresh summary: %d succeeded, %d failed", len(summary.succeeded), len(summary.failed)
        )

        subject, message = summary_alert(summary)
        try:
            await self.alert_sink.send(subject, message)
        except httpx.HTTPError:
            logger.exception("failed to deliver refresh summary alert")
        return summary
