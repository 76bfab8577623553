# pyright: reportMissingImports=false
# pyright: reportUnknownVariableType=false
# pyright: reportUnknownMemberType=false
# pyright: reportUntypedFunctionDecorator=false
from __future__ import annotations

import asyncio
import logging
from typing import Protocol, cast

from parley.catalog.capabilities import CapabilityProber
from parley.catalog.refresh import CatalogRefresher
from parley.catalog.store import ModelCatalog
from parley.realtime.connections import ConnectionRegistry
from parley.workers.celery_app import celery_app


logger = logging.getLogger(__name__)


class _ProbeTask(Protocol):
    def delay(self, provider_ids: list[str]) -> object: ...


@celery_app.task(name="parley.workers.tasks.catalog.refresh_all_providers")
def refresh_all_providers(provider_ids: list[str] | None = None, source: str = "scheduled") -> dict[str, object]:
    summary = asyncio.run(CatalogRefresher().refresh_all(provider_ids, source=source))

    succeeded = summary.successful_provider_ids
    if succeeded:
        # Providers that failed keep their previous capabilities until the next run.
        _ = cast(_ProbeTask, probe_capabilities).delay(provider_ids=succeeded)

    return {
        "ok": not summary.failed,
        "succeeded": len(summary.succeeded),
        "failed": len(summary.failed),
        "errors": {r.provider_name: r.error for r in summary.failed},
    }


@celery_app.task(name="parley.workers.tasks.catalog.probe_capabilities")
def probe_capabilities(provider_ids: list[str]) -> dict[str, object]:
    catalog = ModelCatalog()
    configs = CatalogRefresher(catalog).active_providers(provider_ids)
    if not configs:
        return {"ok": True, "providers": 0, "models": 0}

    reports = asyncio.run(CapabilityProber(catalog).probe_providers(configs))
    probed = sum(len(r.results) for r in reports)
    logger.info("capability pass done providers=%d models=%d", len(reports), probed)
    return {"ok": True, "providers": len(reports), "models": probed}


@celery_app.task(name="parley.workers.tasks.catalog.purge_expired_connections")
def purge_expired_connections() -> dict[str, object]:
    removed = ConnectionRegistry().purge_expired()
    if removed:
        logger.info("purged expired connections count=%d", removed)
    return {"ok": True, "removed": removed}
