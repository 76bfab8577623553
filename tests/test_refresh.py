from __future__ import annotations

import asyncio

import httpx

from conftest import create_provider
from parley.catalog.curator import CuratedModel, Curator
from parley.catalog.provider_adapters import FakeListingAdapter, OpenAIListingAdapter, ProviderListingAdapter
from parley.catalog.refresh import CatalogRefresher, RefreshResult, RefreshSummary, summary_alert
from parley.catalog.store import ModelCatalog
from parley.core.errors import UpstreamProviderError, UpstreamTimeoutError
from parley.db.models import Provider
from parley.db.session import SessionLocal
from parley.llm.fake import FakeChatAdapter
from parley.llm.types import ProviderConfig


class RecordingSink:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    async def send(self, subject: str, message: str) -> None:
        self.sent.append((subject, message))


class _BrokenListing(FakeListingAdapter):
    async def list_models(self) -> list[str]:
        raise UpstreamProviderError("provider returned HTTP 401: invalid key", status_code=401)


def _maintenance_page(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, text="<html>maintenance</html>", headers={"content-type": "text/html"})


class _TimeoutAdapter(FakeChatAdapter):
    async def complete(
        self,
        model: str,
        prompt: str,
        *,
        system: str | None = None,
        max_tokens: int = 256,
        temperature: float | None = None,
        timeout_s: float | None = None,
    ) -> str:
        raise UpstreamTimeoutError("provider call timed out: ReadTimeout")


class _Refresher(CatalogRefresher):
    broken_ids: set[str] = set()
    slow_ids: set[str] = set()
    maintenance_ids: set[str] = set()

    def _listing(self, config: ProviderConfig) -> ProviderListingAdapter:
        if config.provider_id in self.broken_ids:
            return _BrokenListing(config)
        if config.provider_id in self.maintenance_ids:
            return OpenAIListingAdapter(config, transport=httpx.MockTransport(_maintenance_page))
        return super()._listing(config)

    def _curator(self, config: ProviderConfig) -> Curator:
        if config.provider_id in self.slow_ids:
            return Curator(_TimeoutAdapter(config), primary_model="a", fallback_model="b")
        return super()._curator(config)


def test_refresh_all_isolates_failures_and_alerts() -> None:
    ok_id = create_provider(name="Alpha")
    bad_id = create_provider(name="Broken")
    _ = create_provider(name="Disabled", active=False)

    sink = RecordingSink()
    refresher = _Refresher(alert_sink=sink, mode="fake")
    refresher.broken_ids = {bad_id}

    summary = asyncio.run(refresher.refresh_all(source="manual"))

    assert [r.provider_name for r in summary.results] == ["Alpha", "Broken"]
    assert summary.successful_provider_ids == [ok_id]
    assert len(summary.failed) == 1
    assert "401" in (summary.failed[0].error or "")

    catalog = ModelCatalog()
    ok_entry = catalog.get(ok_id)
    assert ok_entry is not None
    assert ok_entry.last_refresh_status == "ok"
    assert ok_entry.refresh_source == "manual"
    assert {m.id for m in ok_entry.models} == {"fake-chat", "fake-chat-mini", "fake-image"}

    bad_entry = catalog.get(bad_id)
    assert bad_entry is not None
    assert bad_entry.last_refresh_status == "error"
    assert bad_entry.models == []

    assert len(sink.sent) == 1
    subject, message = sink.sent[0]
    assert subject == "Model Cache Refresh Failed (1 provider)"
    assert "- Provider: Broken" in message
    assert "Successful refreshes: 1" in message


def test_double_curator_timeout_keeps_previous_models() -> None:
    provider_id = create_provider(name="Slow")
    catalog = ModelCatalog()
    _ = catalog.save_refresh(provider_id, [CuratedModel("kept", "Kept")], source="scheduled")

    refresher = _Refresher(catalog, alert_sink=RecordingSink(), mode="fake")
    refresher.slow_ids = {provider_id}
    summary = asyncio.run(refresher.refresh_all([provider_id]))

    assert summary.successful_provider_ids == []
    entry = catalog.get(provider_id)
    assert entry is not None
    assert [m.id for m in entry.models] == ["kept"]
    assert entry.last_refresh_status == "error"


def test_refresh_with_no_active_providers_sends_nothing() -> None:
    sink = RecordingSink()
    summary = asyncio.run(_Refresher(alert_sink=sink, mode="fake").refresh_all())
    assert summary.results == []
    assert sink.sent == []


def test_success_alert_lists_counts() -> None:
    summary = RefreshSummary(
        results=[
            RefreshResult(provider_id="1", provider_name="A", success=True, models_count=3),
            RefreshResult(provider_id="2", provider_name="B", success=True, models_count=2),
        ]
    )
    subject, message = summary_alert(summary)
    assert subject == "Model Cache Refresh Succeeded"
    assert "5 models cached" in message
    assert "- A: 3 models cached" in message


def test_non_json_listing_fails_only_that_provider() -> None:
    ok_id = create_provider(name="Alpha")
    gateway_id = create_provider(name="Gateway", kind="openai")

    sink = RecordingSink()
    refresher = _Refresher(alert_sink=sink, mode="fake")
    refresher.maintenance_ids = {gateway_id}
    summary = asyncio.run(refresher.refresh_all())

    assert summary.successful_provider_ids == [ok_id]
    assert [r.provider_id for r in summary.failed] == [gateway_id]
    assert "unreadable" in (summary.failed[0].error or "")

    entry = ModelCatalog().get(gateway_id)
    assert entry is not None
    assert entry.last_refresh_status == "error"

    assert len(sink.sent) == 1
    assert sink.sent[0][0] == "Model Cache Refresh Failed (1 provider)"
    assert "- Provider: Gateway" in sink.sent[0][1]


def test_unusable_credentials_are_reported_as_failures() -> None:
    ok_id = create_provider(name="Alpha")
    locked_id = create_provider(name="Locked", kind="openai")
    with SessionLocal() as db:
        row = db.get(Provider, locked_id)
        assert row is not None
        row.api_key_enc = "v1:" + "A" * 40
        db.commit()

    sink = RecordingSink()
    refresher = _Refresher(alert_sink=sink, mode="fake")
    summary = asyncio.run(refresher.refresh_all())

    assert [r.provider_name for r in summary.results] == ["Alpha", "Locked"]
    assert summary.successful_provider_ids == [ok_id]
    assert "unusable credentials" in (summary.failed[0].error or "")
    assert [c.provider_id for c in refresher.active_providers()] == [ok_id]

    entry = ModelCatalog().get(locked_id)
    assert entry is not None
    assert entry.last_refresh_status == "error"
    assert entry.models == []
    assert "- Provider: Locked" in sink.sent[0][1]
