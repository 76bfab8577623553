from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from conftest import create_provider
from parley.catalog.curator import CuratedModel
from parley.catalog.store import Capability, ModelCatalog, ModelData, merge_models
from parley.core.errors import NotFoundError, ValidationError


T0 = datetime(2026, 1, 1, 3, 0, 0)


class _Clock:
    def __init__(self, now: datetime):
        self.now: datetime = now

    def __call__(self) -> datetime:
        return self.now


def test_staleness_boundary_is_seven_days() -> None:
    provider_id = create_provider()
    clock = _Clock(T0)
    catalog = ModelCatalog(clock=clock, stale_after=timedelta(days=7))
    entry = catalog.save_refresh(provider_id, [CuratedModel("fake-chat", "Fake Chat")], source="scheduled")

    clock.now = T0 + timedelta(days=7)
    assert catalog.is_stale(entry) is False
    clock.now = T0 + timedelta(days=7, seconds=1)
    assert catalog.is_stale(entry) is True


def test_missing_entry_is_stale() -> None:
    catalog = ModelCatalog()
    assert catalog.is_stale(None) is True
    assert catalog.get("nope") is None


def test_merge_resets_capabilities_and_keeps_blacklist_and_manual() -> None:
    existing = [
        ModelData(id="gpt-4o", label="GPT-4o", capabilities={"image_generation": Capability.YES}, blacklisted=True),
        ModelData(id="old-model", label="Old"),
        ModelData(id="my-custom", label="Custom", source="manual"),
    ]
    curated = [CuratedModel("gpt-4o", "GPT-4o"), CuratedModel("gpt-5", "GPT-5"), CuratedModel("my-custom", "X")]

    merged = merge_models(curated, existing)

    assert [m.id for m in merged] == ["gpt-4o", "gpt-5", "my-custom"]
    gpt4o = merged[0]
    assert gpt4o.blacklisted is True
    assert gpt4o.capability("image_generation") is Capability.UNKNOWN
    assert merged[1].blacklisted is False
    assert merged[2].source == "manual"
    assert merged[2].label == "Custom"


def test_save_refresh_persists_merge_and_status() -> None:
    provider_id = create_provider()
    catalog = ModelCatalog(clock=_Clock(T0))
    _ = catalog.save_refresh(provider_id, [CuratedModel("a", "A"), CuratedModel("b", "B")], source="scheduled")
    _ = catalog.set_blacklisted(provider_id, "b", True)
    _ = catalog.add_manual_model(provider_id, "custom-1", "Custom One")

    entry = catalog.save_refresh(provider_id, [CuratedModel("b", "B2"), CuratedModel("c", "C")], source="manual")

    assert [m.id for m in entry.models] == ["b", "c", "custom-1"]
    assert entry.models[0].blacklisted is True
    assert entry.models[0].label == "B2"
    assert entry.refresh_source == "manual"
    assert entry.last_refresh_status == "ok"
    assert entry.last_refreshed == T0


def test_refresh_error_leaves_models_untouched() -> None:
    provider_id = create_provider()
    catalog = ModelCatalog(clock=_Clock(T0))
    _ = catalog.save_refresh(provider_id, [CuratedModel("a", "A")], source="scheduled")

    entry = catalog.record_refresh_error(provider_id, "curation returned zero models", source="scheduled")

    assert [m.id for m in entry.models] == ["a"]
    assert entry.last_refresh_status == "error"
    assert entry.last_refresh_error == "curation returned zero models"
    assert entry.last_refreshed == T0


def test_capability_writes_are_per_model() -> None:
    provider_id = create_provider()
    catalog = ModelCatalog()
    _ = catalog.save_refresh(provider_id, [CuratedModel("a", "A"), CuratedModel("b", "B")], source="scheduled")

    updated = catalog.update_model_capabilities(provider_id, "a", {"tts": Capability.YES})
    assert updated is not None
    assert catalog.update_model_capabilities(provider_id, "missing", {"tts": Capability.YES}) is None

    entry = catalog.get(provider_id)
    assert entry is not None
    assert entry.models[0].capability("tts") is Capability.YES
    assert entry.models[1].capability("tts") is Capability.UNKNOWN
    assert entry.models[0].to_dict()["supportsTTS"] is True


def test_manual_model_rules() -> None:
    provider_id = create_provider()
    catalog = ModelCatalog()

    with pytest.raises(ValidationError):
        _ = catalog.add_manual_model(provider_id, "  ")
    added = catalog.add_manual_model(provider_id, "custom-1")
    assert added.label == "custom-1"
    with pytest.raises(ValidationError):
        _ = catalog.add_manual_model(provider_id, "custom-1")

    _ = catalog.remove_manual_model(provider_id, "custom-1")
    with pytest.raises(NotFoundError):
        _ = catalog.remove_manual_model(provider_id, "custom-1")
    with pytest.raises(NotFoundError):
        _ = catalog.set_blacklisted(provider_id, "custom-1", True)
