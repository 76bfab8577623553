from __future__ import annotations

import asyncio

import httpx

from conftest import create_provider
from parley.catalog.capabilities import (
    CapabilityProber,
    CapabilityProbes,
    OpenAICapabilityProbes,
    tiny_silence_wav,
)
from parley.catalog.curator import CuratedModel
from parley.catalog.store import Capability, ModelCatalog
from parley.llm.types import ProviderConfig, ProviderKind


def _config(provider_id: str, kind: ProviderKind = ProviderKind.OPENAI) -> ProviderConfig:
    return ProviderConfig(provider_id=provider_id, name="OpenAI", kind=kind, api_key="k")


class _FlakyProbes(CapabilityProbes):
    async def image_generation(self, model: str) -> Capability:
        raise RuntimeError("network exploded")

    async def tts(self, model: str) -> Capability:
        return Capability.YES

    async def transcription(self, model: str) -> Capability:
        return "maybe"  # type: ignore[return-value]


def test_probe_exceptions_become_unknown_and_are_persisted() -> None:
    provider_id = create_provider(kind="openai")
    catalog = ModelCatalog()
    _ = catalog.save_refresh(provider_id, [CuratedModel("m1", "M1"), CuratedModel("m2", "M2")], source="scheduled")
    _ = catalog.add_manual_model(provider_id, "manual-1")

    prober = CapabilityProber(catalog, probes_factory=lambda cfg: _FlakyProbes(cfg))
    report = asyncio.run(prober.probe_provider(_config(provider_id)))

    assert set(report.results) == {"m1", "m2"}
    for caps in report.results.values():
        assert caps["image_generation"] is Capability.UNKNOWN
        assert caps["tts"] is Capability.YES
        assert caps["transcription"] is Capability.UNKNOWN
        assert caps["file_upload"] is Capability.NO

    entry = catalog.get(provider_id)
    assert entry is not None
    assert entry.capabilities_refreshed is not None
    by_id = {m.id: m for m in entry.models}
    assert by_id["m1"].capability("tts") is Capability.YES
    assert by_id["m1"].to_dict()["supportsImageGeneration"] is None
    # Manual entries are never probed.
    assert by_id["manual-1"].capability("tts") is Capability.UNKNOWN


def test_probe_provider_without_entry_is_a_no_op() -> None:
    prober = CapabilityProber(ModelCatalog(), probes_factory=lambda cfg: _FlakyProbes(cfg))
    report = asyncio.run(prober.probe_provider(_config("missing")))
    assert report.results == {}


def test_openai_probes_map_status_codes() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/audio/speech"):
            return httpx.Response(200, content=b"ID3fake-mp3")
        if path.endswith("/audio/transcriptions"):
            return httpx.Response(400, json={"error": {"message": "model does not support audio"}})
        if path.endswith("/responses"):
            return httpx.Response(429, json={"error": {"message": "slow down"}})
        return httpx.Response(200, json={"choices": [{"message": {"content": "red"}}]})

    probes = OpenAICapabilityProbes(_config("p1"), transport=httpx.MockTransport(handler))

    assert asyncio.run(probes.tts("tts-1")) is Capability.YES
    assert asyncio.run(probes.transcription("gpt-4o")) is Capability.NO
    assert asyncio.run(probes.file_upload("gpt-4o")) is Capability.YES


def test_openai_vision_probe_retries_on_responses_api() -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if request.url.path.endswith("/chat/completions"):
            return httpx.Response(
                400, json={"error": {"message": "This model is only supported in v1/responses"}}
            )
        return httpx.Response(200, json={"output_text": "red"})

    probes = OpenAICapabilityProbes(_config("p1"), transport=httpx.MockTransport(handler))
    assert asyncio.run(probes.file_upload("o1-pro")) is Capability.YES
    assert calls == ["/v1/chat/completions", "/v1/responses"]


def test_silence_wav_header() -> None:
    wav = tiny_silence_wav()
    assert wav[:4] == b"RIFF"
    assert wav[8:12] == b"WAVE"
    assert len(wav) == 44 + 16000 // 5 * 2
