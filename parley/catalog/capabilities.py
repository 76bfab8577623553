from __future__ import annotations

import asyncio
import logging
import struct
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

import httpx
from sqlalchemy.exc import SQLAlchemyError

from parley.catalog.store import Capability, ModelCatalog
from parley.core.config import settings
from parley.core.errors import ProbeFailure, UpstreamProviderError
from parley.llm.fake import TINY_PNG_B64
from parley.llm.http import ensure_ok, open_client, translate_errors
from parley.llm.types import ProviderConfig, ProviderKind
from parley.metrics.prometheus import record_probe


logger = logging.getLogger(__name__)

IMAGE_PROBE_PROMPT = "Generate a simple image of a red circle on a white background."
TTS_PROBE_TEXT = "Hello from the capability checker."
VISION_PROBE_TEXT = "What color is this pixel?"

# Chat Completions rejects some models structurally; these messages mean
# "ask again on the Responses API", not "this model cannot see images".
_RESPONSES_ONLY_MARKERS = (
    "only supported in v1/responses",
    "not supported in v1/chat/completions",
    "use 'max_completion_tokens'",
)


def tiny_silence_wav(*, sample_rate: int = 16000, duration_s: float = 0.2) -> bytes:
    """0.2s of 16-bit mono PCM silence wrapped in a RIFF/WAVE header."""
    num_samples = int(sample_rate * duration_s)
    bytes_per_sample = 2
    data_size = num_samples * bytes_per_sample
    header = b"RIFF" + struct.pack("<I", 36 + data_size) + b"WAVE"
    fmt = b"fmt " + struct.pack(
        "<IHHIIHH",
        16,
        1,
        1,
        sample_rate,
        sample_rate * bytes_per_sample,
        bytes_per_sample,
        16,
    )
    data = b"data" + struct.pack("<I", data_size) + b"\x00" * data_size
    return header + fmt + data


def _rejected(e: UpstreamProviderError) -> bool:
    # 4xx other than throttling: the provider looked at the request and said no.
    return e.status_code is not None and 400 <= e.status_code < 500 and e.status_code not in (408, 429)


class CapabilityProbes:
    """Per-provider probe calls. Each returns YES/NO or raises for 'unknown'."""

    def __init__(
        self,
        config: ProviderConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout_s: float | None = None,
    ):
        self.config: ProviderConfig = config
        self._transport: httpx.AsyncBaseTransport | None = transport
        self.timeout_s: float = timeout_s if timeout_s is not None else settings.probe_timeout_seconds

    def _client(self) -> httpx.AsyncClient:
        return open_client(self.config, timeout_s=self.timeout_s, transport=self._transport)

    async def _post_json(self, path: str, payload: dict[str, object]) -> httpx.Response:
        async with translate_errors():
            async with self._client() as client:
                resp = await client.post(path, json=payload)
                await ensure_ok(resp)
                return resp

    async def _supported_if_accepted(self, call: Awaitable[object]) -> Capability:
        try:
            _ = await call
        except UpstreamProviderError as e:
            if _rejected(e):
                return Capability.NO
            raise
        return Capability.YES

    async def image_generation(self, model: str) -> Capability:
        return Capability.NO

    async def tts(self, model: str) -> Capability:
        return Capability.NO

    async def transcription(self, model: str) -> Capability:
        return Capability.NO

    async def file_upload(self, model: str) -> Capability:
        return Capability.NO

    def all(self) -> dict[str, Callable[[str], Awaitable[Capability]]]:
        return {
            "image_generation": self.image_generation,
            "tts": self.tts,
            "transcription": self.transcription,
            "file_upload": self.file_upload,
        }


class OpenAICapabilityProbes(CapabilityProbes):
    async def image_generation(self, model: str) -> Capability:
        return await self._supported_if_accepted(
            self._post_json(
                "responses",
                {
                    "model": model,
                    "input": IMAGE_PROBE_PROMPT,
                    "tools": [{"type": "image_generation"}],
                },
            )
        )

    async def tts(self, model: str) -> Capability:
        async def _call() -> None:
            resp = await self._post_json(
                "audio/speech", {"model": model, "voice": "alloy", "input": TTS_PROBE_TEXT}
            )
            if len(resp.content) == 0:
                raise ProbeFailure("speech endpoint returned no audio")

        return await self._supported_if_accepted(_call())

    async def transcription(self, model: str) -> Capability:
        async def _call() -> None:
            async with translate_errors():
                async with self._client() as client:
                    resp = await client.post(
                        "audio/transcriptions",
                        data={"model": model},
                        files={"file": ("silence.wav", tiny_silence_wav(), "audio/wav")},
                    )
                    await ensure_ok(resp)

        return await self._supported_if_accepted(_call())

    async def file_upload(self, model: str) -> Capability:
        data_url = f"data:image/png;base64,{TINY_PNG_B64}"
        try:
            _ = await self._post_json(
                "chat/completions",
                {
                    "model": model,
                    "messages": [
                        {
                            "role": "user",
                            "content": [
                                {"type": "text", "text": VISION_PROBE_TEXT},
                                {"type": "image_url", "image_url": {"url": data_url}},
                            ],
                        }
                    ],
                    "max_tokens": 10,
                },
            )
            return Capability.YES
        except UpstreamProviderError as e:
            detail = f"{e} {e.body or ''}".lower()
            if not any(marker in detail for marker in _RESPONSES_ONLY_MARKERS):
                if _rejected(e):
                    return Capability.NO
                raise

        return await self._supported_if_accepted(
            self._post_json(
                "responses",
                {
                    "model": model,
                    "input": [
                        {
                            "role": "user",
                            "content": [
                                {"type": "input_text", "text": VISION_PROBE_TEXT},
                                {"type": "input_image", "image_url": data_url, "detail": "low"},
                            ],
                        }
                    ],
                    "max_output_tokens": 64,
                },
            )
        )


class AnthropicCapabilityProbes(CapabilityProbes):
    """Claude has no image, speech or transcription surface; only vision is probed."""

    async def file_upload(self, model: str) -> Capability:
        try:
            _ = await self._post_json(
                "messages",
                {
                    "model": model,
                    "max_tokens": 10,
                    "messages": [
                        {
                            "role": "user",
                            "content": [
                                {
                                    "type": "image",
                                    "source": {
                                        "type": "base64",
                                        "media_type": "image/png",
                                        "data": TINY_PNG_B64,
                                    },
                                },
                                {"type": "text", "text": VISION_PROBE_TEXT},
                            ],
                        }
                    ],
                },
            )
        except UpstreamProviderError as e:
            # Unknown model ids say nothing about vision support.
            if e.status_code == 404:
                raise ProbeFailure(f"model {model} not found") from e
            if _rejected(e):
                return Capability.NO
            raise
        return Capability.YES


class FakeCapabilityProbes(CapabilityProbes):
    async def image_generation(self, model: str) -> Capability:
        await asyncio.sleep(0)
        return Capability.YES if "image" in model.lower() else Capability.NO

    async def file_upload(self, model: str) -> Capability:
        await asyncio.sleep(0)
        return Capability.YES


PROBES: dict[ProviderKind, type[CapabilityProbes]] = {
    ProviderKind.OPENAI: OpenAICapabilityProbes,
    ProviderKind.ANTHROPIC: AnthropicCapabilityProbes,
    ProviderKind.FAKE: FakeCapabilityProbes,
}


def probes_for(
    config: ProviderConfig,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    mode: str | None = None,
) -> CapabilityProbes:
    if (mode or settings.llm_mode) == "fake":
        return FakeCapabilityProbes(config, transport=transport)
    return PROBES.get(config.kind, OpenAICapabilityProbes)(config, transport=transport)


@dataclass
class ProbeReport:
    provider_id: str
    results: dict[str, dict[str, Capability]] = field(default_factory=dict)


class CapabilityProber:
    def __init__(
        self,
        catalog: ModelCatalog,
        *,
        probes_factory: Callable[[ProviderConfig], CapabilityProbes] = probes_for,
        concurrency: int | None = None,
    ):
        self.catalog: ModelCatalog = catalog
        self.probes_factory: Callable[[ProviderConfig], CapabilityProbes] = probes_factory
        self.concurrency: int = concurrency or settings.capability_probe_concurrency

    async def _run_probe(
        self, name: str, probe: Callable[[str], Awaitable[Capability]], model_id: str
    ) -> Capability:
        try:
            result = await probe(model_id)
            if not isinstance(result, Capability):
                raise ProbeFailure(f"probe {name} returned {result!r}")
        except Exception:
            logger.warning("capability probe %s failed for model=%s", name, model_id, exc_info=True)
            result = Capability.UNKNOWN
        record_probe(capability=name, result=result.value)
        return result

    async def probe_model(self, probes: CapabilityProbes, model_id: str) -> dict[str, Capability]:
        named = list(probes.all().items())
        results = await asyncio.gather(*(self._run_probe(n, fn, model_id) for n, fn in named))
        return {n: r for (n, _), r in zip(named, results)}

    async def probe_provider(self, config: ProviderConfig) -> ProbeReport:
        report = ProbeReport(provider_id=config.provider_id)
        entry = await asyncio.to_thread(self.catalog.get, config.provider_id)
        if entry is None:
            logger.info("no catalog entry to probe provider=%s", config.provider_id)
            return report

        model_ids = [m.id for m in entry.models if m.source == "curated"]
        if not model_ids:
            return report

        probes = self.probes_factory(config)
        sem = asyncio.Semaphore(self.concurrency)

        async def _one(model_id: str) -> None:
            async with sem:
                caps = await self.probe_model(probes, model_id)
            report.results[model_id] = caps
            try:
                _ = await asyncio.to_thread(
                    self.catalog.update_model_capabilities, config.provider_id, model_id, caps
                )
            except SQLAlchemyError:
                # The bulk write below retries the same data.
                logger.exception("capability write failed provider=%s model=%s", config.provider_id, model_id)

        _ = await asyncio.gather(*(_one(mid) for mid in model_ids))
        _ = await asyncio.to_thread(self.catalog.save_capabilities, config.provider_id, report.results)
        logger.info(
            "capabilities refreshed provider=%s models=%d", config.provider_id, len(report.results)
        )
        return report

    async def probe_providers(self, configs: list[ProviderConfig]) -> list[ProbeReport]:
        reports: list[ProbeReport] = []
        for config in configs:
            try:
                reports.append(await self.probe_provider(config))
            except SQLAlchemyError:
                logger.exception("capability pass failed provider=%s", config.provider_id)
        return reports
