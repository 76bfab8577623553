from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from typing import ClassVar, cast

import httpx

from parley.core.errors import UpstreamProviderError
from parley.llm.fake import FAKE_MODEL_IDS
from parley.llm.http import ensure_ok, open_client, translate_errors
from parley.llm.types import ProviderConfig, ProviderKind


logger = logging.getLogger(__name__)

LISTING_TIMEOUT_SECONDS = 30.0
ANTHROPIC_PAGE_LIMIT = 100

_RE_DATE = re.compile(r"\d{4}-\d{2}")
_RE_SNAPSHOT_SUFFIX = re.compile(r"-\d{4}$")

_OPENAI_EXCLUDED_TERMS = (
    "embedding",
    "tts",
    "audio",
    "moderation",
    "realtime",
    "transcribe",
    "whisper",
    "dall-e",
    "image",
)


def _model_ids(body: object) -> list[str]:
    if not isinstance(body, dict):
        raise UpstreamProviderError("model listing returned a non-object body")
    data = cast(dict[str, object], body).get("data")
    if not isinstance(data, list):
        raise UpstreamProviderError("model listing is missing the data array")
    ids: list[str] = []
    for item in cast(list[object], data):
        if isinstance(item, dict):
            mid = cast(dict[str, object], item).get("id")
            if isinstance(mid, str) and mid.strip():
                ids.append(mid.strip())
    return ids


class ProviderListingAdapter(ABC):
    """Fetches raw model ids from one backend and strips the obvious noise."""

    kind: ClassVar[ProviderKind]

    def __init__(
        self,
        config: ProviderConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config: ProviderConfig = config
        self._transport: httpx.AsyncBaseTransport | None = transport

    def _client(self) -> httpx.AsyncClient:
        return open_client(self.config, timeout_s=LISTING_TIMEOUT_SECONDS, transport=self._transport)

    @abstractmethod
    async def list_models(self) -> list[str]: ...

    @staticmethod
    @abstractmethod
    def prefilter(raw: list[str]) -> list[str]: ...

    def prefilter_or_raw(self, raw: list[str]) -> list[str]:
        """Prefilter, but never reduce a non-empty list to nothing."""
        filtered = self.prefilter(raw)
        logger.info(
            "prefiltered provider=%s kind=%s raw=%d kept=%d",
            self.config.name,
            self.kind.value,
            len(raw),
            len(filtered),
        )
        if not filtered:
            return list(raw)
        return filtered


class OpenAIListingAdapter(ProviderListingAdapter):
    kind = ProviderKind.OPENAI

    async def list_models(self) -> list[str]:
        async with translate_errors():
            async with self._client() as client:
                resp = await client.get("models")
                await ensure_ok(resp)
                return _model_ids(cast(object, resp.json()))

    @staticmethod
    def prefilter(raw: list[str]) -> list[str]:
        kept: list[str] = []
        for mid in raw:
            lower = mid.lower()
            if ":" in mid:
                continue
            if any(term in lower for term in _OPENAI_EXCLUDED_TERMS) or lower.startswith("sora"):
                continue
            if _RE_DATE.search(mid) or _RE_SNAPSHOT_SUFFIX.search(mid) or "preview" in lower:
                continue
            kept.append(mid)
        return kept


class AnthropicListingAdapter(ProviderListingAdapter):
    kind = ProviderKind.ANTHROPIC

    async def list_models(self) -> list[str]:
        ids: list[str] = []
        after_id: str | None = None
        async with translate_errors():
            async with self._client() as client:
                while True:
                    params: dict[str, str | int] = {"limit": ANTHROPIC_PAGE_LIMIT}
                    if after_id:
                        params["after_id"] = after_id
                    resp = await client.get("models", params=params)
                    await ensure_ok(resp)
                    body = cast(object, resp.json())
                    ids.extend(_model_ids(body))

                    page = cast(dict[str, object], body)
                    last_id = page.get("last_id")
                    if page.get("has_more") is not True or not isinstance(last_id, str) or not last_id:
                        break
                    after_id = last_id
        return ids

    @staticmethod
    def prefilter(raw: list[str]) -> list[str]:
        return [mid for mid in raw if "embed" not in mid.lower()]


class FakeListingAdapter(ProviderListingAdapter):
    kind = ProviderKind.FAKE

    async def list_models(self) -> list[str]:
        return list(FAKE_MODEL_IDS)

    @staticmethod
    def prefilter(raw: list[str]) -> list[str]:
        return list(raw)


LISTING_ADAPTERS: dict[ProviderKind, type[ProviderListingAdapter]] = {
    ProviderKind.OPENAI: OpenAIListingAdapter,
    ProviderKind.ANTHROPIC: AnthropicListingAdapter,
    ProviderKind.FAKE: FakeListingAdapter,
}


def listing_adapter(
    config: ProviderConfig,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    mode: str = "live",
) -> ProviderListingAdapter:
    if mode == "fake":
        return FakeListingAdapter(config, transport=transport)
    cls = LISTING_ADAPTERS.get(config.kind, OpenAIListingAdapter)
    return cls(config, transport=transport)

