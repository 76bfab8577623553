from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Sequence
from typing import ClassVar

import httpx

from parley.core.errors import UpstreamProviderError
from parley.llm.http import open_client
from parley.llm.stream import ChatStream
from parley.llm.types import ChatMessage, ImageEvent, ProviderConfig, ProviderKind, StreamCapture


logger = logging.getLogger(__name__)

TITLE_INSTRUCTION = (
    "Generate a short, descriptive title (max 7 words) for the conversation. "
    "Respond with title only."
)


def clean_title(raw: str) -> str | None:
    title = raw.replace('"', "").replace("'", "").strip()
    title = " ".join(title.split())
    return title[:200] if title else None


def transcript(history: Sequence[ChatMessage]) -> str:
    lines: list[str] = []
    for m in history:
        text = m.text().strip()
        if text:
            lines.append(f"{m.role}: {text}")
    return "\n".join(lines)


class ChatAdapter(ABC):
    """Provider-neutral streaming chat contract."""

    kind: ClassVar[ProviderKind]

    def __init__(
        self,
        config: ProviderConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config: ProviderConfig = config
        self._transport: httpx.AsyncBaseTransport | None = transport

    def _client(self, timeout_s: float | None = None) -> httpx.AsyncClient:
        return open_client(self.config, timeout_s=timeout_s, transport=self._transport)

    def send_message(self, model: str, messages: Sequence[ChatMessage]) -> ChatStream:
        capture = StreamCapture(provider=self.config.name, api=self.kind.value, model=model)
        return ChatStream(self._stream_deltas(model, list(messages), capture), capture)

    @abstractmethod
    def _stream_deltas(
        self, model: str, messages: list[ChatMessage], capture: StreamCapture
    ) -> AsyncIterator[str]: ...

    @abstractmethod
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
        """One non-streaming call returning the reply text."""

    async def generate_title(self, model: str, history: Sequence[ChatMessage]) -> str | None:
        try:
            raw = await self.complete(
                model,
                transcript(history),
                system=TITLE_INSTRUCTION,
                max_tokens=100,
            )
        except Exception:
            logger.warning("title generation failed provider=%s model=%s", self.config.name, model, exc_info=True)
            return None
        return clean_title(raw)

    @staticmethod
    def supports_image_generation(model: str) -> bool:
        return False

    def stream_image(self, model: str, prompt: str, *, size: str) -> AsyncIterator[ImageEvent]:
        raise UpstreamProviderError(f"{self.kind.value} provider cannot stream image generation")

    async def generate_image(self, model: str, prompt: str, *, size: str) -> bytes:
        raise UpstreamProviderError(f"{self.kind.value} provider does not support image generation")
