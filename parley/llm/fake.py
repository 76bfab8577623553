# pyright: reportImplicitOverride=false
from __future__ import annotations

import asyncio
import base64
import json
from collections.abc import AsyncIterator, Callable

from parley.llm.base import ChatAdapter
from parley.llm.types import ChatMessage, ImageEvent, ProviderKind, StreamCapture


# 1x1 transparent PNG.
TINY_PNG_B64 = (
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mP8z8DwHwAFBQIAX8jx0gAAAABJRU5ErkJggg=="
)

FAKE_MODEL_IDS = ["fake-chat", "fake-chat-mini", "fake-image"]


async def fake_chat_tokens(text: str) -> AsyncIterator[str]:
    reply = f"AI: {text}"
    for ch in reply:
        await asyncio.sleep(0)
        yield ch


def default_fake_reply(prompt: str, system: str | None) -> str:
    # The curator prompt lists models as "- <id>" lines and asks for display_name.
    if "display_name" in prompt or (system is not None and "JSON" in system):
        ids = [line[2:].strip() for line in prompt.splitlines() if line.startswith("- ")]
        return json.dumps([{"model_name": i, "display_name": i} for i in ids if i])
    lines = [line for line in prompt.splitlines() if line.strip()]
    last = lines[-1] if lines else ""
    if ": " in last:
        last = last.split(": ", 1)[1]
    return f"AI: {last}"[:80]


class FakeChatAdapter(ChatAdapter):
    """Offline adapter: echoes the last user message one character at a time."""

    kind = ProviderKind.FAKE

    responder: Callable[[str, str | None], str] = staticmethod(default_fake_reply)

    @staticmethod
    def supports_image_generation(model: str) -> bool:
        return "image" in model.lower()

    async def _stream_deltas(
        self, model: str, messages: list[ChatMessage], capture: StreamCapture
    ) -> AsyncIterator[str]:
        capture.api = "fake"
        last_user = next((m.text() for m in reversed(messages) if m.role == "user"), "")
        out_tokens = 0
        async for t in fake_chat_tokens(last_user):
            out_tokens += 1
            yield t
        capture.input_tokens = sum(len(m.text().split()) for m in messages)
        capture.output_tokens = out_tokens
        capture.stop_reason = "stop"

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
        await asyncio.sleep(0)
        return self.responder(prompt, system)

    async def stream_image(self, model: str, prompt: str, *, size: str) -> AsyncIterator[ImageEvent]:
        yield ImageEvent(type="progress", extra={"stage": "in_progress"})
        await asyncio.sleep(0)
        yield ImageEvent(type="partial", image_b64=TINY_PNG_B64)
        yield ImageEvent(type="completed", image_b64=TINY_PNG_B64, revised_prompt=prompt)

    async def generate_image(self, model: str, prompt: str, *, size: str) -> bytes:
        await asyncio.sleep(0)
        return base64.b64decode(TINY_PNG_B64)
