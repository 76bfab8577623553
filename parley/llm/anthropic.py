# pyright: reportImplicitOverride=false
from __future__ import annotations

import re
from collections.abc import AsyncIterator
from typing import cast

from parley.core.errors import UpstreamProviderError
from parley.llm.base import ChatAdapter
from parley.llm.http import ensure_ok, translate_errors, usage_int
from parley.llm.sse import iter_sse_json
from parley.llm.types import ChatMessage, ContentPart, ProviderKind, StreamCapture


DEFAULT_MAX_TOKENS = 4096

_RE_IMAGE_DATA_URL = re.compile(r"^data:image/(png|jpeg|gif|webp);base64,(.+)$", re.DOTALL)
_RE_PDF_DATA_URL = re.compile(r"^data:application/pdf;base64,(.+)$", re.DOTALL)


def _block(part: ContentPart) -> dict[str, object]:
    if part.type == "image":
        m = _RE_IMAGE_DATA_URL.match(part.url)
        if m:
            return {
                "type": "image",
                "source": {"type": "base64", "media_type": f"image/{m.group(1)}", "data": m.group(2)},
            }
        return {"type": "image", "source": {"type": "url", "url": part.url}}
    if part.type == "document":
        m = _RE_PDF_DATA_URL.match(part.url)
        if m:
            return {
                "type": "document",
                "source": {"type": "base64", "media_type": "application/pdf", "data": m.group(1)},
            }
        return {"type": "text", "text": ""}
    return {"type": "text", "text": part.text}


def to_messages_payload(messages: list[ChatMessage]) -> tuple[str | None, list[dict[str, object]]]:
    """Split system text out and map the rest to Messages API turns."""
    system: str | None = None
    out: list[dict[str, object]] = []
    for m in messages:
        if m.role == "system":
            text = m.text()
            system = f"{system}\n\n{text}" if system else text
            continue
        role = "assistant" if m.role == "assistant" else "user"
        if isinstance(m.content, str):
            out.append({"role": role, "content": m.content})
        else:
            out.append({"role": role, "content": [_block(p) for p in m.content]})
    return system, out


def _as_dict(obj: object) -> dict[str, object] | None:
    return cast(dict[str, object], obj) if isinstance(obj, dict) else None


def _error_message(obj: dict[str, object]) -> str:
    err = _as_dict(obj.get("error"))
    if err is not None and isinstance(err.get("message"), str):
        return cast(str, err["message"])
    return "provider stream reported an error"


def extract_message_text(obj: dict[str, object]) -> str:
    content = obj.get("content")
    if not isinstance(content, list):
        return ""
    chunks: list[str] = []
    for block_obj in cast(list[object], content):
        block = _as_dict(block_obj)
        if block is not None and block.get("type") == "text" and isinstance(block.get("text"), str):
            chunks.append(cast(str, block["text"]))
    return "".join(chunks).strip()


class AnthropicChatAdapter(ChatAdapter):
    kind = ProviderKind.ANTHROPIC

    async def _stream_deltas(
        self, model: str, messages: list[ChatMessage], capture: StreamCapture
    ) -> AsyncIterator[str]:
        system, turns = to_messages_payload(messages)
        payload: dict[str, object] = {
            "model": model,
            "max_tokens": DEFAULT_MAX_TOKENS,
            "messages": turns,
            "stream": True,
        }
        if system:
            payload["system"] = system
        capture.api = "messages"

        async with translate_errors():
            async with self._client() as client:
                async with client.stream("POST", "messages", json=payload) as resp:
                    await ensure_ok(resp)
                    async for obj in iter_sse_json(resp):
                        typ = obj.get("type")
                        if typ == "content_block_delta":
                            delta = _as_dict(obj.get("delta")) or {}
                            text = delta.get("text")
                            if delta.get("type") == "text_delta" and isinstance(text, str) and text:
                                yield text
                        elif typ == "message_start":
                            message = _as_dict(obj.get("message")) or {}
                            usage = _as_dict(message.get("usage")) or {}
                            tokens_in = usage_int(usage, "input_tokens")
                            if tokens_in is not None:
                                capture.input_tokens = tokens_in
                        elif typ == "message_delta":
                            delta = _as_dict(obj.get("delta")) or {}
                            reason = delta.get("stop_reason")
                            if isinstance(reason, str):
                                capture.stop_reason = reason
                            usage = _as_dict(obj.get("usage")) or {}
                            tokens_in = usage_int(usage, "input_tokens")
                            tokens_out = usage_int(usage, "output_tokens")
                            if tokens_in:
                                capture.input_tokens = tokens_in
                            if tokens_out is not None:
                                capture.output_tokens = tokens_out
                        elif typ == "error":
                            raise UpstreamProviderError(_error_message(obj))

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
        payload: dict[str, object] = {
            "model": model,
            "max_tokens": max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system:
            payload["system"] = system
        if temperature is not None:
            payload["temperature"] = temperature

        async with translate_errors():
            async with self._client(timeout_s) as client:
                resp = await client.post("messages", json=payload)
                await ensure_ok(resp)
                return extract_message_text(cast(dict[str, object], resp.json()))
