# pyright: reportImplicitOverride=false
from __future__ import annotations

import base64
import binascii
from collections.abc import AsyncIterator
from typing import cast

from parley.core.errors import UpstreamProviderError
from parley.llm.base import ChatAdapter
from parley.llm.http import ensure_ok, translate_errors, usage_int
from parley.llm.sse import iter_sse_json
from parley.llm.types import ChatMessage, ContentPart, ImageEvent, ProviderKind, StreamCapture


# Responses API is unavailable on some OpenAI-compatible gateways; these statuses
# mean "try chat/completions instead" rather than "the request was bad".
_FALLBACK_STATUSES = (400, 404, 405)

_IMAGE_GENERATION_MODELS = ("gpt-5", "gpt-4o")


def _responses_part(part: ContentPart) -> dict[str, object]:
    if part.type == "image":
        return {"type": "input_image", "image_url": part.url, "detail": part.detail or "auto"}
    if part.type == "document":
        return {"type": "input_file", "filename": part.filename, "file_data": part.url}
    return {"type": "input_text", "text": part.text}


def _chat_completions_part(part: ContentPart) -> dict[str, object]:
    if part.type == "image":
        return {"type": "image_url", "image_url": {"url": part.url, "detail": part.detail or "auto"}}
    if part.type == "document":
        return {"type": "file", "file": {"filename": part.filename, "file_data": part.url}}
    return {"type": "text", "text": part.text}


def to_responses_input(messages: list[ChatMessage]) -> list[dict[str, object]]:
    out: list[dict[str, object]] = []
    for m in messages:
        if isinstance(m.content, str) or m.role == "assistant":
            out.append({"role": m.role, "content": m.text()})
            continue
        out.append({"role": m.role, "content": [_responses_part(p) for p in m.content]})
    return out


def to_chat_completions_messages(messages: list[ChatMessage]) -> list[dict[str, object]]:
    out: list[dict[str, object]] = []
    for m in messages:
        if isinstance(m.content, str) or m.role != "user":
            out.append({"role": m.role, "content": m.text()})
            continue
        out.append({"role": m.role, "content": [_chat_completions_part(p) for p in m.content]})
    return out


def _as_dict(obj: object) -> dict[str, object] | None:
    return cast(dict[str, object], obj) if isinstance(obj, dict) else None


def _capture_usage(usage_obj: object, capture: StreamCapture) -> None:
    usage = _as_dict(usage_obj)
    if usage is None:
        return
    prompt = usage_int(usage, "input_tokens", "prompt_tokens")
    completion = usage_int(usage, "output_tokens", "completion_tokens")
    if prompt is not None:
        capture.input_tokens = prompt
    if completion is not None:
        capture.output_tokens = completion


def _error_message(obj: dict[str, object]) -> str:
    err = _as_dict(obj.get("error"))
    if err is None:
        resp = _as_dict(obj.get("response"))
        err = _as_dict(resp.get("error")) if resp is not None else None
    if err is not None and isinstance(err.get("message"), str):
        return cast(str, err["message"])
    msg = obj.get("message")
    return msg if isinstance(msg, str) else "provider stream reported an error"


def extract_responses_text(obj: dict[str, object]) -> str:
    direct = obj.get("output_text")
    if isinstance(direct, str):
        return direct.strip()
    if isinstance(direct, list):
        return "".join(str(x) for x in cast(list[object], direct)).strip()

    chunks: list[str] = []
    output = obj.get("output")
    if isinstance(output, list):
        for item_obj in cast(list[object], output):
            item = _as_dict(item_obj)
            if item is None:
                continue
            content = item.get("content")
            if not isinstance(content, list):
                continue
            for block_obj in cast(list[object], content):
                block = _as_dict(block_obj)
                if block is not None and isinstance(block.get("text"), str):
                    chunks.append(cast(str, block["text"]))
    return "".join(chunks).strip()


def extract_chat_completions_text(obj: dict[str, object]) -> str:
    choices = obj.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    c0 = _as_dict(cast(list[object], choices)[0])
    message = _as_dict(c0.get("message")) if c0 is not None else None
    content = message.get("content") if message is not None else None
    return content.strip() if isinstance(content, str) else ""


class OpenAIChatAdapter(ChatAdapter):
    kind = ProviderKind.OPENAI

    @staticmethod
    def supports_image_generation(model: str) -> bool:
        m = model.lower()
        return any(k in m for k in _IMAGE_GENERATION_MODELS)

    async def _stream_deltas(
        self, model: str, messages: list[ChatMessage], capture: StreamCapture
    ) -> AsyncIterator[str]:
        yielded = False
        try:
            capture.api = "responses"
            async for delta in self._stream_via_responses(model, messages, capture):
                yielded = True
                yield delta
            return
        except UpstreamProviderError as e:
            if yielded or e.status_code not in _FALLBACK_STATUSES:
                raise

        capture.api = "chat_completions"
        async for delta in self._stream_via_chat_completions(model, messages, capture):
            yield delta

    async def _stream_via_responses(
        self, model: str, messages: list[ChatMessage], capture: StreamCapture
    ) -> AsyncIterator[str]:
        payload = {"model": model, "input": to_responses_input(messages), "stream": True}
        async with translate_errors():
            async with self._client() as client:
                async with client.stream("POST", "responses", json=payload) as resp:
                    await ensure_ok(resp)
                    async for obj in iter_sse_json(resp):
                        typ = obj.get("type")
                        if typ == "response.output_text.delta":
                            delta = obj.get("delta")
                            if isinstance(delta, str) and delta != "":
                                yield delta
                        elif typ in ("response.completed", "response.incomplete"):
                            response = _as_dict(obj.get("response")) or {}
                            _capture_usage(response.get("usage"), capture)
                            details = _as_dict(response.get("incomplete_details"))
                            reason = details.get("reason") if details is not None else None
                            if isinstance(reason, str):
                                capture.stop_reason = reason
                            else:
                                status = response.get("status")
                                capture.stop_reason = status if isinstance(status, str) else "completed"
                        elif typ in ("response.failed", "error"):
                            raise UpstreamProviderError(_error_message(obj))

    async def _stream_via_chat_completions(
        self, model: str, messages: list[ChatMessage], capture: StreamCapture
    ) -> AsyncIterator[str]:
        payload = {
            "model": model,
            "messages": to_chat_completions_messages(messages),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        async with translate_errors():
            async with self._client() as client:
                async with client.stream("POST", "chat/completions", json=payload) as resp:
                    await ensure_ok(resp)
                    async for obj in iter_sse_json(resp):
                        if "error" in obj:
                            raise UpstreamProviderError(_error_message(obj))
                        _capture_usage(obj.get("usage"), capture)
                        choices = obj.get("choices")
                        if not isinstance(choices, list) or not choices:
                            continue
                        c0 = _as_dict(cast(list[object], choices)[0]) or {}
                        finish = c0.get("finish_reason")
                        if isinstance(finish, str):
                            capture.stop_reason = finish
                        delta_obj = _as_dict(c0.get("delta")) or {}
                        content = delta_obj.get("content")
                        if isinstance(content, str) and content != "":
                            yield content

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
            "input": prompt,
            "max_output_tokens": max_tokens,
        }
        if system:
            payload["instructions"] = system
        if temperature is not None:
            payload["temperature"] = temperature

        async with translate_errors():
            async with self._client(timeout_s) as client:
                resp = await client.post("responses", json=payload)
                if resp.status_code not in _FALLBACK_STATUSES:
                    await ensure_ok(resp)
                    return extract_responses_text(cast(dict[str, object], resp.json()))

                messages: list[dict[str, object]] = []
                if system:
                    messages.append({"role": "system", "content": system})
                messages.append({"role": "user", "content": prompt})
                cc_payload: dict[str, object] = {
                    "model": model,
                    "messages": messages,
                    "max_tokens": max_tokens,
                }
                if temperature is not None:
                    cc_payload["temperature"] = temperature
                resp = await client.post("chat/completions", json=cc_payload)
                await ensure_ok(resp)
                return extract_chat_completions_text(cast(dict[str, object], resp.json()))

    async def stream_image(self, model: str, prompt: str, *, size: str) -> AsyncIterator[ImageEvent]:
        payload = {
            "model": model,
            "input": prompt,
            "stream": True,
            "tools": [{"type": "image_generation", "size": size, "partial_images": 2}],
        }
        final_seen = False
        async with translate_errors():
            async with self._client() as client:
                async with client.stream("POST", "responses", json=payload) as resp:
                    await ensure_ok(resp)
                    async for obj in iter_sse_json(resp):
                        typ = obj.get("type")
                        if typ in (
                            "response.image_generation_call.in_progress",
                            "response.image_generation_call.generating",
                        ):
                            yield ImageEvent(type="progress", extra={"stage": str(typ).rsplit(".", 1)[-1]})
                        elif typ == "response.image_generation_call.partial_image":
                            b64 = obj.get("partial_image_b64")
                            if isinstance(b64, str) and b64:
                                yield ImageEvent(type="partial", image_b64=b64)
                        elif typ == "response.output_item.done":
                            item = _as_dict(obj.get("item")) or {}
                            result = item.get("result")
                            if item.get("type") == "image_generation_call" and isinstance(result, str):
                                final_seen = True
                                revised = item.get("revised_prompt")
                                yield ImageEvent(
                                    type="completed",
                                    image_b64=result,
                                    revised_prompt=revised if isinstance(revised, str) else None,
                                )
                        elif typ in ("response.failed", "error"):
                            raise UpstreamProviderError(_error_message(obj))
        if not final_seen:
            raise UpstreamProviderError("image stream ended without a final image")

    async def generate_image(self, model: str, prompt: str, *, size: str) -> bytes:
        payload = {"model": model, "prompt": prompt, "size": size, "n": 1}
        async with translate_errors():
            async with self._client() as client:
                resp = await client.post("images/generations", json=payload)
                await ensure_ok(resp)
                body = cast(dict[str, object], resp.json())
        data = body.get("data")
        first = _as_dict(cast(list[object], data)[0]) if isinstance(data, list) and data else None
        b64 = first.get("b64_json") if first is not None else None
        if not isinstance(b64, str) or b64 == "":
            raise UpstreamProviderError("image generation returned no image data")
        try:
            return base64.b64decode(b64)
        except (binascii.Error, ValueError) as e:
            raise UpstreamProviderError("image generation returned invalid base64") from e
