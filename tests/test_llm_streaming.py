from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from parley.core.errors import UpstreamProviderError, UpstreamTimeoutError
from parley.llm.anthropic import AnthropicChatAdapter, to_messages_payload
from parley.llm.fake import FakeChatAdapter
from parley.llm.openai import OpenAIChatAdapter, to_chat_completions_messages
from parley.llm.sse import iter_sse_json
from parley.llm.types import ChatMessage, ContentPart, ProviderConfig, ProviderKind


def _sse(*events: dict[str, object], done: bool = False) -> bytes:
    blocks = [f"data: {json.dumps(e)}\n\n" for e in events]
    if done:
        blocks.append("data: [DONE]\n\n")
    return "".join(blocks).encode("utf-8")


def _sse_response(body: bytes) -> httpx.Response:
    return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})


def _openai_config() -> ProviderConfig:
    return ProviderConfig(provider_id="p1", name="OpenAI", kind=ProviderKind.OPENAI, api_key="sk-test")


def _anthropic_config() -> ProviderConfig:
    return ProviderConfig(provider_id="p2", name="Anthropic", kind=ProviderKind.ANTHROPIC, api_key="sk-ant")


async def _collect(adapter, messages: list[ChatMessage], model: str = "m") -> tuple[list[str], object]:
    stream = adapter.send_message(model, messages)
    deltas = [d async for d in stream]
    return deltas, await stream.final_result()


def test_openai_responses_stream_yields_ordered_deltas() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        assert request.headers["authorization"] == "Bearer sk-test"
        body = json.loads(request.content)
        assert body["stream"] is True
        return _sse_response(
            _sse(
                {"type": "response.output_text.delta", "delta": "Hel"},
                {"type": "response.output_text.delta", "delta": "lo"},
                {
                    "type": "response.completed",
                    "response": {"status": "completed", "usage": {"input_tokens": 3, "output_tokens": 2}},
                },
            )
        )

    adapter = OpenAIChatAdapter(_openai_config(), transport=httpx.MockTransport(handler))
    deltas, result = asyncio.run(_collect(adapter, [ChatMessage(role="user", content="hi")]))

    assert deltas == ["Hel", "lo"]
    assert seen == ["/v1/responses"]
    assert result.content == "Hello"
    assert result.stop_reason == "completed"
    assert (result.input_tokens, result.output_tokens) == (3, 2)


def test_openai_falls_back_to_chat_completions_when_responses_missing() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        if request.url.path.endswith("/responses"):
            return httpx.Response(404, json={"error": {"message": "not found"}})
        return _sse_response(
            _sse(
                {"choices": [{"delta": {"content": "Hi"}}]},
                {"choices": [{"delta": {"content": " there"}, "finish_reason": "stop"}]},
                {"choices": [], "usage": {"prompt_tokens": 4, "completion_tokens": 2}},
                done=True,
            )
        )

    adapter = OpenAIChatAdapter(_openai_config(), transport=httpx.MockTransport(handler))
    stream = adapter.send_message("gpt-4o", [ChatMessage(role="user", content="hi")])
    result = asyncio.run(stream.final_result())

    assert seen == ["/v1/responses", "/v1/chat/completions"]
    assert result.content == "Hi there"
    assert result.stop_reason == "stop"
    assert result.output_tokens == 2
    assert stream.capture.api == "chat_completions"


def test_openai_auth_failure_is_not_retried() -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        return httpx.Response(401, json={"error": {"message": "bad key"}})

    adapter = OpenAIChatAdapter(_openai_config(), transport=httpx.MockTransport(handler))
    stream = adapter.send_message("gpt-4o", [ChatMessage(role="user", content="hi")])

    with pytest.raises(UpstreamProviderError) as exc:
        _ = asyncio.run(stream.final_result())
    assert exc.value.status_code == 401
    assert calls == ["/v1/responses"]


def test_openai_stream_error_event_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return _sse_response(
            _sse(
                {"type": "response.output_text.delta", "delta": "par"},
                {"type": "response.failed", "response": {"error": {"message": "overloaded"}}},
            )
        )

    adapter = OpenAIChatAdapter(_openai_config(), transport=httpx.MockTransport(handler))

    async def _run() -> list[str]:
        got: list[str] = []
        async for d in adapter.send_message("m", [ChatMessage(role="user", content="hi")]):
            got.append(d)
        return got

    with pytest.raises(UpstreamProviderError, match="overloaded"):
        _ = asyncio.run(_run())


def test_transport_timeout_maps_to_upstream_timeout() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    adapter = OpenAIChatAdapter(_openai_config(), transport=httpx.MockTransport(handler))
    with pytest.raises(UpstreamTimeoutError):
        _ = asyncio.run(adapter.complete("m", "hello"))


def test_anthropic_stream_collects_text_and_usage() -> None:
    captured: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/messages"
        assert request.headers["x-api-key"] == "sk-ant"
        assert request.headers["anthropic-version"] == "2023-06-01"
        captured.update(json.loads(request.content))
        return _sse_response(
            _sse(
                {"type": "message_start", "message": {"usage": {"input_tokens": 9}}},
                {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Bon"}},
                {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "jour"}},
                {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 2}},
                {"type": "message_stop"},
            )
        )

    adapter = AnthropicChatAdapter(_anthropic_config(), transport=httpx.MockTransport(handler))
    messages = [
        ChatMessage(role="system", content="be brief"),
        ChatMessage(role="user", content="hello"),
    ]
    deltas, result = asyncio.run(_collect(adapter, messages, model="claude-sonnet-4"))

    assert deltas == ["Bon", "jour"]
    assert result.content == "Bonjour"
    assert result.stop_reason == "end_turn"
    assert (result.input_tokens, result.output_tokens) == (9, 2)
    assert captured["system"] == "be brief"
    assert captured["messages"] == [{"role": "user", "content": "hello"}]


def test_anthropic_payload_inlines_image_and_pdf_data_urls() -> None:
    system, turns = to_messages_payload(
        [
            ChatMessage(
                role="user",
                content=[
                    ContentPart.of_text("look"),
                    ContentPart.of_image("data:image/png;base64,AAAA"),
                    ContentPart.of_image("https://example.test/cat.jpg"),
                    ContentPart.of_document("a.pdf", "data:application/pdf;base64,JVBE"),
                ],
            )
        ]
    )
    assert system is None
    blocks = turns[0]["content"]
    assert blocks == [
        {"type": "text", "text": "look"},
        {"type": "image", "source": {"type": "base64", "media_type": "image/png", "data": "AAAA"}},
        {"type": "image", "source": {"type": "url", "url": "https://example.test/cat.jpg"}},
        {"type": "document", "source": {"type": "base64", "media_type": "application/pdf", "data": "JVBE"}},
    ]


def test_chat_completions_keeps_assistant_turns_as_text() -> None:
    out = to_chat_completions_messages(
        [
            ChatMessage(role="user", content=[ContentPart.of_text("a"), ContentPart.of_image("https://x/y.png")]),
            ChatMessage(role="assistant", content="b"),
        ]
    )
    assert out[0]["content"] == [
        {"type": "text", "text": "a"},
        {"type": "image_url", "image_url": {"url": "https://x/y.png", "detail": "auto"}},
    ]
    assert out[1] == {"role": "assistant", "content": "b"}


def test_final_result_drains_unread_stream() -> None:
    adapter = FakeChatAdapter(ProviderConfig(provider_id="f", name="Fake", kind=ProviderKind.FAKE, api_key=""))
    stream = adapter.send_message("fake-chat", [ChatMessage(role="user", content="yo")])
    result = asyncio.run(stream.final_result())
    assert result.content == "AI: yo"


def test_chat_stream_is_single_pass() -> None:
    adapter = FakeChatAdapter(ProviderConfig(provider_id="f", name="Fake", kind=ProviderKind.FAKE, api_key=""))
    stream = adapter.send_message("fake-chat", [ChatMessage(role="user", content="x")])
    _ = stream.__aiter__()
    with pytest.raises(RuntimeError):
        _ = stream.__aiter__()


class _Lines:
    def __init__(self, lines: list[str]):
        self._lines = lines

    async def aiter_lines(self):
        for line in self._lines:
            yield line


def test_sse_parser_joins_multiline_data_and_skips_noise() -> None:
    lines = [
        ": keepalive",
        "event: message",
        'data: {"a":',
        "data: 1}",
        "",
        "data: not-json",
        "",
        "data: [1, 2]",
        "",
        'data: {"b": 2}',
        "",
        "data: [DONE]",
        "",
        'data: {"c": 3}',
        "",
    ]

    async def _run() -> list[dict[str, object]]:
        return [obj async for obj in iter_sse_json(_Lines(lines))]

    assert asyncio.run(_run()) == [{"a": 1}, {"b": 2}]


def test_anthropic_complete_non_json_body_is_upstream_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="upstream gateway says hi")

    adapter = AnthropicChatAdapter(_anthropic_config(), transport=httpx.MockTransport(handler))
    with pytest.raises(UpstreamProviderError):
        _ = asyncio.run(adapter.complete("claude-haiku-4-5", "list models"))
