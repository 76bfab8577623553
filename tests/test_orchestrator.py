from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from pathlib import Path

import pytest

from conftest import create_provider
from parley.chat.images import ImagePipeline
from parley.chat.orchestrator import SessionOrchestrator
from parley.chat.sessions import SessionRepository
from parley.chat.turn import AttachmentRef, TurnPush, TurnRequest
from parley.core.errors import NotFoundError, SessionBusyError, UpstreamProviderError, ValidationError
from parley.llm.classifier import Classifier
from parley.llm.fake import TINY_PNG_B64, FakeChatAdapter, default_fake_reply
from parley.llm.types import ImageEvent, ProviderConfig, ProviderKind
from parley.realtime.connections import ConnectionRegistry
from parley.realtime.push import LocalPushTransport, PushChannel, PushResult
from parley.storage.objects import ObjectStore


FAKE_CONFIG = ProviderConfig(provider_id="f", name="Fake AI", kind=ProviderKind.FAKE, api_key="")


class RecordingChannel(PushChannel):
    def __init__(self) -> None:
        super().__init__(ConnectionRegistry(), LocalPushTransport())
        self.sent: list[dict[str, object]] = []

    async def send(self, connection_id: str, payload: dict[str, object]) -> PushResult:
        self.sent.append(payload)
        return PushResult.DELIVERED


def _types(events: list[dict[str, object]]) -> list[str]:
    return [str(e["type"]) for e in events]


async def _drain(messages: AsyncIterator[dict[str, object]]) -> list[dict[str, object]]:
    out: list[dict[str, object]] = []
    while True:
        try:
            out.append(await asyncio.wait_for(messages.__anext__(), timeout=0.05))
        except TimeoutError:
            return out


def _setup(tmp_path: Path, *, model_id: str = "fake-chat"):
    provider_id = create_provider()
    sessions = SessionRepository()
    session = sessions.create(owner_id="u1", provider_id=provider_id, model_id=model_id)
    registry = ConnectionRegistry()
    cid = registry.register("u1").connection_id
    transport = LocalPushTransport()
    orchestrator = SessionOrchestrator(
        sessions=sessions,
        connections=registry,
        push=PushChannel(registry, transport),
        objects=ObjectStore(tmp_path / "objects", signing_secret="s"),
        mode="fake",
    )
    return orchestrator, sessions, session, registry, transport, cid


def test_text_turn_streams_persists_and_titles(tmp_path: Path) -> None:
    orchestrator, sessions, session, _, transport, cid = _setup(tmp_path)

    async def _run():
        async with transport.subscribe(cid) as messages:
            outcome = await orchestrator.handle_turn(
                "u1", TurnRequest(session_id=session.id, connection_id=cid, message="hello")
            )
            return outcome, await _drain(messages)

    outcome, events = asyncio.run(_run())

    assert outcome.error is None
    assert outcome.content == "AI: hello"
    types = _types(events)
    assert types[0] == "assistant.started"
    assert types[-2:] == ["assistant.completed", "session.title"]
    deltas = [e["delta"] for e in events if e["type"] == "assistant.delta"]
    assert "".join(str(d) for d in deltas) == "AI: hello"
    assert all(e["sessionId"] == session.id for e in events)
    assert {e["messageId"] for e in events if e["type"].startswith("assistant.")} == {outcome.message_id}

    stored = sessions.list_events(session.id)
    assert [(e.role, e.content) for e in stored] == [("user", "hello"), ("assistant", "AI: hello")]
    assert stored[1].id == outcome.message_id
    assert stored[1].created_by == "Fake AI"

    after = sessions.get_owned(session.id, "u1")
    assert after.title == outcome.title
    assert after.live_connection_id == cid
    # The lease is released once the turn ends.
    assert sessions.acquire_lease(session.id)


def test_second_turn_does_not_retitle(tmp_path: Path) -> None:
    orchestrator, sessions, session, _, transport, cid = _setup(tmp_path)

    async def _run():
        async with transport.subscribe(cid) as messages:
            first = await orchestrator.handle_turn(
                "u1", TurnRequest(session_id=session.id, connection_id=cid, message="one")
            )
            second = await orchestrator.handle_turn(
                "u1", TurnRequest(session_id=session.id, connection_id=cid, message="two")
            )
            return first, second, await _drain(messages)

    first, second, events = asyncio.run(_run())
    assert first.title is not None
    assert second.title is None
    assert _types(events).count("session.title") == 1
    assert sessions.count_events(session.id) == 4


def test_reply_is_persisted_after_the_socket_goes_away(tmp_path: Path) -> None:
    orchestrator, sessions, session, registry, _, cid = _setup(tmp_path)

    # Registered but nobody subscribed: the very first push finds it gone.
    outcome = asyncio.run(
        orchestrator.handle_turn("u1", TurnRequest(session_id=session.id, connection_id=cid, message="hi"))
    )

    assert outcome.stale is True
    assert outcome.content == "AI: hi"
    assert registry.get(cid) is None
    assert [e.role for e in sessions.list_events(session.id)] == ["user", "assistant"]


def test_turn_validation_rejects_before_side_effects(tmp_path: Path) -> None:
    orchestrator, sessions, session, registry, _, cid = _setup(tmp_path)

    def _turn(owner: str, **kw: object):
        req = TurnRequest(
            session_id=str(kw.get("session_id", session.id)),
            connection_id=str(kw.get("connection_id", cid)),
            message=str(kw.get("message", "hi")),
            attachments=kw.get("attachments", []),  # type: ignore[arg-type]
        )
        return asyncio.run(orchestrator.handle_turn(owner, req))

    with pytest.raises(ValidationError):
        _ = _turn("u1", message="   ")
    with pytest.raises(NotFoundError):
        _ = _turn("u2")
    with pytest.raises(ValidationError):
        _ = _turn("u1", connection_id="not-registered")

    other = registry.register("u2").connection_id
    with pytest.raises(ValidationError):
        _ = _turn("u1", connection_id=other)

    foreign = AttachmentRef(file_key=f"u2/{session.id}/x.png", file_name="x.png", file_type="image/png")
    with pytest.raises(ValidationError):
        _ = _turn("u1", attachments=[foreign])

    _ = sessions.update_metadata(session.id, expected_version=1, status="archived")
    with pytest.raises(ValidationError):
        _ = _turn("u1")

    assert sessions.count_events(session.id) == 0


def test_concurrent_turn_is_rejected_while_leased(tmp_path: Path) -> None:
    orchestrator, sessions, session, _, _, cid = _setup(tmp_path)
    _ = sessions.acquire_lease(session.id)

    with pytest.raises(SessionBusyError):
        _ = asyncio.run(
            orchestrator.handle_turn("u1", TurnRequest(session_id=session.id, connection_id=cid, message="hi"))
        )
    assert sessions.count_events(session.id) == 0


def _image_responder(prompt: str, system: str | None) -> str:
    if "generate a new image" in prompt:
        return "yes"
    if "aspect ratio" in prompt:
        return "Landscape."
    return default_fake_reply(prompt, system)


def test_image_turn_streams_partials_and_stores_final(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(FakeChatAdapter, "responder", staticmethod(_image_responder))
    orchestrator, sessions, session, _, transport, cid = _setup(tmp_path, model_id="fake-image")

    async def _run():
        async with transport.subscribe(cid) as messages:
            outcome = await orchestrator.handle_turn(
                "u1", TurnRequest(session_id=session.id, connection_id=cid, message="draw a red fox")
            )
            return outcome, await _drain(messages)

    outcome, events = asyncio.run(_run())

    assert outcome.image is True
    assert outcome.error is None
    types = _types(events)
    assert types[:5] == [
        "assistant.image.aspect_detected",
        "assistant.image.started",
        "assistant.image.progress",
        "assistant.image.partial",
        "assistant.image.completed",
    ]
    assert events[0]["aspectRatio"] == "landscape"
    assert "assistant.delta" not in types

    stored = sessions.list_events(session.id)[-1]
    assert stored.role == "assistant"
    assert stored.image_key == f"u1/{session.id}/images/{outcome.message_id}-final.png"
    assert stored.partial_count == 1
    assert orchestrator.objects.exists(stored.image_key)


def test_attachments_skip_image_detection(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(FakeChatAdapter, "responder", staticmethod(_image_responder))
    orchestrator, sessions, session, _, transport, cid = _setup(tmp_path, model_id="fake-image")
    key = f"u1/{session.id}/photo.png"
    _ = orchestrator.objects.put(key, b"\x89PNG")
    attachment = AttachmentRef(file_key=key, file_name="photo.png", file_type="image/png", file_size=4)

    async def _run():
        async with transport.subscribe(cid) as messages:
            outcome = await orchestrator.handle_turn(
                "u1",
                TurnRequest(
                    session_id=session.id,
                    connection_id=cid,
                    message="what is in this picture?",
                    attachments=[attachment],
                ),
            )
            return outcome, await _drain(messages)

    outcome, events = asyncio.run(_run())
    assert outcome.image is False
    assert "assistant.delta" in _types(events)
    user_event = sessions.list_events(session.id)[0]
    assert user_event.attachments == [attachment.to_dict()]


class _PartialBurstAdapter(FakeChatAdapter):
    async def stream_image(self, model: str, prompt: str, *, size: str) -> AsyncIterator[ImageEvent]:
        for _ in range(4):
            yield ImageEvent(type="partial", image_b64=TINY_PNG_B64)
        yield ImageEvent(type="completed", image_b64=TINY_PNG_B64)


class _BrokenImageAdapter(FakeChatAdapter):
    async def stream_image(self, model: str, prompt: str, *, size: str) -> AsyncIterator[ImageEvent]:
        yield ImageEvent(type="progress", extra={"stage": "generating"})
        raise UpstreamProviderError("content policy violation")


def _pipeline(adapter: FakeChatAdapter, tmp_path: Path, clock_values: list[float]) -> ImagePipeline:
    ticks = iter(clock_values)
    return ImagePipeline(
        adapter=adapter,
        classifier=Classifier(adapter, "fake-chat-mini"),
        sessions=SessionRepository(),
        objects=ObjectStore(tmp_path / "objects", signing_secret="s"),
        clock=lambda: next(ticks),
        partial_interval_s=1.0,
    )


def test_partial_images_are_throttled(tmp_path: Path) -> None:
    sessions = SessionRepository()
    session = sessions.create(owner_id="u1", provider_id=create_provider(), model_id="fake-image")
    channel = RecordingChannel()
    pipeline = _pipeline(_PartialBurstAdapter(FAKE_CONFIG), tmp_path, [0.0, 0.5, 1.2, 1.3])

    event = asyncio.run(
        pipeline.run(
            session=session,
            prompt="a fox",
            push=TurnPush(channel, "c1", session.id),
            message_id="m1",
            created_by="Fake AI",
        )
    )

    partials = [e for e in channel.sent if e["type"] == "assistant.image.partial"]
    assert [p["partialCount"] for p in partials] == [1, 2]
    assert event.partial_count == 2
    assert event.content == "a fox"
    assert event.image_key == f"u1/{session.id}/images/m1-final.png"


def test_failed_image_leaves_an_apology_event(tmp_path: Path) -> None:
    sessions = SessionRepository()
    session = sessions.create(owner_id="u1", provider_id=create_provider(), model_id="fake-image")
    channel = RecordingChannel()
    pipeline = _pipeline(_BrokenImageAdapter(FAKE_CONFIG), tmp_path, [])

    event = asyncio.run(
        pipeline.run(
            session=session,
            prompt="a fox",
            push=TurnPush(channel, "c1", session.id),
            message_id="m2",
            created_by="Fake AI",
        )
    )

    assert event.image_key is None
    assert event.content.startswith("Sorry, I couldn't generate that image:")
    assert "content policy violation" in event.content
    assert channel.sent[-1]["type"] == "assistant.error"
    assert channel.sent[-1]["messageId"] == "m2"


def test_non_native_model_uses_single_call_generation(tmp_path: Path) -> None:
    sessions = SessionRepository()
    session = sessions.create(owner_id="u1", provider_id=create_provider(), model_id="fake-chat")
    channel = RecordingChannel()
    pipeline = _pipeline(FakeChatAdapter(FAKE_CONFIG), tmp_path, [])

    event = asyncio.run(
        pipeline.run(
            session=session,
            prompt="a fox",
            push=TurnPush(channel, "c1", session.id),
            message_id="m3",
            created_by="Fake AI",
        )
    )

    assert _types(channel.sent) == ["assistant.image.started", "assistant.image.completed"]
    assert event.image_key == f"u1/{session.id}/images/m3-final.png"
    assert event.partial_count is None


def test_turn_request_from_payload() -> None:
    req = TurnRequest.from_payload(
        {
            "sessionId": "s1",
            "connectionId": "c1",
            "message": "hi",
            "attachments": [{"fileKey": "u1/s1/a.pdf", "fileType": "Application/PDF"}],
        }
    )
    assert req.attachments[0].file_name == "a.pdf"
    assert req.attachments[0].is_pdf

    with pytest.raises(ValidationError):
        _ = TurnRequest.from_payload({"connectionId": "c1", "message": "hi"})
    with pytest.raises(ValidationError):
        _ = TurnRequest.from_payload({"sessionId": "s1", "connectionId": "c1", "attachments": [{"fileKey": ""}]})


def test_failed_image_turn_still_touches_and_titles_the_session(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(FakeChatAdapter, "responder", staticmethod(_image_responder))
    monkeypatch.setattr(FakeChatAdapter, "stream_image", _BrokenImageAdapter.stream_image)
    orchestrator, sessions, session, _, transport, cid = _setup(tmp_path, model_id="fake-image")
    before = sessions.get_owned(session.id, "u1")

    async def _run():
        async with transport.subscribe(cid) as messages:
            outcome = await orchestrator.handle_turn(
                "u1", TurnRequest(session_id=session.id, connection_id=cid, message="draw a red fox")
            )
            return outcome, await _drain(messages)

    outcome, events = asyncio.run(_run())

    assert outcome.image is True
    assert outcome.error is not None
    assert "assistant.error" in _types(events)

    stored = sessions.list_events(session.id)
    assert [e.role for e in stored] == ["user", "assistant"]
    assert stored[-1].content.startswith("Sorry, I couldn't generate that image:")

    after = sessions.get_owned(session.id, "u1")
    assert after.last_interaction_at >= before.last_interaction_at
    # live connection write, user touch, post-turn touch, title
    assert after.version == before.version + 4
    assert after.title == outcome.title
    assert after.title
