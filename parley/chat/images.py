from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from parley.chat.sessions import EventView, SessionRepository, SessionView
from parley.chat.turn import TurnPush
from parley.core.config import settings
from parley.core.errors import UpstreamProviderError
from parley.llm.base import ChatAdapter
from parley.llm.classifier import ASPECT_RATIO_SIZES, Classifier
from parley.llm.registry import image_fallback_model
from parley.llm.types import ProviderKind
from parley.storage.objects import ObjectStore, session_prefix


logger = logging.getLogger(__name__)

DEFAULT_IMAGE_SIZE = ASPECT_RATIO_SIZES["square"]


def image_object_key(session: SessionView, message_id: str, suffix: str) -> str:
    return f"{session_prefix(session.owner_id, session.id)}images/{message_id}-{suffix}.png"


def _decode_b64(data: str) -> bytes:
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise UpstreamProviderError("provider returned invalid image data") from e


@dataclass
class ImageResult:
    image_key: str | None
    prompt: str
    partial_count: int
    error: str | None = None


class ImagePipeline:
    """Generates one image for a turn and always leaves an assistant event behind."""

    def __init__(
        self,
        *,
        adapter: ChatAdapter,
        classifier: Classifier,
        sessions: SessionRepository,
        objects: ObjectStore,
        clock: Callable[[], float] = time.monotonic,
        partial_interval_s: float | None = None,
    ):
        self.adapter: ChatAdapter = adapter
        self.classifier: Classifier = classifier
        self.sessions: SessionRepository = sessions
        self.objects: ObjectStore = objects
        self.clock: Callable[[], float] = clock
        self.partial_interval_s: float = (
            partial_interval_s if partial_interval_s is not None else settings.image_partial_interval_seconds
        )

    async def _store(self, key: str, data: bytes) -> str:
        _ = await asyncio.to_thread(self.objects.put, key, data)
        return self.objects.signed_url(key)

    async def _native(
        self, session: SessionView, prompt: str, push: TurnPush, message_id: str
    ) -> ImageResult:
        aspect = await self.classifier.detect_aspect_ratio(prompt)
        size = ASPECT_RATIO_SIZES.get(aspect, DEFAULT_IMAGE_SIZE)
        _ = await push.emit("assistant.image.aspect_detected", messageId=message_id, aspectRatio=aspect)
        _ = await push.emit("assistant.image.started", messageId=message_id)

        result = ImageResult(image_key=None, prompt=prompt, partial_count=0)
        last_partial_at: float | None = None
        final_b64: str | None = None

        async for event in self.adapter.stream_image(session.model_id, prompt, size=size):
            if event.type == "progress":
                stage = event.extra.get("stage")
                _ = await push.emit(
                    "assistant.image.progress",
                    messageId=message_id,
                    stage=stage if isinstance(stage, str) else "generating",
                )
            elif event.type == "partial" and event.image_b64:
                now = self.clock()
                if last_partial_at is not None and now - last_partial_at < self.partial_interval_s:
                    continue
                last_partial_at = now
                result.partial_count += 1
                url = await self._store(
                    image_object_key(session, message_id, f"partial-{result.partial_count}"),
                    _decode_b64(event.image_b64),
                )
                _ = await push.emit(
                    "assistant.image.partial",
                    messageId=message_id,
                    imageUrl=url,
                    partialCount=result.partial_count,
                )
            elif event.type == "completed" and event.image_b64:
                final_b64 = event.image_b64
                if event.revised_prompt:
                    result.prompt = event.revised_prompt

        if final_b64 is None:
            raise UpstreamProviderError("image stream ended without a final image")

        key = image_object_key(session, message_id, "final")
        url = await self._store(key, _decode_b64(final_b64))
        result.image_key = key
        _ = await push.emit("assistant.image.completed", messageId=message_id, imageUrl=url, prompt=result.prompt)
        return result

    async def _single_call(
        self, session: SessionView, prompt: str, push: TurnPush, message_id: str
    ) -> ImageResult:
        _ = await push.emit("assistant.image.started", messageId=message_id)
        model = image_fallback_model(ProviderKind.parse(session.provider_kind), session.model_id)
        data = await self.adapter.generate_image(model, prompt, size=DEFAULT_IMAGE_SIZE)

        key = image_object_key(session, message_id, "final")
        url = await self._store(key, data)
        _ = await push.emit("assistant.image.completed", messageId=message_id, imageUrl=url, prompt=prompt)
        return ImageResult(image_key=key, prompt=prompt, partial_count=0)

    async def run(
        self,
        *,
        session: SessionView,
        prompt: str,
        push: TurnPush,
        message_id: str,
        created_by: str,
    ) -> EventView:
        native = self.adapter.supports_image_generation(session.model_id)
        logger.info(
            "image turn session=%s model=%s native=%s", session.id, session.model_id, native
        )
        try:
            if native:
                result = await self._native(session, prompt, push, message_id)
            else:
                result = await self._single_call(session, prompt, push, message_id)
        except Exception as e:
            logger.exception("image generation failed session=%s", session.id)
            result = ImageResult(image_key=None, prompt=prompt, partial_count=0, error=str(e) or type(e).__name__)

        if result.image_key is not None:
            content = result.prompt
        else:
            content = f"Sorry, I couldn't generate that image: {result.error}"

        event = await asyncio.to_thread(
            self.sessions.append_event,
            session.id,
            role="assistant",
            content=content,
            created_by=created_by,
            event_id=message_id,
            image_key=result.image_key,
            image_prompt=result.prompt,
            partial_count=result.partial_count or None,
        )
        if result.error is not None:
            await push.emit_error(content, message_id=message_id)
        return event
