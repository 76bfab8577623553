from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from typing import TypeVar

from parley.core.config import settings
from parley.llm.base import ChatAdapter


logger = logging.getLogger(__name__)

T = TypeVar("T", bound=str)

ASPECT_RATIOS = ("portrait", "landscape", "square")

ASPECT_RATIO_SIZES: dict[str, str] = {
    "portrait": "1024x1536",
    "landscape": "1536x1024",
    "square": "1024x1024",
}

# Cheap gate in front of the classifier call: only messages that look like they
# could be asking for a picture are worth a round trip.
_RE_IMAGE_HINT = re.compile(
    r"\b(draw|drawing|paint|painting|sketch|illustrat\w*|render|picture|pic|image|photo\w*|"
    r"logo|icon|wallpaper|poster|portrait|landscape|artwork|cartoon|comic|meme)\b",
    re.IGNORECASE,
)


def looks_like_image_request(message: str) -> bool:
    return _RE_IMAGE_HINT.search(message) is not None


class Classifier:
    """Short, low-temperature auxiliary calls with a safe fallback answer."""

    def __init__(self, adapter: ChatAdapter, model: str, *, timeout_s: float | None = None):
        self.adapter: ChatAdapter = adapter
        self.model: str = model
        self.timeout_s: float = timeout_s if timeout_s is not None else settings.classifier_timeout_seconds

    async def ask(self, prompt: str, *, system: str | None = None, max_tokens: int = 50) -> str:
        answer = await self.adapter.complete(
            self.model,
            prompt,
            system=system,
            max_tokens=max_tokens,
            temperature=0,
            timeout_s=self.timeout_s,
        )
        return answer.strip()

    async def classify(self, prompt: str, options: Sequence[T], fallback: T) -> T:
        try:
            answer = await self.ask(
                f"{prompt}. Answer with only one word: {', '.join(options)}",
                max_tokens=5,
            )
        except Exception:
            logger.info("classification failed, using fallback=%s", fallback, exc_info=True)
            return fallback

        normalized = answer.strip().strip(".!\"'").lower()
        for option in options:
            if normalized == option:
                return option
        logger.info("classifier answered %r, using fallback=%s", answer[:50], fallback)
        return fallback

    async def detect_image_intent(self, message: str, *, has_attachments: bool) -> bool:
        if has_attachments:
            return False
        if not looks_like_image_request(message):
            return False
        answer = await self.classify(
            f'Is the user asking to create or generate a new image in this message: "{message[:1000]}"?',
            ("yes", "no"),
            "no",
        )
        return answer == "yes"

    async def detect_aspect_ratio(self, image_prompt: str) -> str:
        return await self.classify(
            f'For this image: "{image_prompt[:1000]}". What aspect ratio is best?',
            ASPECT_RATIOS,
            "square",
        )
