from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum


class ProviderKind(StrEnum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    FAKE = "fake"

    @classmethod
    def parse(cls, raw: str | None) -> "ProviderKind":
        """Resolve a stored kind string; anything unrecognised is treated as openai."""
        s = (raw or "").strip().lower()
        if s == "claude":
            return cls.ANTHROPIC
        try:
            return cls(s)
        except ValueError:
            return cls.OPENAI


@dataclass(frozen=True)
class ProviderConfig:
    provider_id: str
    name: str
    kind: ProviderKind
    api_key: str
    base_url: str | None = None
    timeout_s: float = 60.0


@dataclass(frozen=True)
class ContentPart:
    """One piece of a multimodal message.

    `image` parts carry a fetchable URL (presigned or data URL); `document`
    parts carry an inlined `data:application/pdf;base64,...` URL.
    """

    type: str
    text: str = ""
    url: str = ""
    filename: str = ""
    detail: str = "auto"

    @classmethod
    def of_text(cls, text: str) -> "ContentPart":
        return cls(type="text", text=text)

    @classmethod
    def of_image(cls, url: str, *, detail: str = "auto") -> "ContentPart":
        return cls(type="image", url=url, detail=detail)

    @classmethod
    def of_document(cls, filename: str, data_url: str) -> "ContentPart":
        return cls(type="document", filename=filename, url=data_url)


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str | list[ContentPart]

    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return "\n".join(p.text for p in self.content if p.type == "text" and p.text)


@dataclass(frozen=True)
class ChatResult:
    content: str
    stop_reason: str | None
    input_tokens: int | None = None
    output_tokens: int | None = None


@dataclass
class StreamCapture:
    """Mutable side channel the wire parsers fill in while a stream runs."""

    provider: str = "fake"
    api: str = "fake"
    model: str = "fake"

    stop_reason: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None


@dataclass(frozen=True)
class ImageEvent:
    type: str  # progress | partial | completed
    image_b64: str | None = None
    revised_prompt: str | None = None
    extra: dict[str, object] = field(default_factory=dict)
