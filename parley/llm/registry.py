from __future__ import annotations

import httpx

from parley.core.config import settings
from parley.core.credentials import decrypt_secret
from parley.db.models import Provider
from parley.llm.anthropic import AnthropicChatAdapter
from parley.llm.base import ChatAdapter
from parley.llm.fake import FakeChatAdapter
from parley.llm.openai import OpenAIChatAdapter
from parley.llm.types import ProviderConfig, ProviderKind


ADAPTERS: dict[ProviderKind, type[ChatAdapter]] = {
    ProviderKind.OPENAI: OpenAIChatAdapter,
    ProviderKind.ANTHROPIC: AnthropicChatAdapter,
    ProviderKind.FAKE: FakeChatAdapter,
}


def adapter_class(kind: ProviderKind | str | None) -> type[ChatAdapter]:
    resolved = kind if isinstance(kind, ProviderKind) else ProviderKind.parse(kind)
    return ADAPTERS.get(resolved, OpenAIChatAdapter)


def provider_config(row: Provider, *, timeout_s: float | None = None) -> ProviderConfig:
    """Build a call config for a provider row, decrypting its credential."""
    kind = ProviderKind.parse(row.kind)
    api_key = ""
    if row.api_key_enc:
        api_key = decrypt_secret(row.api_key_enc, key=settings.secrets_master_key_bytes).strip()
    if api_key == "" and kind != ProviderKind.FAKE and settings.llm_mode != "fake":
        raise ValueError(f"provider {row.name!r} has no api key")
    return ProviderConfig(
        provider_id=row.id,
        name=row.name,
        kind=kind,
        api_key=api_key,
        base_url=row.base_url,
        timeout_s=timeout_s if timeout_s is not None else settings.llm_timeout_seconds,
    )


def build_adapter(
    config: ProviderConfig,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    mode: str | None = None,
) -> ChatAdapter:
    effective_mode = (mode or settings.llm_mode).strip().lower()
    if effective_mode == "fake":
        return FakeChatAdapter(config, transport=transport)
    return adapter_class(config.kind)(config, transport=transport)


def classifier_model(kind: ProviderKind) -> str:
    if kind == ProviderKind.ANTHROPIC:
        return settings.anthropic_classifier_model
    if kind == ProviderKind.FAKE:
        return "fake-chat-mini"
    return settings.openai_classifier_model


def curator_models(kind: ProviderKind) -> tuple[str, str]:
    """(primary, fallback) model ids used to curate a provider's catalog."""
    if kind == ProviderKind.ANTHROPIC:
        return settings.anthropic_curator_model, settings.anthropic_curator_fallback_model
    if kind == ProviderKind.FAKE:
        return "fake-chat", "fake-chat-mini"
    return settings.openai_curator_model, settings.openai_curator_fallback_model


def image_fallback_model(kind: ProviderKind, chat_model: str) -> str:
    """Model used for single-call image generation when the chat model cannot stream images."""
    if kind == ProviderKind.FAKE:
        return "fake-image"
    if kind == ProviderKind.OPENAI:
        return settings.openai_image_fallback_model
    return chat_model
