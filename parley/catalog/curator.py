from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import cast

from parley.core.config import settings
from parley.core.errors import CurationFailure, UpstreamProviderError, UpstreamTimeoutError
from parley.llm.base import ChatAdapter
from parley.llm.types import ProviderKind


logger = logging.getLogger(__name__)

STRICT_JSON_SYSTEM = (
    "You are a precise JSON generator. Do not include explanations or reasoning; "
    "respond with JSON only."
)

_RE_FENCE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)

_ANTHROPIC_GUIDANCE = """
Special rules for Claude models:
- Keep all "claude-" prefixed models that are for chat/completion
- REMOVE: Any models marked as "legacy" or "deprecated"
- Keep models like: claude-3-opus, claude-3-5-sonnet, claude-sonnet-4, claude-opus-4, etc.
- Format display names nicely: "Claude 3.5 Sonnet", "Claude Opus 4", etc."""

_OPENAI_GUIDANCE = """
Special rules for OpenAI models:
- Keep base families: gpt-5, gpt-5-mini, gpt-5-pro, gpt-4o, gpt-4, gpt-3.5-turbo, etc.
- REMOVE: Dated versions (e.g., gpt-4-0613, gpt-5-2025-08-07)
- REMOVE: Preview/beta models (e.g., gpt-4-vision-preview)
- Do NOT treat base 'gpt-5' as preview; only remove IDs with '-preview' or date suffixes"""


@dataclass(frozen=True)
class CuratedModel:
    id: str
    display_name: str


def provider_guidance(kind: ProviderKind) -> str:
    if kind == ProviderKind.ANTHROPIC:
        return _ANTHROPIC_GUIDANCE
    if kind == ProviderKind.FAKE:
        return ""
    return _OPENAI_GUIDANCE


def build_curation_prompt(model_ids: list[str], *, kind: ProviderKind, provider_name: str) -> str:
    listing = "\n".join(f"- {mid}" for mid in model_ids)
    return f"""Given these raw {provider_name.upper()} API model IDs:
{listing}

Filter and curate this list:
1. REMOVE: Fine-tuned models (e.g., ft:gpt-3.5-turbo:org-name)
2. REMOVE: Deprecated models
3. REMOVE: Specialty/niche models (text-embedding, whisper, tts, dall-e, search, codex, code models and anything else not primarily for chat/completion)
4. NOTE: Choose only from the provided list; do not exclude base families unless they match the removal patterns.
{provider_guidance(kind)}

For each REMAINING model, provide:
- "model_name": Exact model ID for API use (e.g., "gpt-5", "claude-3-5-sonnet-20241022")
- "display_name": Human-readable label (e.g., "GPT-5", "Claude 3.5 Sonnet")

Return ONLY a valid JSON array of objects with these two fields. No markdown, no explanation."""


def parse_curation_output(answer: str, *, allowed_ids: list[str] | None = None) -> list[CuratedModel]:
    """Validate curator output; raises CurationFailure when nothing usable remains."""
    cleaned = _RE_FENCE.sub("", answer).replace("```", "").strip()
    if cleaned == "":
        raise CurationFailure("curator returned an empty response")
    try:
        parsed = cast(object, json.loads(cleaned))
    except ValueError as e:
        raise CurationFailure("curator returned malformed JSON") from e
    if not isinstance(parsed, list):
        raise CurationFailure("curator response is not a JSON array")

    allowed = set(allowed_ids) if allowed_ids is not None else None
    out: list[CuratedModel] = []
    seen: set[str] = set()
    for item in cast(list[object], parsed):
        if not isinstance(item, dict):
            continue
        entry = cast(dict[str, object], item)
        mid = entry.get("model_name", entry.get("id"))
        label = entry.get("display_name", entry.get("displayName"))
        if not isinstance(mid, str) or not isinstance(label, str) or mid.strip() == "":
            continue
        mid = mid.strip()
        if allowed is not None and mid not in allowed:
            logger.info("curator proposed unknown model id=%s, dropping", mid)
            continue
        if mid in seen:
            continue
        seen.add(mid)
        out.append(CuratedModel(id=mid, display_name=label.strip() or mid))

    if not out:
        raise CurationFailure("curation returned zero models")
    return out


class Curator:
    """Asks an auxiliary model to turn raw ids into a clean catalog.

    One primary attempt, then exactly one fallback attempt on a smaller model
    when the primary output is empty, malformed or timed out. Any other
    upstream failure aborts immediately.
    """

    def __init__(
        self,
        adapter: ChatAdapter,
        *,
        primary_model: str,
        fallback_model: str,
        primary_timeout_s: float | None = None,
        fallback_timeout_s: float | None = None,
    ):
        self.adapter: ChatAdapter = adapter
        self.primary_model: str = primary_model
        self.fallback_model: str = fallback_model
        self.primary_timeout_s: float = (
            primary_timeout_s if primary_timeout_s is not None else settings.curator_timeout_seconds
        )
        self.fallback_timeout_s: float = (
            fallback_timeout_s
            if fallback_timeout_s is not None
            else settings.curator_fallback_timeout_seconds
        )

    async def curate(
        self, model_ids: list[str], *, kind: ProviderKind, provider_name: str
    ) -> list[CuratedModel]:
        prompt = build_curation_prompt(model_ids, kind=kind, provider_name=provider_name)

        try:
            answer = await self.adapter.complete(
                self.primary_model,
                prompt,
                max_tokens=3000,
                temperature=0,
                timeout_s=self.primary_timeout_s,
            )
            return parse_curation_output(answer, allowed_ids=model_ids)
        except (CurationFailure, UpstreamTimeoutError) as e:
            logger.warning(
                "curation attempt failed provider=%s model=%s err=%s; retrying with %s",
                provider_name,
                self.primary_model,
                e,
                self.fallback_model,
            )
        except UpstreamProviderError as e:
            raise CurationFailure(f"curator call failed: {e}") from e

        try:
            answer = await self.adapter.complete(
                self.fallback_model,
                prompt,
                system=STRICT_JSON_SYSTEM,
                max_tokens=1500,
                timeout_s=self.fallback_timeout_s,
            )
            return parse_curation_output(answer, allowed_ids=model_ids)
        except CurationFailure as e:
            raise CurationFailure(f"fallback curation failed: {e}") from e
        except UpstreamProviderError as e:
            raise CurationFailure(f"fallback curator call failed: {e}") from e
