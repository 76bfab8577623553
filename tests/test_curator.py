from __future__ import annotations

import asyncio
import json

import pytest

from parley.catalog.curator import Curator, parse_curation_output
from parley.core.errors import CurationFailure, UpstreamProviderError, UpstreamTimeoutError
from parley.llm.fake import FakeChatAdapter
from parley.llm.types import ProviderConfig, ProviderKind


class ScriptedAdapter(FakeChatAdapter):
    """Returns (or raises) the scripted answers in order and records each call."""

    def __init__(self, answers: list[str | Exception]):
        super().__init__(ProviderConfig(provider_id="p1", name="OpenAI", kind=ProviderKind.OPENAI, api_key="k"))
        self.answers: list[str | Exception] = list(answers)
        self.calls: list[tuple[str, str | None, float | None]] = []

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
        self.calls.append((model, system, timeout_s))
        answer = self.answers.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer


def _curator(adapter: ScriptedAdapter) -> Curator:
    return Curator(
        adapter,
        primary_model="big",
        fallback_model="small",
        primary_timeout_s=45.0,
        fallback_timeout_s=30.0,
    )


def _curate(curator: Curator, ids: list[str]):
    return asyncio.run(curator.curate(ids, kind=ProviderKind.OPENAI, provider_name="openai"))


def test_primary_answer_is_used() -> None:
    adapter = ScriptedAdapter(['```json\n[{"model_name": "gpt-4o", "display_name": "GPT-4o"}]\n```'])
    out = _curate(_curator(adapter), ["gpt-4o", "gpt-4.1"])
    assert [(m.id, m.display_name) for m in out] == [("gpt-4o", "GPT-4o")]
    assert adapter.calls == [("big", None, 45.0)]


def test_malformed_primary_falls_back_once() -> None:
    fallback = json.dumps([{"model_name": "gpt-4o", "display_name": "GPT-4o"}])
    adapter = ScriptedAdapter(["not json at all", fallback])
    out = _curate(_curator(adapter), ["gpt-4o"])
    assert [m.id for m in out] == ["gpt-4o"]
    assert [c[0] for c in adapter.calls] == ["big", "small"]
    assert adapter.calls[1][1] is not None
    assert adapter.calls[1][2] == 30.0


def test_empty_primary_falls_back() -> None:
    adapter = ScriptedAdapter(["[]", '[{"model_name": "gpt-4o", "display_name": "GPT-4o"}]'])
    assert [m.id for m in _curate(_curator(adapter), ["gpt-4o"])] == ["gpt-4o"]


def test_two_timeouts_fail_curation() -> None:
    adapter = ScriptedAdapter([UpstreamTimeoutError("slow"), UpstreamTimeoutError("slow again")])
    with pytest.raises(CurationFailure):
        _ = _curate(_curator(adapter), ["gpt-4o"])
    assert len(adapter.calls) == 2


def test_non_timeout_upstream_error_aborts_without_fallback() -> None:
    adapter = ScriptedAdapter([UpstreamProviderError("bad key", status_code=401), "unused"])
    with pytest.raises(CurationFailure):
        _ = _curate(_curator(adapter), ["gpt-4o"])
    assert len(adapter.calls) == 1


def test_parse_drops_unknown_and_duplicate_ids() -> None:
    answer = json.dumps(
        [
            {"model_name": "gpt-4o", "display_name": "GPT-4o"},
            {"model_name": "gpt-4o", "display_name": "dup"},
            {"model_name": "invented", "display_name": "Nope"},
            {"display_name": "missing id"},
        ]
    )
    out = parse_curation_output(answer, allowed_ids=["gpt-4o"])
    assert [(m.id, m.display_name) for m in out] == [("gpt-4o", "GPT-4o")]


def test_parse_rejects_non_array() -> None:
    with pytest.raises(CurationFailure):
        _ = parse_curation_output('{"model_name": "gpt-4o"}')
