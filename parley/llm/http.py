from __future__ import annotations

import math
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from urllib.parse import urlparse

import httpx

from parley.core.errors import UpstreamProviderError, UpstreamTimeoutError
from parley.llm.types import ProviderConfig, ProviderKind


DEFAULT_BASE_URLS: dict[ProviderKind, str] = {
    ProviderKind.OPENAI: "https://api.openai.com/v1",
    ProviderKind.ANTHROPIC: "https://api.anthropic.com/v1",
    ProviderKind.FAKE: "http://fake.invalid/v1",
}

ANTHROPIC_VERSION = "2023-06-01"


def clamp_timeout_seconds(raw: float | int | str | None) -> float:
    try:
        t = float(raw) if raw is not None else 60.0
    except (TypeError, ValueError):
        t = 60.0
    if not math.isfinite(t) or t <= 0:
        t = 60.0
    return float(max(1.0, min(300.0, t)))


def normalize_base_url(raw: str | None, kind: ProviderKind) -> str:
    u = (raw or "").strip()
    if u == "":
        return DEFAULT_BASE_URLS[kind]
    p = urlparse(u)
    if not p.scheme or not p.netloc:
        raise ValueError("provider base_url must be an absolute URL (e.g. https://api.openai.com)")
    u = u.rstrip("/")
    if not u.endswith("/v1"):
        u = u + "/v1"
    return u


def auth_headers(config: ProviderConfig) -> dict[str, str]:
    if config.kind == ProviderKind.ANTHROPIC:
        return {
            "x-api-key": config.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
        }
    return {"Authorization": f"Bearer {config.api_key}"}


def open_client(
    config: ProviderConfig,
    *,
    timeout_s: float | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    t = clamp_timeout_seconds(timeout_s if timeout_s is not None else config.timeout_s)
    timeout = httpx.Timeout(t, connect=min(10.0, t))
    return httpx.AsyncClient(
        base_url=normalize_base_url(config.base_url, config.kind),
        headers=auth_headers(config),
        timeout=timeout,
        trust_env=False,
        transport=transport,
    )


async def ensure_ok(resp: httpx.Response) -> None:
    if resp.status_code < 400:
        return
    raw = await resp.aread()
    body = raw.decode("utf-8", errors="replace")[:2000]
    raise UpstreamProviderError(
        f"provider returned HTTP {resp.status_code}: {body[:200]}",
        status_code=resp.status_code,
        body=body,
    )


@asynccontextmanager
async def translate_errors() -> AsyncIterator[None]:
    """Re-raise httpx transport failures and unreadable bodies as UpstreamProviderError.

    ValueError covers `resp.json()` on a non-JSON body (JSONDecodeError) and a
    malformed base URL rejected by `normalize_base_url`.
    """
    try:
        yield
    except httpx.TimeoutException as e:
        raise UpstreamTimeoutError(f"provider call timed out: {type(e).__name__}") from e
    except httpx.HTTPError as e:
        raise UpstreamProviderError(f"provider call failed: {type(e).__name__}: {e}") from e
    except ValueError as e:
        raise UpstreamProviderError(f"provider returned an unreadable response: {type(e).__name__}: {e}") from e


def usage_int(usage: dict[str, object], *keys: str) -> int | None:
    for k in keys:
        v = usage.get(k)
        if isinstance(v, int) and not isinstance(v, bool) and v >= 0:
            return v
    return None
