# pyright: reportMissingImports=false
# pyright: reportUnknownMemberType=false

from __future__ import annotations

from dataclasses import dataclass

from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, Counter, Histogram, generate_latest


@dataclass(frozen=True)
class ChatTurnMetricLabels:
    provider: str
    api: str
    model: str


_TURNS = Counter(
    "parley_chat_turns_total",
    "Chat turns executed, by outcome (completed, error, stale, image).",
    labelnames=("provider", "api", "model", "outcome"),
)
_TURN_LATENCY = Histogram(
    "parley_chat_stream_latency_seconds",
    "Provider stream latency from request to final delta.",
    labelnames=("provider", "api", "model"),
)
_TURN_TTFT = Histogram(
    "parley_chat_stream_ttft_seconds",
    "Time to first delta in seconds.",
    labelnames=("provider", "api", "model"),
)
_OUT_CHUNKS = Counter(
    "parley_chat_stream_output_chunks_total",
    "Deltas relayed to clients.",
    labelnames=("provider", "api", "model"),
)
_TOK_IN = Counter(
    "parley_chat_stream_input_tokens_total",
    "Input tokens reported by providers.",
    labelnames=("provider", "api", "model"),
)
_TOK_OUT = Counter(
    "parley_chat_stream_output_tokens_total",
    "Output tokens reported by providers.",
    labelnames=("provider", "api", "model"),
)

_PUSHES = Counter(
    "parley_push_sends_total",
    "Realtime push attempts by result.",
    labelnames=("transport", "result"),
)

_REFRESHES = Counter(
    "parley_catalog_refreshes_total",
    "Provider catalog refreshes by status.",
    labelnames=("kind", "source", "status"),
)
_REFRESH_LATENCY = Histogram(
    "parley_catalog_refresh_seconds",
    "Wall time of one provider catalog refresh.",
    labelnames=("kind",),
)
_PROBES = Counter(
    "parley_capability_probes_total",
    "Capability probe results.",
    labelnames=("capability", "result"),
)


def record_chat_turn(
    *,
    labels: ChatTurnMetricLabels,
    outcome: str,
    latency_ms: int | None,
    ttft_ms: int | None,
    output_chunks: int,
    input_tokens: int | None,
    output_tokens: int | None,
) -> None:
    l = (labels.provider, labels.api, labels.model)

    _TURNS.labels(*l, outcome).inc()
    if latency_ms is not None and latency_ms >= 0:
        _TURN_LATENCY.labels(*l).observe(float(latency_ms) / 1000.0)
    if ttft_ms is not None and ttft_ms >= 0:
        _TURN_TTFT.labels(*l).observe(float(ttft_ms) / 1000.0)
    if output_chunks > 0:
        _OUT_CHUNKS.labels(*l).inc(output_chunks)
    if input_tokens is not None and input_tokens > 0:
        _TOK_IN.labels(*l).inc(input_tokens)
    if output_tokens is not None and output_tokens > 0:
        _TOK_OUT.labels(*l).inc(output_tokens)


def record_push(*, transport: str, result: str) -> None:
    _PUSHES.labels(transport, result).inc()


def record_catalog_refresh(*, kind: str, source: str, status: str, seconds: float) -> None:
    _REFRESHES.labels(kind, source, status).inc()
    if seconds >= 0:
        _REFRESH_LATENCY.labels(kind).observe(seconds)


def record_probe(*, capability: str, result: str) -> None:
    _PROBES.labels(capability, result).inc()


def metrics_payload() -> tuple[bytes, str]:
    payload = generate_latest(REGISTRY)
    content_type = str(CONTENT_TYPE_LATEST)
    return payload, content_type
