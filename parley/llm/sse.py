from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Protocol, cast


class _SSELineStream(Protocol):
    def aiter_lines(self) -> AsyncIterator[str]: ...


async def iter_sse_data(resp: _SSELineStream) -> AsyncIterator[str]:
    """Yield the joined `data:` payload of each server-sent event block."""
    buf: list[str] = []
    async for line in resp.aiter_lines():
        line = str(line)

        if line == "":
            if buf:
                yield "\n".join(buf)
                buf = []
            continue

        if line.startswith(":"):
            continue

        if line.startswith("data:"):
            buf.append(line[len("data:") :].lstrip())
            continue

        # `event:` / `id:` / `retry:` lines carry nothing the adapters need;
        # every provider repeats the event type inside the JSON payload.
        continue

    if buf:
        yield "\n".join(buf)


async def iter_sse_json(resp: _SSELineStream) -> AsyncIterator[dict[str, object]]:
    async for data in iter_sse_data(resp):
        if data.strip() == "[DONE]":
            return
        try:
            obj = cast(object, json.loads(data))
        except ValueError:
            continue
        if not isinstance(obj, dict):
            continue
        yield cast(dict[str, object], obj)
