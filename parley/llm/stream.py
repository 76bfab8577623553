from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

from parley.llm.types import ChatResult, StreamCapture


class ChatStream:
    """Single-pass ordered delta stream plus its final result.

    Iterate it once with `async for`. `final_result()` may be awaited before,
    during or after iteration: before, it drains the stream itself; during,
    it waits for the iterating task to finish; after, it returns at once.
    """

    def __init__(self, source: AsyncIterator[str], capture: StreamCapture):
        self._source: AsyncIterator[str] = source
        self.capture: StreamCapture = capture
        self._chunks: list[str] = []
        self._claimed: bool = False
        self._done: asyncio.Event = asyncio.Event()
        self._error: BaseException | None = None

    def __aiter__(self) -> AsyncIterator[str]:
        if self._claimed:
            raise RuntimeError("ChatStream can only be iterated once")
        self._claimed = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[str]:
        try:
            async for delta in self._source:
                if delta == "":
                    continue
                self._chunks.append(delta)
                yield delta
        except Exception as e:
            self._error = e
            raise
        finally:
            self._done.set()

    async def final_result(self) -> ChatResult:
        if not self._claimed:
            async for _ in self:
                pass
        _ = await self._done.wait()
        if self._error is not None:
            raise self._error
        return ChatResult(
            content="".join(self._chunks),
            stop_reason=self.capture.stop_reason,
            input_tokens=self.capture.input_tokens,
            output_tokens=self.capture.output_tokens,
        )
