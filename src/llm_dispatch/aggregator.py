"""Fan-in of concurrent per-target streams onto one consumer channel."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Sequence
from contextlib import aclosing
from types import TracebackType

from llm_dispatch.types import DispatchTarget, ModelResponse, StreamEvent

logger = logging.getLogger(__name__)


class StreamSession:
    """One streaming dispatch as seen by a single downstream transport.

    Each source is pumped by its own task into a shared FIFO queue, so chunks
    from one target keep their order while chunks from different targets
    interleave freely. The session is drained once every target has
    enqueued its terminal event; iteration stops after the last queued
    event is consumed.

    Iterate only inside ``async with``: leaving the block, normally or by
    ``break``, cancels every target still in flight. After ``aclose()``
    iteration stops at once.
    """

    def __init__(self, sources: Sequence[tuple[DispatchTarget, AsyncIterator[StreamEvent]]]) -> None:
        self._targets = [target for target, _ in sources]
        self._sources = [source for _, source in sources]
        # None is the wake-up sentinel pushed by aclose()
        self._queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue()
        self._completed = [False] * len(self._sources)
        self._results: list[ModelResponse | None] = [None] * len(self._sources)
        self._tasks: list[asyncio.Task[None]] = []
        self._drained = asyncio.Event()
        self._started = False
        self._entered = False
        self._closed = False
        if not self._sources:
            self._drained.set()

    @property
    def drained(self) -> bool:
        return self._drained.is_set()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def completed(self) -> list[bool]:
        """Per-target has-completed flags, in target order."""
        return list(self._completed)

    def start(self) -> None:
        """Begin pumping sources; idempotent."""
        if self._started:
            return
        self._started = True
        self._tasks = [
            asyncio.create_task(self._pump(index, source), name=f"stream:{self._targets[index].target_id}")
            for index, source in enumerate(self._sources)
        ]

    async def wait_drained(self) -> None:
        if self._closed:
            raise RuntimeError("stream session is closed")
        self.start()
        await self._drained.wait()

    def responses(self) -> list[ModelResponse]:
        """Per-target results in target order; only valid once drained."""
        if not self.drained:
            raise RuntimeError("stream session is not drained")
        # every completed slot holds a result, see _emit
        return [result for result in self._results if result is not None]

    async def aclose(self) -> None:
        """Cancel every in-flight source of this dispatch and end iteration."""
        if self._closed:
            return
        self._closed = True
        # wake a consumer blocked on an empty queue
        self._queue.put_nowait(None)
        pending = [task for task in self._tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.info("Stream session closed early", extra={"cancelled_targets": len(pending)})

    def __aiter__(self) -> StreamSession:
        if not self._entered:
            raise RuntimeError("iterate a StreamSession inside 'async with' so abandoned targets are cancelled")
        return self

    async def __anext__(self) -> StreamEvent:
        if self._closed:
            raise StopAsyncIteration
        self.start()
        if self._drained.is_set() and self._queue.empty():
            raise StopAsyncIteration
        event = await self._queue.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def __aenter__(self) -> StreamSession:
        self._entered = True
        self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def _pump(self, index: int, source: AsyncIterator[StreamEvent]) -> None:
        target = self._targets[index]
        try:
            async with aclosing(source):
                async for event in source:
                    self._emit(index, event)
                    if event.is_complete:
                        return
        except Exception as exc:
            logger.warning(
                "Stream source failed",
                extra={"target_id": target.target_id},
                exc_info=True,
            )
            self._emit(index, self._synthetic_terminal(index, str(exc), getattr(exc, "kind", "internal")))
            return
        # source ended without a terminal event
        self._emit(index, self._synthetic_terminal(index, "stream ended without completion", "internal"))

    def _emit(self, index: int, event: StreamEvent) -> None:
        if self._completed[index] or self._closed:
            return
        if event.is_complete and event.result is None:
            event = self._synthetic_terminal(index, "terminal event carried no result", "internal")
        self._queue.put_nowait(event)
        if event.is_complete:
            self._completed[index] = True
            self._results[index] = event.result
            if all(self._completed):
                self._drained.set()

    def _synthetic_terminal(self, index: int, error: str, kind: str) -> StreamEvent:
        target = self._targets[index]
        result = ModelResponse(
            provider_id=target.provider_id,
            model=target.model,
            model_name=target.target_id,
            error=error,
            error_kind=kind,
        )
        return StreamEvent(
            index=index,
            provider_id=target.provider_id,
            model=target.model,
            is_complete=True,
            result=result,
        )
