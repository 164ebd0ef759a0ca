from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable

from loguru import logger

from omnitrix_agent.models import ToolCall, ToolCallFragment
from omnitrix_agent.providers.common import new_tool_call_id, parse_arguments

DEFAULT_CHANNEL_SIZE = 64


class DeltaChannel:
    """Bounded single-producer, single-consumer queue of text deltas.

    Closing is idempotent. An error passed to ``close`` is raised to the consumer
    once every buffered delta has been read.
    """

    def __init__(self, maxsize: int = DEFAULT_CHANNEL_SIZE):
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize)
        self._closed = asyncio.Event()
        self._error: BaseException | None = None

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    async def send(self, delta: str) -> None:
        if self.closed:
            raise RuntimeError("send on a closed delta channel")
        await self._queue.put(delta)

    def close(self, error: BaseException | None = None) -> None:
        if self.closed:
            return
        self._error = error
        self._closed.set()

    def __aiter__(self) -> DeltaChannel:
        return self

    async def __anext__(self) -> str:
        while True:
            if not self._queue.empty():
                return self._queue.get_nowait()
            if self.closed:
                if self._error is not None:
                    error, self._error = self._error, None
                    raise error
                raise StopAsyncIteration

            getter = asyncio.ensure_future(self._queue.get())
            closer = asyncio.ensure_future(self._closed.wait())
            try:
                await asyncio.wait({getter, closer}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for waiter in (getter, closer):
                    if not waiter.done():
                        waiter.cancel()
            if getter.done() and not getter.cancelled():
                return getter.result()


class DeltaStream:
    """Async iterator over the deltas of one streaming turn.

    Owns the producer task. Setting the ``cancel`` event, calling ``cancel()`` or
    leaving an ``async with`` block cancels the producer; the channel is closed
    from the task's completion callback so it closes exactly once even when the
    task is cancelled before it starts running.
    """

    def __init__(
        self,
        channel: DeltaChannel,
        task: asyncio.Task,
        *,
        cancel: asyncio.Event | None = None,
        on_finished: Callable[[], None] | None = None,
    ):
        self._channel = channel
        self._task = task
        self._cancel = cancel if cancel is not None else asyncio.Event()
        self._on_finished = on_finished
        self._watcher = asyncio.ensure_future(self._watch_cancel())
        task.add_done_callback(self._task_done)

    @classmethod
    def start(
        cls,
        produce: Callable[[DeltaChannel], Awaitable[None]],
        *,
        cancel: asyncio.Event | None = None,
        on_finished: Callable[[], None] | None = None,
        maxsize: int = DEFAULT_CHANNEL_SIZE,
    ) -> DeltaStream:
        channel = DeltaChannel(maxsize)
        task = asyncio.ensure_future(produce(channel))
        return cls(channel, task, cancel=cancel, on_finished=on_finished)

    @property
    def done(self) -> bool:
        return self._task.done()

    @property
    def cancelled(self) -> bool:
        return self._task.cancelled()

    async def _watch_cancel(self) -> None:
        await self._cancel.wait()
        if not self._task.done():
            logger.info("Stream cancellation requested")
            self._task.cancel()

    def _task_done(self, task: asyncio.Task) -> None:
        self._watcher.cancel()
        try:
            if task.cancelled():
                self._channel.close()
            else:
                self._channel.close(task.exception())
        finally:
            if self._on_finished is not None:
                self._on_finished()

    def cancel(self) -> None:
        self._cancel.set()

    async def aclose(self) -> None:
        """Cancel the producer if it is still running and wait for it to finish."""
        if not self._task.done():
            self._task.cancel()
        await asyncio.wait({self._task})
        self._watcher.cancel()

    def __aiter__(self) -> DeltaStream:
        return self

    async def __anext__(self) -> str:
        return await self._channel.__anext__()

    async def __aenter__(self) -> DeltaStream:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        await self.aclose()
        return False


class ToolCallAccumulator:
    """Reassembles streamed tool-call fragments that share an index."""

    def __init__(self) -> None:
        self._entries: dict[int, dict] = {}

    def add(self, fragments: Iterable[ToolCallFragment]) -> None:
        for fragment in fragments:
            entry = self._entries.setdefault(fragment.index, {"id": "", "name": "", "arguments": []})
            if fragment.id:
                entry["id"] = fragment.id
            if fragment.name:
                entry["name"] = fragment.name
            if fragment.arguments_delta:
                entry["arguments"].append(fragment.arguments_delta)

    def __len__(self) -> int:
        return len(self._entries)

    def build(self) -> list[ToolCall]:
        return [
            ToolCall(
                id=entry["id"] or new_tool_call_id(),
                name=entry["name"],
                arguments=parse_arguments("".join(entry["arguments"])),
            )
            for _, entry in sorted(self._entries.items())
        ]
