from __future__ import annotations

import asyncio
from enum import Enum
from typing import AsyncIterator, Callable, List, Optional, Protocol, Sequence

from llm_relay.core.errors import RelayError
from llm_relay.core.logging import get_logger
from llm_relay.core.markup import escape_html
from llm_relay.relay.chunks import TEXT_PRIORITY_FIELDS, interpret_line

STREAM_ERROR_MARKER = "[stream error]"


class SinkClosed(RelayError):
    """Write attempted on a sink that is already closed."""


class Upstream(Protocol):
    def chunks(self) -> AsyncIterator[str]: ...

    async def aclose(self) -> None: ...


class Sink(Protocol):
    @property
    def closed(self) -> bool: ...

    async def write(self, text: str) -> None: ...

    async def close(self) -> None: ...

    def on_disconnect(self, callback: Callable[[], None]) -> None: ...


_EOF = object()


class QueueSink:
    """
    Downstream sink backed by a queue; the HTTP response body drains it with `async for`.

    `close()` is the relay finishing the body. `disconnect()` is the caller going away;
    it closes the sink and notifies `on_disconnect` listeners. Either way the sink
    transitions to closed exactly once.
    """

    def __init__(self) -> None:
        self._queue: "asyncio.Queue[object]" = asyncio.Queue()
        self._closed = False
        self._listeners: List[Callable[[], None]] = []
        self.close_count = 0

    @property
    def closed(self) -> bool:
        return self._closed

    async def write(self, text: str) -> None:
        if self._closed:
            raise SinkClosed("sink is closed")
        self._queue.put_nowait(text)

    async def close(self) -> None:
        if self._mark_closed():
            self._queue.put_nowait(_EOF)

    def disconnect(self) -> None:
        if not self._mark_closed():
            return
        self._queue.put_nowait(_EOF)
        for cb in list(self._listeners):
            cb()

    def on_disconnect(self, callback: Callable[[], None]) -> None:
        self._listeners.append(callback)

    def _mark_closed(self) -> bool:
        if self._closed:
            return False
        self._closed = True
        self.close_count += 1
        return True

    async def __aiter__(self) -> AsyncIterator[str]:
        while True:
            item = await self._queue.get()
            if item is _EOF:
                return
            yield str(item)


class RelayOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    DISCONNECTED = "disconnected"


class StreamRelay:
    """
    Pump one upstream generation stream into one downstream sink.

    Every upstream chunk is split into lines and each line goes through the chunk
    interpreter; fragments are written immediately. The relay ends on upstream EOF
    (final newline, then close), upstream error (inline diagnostic, then close) or
    downstream disconnect (upstream cancelled, nothing else written).
    """

    def __init__(
        self,
        upstream: Upstream,
        sink: Sink,
        *,
        fields: Sequence[str] = TEXT_PRIORITY_FIELDS,
        model: str = "",
    ) -> None:
        self._upstream = upstream
        self._sink = sink
        self._fields = tuple(fields)
        self._task: Optional["asyncio.Task[RelayOutcome]"] = None
        self._pumping = False
        self._disconnected = False
        self.upstream_cancellations = 0
        self.fragments_written = 0
        self._log = get_logger(component="relay", model=model)

    async def run(self) -> RelayOutcome:
        self._task = asyncio.current_task()  # type: ignore[assignment]
        self._sink.on_disconnect(self._handle_disconnect)
        try:
            if self._sink.closed:
                self._handle_disconnect()
                return RelayOutcome.DISCONNECTED
            outcome = await self._pump()
        finally:
            self._pumping = False
            await self._upstream.aclose()
        self._log.info("relay_finished", status=outcome.value, fragments=self.fragments_written)
        return outcome

    async def _pump(self) -> RelayOutcome:
        self._pumping = True
        try:
            async for chunk in self._upstream.chunks():
                for line in chunk.splitlines():
                    fragment = interpret_line(line, self._fields)
                    if not fragment:
                        continue
                    if self._sink.closed:
                        break
                    await self._sink.write(fragment)
                    self.fragments_written += 1
                if self._sink.closed:
                    break
        except asyncio.CancelledError:
            if self._disconnected:
                return RelayOutcome.DISCONNECTED
            raise
        except Exception as e:
            if self._disconnected:
                return RelayOutcome.DISCONNECTED
            self._log.warning("upstream_error", error=str(e) or e.__class__.__name__)
            if not self._sink.closed:
                message = str(e) or e.__class__.__name__
                await self._sink.write("\n%s %s\n" % (STREAM_ERROR_MARKER, escape_html(message)))
                await self._sink.close()
            return RelayOutcome.FAILED

        if self._disconnected:
            return RelayOutcome.DISCONNECTED
        if not self._sink.closed:
            await self._sink.write("\n")
            await self._sink.close()
        return RelayOutcome.COMPLETED

    def _handle_disconnect(self) -> None:
        if self._disconnected:
            return
        self._disconnected = True
        self._log.warning("client_disconnected")
        self._cancel_upstream()

    def _cancel_upstream(self) -> None:
        if self.upstream_cancellations:
            return
        self.upstream_cancellations += 1
        task = self._task
        # Cancelling the pump unwinds the upstream read; `run` then closes the channel.
        if self._pumping and task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
