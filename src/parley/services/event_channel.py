"""One-way, ordered, back-pressured channel between a producer and a consumer.

The producer coroutine runs in its own task and pushes events with
``send``; the consumer iterates the channel. A bounded queue applies
back-pressure, so a slow consumer pauses the producer at its next send.
Closing the channel (or cancelling the consuming task) cancels the producer.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from parley.exceptions import TransportError
from parley.models.session_event import SessionEvent


logger = logging.getLogger(__name__)

EventSink = Callable[[SessionEvent], Awaitable[None]]
Producer = Callable[[EventSink], Awaitable[Any]]

_END = object()


class ChannelClosedError(TransportError):
    """Raised on ``send`` after the consumer has closed the channel."""


class EventChannel:
    """Ordered event channel fed by a producer task.

    Usage::

        channel = EventChannel(lambda emit: engine.run(session, emit))
        async for event in channel:
            ...
    """

    def __init__(self, producer: Producer, max_size: int = 256):
        self._producer = producer
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue(maxsize=max_size)
        self._task: Optional[asyncio.Task] = None
        self._closed = False
        self._iterated = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, event: SessionEvent) -> None:
        """Push an event, waiting while the channel is full."""
        if self._closed:
            raise ChannelClosedError("Event channel is closed")
        await self._queue.put(event)

    async def _run_producer(self) -> None:
        try:
            await self._producer(self.send)
        finally:
            if not self._closed:
                await self._queue.put(_END)

    def __aiter__(self) -> AsyncIterator[SessionEvent]:
        if self._iterated:
            raise RuntimeError("EventChannel can only be iterated once")
        self._iterated = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[SessionEvent]:
        self._task = asyncio.create_task(self._run_producer())
        try:
            while True:
                item = await self._queue.get()
                if item is _END:
                    break
                yield item
            # Surface unexpected producer failures to the consumer
            await self._task
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        """Close the channel and cancel the producer if it is still running."""
        if self._closed:
            return
        self._closed = True
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                logger.debug("Event producer cancelled")
