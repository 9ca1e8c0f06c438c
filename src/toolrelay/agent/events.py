"""
Event sinks for agent observability.

The orchestrator only ever *writes* events; whoever streams them (WebSocket, SSE, a test) drains an
:class:`EventChannel`.  Detaching a channel does not stop the work that produces events: later
events are simply dropped.
"""

import asyncio
import logging
from typing import (
    AsyncIterator,
    List,
    Optional,
    Protocol,
)

from toolrelay.core.schema import AgentEvent

logger = logging.getLogger(__name__)


class EventSink(Protocol):
    """Anything the orchestrator can push events to."""

    async def emit(self, event: AgentEvent) -> None:
        """Deliver one event."""


class EventChannel:
    """
    Queue-backed :class:`EventSink` with an async-iterator reader side.

    ``maxsize=0`` makes the queue unbounded; with a bound, ``emit`` waits for the reader.
    """

    _CLOSED = object()

    def __init__(self, maxsize: int = 0) -> None:
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=maxsize)
        self._detached = False
        self._closed = False
        self._pending_close: Optional["asyncio.Task[None]"] = None

    @property
    def detached(self) -> bool:
        """True once the reader went away."""
        return self._detached

    async def emit(self, event: AgentEvent) -> None:
        if self._detached or self._closed:
            logger.debug("Dropping %s event for detached channel", event.type)
            return
        await self._queue.put(event)

    def detach(self) -> None:
        """Stop accepting events and discard what is queued."""
        self._detached = True
        if self._pending_close is not None:
            self._pending_close.cancel()
        while not self._queue.empty():
            self._queue.get_nowait()

    def close(self) -> None:
        """Signal end of stream to the reader.  Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        if self._detached:
            return
        try:
            self._queue.put_nowait(self._CLOSED)
        except asyncio.QueueFull:
            # Bounded and full: deliver the end marker once the reader catches up.
            self._pending_close = asyncio.get_running_loop().create_task(
                self._queue.put(self._CLOSED)
            )

    async def get(self) -> Optional[AgentEvent]:
        """Next event, or *None* once the channel is closed."""
        item = await self._queue.get()
        if item is self._CLOSED:
            return None
        return item  # type: ignore[return-value]

    def __aiter__(self) -> AsyncIterator[AgentEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[AgentEvent]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event


class EventRecorder:
    """Sink that keeps every event in a list."""

    def __init__(self) -> None:
        self.events: List[AgentEvent] = []

    async def emit(self, event: AgentEvent) -> None:
        self.events.append(event)

    def of_type(self, kind: str) -> List[AgentEvent]:
        """Events whose ``type`` is *kind*, in emission order."""
        return [event for event in self.events if event.type == kind]
