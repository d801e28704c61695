"""Progress sinks receiving live broadcast events."""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import AsyncIterator, Optional

from models.events import ProgressEvent
from services.errors import SinkClosedError

logger = logging.getLogger(__name__)


class ProgressSink(ABC):
    """Append-only, ordered, push-only event channel."""

    @property
    def closed(self) -> bool:
        return False

    @abstractmethod
    def write(self, event: ProgressEvent) -> None:
        """Deliver one event. Raises SinkClosedError once the sink is closed."""

    @abstractmethod
    def close(self) -> None:
        """Close the channel. Further writes raise SinkClosedError."""


class QueueProgressSink(ProgressSink):
    """In-process sink buffering events for an async consumer such as an SSE response."""

    def __init__(self):
        self._queue: "asyncio.Queue[Optional[ProgressEvent]]" = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def write(self, event: ProgressEvent) -> None:
        if self._closed:
            raise SinkClosedError("Progress sink is closed")
        self._queue.put_nowait(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    async def events(self) -> AsyncIterator[ProgressEvent]:
        """Yield events in write order until the sink is closed."""
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event


class SafeEmitter:
    """
    Fail-soft wrapper around a sink.

    A failed write is logged and later events are still attempted; once the
    sink reports closure nothing more is sent.
    """

    def __init__(self, sink: ProgressSink):
        self.sink = sink
        self.stopped = False

    def emit(self, event: ProgressEvent) -> None:
        if self.stopped:
            return
        if self.sink.closed:
            logger.info("Progress sink closed, dropping remaining events")
            self.stopped = True
            return
        try:
            self.sink.write(event)
        except SinkClosedError:
            logger.info("Progress sink closed, dropping remaining events")
            self.stopped = True
        except Exception:
            logger.warning(f"Failed to write {event.type.value} event", exc_info=True)

    def close(self) -> None:
        if self.sink.closed:
            return
        try:
            self.sink.close()
        except Exception:
            logger.warning("Failed to close progress sink", exc_info=True)
