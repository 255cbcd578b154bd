"""Live output events and the per-target broadcaster.

This module defines the events published while an operation runs and the
broadcaster that fans them out to any number of subscribers per target.

Event Types:
    - ResetEvent: A new operation replaces the previous one's output
    - StartedEvent: A remote command started
    - OutputEvent: A chunk of remote output (stdout/stderr)
    - PhaseEvent: A named phase began ("rechecking", "reconnecting", ...)
    - WarningEvent / ErrorEvent: Messages for the viewer
    - DoneEvent: The operation finished

Delivery guarantees:
    - Subscribers receive the buffered history of the current operation,
      then every later event, in publish order.
    - publish() never blocks. Each subscriber has a bounded queue; when it
      is full the oldest queued event is dropped for that subscriber only.
"""

from __future__ import annotations

import asyncio
import json
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar, Self

import structlog

if TYPE_CHECKING:
    from types import TracebackType

logger = structlog.get_logger(__name__)


class EventType(str, Enum):
    """Types of live output events."""

    RESET = "reset"
    STARTED = "started"
    OUTPUT = "output"
    PHASE = "phase"
    WARNING = "warning"
    ERROR = "error"
    DONE = "done"


@dataclass(slots=True)
class StreamEvent:
    """Base class for live output events."""

    event_type: ClassVar[EventType]
    timestamp: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {"type": self.event_type.value}

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict())


@dataclass(slots=True)
class ResetEvent(StreamEvent):
    """Tells viewers to clear output from a previous operation."""

    event_type: ClassVar[EventType] = EventType.RESET


@dataclass(slots=True)
class StartedEvent(StreamEvent):
    """A remote command started.

    Attributes:
        command: The (sanitized) command line
        manager: Package manager family, or "system"
    """

    event_type: ClassVar[EventType] = EventType.STARTED
    command: str = ""
    manager: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.event_type.value, "command": self.command, "pkgManager": self.manager}


@dataclass(slots=True)
class OutputEvent(StreamEvent):
    """A chunk of remote output."""

    event_type: ClassVar[EventType] = EventType.OUTPUT
    data: str = ""
    stream: str = "stdout"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.event_type.value, "data": self.data, "stream": self.stream}


@dataclass(slots=True)
class PhaseEvent(StreamEvent):
    """A named phase of the operation began."""

    event_type: ClassVar[EventType] = EventType.PHASE
    phase: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.event_type.value, "phase": self.phase}


@dataclass(slots=True)
class WarningEvent(StreamEvent):
    """A warning for the viewer."""

    event_type: ClassVar[EventType] = EventType.WARNING
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.event_type.value, "message": self.message}


@dataclass(slots=True)
class ErrorEvent(StreamEvent):
    """An error for the viewer."""

    event_type: ClassVar[EventType] = EventType.ERROR
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.event_type.value, "message": self.message}


@dataclass(slots=True)
class DoneEvent(StreamEvent):
    """The operation finished."""

    event_type: ClassVar[EventType] = EventType.DONE
    success: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.event_type.value, "success": self.success}


_EVENT_CLASSES: dict[str, type[StreamEvent]] = {
    "reset": ResetEvent,
    "started": StartedEvent,
    "output": OutputEvent,
    "phase": PhaseEvent,
    "warning": WarningEvent,
    "error": ErrorEvent,
    "done": DoneEvent,
}


def parse_event(data: dict[str, Any]) -> StreamEvent | None:
    """Parse a dictionary produced by ``to_dict`` back into an event.

    Returns:
        StreamEvent or None if the type is unknown.
    """
    event_type = data.get("type")
    if event_type == "started":
        return StartedEvent(command=data.get("command", ""), manager=data.get("pkgManager", ""))
    if event_type == "output":
        return OutputEvent(data=data.get("data", ""), stream=data.get("stream", "stdout"))
    if event_type == "phase":
        return PhaseEvent(phase=data.get("phase", ""))
    if event_type in ("warning", "error"):
        return _EVENT_CLASSES[event_type](message=data.get("message", ""))  # type: ignore[call-arg]
    if event_type == "done":
        return DoneEvent(success=bool(data.get("success", False)))
    if event_type == "reset":
        return ResetEvent()
    return None


# Queue size for each subscriber
DEFAULT_QUEUE_SIZE = 2000

# Replay buffer size per target
DEFAULT_BUFFER_SIZE = 2000


class Subscription:
    """A subscriber's bounded view of one target's channel.

    Iterating yields events until the subscription is closed. Overflow
    drops the oldest queued event.

    Attributes:
        target_id: Target this subscription listens to
        dropped_count: Number of events dropped due to overflow
    """

    def __init__(
        self,
        broadcaster: OutputBroadcaster,
        target_id: int,
        maxsize: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        self.target_id = target_id
        self._broadcaster = broadcaster
        self._queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue(maxsize=maxsize)
        self._dropped_count = 0
        self._closed = False
        self._log = logger.bind(component="subscription", target=target_id)

    @property
    def dropped_count(self) -> int:
        """Number of events dropped due to overflow."""
        return self._dropped_count

    @property
    def closed(self) -> bool:
        """Whether the subscription was closed."""
        return self._closed

    def qsize(self) -> int:
        """Return the current queue size."""
        return self._queue.qsize()

    def offer(self, event: StreamEvent | None) -> bool:
        """Queue an event without blocking.

        Returns:
            True if nothing had to be dropped.
        """
        try:
            self._queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            pass

        self._queue.get_nowait()
        self._queue.put_nowait(event)
        self._dropped_count += 1
        if self._dropped_count == 1 or self._dropped_count % 100 == 0:
            self._log.warning("subscriber_overflow", dropped_count=self._dropped_count)
        return False

    def get_nowait(self) -> StreamEvent | None:
        """Return the next queued event without waiting.

        Raises:
            asyncio.QueueEmpty: If nothing is queued.
        """
        return self._queue.get_nowait()

    def close(self) -> None:
        """Detach from the broadcaster and end iteration."""
        if self._closed:
            return
        self._closed = True
        self._broadcaster.unsubscribe(self)
        self.offer(None)

    def __aiter__(self) -> Self:
        return self

    async def __anext__(self) -> StreamEvent:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        event = await self._queue.get()
        if event is None:
            raise StopAsyncIteration
        return event

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()


@dataclass
class _Channel:
    buffer: deque[StreamEvent] = field(default_factory=deque)
    subscribers: set[Subscription] = field(default_factory=set)
    active: bool = False


class OutputBroadcaster:
    """Fans out live output per target with replay-on-subscribe.

    The buffer holds the events of the current (or most recent) operation.
    It is bounded: on overflow the oldest OutputEvent is evicted first, so
    StartedEvent and PhaseEvent headers stay available for replay.
    """

    def __init__(
        self,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        subscriber_queue_size: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        self.buffer_size = buffer_size
        self.subscriber_queue_size = subscriber_queue_size
        self._channels: dict[int, _Channel] = {}
        self._log = logger.bind(component="output_broadcaster")

    def _channel(self, target_id: int) -> _Channel:
        channel = self._channels.get(target_id)
        if channel is None:
            channel = _Channel()
            self._channels[target_id] = channel
        return channel

    def subscribe(self, target_id: int) -> Subscription:
        """Attach a subscriber and replay the buffered history into it.

        The queue is sized for the whole replay plus ``subscriber_queue_size``
        live events, so replay never drops the buffered headers.
        """
        channel = self._channel(target_id)
        subscription = Subscription(
            self, target_id, len(channel.buffer) + self.subscriber_queue_size
        )
        for event in channel.buffer:
            subscription.offer(event)
        channel.subscribers.add(subscription)
        self._log.debug(
            "subscriber_added",
            target=target_id,
            replayed=len(channel.buffer),
            subscribers=len(channel.subscribers),
        )
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Detach a subscriber."""
        channel = self._channels.get(subscription.target_id)
        if channel is not None:
            channel.subscribers.discard(subscription)

    def reset(self, target_id: int) -> None:
        """Start a new operation on a target's channel.

        If the channel holds events from a previous operation, subscribers
        receive a ResetEvent and the buffer is cleared. Must be called
        before the new operation's first StartedEvent.
        """
        channel = self._channel(target_id)
        if channel.buffer:
            reset = ResetEvent()
            for subscription in list(channel.subscribers):
                subscription.offer(reset)
            channel.buffer.clear()
        channel.active = True

    def publish(self, target_id: int, event: StreamEvent) -> None:
        """Buffer an event and deliver it to every subscriber without blocking."""
        channel = self._channel(target_id)
        if len(channel.buffer) >= self.buffer_size:
            self._evict(channel)
        channel.buffer.append(event)
        for subscription in list(channel.subscribers):
            subscription.offer(event)
        if isinstance(event, DoneEvent):
            channel.active = False

    def finish(self, target_id: int) -> None:
        """Mark the current operation finished without publishing."""
        channel = self._channels.get(target_id)
        if channel is not None:
            channel.active = False

    def is_active(self, target_id: int) -> bool:
        """Whether an operation is currently streaming on the target."""
        channel = self._channels.get(target_id)
        return bool(channel and channel.active)

    def snapshot(self, target_id: int) -> list[StreamEvent]:
        """Return a copy of the buffered events."""
        channel = self._channels.get(target_id)
        return list(channel.buffer) if channel else []

    def subscriber_count(self, target_id: int) -> int:
        """Return the number of subscribers on a target."""
        channel = self._channels.get(target_id)
        return len(channel.subscribers) if channel else 0

    def remove(self, target_id: int) -> None:
        """Close every subscriber and drop the channel."""
        channel = self._channels.pop(target_id, None)
        if channel is None:
            return
        for subscription in list(channel.subscribers):
            subscription.close()

    def _evict(self, channel: _Channel) -> None:
        for index, buffered in enumerate(channel.buffer):
            if isinstance(buffered, OutputEvent):
                del channel.buffer[index]
                return
        channel.buffer.popleft()
