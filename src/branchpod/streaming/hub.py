"""In-process fan-out of output events to live subscribers.

Two delivery strategies share one subscriber model:

- direct-event keys (dev servers, ad-hoc commands): producers publish
  LogEntries into a per-key inbound queue; a single fan-out task per key
  appends them to a ring buffer and delivers them to every subscriber.
- polled keys (tmux consoles): a poller captures the session on an interval
  and emits line deltas or full refreshes, only while the key has
  subscribers.

New subscribers always receive a replay (buffered entries, or the last known
capture) before any live event.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

import structlog

from branchpod.errors import ExternalServiceError
from branchpod.models import EventType, LogEntry, StreamEvent, StreamKey
from branchpod.streaming.diff import DeltaKind, compute_delta, normalize_capture

logger = structlog.get_logger()

# Returns the raw capture, or None when the backing session does not exist
CaptureFn = Callable[[], Awaitable[str | None]]

CONSOLE_READY_MESSAGE = "Console ready. Run a command to start."


class Subscription:
    """One live viewer bound to a stream key.

    Iterate with ``async for`` until the hub closes the subscription, and call
    ``close()`` when the viewer disconnects.
    """

    def __init__(self, hub: StreamHub, key: StreamKey, max_pending: int) -> None:
        self.key = key
        self._hub = hub
        self._max_pending = max_pending
        self._queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue()
        self.closed = False

    def _offer(self, event: StreamEvent) -> bool:
        """Queue a live event; False if this viewer has fallen too far behind."""
        if self.closed:
            return False
        if self._queue.qsize() >= self._max_pending:
            return False
        self._queue.put_nowait(event)
        return True

    def _replay(self, event: StreamEvent) -> None:
        self._queue.put_nowait(event)

    def _end(self) -> None:
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(None)

    async def get(self) -> StreamEvent | None:
        """Next event, or None once the subscription has ended."""
        return await self._queue.get()

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        self._hub.unsubscribe(self)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> StreamEvent:
        event = await self._queue.get()
        if event is None:
            raise StopAsyncIteration
        return event


@dataclass
class _DirectChannel:
    key: StreamKey
    buffer: deque[LogEntry]
    inbound: asyncio.Queue[LogEntry] = field(default_factory=asyncio.Queue)
    subscribers: set[Subscription] = field(default_factory=set)
    task: asyncio.Task[None] | None = None


@dataclass
class _PolledChannel:
    key: StreamKey
    capture: CaptureFn | None = None
    last_capture: str | None = None
    subscribers: set[Subscription] = field(default_factory=set)
    task: asyncio.Task[None] | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    # Subscribers still waiting on the lock keep the channel registered
    joining: int = 0

    @property
    def polling(self) -> bool:
        return self.task is not None and not self.task.done()


class StreamHub:
    """Per-key ring buffers, subscriber sets and pollers.

    Instances are independent; the app container owns one.
    """

    def __init__(
        self,
        buffer_size: int = 1000,
        subscriber_queue_size: int = 2000,
        poll_interval: float = 0.5,
    ) -> None:
        self._buffer_size = buffer_size
        self._queue_size = subscriber_queue_size
        self._poll_interval = poll_interval
        self._direct: dict[StreamKey, _DirectChannel] = {}
        self._polled: dict[StreamKey, _PolledChannel] = {}

    # ------------------------------------------------------------------
    # Direct-event strategy
    # ------------------------------------------------------------------

    def _direct_channel(self, key: StreamKey) -> _DirectChannel:
        channel = self._direct.get(key)
        if channel is None:
            channel = _DirectChannel(key=key, buffer=deque(maxlen=self._buffer_size))
            self._direct[key] = channel
        return channel

    def publish(self, key: StreamKey, entry: LogEntry) -> None:
        """Queue an entry for buffering and fan-out. Must run inside the event loop."""
        channel = self._direct_channel(key)
        channel.inbound.put_nowait(entry)
        if channel.task is None or channel.task.done():
            channel.task = asyncio.create_task(self._fan_out(channel), name=f"fanout:{key}")

    async def _fan_out(self, channel: _DirectChannel) -> None:
        """Deliver queued entries, exiting once the inbound queue is empty."""
        while not channel.inbound.empty():
            entry = channel.inbound.get_nowait()
            try:
                channel.buffer.append(entry)
                self._deliver(channel.subscribers, entry.to_event())
            finally:
                channel.inbound.task_done()
            await asyncio.sleep(0)

    async def drain(self, key: StreamKey) -> None:
        """Wait until every published entry for ``key`` has been delivered."""
        channel = self._direct.get(key)
        if channel is not None:
            await channel.inbound.join()

    def history(self, key: StreamKey) -> list[LogEntry]:
        channel = self._direct.get(key)
        return list(channel.buffer) if channel else []

    def subscribe(self, key: StreamKey) -> Subscription:
        """Subscribe to a direct-event key, replaying its buffered history first."""
        channel = self._direct_channel(key)
        subscription = Subscription(self, key, self._queue_size)
        # Replay and registration happen without yielding to the loop, so the
        # fan-out task cannot interleave: nothing is missed or repeated.
        for entry in channel.buffer:
            subscription._replay(entry.to_event())
        channel.subscribers.add(subscription)
        logger.debug("Stream subscriber added", key=str(key), replayed=len(channel.buffer))
        return subscription

    # ------------------------------------------------------------------
    # Polling-diff strategy
    # ------------------------------------------------------------------

    def _polled_channel(self, key: StreamKey) -> _PolledChannel:
        channel = self._polled.get(key)
        if channel is None:
            channel = _PolledChannel(key=key)
            self._polled[key] = channel
        return channel

    async def subscribe_console(self, key: StreamKey, capture: CaptureFn) -> Subscription:
        """Subscribe to a polled key.

        The first event is a ``refresh`` with the current view, or a system
        message when the session does not exist yet.
        """
        channel = self._polled_channel(key)
        channel.capture = capture
        subscription = Subscription(self, key, self._queue_size)

        channel.joining += 1
        try:
            await channel.lock.acquire()
        finally:
            channel.joining -= 1
        try:
            session_exists = True
            if not channel.polling or channel.last_capture is None:
                try:
                    raw = await capture()
                except ExternalServiceError as e:
                    logger.warning("Console capture failed on subscribe", key=str(key), error=str(e))
                else:
                    if raw is None:
                        session_exists = False
                        channel.last_capture = None
                    else:
                        channel.last_capture = normalize_capture(raw)

            if channel.last_capture is not None:
                subscription._replay(
                    StreamEvent(type=EventType.REFRESH, full_content=channel.last_capture)
                )
            else:
                subscription._replay(
                    StreamEvent(type=EventType.SYSTEM, message=CONSOLE_READY_MESSAGE)
                )

            channel.subscribers.add(subscription)
            if session_exists:
                self._ensure_poller(channel)
        finally:
            channel.lock.release()

        logger.debug("Console subscriber added", key=str(key), polling=channel.polling)
        return subscription

    def watch_console(self, key: StreamKey, capture: CaptureFn) -> None:
        """Make sure the key is polled (called after a command is injected)."""
        channel = self._polled_channel(key)
        channel.capture = capture
        self._ensure_poller(channel)

    def is_polling(self, key: StreamKey) -> bool:
        channel = self._polled.get(key)
        return bool(channel and channel.polling)

    def _ensure_poller(self, channel: _PolledChannel) -> None:
        if not channel.polling:
            channel.task = asyncio.create_task(self._poll(channel), name=f"poll:{channel.key}")

    async def _poll(self, channel: _PolledChannel) -> None:
        key = str(channel.key)
        logger.debug("Console polling started", key=key)
        while True:
            await asyncio.sleep(self._poll_interval)
            async with channel.lock:
                if not channel.subscribers or channel.capture is None:
                    logger.debug("Console polling stopped, no subscribers", key=key)
                    channel.task = None
                    self._release_polled(channel)
                    return

                try:
                    raw = await channel.capture()
                except ExternalServiceError as e:
                    logger.debug("Console capture failed", key=key, error=str(e))
                    continue

                if raw is None:
                    self._deliver(
                        channel.subscribers,
                        StreamEvent(type=EventType.SYSTEM, message="Console session ended"),
                    )
                    channel.last_capture = None
                    channel.task = None
                    return

                current = normalize_capture(raw)
                delta = compute_delta(channel.last_capture or "", current)
                channel.last_capture = current

                if delta.kind == DeltaKind.APPEND:
                    event = StreamEvent(type=EventType.OUTPUT, lines=list(delta.lines))
                elif delta.kind == DeltaKind.REFRESH:
                    event = StreamEvent(type=EventType.REFRESH, full_content=delta.full_content)
                else:
                    continue
                self._deliver(channel.subscribers, event)

    # ------------------------------------------------------------------
    # Subscriber lifecycle
    # ------------------------------------------------------------------

    def _deliver(self, subscribers: set[Subscription], event: StreamEvent) -> None:
        for subscription in list(subscribers):
            if not subscription._offer(event):
                logger.warning(
                    "Dropping slow stream subscriber",
                    key=str(subscription.key),
                    pending=subscription.pending(),
                )
                subscribers.discard(subscription)
                subscription._end()

    def unsubscribe(self, subscription: Subscription) -> None:
        """Remove a viewer; the last viewer of a polled key stops its poller."""
        key = subscription.key
        subscription._end()

        direct = self._direct.get(key)
        if direct is not None:
            direct.subscribers.discard(subscription)
            self._release_direct(direct)

        polled = self._polled.get(key)
        if polled is not None:
            polled.subscribers.discard(subscription)
            if not polled.subscribers and polled.task is not None:
                polled.task.cancel()
                polled.task = None
                logger.debug("Console polling torn down", key=str(key))
            self._release_polled(polled)

    def _release_polled(self, channel: _PolledChannel) -> None:
        """Forget a polled key nobody watches, so idle keys hold no state."""
        if channel.subscribers or channel.joining or channel.polling:
            return
        if self._polled.get(channel.key) is channel:
            del self._polled[channel.key]

    def _release_direct(self, channel: _DirectChannel) -> None:
        """Forget a direct key that never produced output and has no viewers."""
        if channel.subscribers or channel.buffer or not channel.inbound.empty():
            return
        if self._direct.get(channel.key) is channel:
            del self._direct[channel.key]

    def subscriber_count(self, key: StreamKey) -> int:
        channel = self._direct.get(key) or self._polled.get(key)
        return len(channel.subscribers) if channel else 0

    async def close_key(self, key: StreamKey, message: str | None = None) -> None:
        """Notify and close every subscriber of ``key`` and drop its state."""
        tasks: list[asyncio.Task[None]] = []
        for channel in (self._direct.pop(key, None), self._polled.pop(key, None)):
            if channel is None:
                continue
            if message:
                self._deliver(channel.subscribers, StreamEvent(type=EventType.SYSTEM, message=message))
            for subscription in list(channel.subscribers):
                subscription._end()
            channel.subscribers.clear()
            if channel.task is not None:
                channel.task.cancel()
                tasks.append(channel.task)
                channel.task = None

        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def shutdown(self) -> None:
        """Close every key."""
        keys = set(self._direct) | set(self._polled)
        for key in keys:
            await self.close_key(key)
        logger.info("Stream hub shut down", keys=len(keys))
