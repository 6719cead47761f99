from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Any

from alb_controller.src.errors import ChannelClosed
from alb_controller.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

DEFAULT_CAPACITY = 1024


class RingChannel:
    """Bounded single-producer/single-consumer channel that overwrites the oldest item.

    Sits between the object-store watches and the controller select loop.
    ``put`` never blocks: when the buffer is full the oldest buffered event is
    evicted to make room.  Under an event storm (a full re-list, say) the
    consumer only ever sees a suffix of what was produced, but always the
    most recent event.  Losing history is acceptable because every consumer
    re-derives state by key instead of replaying individual events.

    Surviving items are delivered in arrival order.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._capacity = capacity
        self._buffer: deque[Any] = deque()
        self._cond = threading.Condition(threading.Lock())
        self._closed = False
        self.dropped = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def __len__(self) -> int:
        with self._cond:
            return len(self._buffer)

    def put(self, item: Any) -> bool:
        """Admit *item*, evicting the oldest buffered item if the ring is full.

        Returns ``False`` only when the channel has been closed.
        """
        with self._cond:
            if self._closed:
                return False
            if len(self._buffer) >= self._capacity:
                self._buffer.popleft()
                self.dropped += 1
                METRICS.coalescer_dropped_events_total.inc()
            self._buffer.append(item)
            self._cond.notify()
        return True

    def get(self, timeout: float | None = None) -> Any:
        """Return the oldest buffered item.

        Blocks until an item arrives or *timeout* seconds elapse, in which
        case ``None`` is returned.  Raises :class:`ChannelClosed` once the
        channel is closed and every buffered item has been consumed.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while not self._buffer:
                if self._closed:
                    raise ChannelClosed("ring channel closed")
                if deadline is None:
                    self._cond.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._cond.wait(timeout=remaining)
            return self._buffer.popleft()

    def close(self) -> None:
        """Close the channel and wake every blocked consumer."""
        with self._cond:
            if self._closed:
                return
            self._closed = True
            buffered = len(self._buffer)
            self._cond.notify_all()
        LOGGER.debug("Ring channel closed with %d buffered event(s)", buffered)
