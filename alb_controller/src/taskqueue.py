from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from alb_controller.src.metrics import METRICS

# Upper bound on a single idle wait so a bare stop event (without shutdown())
# is still noticed promptly.
_STOP_POLL_SECONDS = 0.5


@dataclass(frozen=True)
class DummyObject:
    """Synthetic work item that forces a sync pass without a triggering object."""

    key: str


def get_dummy_object(key: str) -> DummyObject:
    return DummyObject(key=key)


def object_key(item: Any) -> str:
    """Return the stable queue key for *item*.

    Kubernetes objects map to ``namespace/name`` (or ``name`` when cluster
    scoped), synthetic items to their own key and plain strings to
    themselves.
    """
    if isinstance(item, DummyObject):
        return item.key
    if isinstance(item, str):
        return item

    metadata = getattr(item, "metadata", None)
    if metadata is None and isinstance(item, dict):
        metadata = item.get("metadata")
    if isinstance(metadata, dict):
        name = metadata.get("name")
        namespace = metadata.get("namespace")
    else:
        name = getattr(metadata, "name", None)
        namespace = getattr(metadata, "namespace", None)

    if not name:
        raise ValueError(f"cannot derive a queue key from {type(item).__name__} without a name")
    if namespace:
        return f"{namespace}/{name}"
    return str(name)


class TaskQueue:
    """Deduplicating FIFO of reconciliation keys drained by a single worker.

    A key is present in the pending set at most once.  ``run`` invokes the
    bound handler for one key at a time, so two invocations from the same
    queue never overlap; separate queues run independently.

    Enqueue paths:
        ``enqueue_task``
            Unconditional.  When the key is already pending the stored item
            is replaced with the newer one; the pending entry still
            guarantees one more run after the call.
        ``enqueue_skippable_task``
            Dropped if the key is already pending (or waiting on a retry).

    A handler exception schedules a retry with bounded exponential backoff
    (``base_backoff * 2**(attempt-1)`` capped at ``max_backoff``).  After
    ``max_retries`` failed retries the item is dropped and counted in
    ``alb_controller_queue_dropped_total``.

    When built with ``resync_key`` the worker enqueues that synthetic key
    whenever a full ``interval`` passes without a handler invocation, which
    turns the queue into a periodic trigger.
    """

    def __init__(
        self,
        handler: Callable[[Any], None],
        name: str = "default",
        *,
        max_retries: int = 5,
        base_backoff: float = 1.0,
        max_backoff: float = 30.0,
        resync_key: str | None = None,
        drain_on_shutdown: bool = False,
        key_fn: Callable[[Any], str] = object_key,
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.handler = handler
        self.name = name
        self.max_retries = max_retries
        self.base_backoff = base_backoff
        self.max_backoff = max_backoff
        self.resync_key = resync_key
        self.drain_on_shutdown = drain_on_shutdown
        self.key_fn = key_fn
        self.logger = logger or logging.getLogger(__name__)
        self._clock = clock

        self._cond = threading.Condition(threading.Lock())
        self._pending: OrderedDict[str, Any] = OrderedDict()
        # key -> (due_at, item) for failed items waiting on backoff
        self._retries: dict[str, tuple[float, Any]] = {}
        self._attempts: dict[str, int] = {}
        self._processing: str | None = None
        self._shutting_down = False
        self._last_sync = clock()
        METRICS.queue_depth.labels(queue=name).set(0)

    def __len__(self) -> int:
        with self._cond:
            return len(self._pending)

    def pending_keys(self) -> list[str]:
        with self._cond:
            return list(self._pending.keys())

    def retry_keys(self) -> list[str]:
        with self._cond:
            return list(self._retries.keys())

    def is_shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def _update_depth(self) -> None:
        METRICS.queue_depth.labels(queue=self.name).set(len(self._pending))

    def enqueue_task(self, item: Any) -> bool:
        """Mark *item*'s key pending; it is guaranteed to be handled at least once more."""
        key = self.key_fn(item)
        with self._cond:
            if self._shutting_down:
                self.logger.debug("Queue %s is shutting down; ignoring %s", self.name, key)
                return False
            # A fresh enqueue supersedes backoff state from earlier failures.
            if self._retries.pop(key, None) is not None:
                self._attempts.pop(key, None)
            self._pending[key] = item
            self._update_depth()
            self._cond.notify()
        self.logger.debug("Queued %s on %s", key, self.name)
        return True

    def enqueue_skippable_task(self, item: Any) -> bool:
        """Mark *item*'s key pending unless it already is.  Returns False when skipped."""
        key = self.key_fn(item)
        with self._cond:
            if self._shutting_down:
                self.logger.debug("Queue %s is shutting down; ignoring %s", self.name, key)
                return False
            if key in self._pending or key in self._retries:
                METRICS.queue_skipped_total.labels(queue=self.name).inc()
                self.logger.debug("Skipping duplicate %s on %s", key, self.name)
                return False
            self._pending[key] = item
            self._update_depth()
            self._cond.notify()
        self.logger.debug("Queued skippable %s on %s", key, self.name)
        return True

    def shutdown(self) -> None:
        """Stop accepting items and wake the worker so ``run`` returns.

        Pending items are abandoned unless the queue was built with
        ``drain_on_shutdown=True``, in which case the worker handles what is
        already pending (without further retries) before returning.
        """
        with self._cond:
            if self._shutting_down:
                return
            self._shutting_down = True
            abandoned = len(self._retries)
            self._retries.clear()
            if not self.drain_on_shutdown:
                abandoned += len(self._pending)
                self._pending.clear()
            self._update_depth()
            self._cond.notify_all()
        self.logger.info("Shutting down %s queue (abandoned %d item(s))", self.name, abandoned)

    def _promote_due_retries(self, now: float) -> None:
        due = [key for key, (due_at, _) in self._retries.items() if due_at <= now]
        for key in due:
            _, item = self._retries.pop(key)
            if key not in self._pending:
                self._pending[key] = item
        if due:
            self._update_depth()

    def _take_ready(self) -> tuple[str, Any] | None:
        """Pop the next ready key.  Caller must hold ``_cond``."""
        if not self._shutting_down:
            self._promote_due_retries(self._clock())
        if not self._pending:
            return None
        key, item = self._pending.popitem(last=False)
        self._processing = key
        self._update_depth()
        return key, item

    def _next_wait(self, interval: float) -> float:
        """Seconds the idle worker may sleep.  Caller must hold ``_cond``."""
        now = self._clock()
        candidates = [interval, _STOP_POLL_SECONDS]
        if self.resync_key is not None:
            candidates.append(self._last_sync + interval - now)
        if self._retries:
            candidates.append(min(due_at for due_at, _ in self._retries.values()) - now)
        return max(0.0, min(candidates))

    def _wait_for_item(
        self, interval: float, stop_event: threading.Event
    ) -> tuple[str, Any] | None:
        with self._cond:
            while True:
                if stop_event.is_set():
                    return None
                if self._shutting_down and not (self.drain_on_shutdown and self._pending):
                    return None

                ready = self._take_ready()
                if ready is not None:
                    return ready

                if (
                    self.resync_key is not None
                    and not self._shutting_down
                    and self._clock() - self._last_sync >= interval
                ):
                    self.logger.debug(
                        "Queue %s idle for %.1fs; queuing %s", self.name, interval, self.resync_key
                    )
                    self._pending[self.resync_key] = DummyObject(self.resync_key)
                    self._update_depth()
                    continue

                self._cond.wait(timeout=self._next_wait(interval))

    def _schedule_retry(self, key: str, item: Any) -> None:
        with self._cond:
            if self._shutting_down:
                self._attempts.pop(key, None)
                self.logger.warning("Not retrying %s on %s: queue is shutting down", key, self.name)
                return
            if key in self._pending:
                # Re-enqueued while the handler ran; that pending run is the retry.
                return

            attempt = self._attempts.get(key, 0) + 1
            if attempt > self.max_retries:
                self._attempts.pop(key, None)
                METRICS.queue_dropped_total.labels(queue=self.name).inc()
                self.logger.error(
                    "Dropping %s from %s after %d failed retries", key, self.name, self.max_retries
                )
                return

            self._attempts[key] = attempt
            delay = min(self.max_backoff, self.base_backoff * float(2 ** (attempt - 1)))
            self._retries[key] = (self._clock() + delay, item)
            self._cond.notify()
        METRICS.queue_retries_total.labels(queue=self.name).inc()
        self.logger.warning(
            "Sync of %s on %s failed; scheduling retry attempt %d in %.1fs",
            key,
            self.name,
            attempt,
            delay,
        )

    def _process(self, key: str, item: Any) -> None:
        started = self._clock()
        try:
            self.handler(item)
        except Exception:
            self.logger.exception("Error syncing %s on %s", key, self.name)
            self._schedule_retry(key, item)
        else:
            with self._cond:
                self._attempts.pop(key, None)
        finally:
            finished = self._clock()
            METRICS.sync_duration_seconds.labels(queue=self.name).observe(
                max(0.0, finished - started)
            )
            with self._cond:
                self._processing = None
                self._last_sync = finished
                self._cond.notify_all()

    def process_next(self) -> bool:
        """Handle the next ready key without waiting.  Returns False when idle."""
        with self._cond:
            if self._shutting_down and not self.drain_on_shutdown:
                return False
            ready = self._take_ready()
        if ready is None:
            return False
        self._process(*ready)
        return True

    def run(self, interval: float, stop_event: threading.Event) -> None:
        """Drain the queue until *stop_event* fires or ``shutdown()`` is called.

        Work is handled as soon as it is pending; *interval* bounds how long
        the idle worker sleeps and, with ``resync_key``, the resync period.
        """
        self.logger.info("Starting %s queue worker (interval=%.1fs)", self.name, interval)
        with self._cond:
            self._last_sync = self._clock()
        while True:
            ready = self._wait_for_item(interval, stop_event)
            if ready is None:
                break
            self._process(*ready)
        self.logger.info("Queue %s worker stopped", self.name)
