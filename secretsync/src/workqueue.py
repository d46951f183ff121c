from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

from secretsync.src.metrics import METRICS
from secretsync.src.models import SecretRecord


@dataclass(frozen=True)
class SyncSecret:
    """Bring every replica of ``secret`` in line with its current state."""

    secret: SecretRecord


@dataclass(frozen=True)
class RetractSecret:
    """Remove the replicas of a deleted source secret.

    ``last_known`` is ``None`` when the delete arrived as a tombstone with no
    usable final state.
    """

    key: str
    last_known: SecretRecord | None = None


WorkItem = SyncSecret | RetractSecret


class KeyedWorkQueue:
    """Work queue with one ordered stream of items per object key.

    Guarantees:

    * Items for the same key are handed out in the order they were added,
      and a key is never handed to two workers at the same time.
    * Consecutive pending :class:`SyncSecret` items for a key collapse into
      the newest one, since only the latest state matters.
    * A failed item is put back at the head of its key and becomes available
      again after a bounded exponential backoff (1 s doubling up to 30 s).
      If newer work for the key arrives first, the failed item is dropped in
      its favour.

    Key internal state:
        ``_pending``
            Maps keys to their deque of not-yet-processed items.
        ``_ready``
            FIFO of keys that have pending items and are neither being
            processed nor waiting out a retry delay.
        ``_delayed``
            Maps keys to the monotonic time at which their failed head item
            may be retried.
        ``_retry_attempts``
            Consecutive failure counters per key, reset on success.
    """

    def __init__(
        self,
        *,
        base_retry_delay: float = 1.0,
        max_retry_delay: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        logger: logging.Logger | None = None,
    ) -> None:
        self.base_retry_delay = base_retry_delay
        self.max_retry_delay = max_retry_delay
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)

        self._cond = threading.Condition()
        self._pending: dict[str, deque[WorkItem]] = {}
        self._ready: deque[str] = deque()
        self._ready_keys: set[str] = set()
        self._processing: set[str] = set()
        self._delayed: dict[str, float] = {}
        self._retry_attempts: dict[str, int] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return sum(len(items) for items in self._pending.values())

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def _update_depth(self) -> None:
        METRICS.queue_depth.set(sum(1 for items in self._pending.values() if items))

    def _mark_ready(self, key: str) -> None:
        if key in self._processing or key in self._ready_keys or key in self._delayed:
            return
        self._ready.append(key)
        self._ready_keys.add(key)

    def _promote_due(self, now: float) -> None:
        due = sorted(
            (due_at, key) for key, due_at in self._delayed.items() if due_at <= now
        )
        for _, key in due:
            del self._delayed[key]
            self._mark_ready(key)

    def add(self, key: str, item: WorkItem) -> None:
        with self._cond:
            if self._shutting_down:
                return
            items = self._pending.setdefault(key, deque())
            if key in self._delayed:
                # The head is a failed item waiting out its backoff; newer
                # work for the key supersedes it.
                items.popleft()
                del self._delayed[key]
                self._retry_attempts.pop(key, None)
            if items and isinstance(item, SyncSecret) and isinstance(items[-1], SyncSecret):
                items[-1] = item
            else:
                items.append(item)
            self._mark_ready(key)
            self._update_depth()
            self._cond.notify()

    def get(self, timeout: float | None = None) -> tuple[str, WorkItem] | None:
        """Return the next ``(key, item)``, or ``None`` on timeout or shutdown."""
        deadline = None if timeout is None else self.clock() + timeout
        with self._cond:
            while True:
                if self._shutting_down:
                    return None
                now = self.clock()
                self._promote_due(now)
                if self._ready:
                    key = self._ready.popleft()
                    self._ready_keys.discard(key)
                    item = self._pending[key].popleft()
                    self._processing.add(key)
                    self._update_depth()
                    return key, item

                waits: list[float] = []
                if self._delayed:
                    waits.append(min(self._delayed.values()) - now)
                if deadline is not None:
                    remaining = deadline - now
                    if remaining <= 0:
                        return None
                    waits.append(remaining)
                self._cond.wait(timeout=max(0.0, min(waits)) if waits else None)

    def done(self, key: str, item: WorkItem, *, retry: bool = False) -> None:
        """Release *key* after processing *item*, requeueing it when *retry* is set."""
        with self._cond:
            self._processing.discard(key)
            items = self._pending.setdefault(key, deque())

            if retry and not self._shutting_down:
                if items:
                    self.logger.info("Dropping failed work for %s in favour of newer work", key)
                    self._retry_attempts.pop(key, None)
                else:
                    attempt = self._retry_attempts.get(key, 0) + 1
                    self._retry_attempts[key] = attempt
                    delay = min(self.max_retry_delay, self.base_retry_delay * 2 ** (attempt - 1))
                    items.appendleft(item)
                    self._delayed[key] = self.clock() + delay
                    METRICS.retry_total.inc()
                    self.logger.warning(
                        "Reconciliation for %s failed; scheduling retry attempt %d in %.1fs",
                        key,
                        attempt,
                        delay,
                    )
                    self._update_depth()
                    self._cond.notify_all()
                    return
            else:
                self._retry_attempts.pop(key, None)

            if items:
                self._mark_ready(key)
            else:
                del self._pending[key]
            self._update_depth()
            self._cond.notify_all()

    def shut_down(self) -> None:
        """Stop handing out work; items still pending are discarded."""
        with self._cond:
            self._shutting_down = True
            dropped = sum(len(items) for items in self._pending.values())
            self._cond.notify_all()
        if dropped:
            self.logger.info("Work queue shut down with %d pending item(s)", dropped)
