from __future__ import annotations

import heapq
import time
from collections import deque
from threading import Condition, Thread
from typing import Hashable


class WorkQueue:
    """Deduplicating work queue with single-flight processing per key.

    - ``add`` is a no-op while the key is already waiting (dirty).
    - a key handed out by ``get`` is never handed to another worker before
      ``done``; if it is added again meanwhile it is re-queued on ``done``.
    - ``add_after`` keeps only the earliest pending deadline per key.
    - ``add_rate_limited`` backs off exponentially per key until ``forget``.
    """

    def __init__(self, backoff_base_s: float = 0.5, backoff_max_s: float = 60.0):
        self.backoff_base_s = backoff_base_s
        self.backoff_max_s = backoff_max_s
        self._cond = Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._failures: dict[Hashable, int] = {}
        self._waiting: dict[Hashable, float] = {}
        self._heap: list[tuple[float, int, Hashable]] = []
        self._seq = 0
        self._shutting_down = False
        self._delay_thr = Thread(target=self._delay_loop, name="workqueue-delay", daemon=True)
        self._delay_thr.start()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def add(self, key: Hashable) -> None:
        with self._cond:
            self._add_locked(key)

    def _add_locked(self, key: Hashable) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify_all()

    def get(self, timeout: float | None = None) -> Hashable | None:
        """Block for the next key. Returns None once shut down (or on timeout)."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while not self._queue and not self._shutting_down:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return None
                self._cond.wait(remaining)
            if self._shutting_down:
                return None
            key = self._queue.popleft()
            self._processing.add(key)
            self._dirty.discard(key)
            return key

    def done(self, key: Hashable) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty and not self._shutting_down:
                self._queue.append(key)
                self._cond.notify_all()

    # --- delayed / rate limited ---

    def add_after(self, key: Hashable, delay_s: float) -> None:
        if delay_s <= 0:
            self.add(key)
            return
        ready_at = time.monotonic() + delay_s
        with self._cond:
            if self._shutting_down:
                return
            current = self._waiting.get(key)
            if current is not None and current <= ready_at:
                return
            self._waiting[key] = ready_at
            self._seq += 1
            heapq.heappush(self._heap, (ready_at, self._seq, key))
            self._cond.notify_all()

    def when(self, key: Hashable) -> float:
        """Record one more failure for ``key`` and return its backoff delay."""
        with self._cond:
            n = self._failures.get(key, 0)
            self._failures[key] = n + 1
        return min(self.backoff_base_s * (2**n), self.backoff_max_s)

    def add_rate_limited(self, key: Hashable) -> float:
        delay = self.when(key)
        self.add_after(key, delay)
        return delay

    def forget(self, key: Hashable) -> None:
        with self._cond:
            self._failures.pop(key, None)

    def num_requeues(self, key: Hashable) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def _delay_loop(self) -> None:
        with self._cond:
            while not self._shutting_down:
                now = time.monotonic()
                while self._heap and self._heap[0][0] <= now:
                    ready_at, _, key = heapq.heappop(self._heap)
                    # stale entries were superseded by an earlier deadline
                    if self._waiting.get(key) == ready_at:
                        del self._waiting[key]
                        self._add_locked(key)
                timeout = self._heap[0][0] - now if self._heap else None
                self._cond.wait(timeout)

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()
