from __future__ import annotations

import time
from threading import Event, Thread
from typing import Callable

from .accessor import Accessor
from .alerts import notify_reconcile_failure
from .errors import ScrError
from .reconciler import Reconciler, Result, State
from .resources import ClusterKey
from .workqueue import WorkQueue


class Controller:
    """Fixed pool of reconcile workers draining one shared queue.

    Failures are scoped to a single cluster key: nothing a reconcile raises
    stops the pool.
    """

    def __init__(
        self,
        reconciler: Reconciler,
        queue: WorkQueue,
        accessor: Accessor,
        workers: int = 2,
        resync_interval_s: float = 30.0,
        on_result: Callable[[ClusterKey, Result | None, Exception | None], None] | None = None,
    ):
        self.reconciler = reconciler
        self.queue = queue
        self.accessor = accessor
        self.workers = max(1, int(workers))
        self.resync_interval_s = resync_interval_s
        self.on_result = on_result
        self._stop = Event()
        self._threads: list[Thread] = []
        self._resync_thr: Thread | None = None

    def start(self) -> None:
        if self._threads:
            return
        self.accessor.record_event("INFO", f"Controller started with {self.workers} workers")
        for i in range(self.workers):
            t = Thread(target=self._worker, name=f"reconcile-worker-{i}", daemon=True)
            t.start()
            self._threads.append(t)
        self._resync_thr = Thread(target=self._resync_loop, name="resync", daemon=True)
        self._resync_thr.start()

    def stop(self, timeout_s: float = 10.0) -> bool:
        """Stop pulling new work and wait for in-flight reconciles.

        Returns False if some reconcile was still running at the deadline;
        that work is abandoned and picked up by the next resync.
        """
        self._stop.set()
        self.queue.shut_down()
        deadline = time.monotonic() + max(0.0, timeout_s)
        for t in self._threads:
            t.join(max(0.0, deadline - time.monotonic()))
        drained = not any(t.is_alive() for t in self._threads)
        if not drained:
            self._record("WARN", "Shutdown timeout reached; abandoning in-flight reconciles")
        self._threads = []
        return drained

    def resync(self) -> None:
        for key in self.accessor.cluster_keys():
            self.queue.add(key)

    def _resync_loop(self) -> None:
        while not self._stop.wait(self.resync_interval_s):
            try:
                self.resync()
            except ScrError as e:
                self._record("WARN", f"Resync failed: {type(e).__name__}: {e}")

    def _worker(self) -> None:
        while True:
            key = self.queue.get()
            if key is None:
                return
            try:
                self.process(key)
            finally:
                self.queue.done(key)

    def process(self, key: ClusterKey) -> Result | None:
        result: Result | None = None
        err: Exception | None = None
        try:
            result = self.reconciler.reconcile(key)
        except ScrError as e:
            err = e
            if e.transient:
                delay = self.queue.add_rate_limited(key)
                self._record("WARN", f"Reconcile failed ({type(e).__name__}: {e}); retrying in {delay:.1f}s", key)
            else:
                self.queue.forget(key)
                if not e.repeated:
                    self._record("ERROR", f"Reconcile failed permanently: {type(e).__name__}: {e}", key)
                    notify_reconcile_failure(str(key), e)
        except Exception as e:
            err = e
            delay = self.queue.add_rate_limited(key)
            self._record("ERROR", f"Reconcile crashed ({type(e).__name__}: {e}); retrying in {delay:.1f}s", key)
        else:
            self.queue.forget(key)
            if result.state is State.REQUEUE and result.requeue_after is not None:
                self.queue.add_after(key, result.requeue_after)
        if self.on_result is not None:
            try:
                self.on_result(key, result, err)
            except Exception as e:
                self._record("ERROR", f"Result callback failed: {type(e).__name__}: {e}", key)
        return result

    def _record(self, level: str, message: str, key: ClusterKey | None = None) -> None:
        try:
            self.accessor.record_event(level, message, key)
        except ScrError:
            # best effort: the store may be what is failing
            pass
