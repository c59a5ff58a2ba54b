from __future__ import annotations

from typing import Callable

from .accessor import Store
from .resources import KIND_CLUSTER, OWNED_KINDS, ClusterKey, WatchEvent
from .workqueue import WorkQueue


class WatchRouter:
    """Turns platform notifications into reconcile requests.

    Events never carry data to the reconciler, only the owning cluster key;
    the queue collapses bursts for the same key into one pending request.
    """

    def __init__(self, store: Store, queue: WorkQueue, kinds: tuple[str, ...] = (KIND_CLUSTER, *OWNED_KINDS)):
        self.store = store
        self.queue = queue
        self.kinds = kinds
        self._unsubscribe: list[Callable[[], None]] = []

    def start(self) -> None:
        if self._unsubscribe:
            return
        for kind in self.kinds:
            self._unsubscribe.append(self.store.watch(kind, self.handle))

    def stop(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []

    @staticmethod
    def key_for(event: WatchEvent) -> ClusterKey | None:
        res = event.resource
        if res.kind == KIND_CLUSTER:
            return ClusterKey(res.namespace, res.name)
        return res.owner_key()

    def handle(self, event: WatchEvent) -> None:
        key = self.key_for(event)
        if key is not None:
            self.queue.add(key)
