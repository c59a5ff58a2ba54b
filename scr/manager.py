from __future__ import annotations

from typing import Callable

from .accessor import Accessor, Store
from .controller import Controller
from .reconciler import Reconciler, Result
from .resources import ClusterKey
from .router import WatchRouter
from .settings import Settings, settings
from .store import SqliteStore
from .workqueue import WorkQueue


def build_store(cfg: Settings = settings) -> Store:
    if cfg.backend == "kubernetes":
        from .kube import KubeStore

        return KubeStore(kubeconfig=cfg.kubeconfig, context=cfg.kube_context, in_cluster=cfg.in_cluster)
    if cfg.backend == "sqlite":
        return SqliteStore(cfg.db_path)
    raise ValueError(f"Unknown backend '{cfg.backend}'. Use 'sqlite' or 'kubernetes'.")


class Manager:
    """Wires store, accessor, queue, router, reconciler and worker pool together.

    Every collaborator is passed in or built here; nothing is looked up
    from module state at reconcile time.
    """

    def __init__(
        self,
        store: Store,
        cfg: Settings = settings,
        on_result: Callable[[ClusterKey, Result | None, Exception | None], None] | None = None,
    ):
        self.cfg = cfg
        self.store = store
        self.accessor = Accessor(store)
        self.queue = WorkQueue(backoff_base_s=cfg.backoff_base_s, backoff_max_s=cfg.backoff_max_s)
        self.router = WatchRouter(store, self.queue)
        self.reconciler = Reconciler(
            self.accessor,
            conflict_retries=cfg.conflict_retries,
            image_repository=cfg.image_repository,
            init_image=cfg.init_image,
            requeue_after_s=cfg.backoff_base_s,
            pending_requeue_s=cfg.resync_interval_s,
        )
        self.controller = Controller(
            self.reconciler,
            self.queue,
            self.accessor,
            workers=cfg.workers,
            resync_interval_s=cfg.resync_interval_s,
            on_result=on_result,
        )
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    def start(self) -> None:
        if self._started:
            return
        self.router.start()
        self.controller.start()
        # Initial full pass: clusters created while no controller was running.
        self.controller.resync()
        self._started = True

    def stop(self) -> bool:
        if not self._started:
            return True
        self.router.stop()
        drained = self.controller.stop(self.cfg.shutdown_timeout_s)
        self._started = False
        return drained
