from __future__ import annotations

from typing import Any, Callable, Protocol

from .resources import KIND_CLUSTER, LABEL_CLUSTER, LABEL_ROLE, ClusterKey, Resource, WatchEvent


class Store(Protocol):
    """What the controller needs from an orchestration platform.

    Every call is a single synchronous round trip raising NotFound,
    Conflict (AlreadyExists) or Unavailable.
    """

    def get(self, kind: str, namespace: str, name: str) -> Resource: ...

    def list(self, kind: str, namespace: str | None = None, selector: dict[str, str] | None = None) -> list[Resource]: ...

    def create(self, res: Resource) -> Resource: ...

    def update(self, res: Resource) -> Resource: ...

    def update_status(self, res: Resource) -> Resource: ...

    def delete(self, kind: str, namespace: str, name: str) -> None: ...

    def watch(self, kind: str, handler: Callable[[WatchEvent], None]) -> Callable[[], None]: ...

    def log_event(self, level: str, message: str, cluster: str | None = None, namespace: str | None = None) -> None: ...

    def latest_events(self, limit: int = 100) -> list[dict[str, Any]]: ...


class Accessor:
    """Typed read/write access to the platform. No retries: that is the reconciler's call."""

    def __init__(self, store: Store):
        self.store = store

    def get(self, kind: str, namespace: str, name: str) -> Resource:
        return self.store.get(kind, namespace, name)

    def list(self, kind: str, namespace: str | None = None, selector: dict[str, str] | None = None) -> list[Resource]:
        return self.store.list(kind, namespace, selector)

    def create(self, res: Resource) -> Resource:
        return self.store.create(res)

    def update(self, res: Resource) -> Resource:
        return self.store.update(res)

    def update_status(self, res: Resource) -> Resource:
        return self.store.update_status(res)

    def delete(self, kind: str, namespace: str, name: str) -> None:
        self.store.delete(kind, namespace, name)

    # --- typed helpers ---

    def get_cluster(self, key: ClusterKey) -> Resource:
        return self.store.get(KIND_CLUSTER, key.namespace, key.name)

    def list_owned(self, key: ClusterKey, kind: str, role: str | None = None) -> list[Resource]:
        """List resources labelled for ``key`` and actually owned by it."""
        selector = {LABEL_CLUSTER: key.name}
        if role:
            selector[LABEL_ROLE] = role
        return [r for r in self.store.list(kind, key.namespace, selector) if r.owner_key() == key]

    def cluster_keys(self) -> list[ClusterKey]:
        return [ClusterKey(r.namespace, r.name) for r in self.store.list(KIND_CLUSTER)]

    def record_event(self, level: str, message: str, key: ClusterKey | None = None) -> None:
        self.store.log_event(
            level, message, cluster=key.name if key else None, namespace=key.namespace if key else None
        )
