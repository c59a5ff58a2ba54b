"""KubeStore: the platform contract over the official ``kubernetes`` client.

Kinds map onto:
  - SearchCluster -> CustomObjectsApi (scr.dev/v1alpha1, plural searchclusters)
  - Pod, Service  -> CoreV1Api
  - Job           -> BatchV1Api

Watches run one daemon thread per kind and reconnect on failure.
"""

from __future__ import annotations

import itertools
from collections import deque
from threading import Event, Lock, Thread
from typing import Any, Callable

import urllib3
from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException

from .errors import AlreadyExists, Conflict, NotFound, Problem, ScrError, Unavailable, ValidationError
from .resources import (
    API_VERSIONS,
    KIND_CLUSTER,
    KIND_JOB,
    KIND_POD,
    KIND_SERVICE,
    WATCH_ADDED,
    WATCH_DELETED,
    WATCH_MODIFIED,
    Resource,
    WatchEvent,
    format_selector,
)
from .store import utc_now

CRD_GROUP = "scr.dev"
CRD_VERSION = "v1alpha1"
CRD_PLURAL = "searchclusters"

# kind -> (API class attribute on KubeStore, resource name used in method names)
NAMESPACED_APIS: dict[str, tuple[str, str]] = {
    KIND_POD: ("core", "pod"),
    KIND_SERVICE: ("core", "service"),
    KIND_JOB: ("batch", "job"),
}

Handler = Callable[[WatchEvent], None]


def translate_api_error(exc: ApiException, what: str) -> ScrError:
    status = getattr(exc, "status", None)
    reason = str(getattr(exc, "reason", "") or "")
    body = str(getattr(exc, "body", "") or "")
    if status == 404:
        return NotFound(f"{what} not found")
    if status == 409:
        if "AlreadyExists" in body or "AlreadyExists" in reason:
            return AlreadyExists(f"{what} already exists")
        return Conflict(f"{what}: {reason or 'conflict'}")
    if status == 422:
        return ValidationError([Problem(what, reason or "rejected by the API server")])
    return Unavailable(f"{what}: K8s API error ({status}): {reason}")


class KubeStore:
    def __init__(
        self,
        kubeconfig: str | None = None,
        context: str | None = None,
        in_cluster: bool = False,
        api_client: Any = None,
        watch_timeout_s: int = 300,
        watch_retry_s: float = 2.0,
        event_buffer: int = 500,
    ) -> None:
        self.api_client = api_client or self._load_api_client(kubeconfig, context, in_cluster)
        self.core = client.CoreV1Api(self.api_client)
        self.batch = client.BatchV1Api(self.api_client)
        self.custom = client.CustomObjectsApi(self.api_client)
        self.watch_timeout_s = watch_timeout_s
        self.watch_retry_s = watch_retry_s
        self._events: deque[dict[str, Any]] = deque(maxlen=event_buffer)
        self._event_ids = itertools.count(1)
        self._events_lock = Lock()

    @staticmethod
    def _load_api_client(kubeconfig: str | None, context: str | None, in_cluster: bool) -> Any:
        if in_cluster:
            config.load_incluster_config()
        else:
            kwargs: dict[str, Any] = {}
            if kubeconfig:
                kwargs["config_file"] = kubeconfig
            if context:
                kwargs["context"] = context
            config.load_kube_config(**kwargs)
        return client.ApiClient()

    # --- plumbing ---

    def _call(self, what: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except ApiException as e:
            raise translate_api_error(e, what) from e
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise Unavailable(f"{what}: {type(e).__name__}: {e}") from e

    def _method(self, kind: str, verb: str) -> Callable[..., Any]:
        """E.g. ("Pod", "read_namespaced_{}") -> core.read_namespaced_pod."""
        api_attr, plural = NAMESPACED_APIS[kind]
        return getattr(getattr(self, api_attr), verb.format(plural))

    def _to_resource(self, kind: str, obj: Any) -> Resource:
        manifest = obj if isinstance(obj, dict) else self.api_client.sanitize_for_serialization(obj)
        return Resource.from_manifest(manifest, kind=kind)

    @staticmethod
    def _patch_meta(res: Resource, **fields: Any) -> dict[str, Any]:
        meta = dict(fields)
        if res.resource_version:
            meta["resourceVersion"] = res.resource_version
        return meta

    @staticmethod
    def _body(res: Resource) -> dict[str, Any]:
        body = res.to_manifest()
        body.pop("status", None)
        return body

    # --- reads ---

    def get(self, kind: str, namespace: str, name: str) -> Resource:
        what = f"{kind} {namespace}/{name}"
        if kind == KIND_CLUSTER:
            obj = self._call(
                what, self.custom.get_namespaced_custom_object, CRD_GROUP, CRD_VERSION, namespace, CRD_PLURAL, name
            )
        else:
            obj = self._call(what, self._method(kind, "read_namespaced_{}"), name, namespace)
        return self._to_resource(kind, obj)

    def list(self, kind: str, namespace: str | None = None, selector: dict[str, str] | None = None) -> list[Resource]:
        what = f"{kind} list"
        label_selector = format_selector(selector)
        if kind == KIND_CLUSTER:
            if namespace is None:
                obj = self._call(
                    what,
                    self.custom.list_cluster_custom_object,
                    CRD_GROUP,
                    CRD_VERSION,
                    CRD_PLURAL,
                    label_selector=label_selector,
                )
            else:
                obj = self._call(
                    what,
                    self.custom.list_namespaced_custom_object,
                    CRD_GROUP,
                    CRD_VERSION,
                    namespace,
                    CRD_PLURAL,
                    label_selector=label_selector,
                )
            items = obj.get("items") or []
        else:
            if namespace is None:
                obj = self._call(what, self._method(kind, "list_{}_for_all_namespaces"), label_selector=label_selector)
            else:
                obj = self._call(what, self._method(kind, "list_namespaced_{}"), namespace, label_selector=label_selector)
            items = obj.items or []
        return sorted((self._to_resource(kind, i) for i in items), key=lambda r: (r.namespace, r.name))

    # --- writes ---

    def create(self, res: Resource) -> Resource:
        what = f"{res.kind} {res.namespace}/{res.name}"
        body = self._body(res)
        if res.kind == KIND_CLUSTER:
            obj = self._call(
                what, self.custom.create_namespaced_custom_object, CRD_GROUP, CRD_VERSION, res.namespace, CRD_PLURAL, body
            )
        else:
            obj = self._call(what, self._method(res.kind, "create_namespaced_{}"), res.namespace, body)
        return self._to_resource(res.kind, obj)

    def update(self, res: Resource) -> Resource:
        what = f"{res.kind} {res.namespace}/{res.name}"
        if res.kind == KIND_CLUSTER:
            obj = self._call(
                what,
                self.custom.replace_namespaced_custom_object,
                CRD_GROUP,
                CRD_VERSION,
                res.namespace,
                CRD_PLURAL,
                res.name,
                self._body(res),
            )
        elif res.kind == KIND_POD:
            # Pod specs are immutable apart from container images.
            patch = {
                "metadata": self._patch_meta(res, labels=res.labels, annotations=res.annotations),
                "spec": {
                    "containers": [{"name": c["name"], "image": c["image"]} for c in res.spec.get("containers", [])]
                },
            }
            obj = self._call(what, self.core.patch_namespaced_pod, res.name, res.namespace, patch)
        else:
            obj = self._call(what, self._method(res.kind, "replace_namespaced_{}"), res.name, res.namespace, self._body(res))
        return self._to_resource(res.kind, obj)

    def update_status(self, res: Resource) -> Resource:
        what = f"{res.kind} {res.namespace}/{res.name} status"
        if res.kind == KIND_CLUSTER:
            body = self._body(res)
            body["status"] = res.status
            obj = self._call(
                what,
                self.custom.replace_namespaced_custom_object_status,
                CRD_GROUP,
                CRD_VERSION,
                res.namespace,
                CRD_PLURAL,
                res.name,
                body,
            )
        else:
            patch = {"metadata": self._patch_meta(res), "status": res.status}
            obj = self._call(what, self._method(res.kind, "patch_namespaced_{}_status"), res.name, res.namespace, patch)
        return self._to_resource(res.kind, obj)

    def delete(self, kind: str, namespace: str, name: str) -> None:
        what = f"{kind} {namespace}/{name}"
        if kind == KIND_CLUSTER:
            self._call(
                what,
                self.custom.delete_namespaced_custom_object,
                CRD_GROUP,
                CRD_VERSION,
                namespace,
                CRD_PLURAL,
                name,
                propagation_policy="Background",
            )
        else:
            self._call(what, self._method(kind, "delete_namespaced_{}"), name, namespace, propagation_policy="Background")

    # --- watches ---

    def _watch_source(self, kind: str) -> tuple[Callable[..., Any], tuple[Any, ...]]:
        if kind == KIND_CLUSTER:
            return self.custom.list_cluster_custom_object, (CRD_GROUP, CRD_VERSION, CRD_PLURAL)
        return self._method(kind, "list_{}_for_all_namespaces"), ()

    def watch(self, kind: str, handler: Handler) -> Callable[[], None]:
        stop = Event()
        list_fn, args = self._watch_source(kind)

        def run() -> None:
            while not stop.is_set():
                w = watch.Watch()
                try:
                    for ev in w.stream(list_fn, *args, timeout_seconds=self.watch_timeout_s):
                        if stop.is_set():
                            w.stop()
                            return
                        if ev.get("type") not in (WATCH_ADDED, WATCH_MODIFIED, WATCH_DELETED):
                            continue
                        handler(WatchEvent(ev["type"], self._to_resource(kind, ev["object"])))
                except (ApiException, urllib3.exceptions.HTTPError, OSError) as e:
                    self.log_event("WARN", f"Watch on {kind} interrupted: {type(e).__name__}: {e}")
                    stop.wait(self.watch_retry_s)
                except Exception as e:
                    # a bad object or a failing handler must not end the watch for this kind
                    self.log_event("ERROR", f"Watch on {kind} failed: {type(e).__name__}: {e}; reconnecting")
                    stop.wait(self.watch_retry_s)

        Thread(target=run, name=f"watch-{kind.lower()}", daemon=True).start()
        return stop.set

    # --- events ---

    def log_event(self, level: str, message: str, cluster: str | None = None, namespace: str | None = None) -> None:
        with self._events_lock:
            self._events.append(
                {
                    "id": next(self._event_ids),
                    "ts": utc_now(),
                    "level": level.upper(),
                    "namespace": namespace,
                    "cluster": cluster,
                    "message": message,
                }
            )
        if not cluster or not namespace:
            return
        body = {
            "metadata": {"generateName": f"{cluster}."},
            "involvedObject": {
                "apiVersion": API_VERSIONS[KIND_CLUSTER],
                "kind": KIND_CLUSTER,
                "name": cluster,
                "namespace": namespace,
            },
            "reason": "Reconcile",
            "message": message,
            "type": "Warning" if level.upper() in {"WARN", "ERROR"} else "Normal",
            "source": {"component": "scr"},
            "firstTimestamp": utc_now(),
            "lastTimestamp": utc_now(),
        }
        try:
            self._call(f"event for {namespace}/{cluster}", self.core.create_namespaced_event, namespace, body)
        except ScrError:
            # events are advisory; the in-memory buffer above still has it
            pass

    def latest_events(self, limit: int = 100) -> list[dict[str, Any]]:
        with self._events_lock:
            return list(reversed(self._events))[:limit]
