from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any


KIND_CLUSTER = "SearchCluster"
KIND_POD = "Pod"
KIND_SERVICE = "Service"
KIND_JOB = "Job"

API_VERSIONS: dict[str, str] = {
    KIND_CLUSTER: "scr.dev/v1alpha1",
    KIND_POD: "v1",
    KIND_SERVICE: "v1",
    KIND_JOB: "batch/v1",
}

OWNED_KINDS = (KIND_POD, KIND_SERVICE, KIND_JOB)

# Label keys shared by the translator, the accessor and the router.
LABEL_CLUSTER = "scr.cluster"
LABEL_ROLE = "scr.role"
LABEL_GROUP = "scr.group"
LABEL_REPLICA = "scr.replica"
LABEL_VERSION = "scr.version"
LABEL_NODE = "scr.node"
LABEL_MANAGED_BY = "scr.managed-by"
ANNOTATION_SPEC_HASH = "scr.spec-hash"

ROLE_WORKER = "worker"
ROLE_DISCOVERY = "discovery"
ROLE_PUBLIC = "public"
ROLE_HOST_INIT = "host-init"

WATCH_ADDED = "ADDED"
WATCH_MODIFIED = "MODIFIED"
WATCH_DELETED = "DELETED"


@dataclass(frozen=True)
class ClusterKey:
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def parse(cls, raw: str) -> "ClusterKey":
        namespace, _, name = raw.partition("/")
        if not name:
            return cls("default", namespace)
        return cls(namespace, name)


@dataclass(frozen=True)
class OwnerReference:
    kind: str
    name: str
    uid: str


@dataclass
class Resource:
    """A platform object, in a backend-neutral shape."""

    kind: str
    name: str
    namespace: str = "default"
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    spec: dict[str, Any] = field(default_factory=dict)
    status: dict[str, Any] = field(default_factory=dict)
    owner: OwnerReference | None = None
    uid: str = ""
    resource_version: str = ""
    generation: int = 0

    @property
    def role(self) -> str | None:
        return self.labels.get(LABEL_ROLE)

    def owner_key(self) -> ClusterKey | None:
        if self.owner is None or self.owner.kind != KIND_CLUSTER:
            return None
        return ClusterKey(self.namespace, self.owner.name)

    def copy(self) -> "Resource":
        return copy.deepcopy(self)

    def to_manifest(self) -> dict[str, Any]:
        meta: dict[str, Any] = {
            "name": self.name,
            "namespace": self.namespace,
            "labels": dict(self.labels),
            "annotations": dict(self.annotations),
        }
        if self.uid:
            meta["uid"] = self.uid
        if self.resource_version:
            meta["resourceVersion"] = self.resource_version
        if self.generation:
            meta["generation"] = self.generation
        if self.owner is not None:
            meta["ownerReferences"] = [
                {
                    "apiVersion": API_VERSIONS.get(self.owner.kind, "v1"),
                    "kind": self.owner.kind,
                    "name": self.owner.name,
                    "uid": self.owner.uid,
                    "controller": True,
                    "blockOwnerDeletion": True,
                }
            ]
        manifest: dict[str, Any] = {
            "apiVersion": API_VERSIONS.get(self.kind, "v1"),
            "kind": self.kind,
            "metadata": meta,
            "spec": copy.deepcopy(self.spec),
        }
        if self.status:
            manifest["status"] = copy.deepcopy(self.status)
        return manifest

    @classmethod
    def from_manifest(cls, manifest: dict[str, Any], kind: str | None = None) -> "Resource":
        meta = manifest.get("metadata") or {}
        owner = None
        refs = meta.get("ownerReferences") or []
        if refs:
            ref = next((r for r in refs if r.get("controller")), refs[0])
            owner = OwnerReference(kind=ref["kind"], name=ref["name"], uid=ref.get("uid", ""))
        return cls(
            kind=kind or manifest.get("kind", ""),
            name=meta.get("name", ""),
            namespace=meta.get("namespace") or "default",
            labels=dict(meta.get("labels") or {}),
            annotations=dict(meta.get("annotations") or {}),
            spec=copy.deepcopy(manifest.get("spec") or {}),
            status=copy.deepcopy(manifest.get("status") or {}),
            owner=owner,
            uid=meta.get("uid") or "",
            resource_version=str(meta.get("resourceVersion") or ""),
            generation=int(meta.get("generation") or 0),
        )


@dataclass(frozen=True)
class WatchEvent:
    type: str  # ADDED|MODIFIED|DELETED
    resource: Resource


def matches(labels: dict[str, str], selector: dict[str, str] | None) -> bool:
    if not selector:
        return True
    return all(labels.get(k) == v for k, v in selector.items())


def format_selector(selector: dict[str, str] | None) -> str:
    if not selector:
        return ""
    return ",".join(f"{k}={v}" for k, v in sorted(selector.items()))


def get_condition(res: Resource, cond_type: str) -> str | None:
    for c in res.status.get("conditions") or []:
        if c.get("type") == cond_type:
            return c.get("status")
    return None


def with_condition(
    status: dict[str, Any], cond_type: str, value: str, reason: str = "", message: str = ""
) -> dict[str, Any]:
    """Return a copy of ``status`` with one condition set (replacing any previous one)."""
    out = copy.deepcopy(status)
    conds = [c for c in out.get("conditions") or [] if c.get("type") != cond_type]
    cond = {"type": cond_type, "status": value}
    if reason:
        cond["reason"] = reason
    if message:
        cond["message"] = message
    conds.append(cond)
    out["conditions"] = sorted(conds, key=lambda c: c["type"])
    return out


def pod_is_ready(pod: Resource) -> bool:
    return get_condition(pod, "Ready") == "True"


def pod_node(pod: Resource) -> str | None:
    return pod.spec.get("nodeName") or None


def job_succeeded(job: Resource) -> bool:
    return int(job.status.get("succeeded") or 0) > 0


def job_failed(job: Resource) -> bool:
    return int(job.status.get("failed") or 0) > 0
