from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass
from typing import Any

from .errors import InvariantViolation, Problem, ValidationError
from .models import ClusterSpec
from .resources import (
    ANNOTATION_SPEC_HASH,
    KIND_CLUSTER,
    KIND_JOB,
    KIND_POD,
    KIND_SERVICE,
    LABEL_CLUSTER,
    LABEL_GROUP,
    LABEL_MANAGED_BY,
    LABEL_NODE,
    LABEL_REPLICA,
    LABEL_ROLE,
    LABEL_VERSION,
    ROLE_DISCOVERY,
    ROLE_HOST_INIT,
    ROLE_PUBLIC,
    ROLE_WORKER,
    OwnerReference,
    Resource,
)


CLUSTER_NAME_RE = re.compile(r"^[a-z][a-z0-9\-]{0,39}$")
GROUP_NAME_RE = re.compile(r"^[a-z][a-z0-9\-]{0,14}$")
VERSION_RE = re.compile(r"^[a-z0-9][a-z0-9\-\._]{0,63}$")
MAX_NAME_LEN = 63
SHAPE_KEYS = {"requests", "limits"}

HTTP_PORT = 9200
TRANSPORT_PORT = 9300
VM_MAX_MAP_COUNT = 262144
HOST_TUNABLE_GATE = "scr.dev/vm-max-map-count"


@dataclass(frozen=True)
class DesiredSet:
    workers: tuple[Resource, ...]
    discovery: Resource
    public: Resource

    def by_role(self) -> dict[str, dict[str, Resource]]:
        return {
            ROLE_WORKER: {w.name: w for w in self.workers},
            ROLE_DISCOVERY: {self.discovery.name: self.discovery},
            ROLE_PUBLIC: {self.public.name: self.public},
        }


def discovery_service_name(cluster: str) -> str:
    return f"{cluster}-es-discovery"


def public_service_name(cluster: str) -> str:
    return f"{cluster}-es-public"


def worker_name(cluster: str, group: str, replica: int) -> str:
    return f"{cluster}-es-{group}-{replica}"


def group_key(position: int, name: str | None) -> str:
    return name or f"group-{position}"


def worker_selector(cluster: str) -> dict[str, str]:
    return {LABEL_CLUSTER: cluster, LABEL_ROLE: ROLE_WORKER}


def spec_hash(labels: dict[str, str], spec: dict[str, Any]) -> str:
    canonical = json.dumps({"labels": labels, "spec": spec}, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode()).hexdigest()[:16]


def validate(spec: ClusterSpec) -> None:
    """Raise ValidationError listing every malformed field, or InvariantViolation on key overlap."""
    problems: list[Problem] = []
    if not CLUSTER_NAME_RE.match(spec.name or ""):
        problems.append(
            Problem("metadata.name", "use lowercase letters/numbers and hyphen, starting with a letter (max 40 chars)")
        )
    if not VERSION_RE.match(spec.version or ""):
        problems.append(Problem("spec.version", "use letters/numbers and -._ (max 64 chars)"))

    for i, g in enumerate(spec.topologies):
        path = f"spec.topologies[{i}]"
        if isinstance(g.node_count, bool) or not isinstance(g.node_count, int):
            problems.append(Problem(f"{path}.nodeCount", "must be an integer"))
        elif g.node_count < 0:
            problems.append(Problem(f"{path}.nodeCount", "must be >= 0"))
        if g.name is not None and not GROUP_NAME_RE.match(g.name):
            problems.append(Problem(f"{path}.name", "use lowercase letters/numbers and hyphen (max 15 chars)"))
        if g.resources is not None:
            unknown = set(g.resources) - SHAPE_KEYS
            if unknown:
                problems.append(Problem(f"{path}.resources", f"unknown keys: {', '.join(sorted(unknown))}"))
            for k in SHAPE_KEYS & set(g.resources):
                if not isinstance(g.resources[k], dict):
                    problems.append(Problem(f"{path}.resources.{k}", "must be an object"))
    if problems:
        raise ValidationError(problems)

    seen_groups: dict[str, int] = {}
    for i, g in enumerate(spec.topologies):
        key = group_key(i, g.name)
        if key in seen_groups:
            raise InvariantViolation(
                f"topologies[{seen_groups[key]}] and topologies[{i}] both derive group key '{key}'"
            )
        seen_groups[key] = i
        # pod names are unique once group keys are; only their length can still fail
        if g.node_count:
            name = worker_name(spec.name, key, g.node_count)
            if len(name) > MAX_NAME_LEN:
                raise ValidationError([Problem(f"spec.topologies[{i}]", f"derived pod name '{name}' is too long")])


def _base_labels(cluster: str, role: str) -> dict[str, str]:
    return {LABEL_CLUSTER: cluster, LABEL_ROLE: role, LABEL_MANAGED_BY: "scr"}


def _owned(spec: ClusterSpec, kind: str, name: str, labels: dict[str, str], body: dict[str, Any]) -> Resource:
    return Resource(
        kind=kind,
        name=name,
        namespace=spec.namespace,
        labels=labels,
        annotations={ANNOTATION_SPEC_HASH: spec_hash(labels, body)},
        spec=body,
        owner=OwnerReference(kind=KIND_CLUSTER, name=spec.name, uid=spec.uid),
    )


def _worker(spec: ClusterSpec, group: str, replica: int, shape: dict[str, Any] | None, image: str) -> Resource:
    name = worker_name(spec.name, group, replica)
    labels = _base_labels(spec.name, ROLE_WORKER)
    labels.update({LABEL_GROUP: group, LABEL_REPLICA: str(replica), LABEL_VERSION: spec.version})

    container: dict[str, Any] = {
        "name": "search",
        "image": image,
        "env": [
            {"name": "cluster.name", "value": spec.name},
            {"name": "node.name", "value": name},
            {"name": "discovery.seed_hosts", "value": discovery_service_name(spec.name)},
        ],
        "ports": [
            {"name": "http", "containerPort": HTTP_PORT},
            {"name": "transport", "containerPort": TRANSPORT_PORT},
        ],
        "readinessProbe": {
            "httpGet": {"path": "/_cluster/health?local=true", "port": HTTP_PORT},
            "initialDelaySeconds": 10,
            "periodSeconds": 10,
        },
    }
    if shape:
        container["resources"] = shape

    body: dict[str, Any] = {
        "hostname": name,
        "subdomain": discovery_service_name(spec.name),
        "containers": [container],
    }
    if spec.set_vm_max_map_count:
        body["readinessGates"] = [{"conditionType": HOST_TUNABLE_GATE}]
    return _owned(spec, KIND_POD, name, labels, body)


def translate(
    spec: ClusterSpec,
    image_repository: str = "docker.elastic.co/elasticsearch/elasticsearch",
) -> DesiredSet:
    """Translate a ClusterSpec into the full desired resource set.

    Pure: the same spec always produces identical manifests (and therefore
    identical spec hashes), so diffs against the platform never flap.
    """
    validate(spec)
    image = f"{image_repository}:{spec.version}"

    workers: list[Resource] = []
    for i, g in enumerate(spec.topologies):
        key = group_key(i, g.name)
        for replica in range(1, g.node_count + 1):
            workers.append(_worker(spec, key, replica, g.resources, image))

    selector = worker_selector(spec.name)
    discovery = _owned(
        spec,
        KIND_SERVICE,
        discovery_service_name(spec.name),
        _base_labels(spec.name, ROLE_DISCOVERY),
        {
            "clusterIP": "None",
            "publishNotReadyAddresses": True,
            "selector": dict(selector),
            "ports": [{"name": "transport", "port": TRANSPORT_PORT, "targetPort": TRANSPORT_PORT, "protocol": "TCP"}],
        },
    )
    public = _owned(
        spec,
        KIND_SERVICE,
        public_service_name(spec.name),
        _base_labels(spec.name, ROLE_PUBLIC),
        {
            "type": "ClusterIP",
            "selector": dict(selector),
            "ports": [{"name": "http", "port": HTTP_PORT, "targetPort": HTTP_PORT, "protocol": "TCP"}],
        },
    )
    return DesiredSet(workers=tuple(workers), discovery=discovery, public=public)


def _node_slug(node: str) -> str:
    slug = re.sub(r"[^a-z0-9\-]", "-", node.lower()).strip("-")
    return slug[:20] or "node"


def host_init_task(spec: ClusterSpec, node: str, init_image: str = "busybox:1.36") -> Resource:
    """One-shot job raising vm.max_map_count on ``node``.

    backoffLimit is 0: a failed run is never retried by the platform, the
    reconciler deletes and recreates it on its next pass.
    """
    labels = _base_labels(spec.name, ROLE_HOST_INIT)
    labels[LABEL_NODE] = _node_slug(node)
    body: dict[str, Any] = {
        "backoffLimit": 0,
        "template": {
            "spec": {
                "nodeName": node,
                "restartPolicy": "Never",
                "containers": [
                    {
                        "name": "sysctl",
                        "image": init_image,
                        "command": ["sysctl", "-w", f"vm.max_map_count={VM_MAX_MAP_COUNT}"],
                        "securityContext": {"privileged": True},
                    }
                ],
            }
        },
    }
    return _owned(spec, KIND_JOB, f"{spec.name}-es-sysctl-{_node_slug(node)}", labels, body)
