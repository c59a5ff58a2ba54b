from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .accessor import Accessor
from .errors import AlreadyExists, Conflict, InvariantViolation, NotFound, ValidationError
from .models import ClusterSpec
from .resources import (
    ANNOTATION_SPEC_HASH,
    KIND_JOB,
    KIND_POD,
    KIND_SERVICE,
    LABEL_GROUP,
    LABEL_REPLICA,
    ROLE_DISCOVERY,
    ROLE_HOST_INIT,
    ROLE_PUBLIC,
    ROLE_WORKER,
    ClusterKey,
    Resource,
    get_condition,
    job_failed,
    job_succeeded,
    pod_is_ready,
    pod_node,
    with_condition,
)
from .translate import HOST_TUNABLE_GATE, DesiredSet, host_init_task, translate

# Spec fields filled in by the platform after creation; an update must not wipe them.
PLATFORM_SPEC_FIELDS = ("nodeName", "clusterIP", "clusterIPs", "schedulerName", "serviceAccountName")

ROLE_KINDS = {ROLE_WORKER: KIND_POD, ROLE_DISCOVERY: KIND_SERVICE, ROLE_PUBLIC: KIND_SERVICE}

# Compared key for key: extra live entries count as drift.
EXACT_FIELDS = ("selector",)
# Only ever set by us; a live value we no longer want counts as drift.
OPTIONAL_FIELDS = ("readinessGates", "resources")


class State(str, Enum):
    FETCHING = "Fetching"
    DIFFING = "Diffing"
    APPLYING = "Applying"
    DONE = "Done"
    REQUEUE = "Requeue"
    DROPPED = "Dropped"


@dataclass(frozen=True)
class Result:
    state: State
    requeue_after: float | None = None


@dataclass
class Plan:
    create: list[Resource] = field(default_factory=list)
    update: list[tuple[Resource, Resource]] = field(default_factory=list)  # (actual, desired)
    replace: list[tuple[Resource, Resource]] = field(default_factory=list)
    delete: list[Resource] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not (self.create or self.update or self.replace or self.delete)


def _deletion_order(res: Resource) -> tuple[str, str, int, str]:
    try:
        replica = int(res.labels.get(LABEL_REPLICA, "0"))
    except ValueError:
        replica = 0
    return (res.kind, res.labels.get(LABEL_GROUP, ""), -replica, res.name)


def covers(live: Any, want: Any, exact: bool = False) -> bool:
    """True if every desired value is present and equal in ``live``.

    Keys the platform adds on its own (defaults, ``nodeName``, ...) are
    tolerated, except under EXACT_FIELDS and for OPTIONAL_FIELDS we dropped.
    """
    if isinstance(want, dict):
        if not isinstance(live, dict):
            return False
        if exact and set(live) != set(want):
            return False
        for k, v in want.items():
            if k not in live or not covers(live[k], v, exact or k in EXACT_FIELDS):
                return False
        return not any(live.get(k) for k in OPTIONAL_FIELDS if k not in want)
    if isinstance(want, list):
        if not isinstance(live, list) or len(live) != len(want):
            return False
        return all(covers(lv, wv, exact) for lv, wv in zip(live, want))
    return live == want


def in_sync(actual: Resource, desired: Resource) -> bool:
    if actual.annotations.get(ANNOTATION_SPEC_HASH) != desired.annotations.get(ANNOTATION_SPEC_HASH):
        return False
    return covers(actual.labels, desired.labels) and covers(actual.spec, desired.spec)


def _without_images(spec: dict[str, Any]) -> dict[str, Any]:
    out = copy.deepcopy(spec)
    for c in out.get("containers", []):
        if isinstance(c, dict):
            c.pop("image", None)
    return out


def needs_replacement(actual: Resource, desired: Resource) -> bool:
    """Pods only take label, annotation and image changes in place."""
    if actual.kind != KIND_POD:
        return False
    return not covers(_without_images(actual.spec), _without_images(desired.spec))


def diff(desired: DesiredSet, actual: dict[str, list[Resource]]) -> Plan:
    """Per-role, per-name diff against the live content, not just the hash.

    Deletes and replacements come out highest replica index first.
    """
    plan = Plan()
    for role, want in desired.by_role().items():
        have = {r.name: r for r in actual.get(role, [])}
        for name, d in want.items():
            a = have.get(name)
            if a is None:
                plan.create.append(d)
            elif not in_sync(a, d):
                if needs_replacement(a, d):
                    plan.replace.append((a, d))
                else:
                    plan.update.append((a, d))
        plan.delete.extend(a for name, a in have.items() if name not in want)
    plan.replace.sort(key=lambda pair: _deletion_order(pair[0]))
    plan.delete.sort(key=_deletion_order)
    return plan


def merge(actual: Resource, desired: Resource) -> Resource:
    """Desired labels/annotations/spec on top of the live object's identity."""
    new = actual.copy()
    new.labels = dict(desired.labels)
    new.annotations = {**actual.annotations, **desired.annotations}
    spec = dict(desired.spec)
    for k in PLATFORM_SPEC_FIELDS:
        if k in actual.spec and k not in spec:
            spec[k] = actual.spec[k]
    new.spec = spec
    return new


class Reconciler:
    """Drives one cluster's owned resources toward its ClusterSpec.

    Stateless between calls: every pass re-reads the cluster and what it
    owns from the platform.
    """

    def __init__(
        self,
        accessor: Accessor,
        conflict_retries: int = 3,
        image_repository: str = "docker.elastic.co/elasticsearch/elasticsearch",
        init_image: str = "busybox:1.36",
        requeue_after_s: float = 1.0,
        pending_requeue_s: float = 30.0,
    ):
        self.accessor = accessor
        self.conflict_retries = max(0, int(conflict_retries))
        self.image_repository = image_repository
        self.init_image = init_image
        self.requeue_after_s = requeue_after_s
        self.pending_requeue_s = pending_requeue_s

    def reconcile(self, key: ClusterKey) -> Result:
        # Fetching
        try:
            cluster = self.accessor.get_cluster(key)
        except NotFound:
            return Result(State.DROPPED)

        # Diffing
        try:
            spec = ClusterSpec.from_resource(cluster)
            desired = translate(spec, self.image_repository)
        except (ValidationError, InvariantViolation) as e:
            e.repeated = not self._report_invalid(key, cluster, e)
            raise
        actual = self._list_actual(key)
        plan = diff(desired, actual)

        # Applying
        requeue = self._apply(key, plan)
        if not plan.empty:
            workers = self.accessor.list_owned(key, KIND_POD, ROLE_WORKER)
        else:
            workers = actual[ROLE_WORKER]

        pending = False
        if spec.set_vm_max_map_count:
            pending = self._ensure_host_tunable(key, spec, workers)
            if pending:
                workers = self.accessor.list_owned(key, KIND_POD, ROLE_WORKER)
        else:
            self._remove_host_jobs(key, self.accessor.list_owned(key, KIND_JOB, ROLE_HOST_INIT))

        self._write_status(cluster, self._status(cluster, spec, workers))

        if requeue:
            return Result(State.REQUEUE, self.requeue_after_s)
        if pending:
            return Result(State.REQUEUE, self.pending_requeue_s)
        return Result(State.DONE)

    def _list_actual(self, key: ClusterKey) -> dict[str, list[Resource]]:
        out: dict[str, list[Resource]] = {role: [] for role in ROLE_KINDS}
        for kind in sorted(set(ROLE_KINDS.values())):
            for res in self.accessor.list_owned(key, kind):
                if res.role in out and ROLE_KINDS[res.role] == kind:
                    out[res.role].append(res)
        return out

    def _apply(self, key: ClusterKey, plan: Plan) -> bool:
        """Creates, updates, one replacement, then deletes.

        Returns True if another pass is needed soon: an update target
        vanished or more pods are waiting to be replaced.
        """
        for d in plan.create:
            self.accessor.create(d)
            self.accessor.record_event("INFO", f"Created {d.kind} {d.name}", key)

        requeue = False
        for a, d in plan.update:
            try:
                self._update_with_retry(a, d)
            except NotFound:
                requeue = True
                continue
            self.accessor.record_event("INFO", f"Updated {d.kind} {d.name}", key)

        if plan.replace:
            # one pod down at a time
            a, d = plan.replace[0]
            if self._replace(key, a, d) is None or len(plan.replace) > 1:
                requeue = True

        for a in plan.delete:
            try:
                self.accessor.delete(a.kind, a.namespace, a.name)
            except NotFound:
                continue
            self.accessor.record_event("INFO", f"Deleted {a.kind} {a.name}", key)
        return requeue

    def _replace(self, key: ClusterKey, actual: Resource, desired: Resource) -> Resource | None:
        """Delete and recreate. None if the old object is still going away."""
        try:
            self.accessor.delete(actual.kind, actual.namespace, actual.name)
        except NotFound:
            pass
        try:
            created = self.accessor.create(desired)
        except AlreadyExists:
            return None
        self.accessor.record_event("INFO", f"Replaced {desired.kind} {desired.name}", key)
        return created

    def _update_with_retry(self, actual: Resource, desired: Resource) -> Resource:
        current = actual
        for attempt in range(self.conflict_retries + 1):
            try:
                return self.accessor.update(merge(current, desired))
            except Conflict:
                if attempt >= self.conflict_retries:
                    raise
            current = self.accessor.get(actual.kind, actual.namespace, actual.name)
            if in_sync(current, desired):
                return current
        raise Conflict(f"{actual.kind} {actual.namespace}/{actual.name}: update retries exhausted")

    def _ensure_host_tunable(self, key: ClusterKey, spec: ClusterSpec, workers: list[Resource]) -> bool:
        """Run the one-shot host init job on every worker's node and open the readiness gate.

        Jobs for nodes with no waiting worker are removed. Returns True
        while any worker is still waiting for its gate.
        """
        jobs = {j.name: j for j in self.accessor.list_owned(key, KIND_JOB, ROLE_HOST_INIT)}
        wanted: set[str] = set()
        failed: set[str] = set()
        pending = False
        for pod in workers:
            if get_condition(pod, HOST_TUNABLE_GATE) == "True":
                continue
            node = pod_node(pod)
            if node is None:
                pending = True
                continue
            want = host_init_task(spec, node, self.init_image)
            wanted.add(want.name)
            job = jobs.get(want.name)
            if want.name in failed:
                # recreated on the next pass
                pending = True
            elif job is None:
                jobs[want.name] = self.accessor.create(want)
                self.accessor.record_event("INFO", f"Started host init job {want.name} on node {node}", key)
                pending = True
            elif job_succeeded(job):
                opened = pod.copy()
                opened.status = with_condition(pod.status, HOST_TUNABLE_GATE, "True", reason="HostTunableApplied")
                self.accessor.update_status(opened)
            elif job_failed(job):
                try:
                    self.accessor.delete(KIND_JOB, job.namespace, job.name)
                except NotFound:
                    pass
                jobs.pop(want.name, None)
                failed.add(want.name)
                self.accessor.record_event("WARN", f"Host init job {job.name} failed on node {node}; retrying", key)
                pending = True
            else:
                pending = True
        self._remove_host_jobs(key, [j for name, j in jobs.items() if name not in wanted])
        return pending

    def _remove_host_jobs(self, key: ClusterKey, jobs: list[Resource]) -> None:
        for job in jobs:
            try:
                self.accessor.delete(KIND_JOB, job.namespace, job.name)
            except NotFound:
                continue
            self.accessor.record_event("INFO", f"Removed host init job {job.name}", key)

    @staticmethod
    def _status(cluster: Resource, spec: ClusterSpec, workers: list[Resource]) -> dict:
        ready = sum(1 for w in workers if pod_is_ready(w))
        desired = spec.total_nodes
        status = {
            **cluster.status,
            "phase": "Ready" if ready == desired and len(workers) == desired else "Progressing",
            "desiredNodes": desired,
            "readyNodes": ready,
            "observedGeneration": cluster.generation,
        }
        return with_condition(status, "Valid", "True")

    def _report_invalid(self, key: ClusterKey, cluster: Resource, err: Exception) -> bool:
        """Mark the cluster Invalid. Returns False if it already said exactly that."""
        reason = "InvariantViolation" if isinstance(err, InvariantViolation) else "InvalidSpec"
        status = {**cluster.status, "phase": "Invalid", "observedGeneration": cluster.generation}
        status = with_condition(status, "Valid", "False", reason=reason, message=str(err))
        if status == cluster.status:
            return False
        self.accessor.record_event("ERROR", f"{reason}: {err}", key)
        self._write_status(cluster, status)
        return True

    def _write_status(self, cluster: Resource, status: dict) -> None:
        if status == cluster.status:
            return
        updated = cluster.copy()
        updated.status = status
        self.accessor.update_status(updated)
