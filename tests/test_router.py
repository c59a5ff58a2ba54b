from scr.resources import KIND_CLUSTER, KIND_JOB, KIND_POD, KIND_SERVICE, ClusterKey, OwnerReference, Resource, WatchEvent
from scr.router import WatchRouter
from scr.workqueue import WorkQueue


def _drain(q):
    keys = []
    while True:
        key = q.get(timeout=0.05)
        if key is None:
            return keys
        keys.append(key)
        q.done(key)


def test_key_for_cluster_and_owned_resources():
    owner = OwnerReference(KIND_CLUSTER, "foo", "uid-1")

    cluster_ev = WatchEvent("MODIFIED", Resource(kind=KIND_CLUSTER, name="foo", namespace="ns"))
    pod_ev = WatchEvent("DELETED", Resource(kind=KIND_POD, name="foo-es-group-0-1", namespace="ns", owner=owner))
    orphan_ev = WatchEvent("ADDED", Resource(kind=KIND_POD, name="stray", namespace="ns"))
    foreign_ev = WatchEvent(
        "ADDED", Resource(kind=KIND_POD, name="rs-1", namespace="ns", owner=OwnerReference("ReplicaSet", "rs", "u"))
    )

    assert WatchRouter.key_for(cluster_ev) == ClusterKey("ns", "foo")
    assert WatchRouter.key_for(pod_ev) == ClusterKey("ns", "foo")
    assert WatchRouter.key_for(orphan_ev) is None
    assert WatchRouter.key_for(foreign_ev) is None


def test_router_enqueues_owner_key_once_per_burst(store):
    q = WorkQueue()
    router = WatchRouter(store, q)
    router.start()

    cluster = store.create(Resource(kind=KIND_CLUSTER, name="foo"))
    owner = OwnerReference(KIND_CLUSTER, "foo", cluster.uid)
    store.create(Resource(kind=KIND_POD, name="foo-1", owner=owner))
    store.create(Resource(kind=KIND_SERVICE, name="foo-svc", owner=owner))
    store.create(Resource(kind=KIND_JOB, name="foo-job", owner=owner))
    store.create(Resource(kind=KIND_POD, name="unowned"))

    assert _drain(q) == [ClusterKey("default", "foo")]

    router.stop()
    store.delete(KIND_POD, "default", "foo-1")
    assert _drain(q) == []
    q.shut_down()
