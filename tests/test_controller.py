import threading
import time
from dataclasses import replace

import pytest

from conftest import make_spec
from scr.controller import Controller
from scr.errors import Conflict, Unavailable, ValidationError
from scr.manager import Manager, build_store
from scr.reconciler import Reconciler, Result, State
from scr.resources import KIND_CLUSTER, KIND_POD, KIND_SERVICE, ClusterKey
from scr.settings import Settings
from scr.store import SqliteStore
from scr.workqueue import WorkQueue

FOO = ClusterKey("default", "foo")


def _wait_for(cond, timeout=5.0, interval=0.02):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if cond():
            return True
        time.sleep(interval)
    return cond()


class _ScriptedReconciler:
    """Returns or raises the next scripted outcome for every reconcile."""

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def reconcile(self, key):
        self.calls.append(key)
        outcome = self.outcomes.pop(0) if self.outcomes else Result(State.DONE)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def queue():
    q = WorkQueue(backoff_base_s=0.01, backoff_max_s=0.05)
    yield q
    q.shut_down()


def test_transient_error_is_requeued_with_backoff(accessor, queue):
    controller = Controller(_ScriptedReconciler([Unavailable("store down")]), queue, accessor)

    controller.process(FOO)

    assert queue.num_requeues(FOO) == 1
    assert queue.get(timeout=2) == FOO
    assert any(e["level"] == "WARN" for e in accessor.store.latest_events(5))


def test_fatal_error_is_not_requeued(accessor, queue, monkeypatch):
    alerts = []
    monkeypatch.setattr("scr.controller.notify_reconcile_failure", lambda cluster, err: alerts.append(cluster))
    controller = Controller(_ScriptedReconciler([ValidationError([])]), queue, accessor)

    controller.process(FOO)

    assert queue.num_requeues(FOO) == 0
    assert queue.get(timeout=0.1) is None
    assert alerts == ["default/foo"]
    assert accessor.store.latest_events(1)[0]["level"] == "ERROR"


def test_unexpected_exception_does_not_escape(accessor, queue):
    results = []
    controller = Controller(
        _ScriptedReconciler([RuntimeError("bug")]),
        queue,
        accessor,
        on_result=lambda key, result, err: results.append((key, result, err)),
    )

    assert controller.process(FOO) is None
    assert isinstance(results[0][2], RuntimeError)
    assert queue.get(timeout=2) == FOO


def test_invalid_spec_alerts_once_across_passes(accessor, queue, monkeypatch):
    alerts = []
    monkeypatch.setattr("scr.controller.notify_reconcile_failure", lambda cluster, err: alerts.append(cluster))
    cluster = accessor.create(make_spec().to_resource())
    cluster.spec["topologies"] = [{"nodeCount": -1}]
    accessor.update(cluster)
    controller = Controller(Reconciler(accessor), queue, accessor)

    for _ in range(3):
        controller.process(FOO)

    assert alerts == ["default/foo"]
    errors = [e for e in accessor.store.latest_events(20) if e["level"] == "ERROR"]
    assert len(errors) == 2
    assert queue.num_requeues(FOO) == 0


def test_failing_result_callback_does_not_escape(accessor, queue):
    def explode(key, result, err):
        raise RuntimeError("callback bug")

    controller = Controller(_ScriptedReconciler([Result(State.DONE)]), queue, accessor, on_result=explode)

    assert controller.process(FOO) == Result(State.DONE)
    assert "callback bug" in accessor.store.latest_events(1)[0]["message"]


def test_requeue_result_schedules_delayed_retry(accessor, queue):
    controller = Controller(_ScriptedReconciler([Result(State.REQUEUE, 0.02)]), queue, accessor)

    controller.process(FOO)

    assert queue.num_requeues(FOO) == 0
    assert queue.get(timeout=2) == FOO


def test_success_forgets_previous_failures(accessor, queue):
    controller = Controller(_ScriptedReconciler([Unavailable("x"), Result(State.DONE)]), queue, accessor)
    controller.process(FOO)
    controller.process(FOO)
    assert queue.num_requeues(FOO) == 0


def test_same_key_never_reconciled_concurrently(accessor, queue):
    active = []
    overlap = []
    lock = threading.Lock()

    class SlowReconciler:
        def reconcile(self, key):
            with lock:
                if key in active:
                    overlap.append(key)
                active.append(key)
            time.sleep(0.02)
            with lock:
                active.remove(key)
            return Result(State.DONE)

    controller = Controller(SlowReconciler(), queue, accessor, workers=4, resync_interval_s=60)
    controller.start()
    for _ in range(20):
        queue.add(FOO)
        time.sleep(0.005)
    assert _wait_for(lambda: len(queue) == 0 and not active)
    assert controller.stop(2.0)
    assert overlap == []


def test_stop_abandons_reconciles_past_the_deadline(accessor, queue):
    release = threading.Event()

    class StuckReconciler:
        def reconcile(self, key):
            release.wait(5)
            return Result(State.DONE)

    controller = Controller(StuckReconciler(), queue, accessor, workers=1, resync_interval_s=60)
    controller.start()
    queue.add(FOO)
    time.sleep(0.05)

    assert controller.stop(0.05) is False
    release.set()


def test_build_store_rejects_unknown_backend(tmp_path):
    assert isinstance(build_store(Settings(backend="sqlite", db_path=str(tmp_path / "x.db"))), SqliteStore)
    with pytest.raises(ValueError):
        build_store(Settings(backend="etcd"))


# --- end to end: manager over a temp sqlite platform ---


@pytest.fixture
def harness(tmp_path):
    cfg = replace(
        Settings(),
        db_path=str(tmp_path / "e2e.db"),
        workers=2,
        resync_interval_s=0.2,
        backoff_base_s=0.01,
        backoff_max_s=0.1,
        shutdown_timeout_s=2.0,
    )
    store = SqliteStore(cfg.db_path)
    results = []
    manager = Manager(store, cfg, on_result=lambda key, result, err: results.append((key, result, err)))
    manager.start()
    yield store, manager, results
    manager.stop()


def _pods(store):
    return sorted(p.name for p in store.list(KIND_POD))


def _desired_nodes(store):
    return store.get(KIND_CLUSTER, "default", "foo").status.get("desiredNodes")


def _apply(store, spec):
    # the controller writes status concurrently; retry like any other client would
    for _ in range(50):
        cluster = store.get(KIND_CLUSTER, spec.namespace, spec.name)
        cluster.spec = spec.to_spec_dict()
        try:
            return store.update(cluster)
        except Conflict:
            time.sleep(0.01)
    raise AssertionError("could not update cluster spec")


def test_manager_converges_and_self_heals(harness):
    store, manager, results = harness
    store.create(make_spec().to_resource())

    want = ["foo-es-group-0-1", "foo-es-group-0-2", "foo-es-group-0-3"]
    assert _wait_for(lambda: _pods(store) == want)
    assert _wait_for(lambda: len(store.list(KIND_SERVICE)) == 2)

    # delete a pod: it comes back under the same name
    store.delete(KIND_POD, "default", "foo-es-group-0-2")
    assert _wait_for(lambda: _pods(store) == want)

    # delete the public service: it comes back with the original selector
    store.delete(KIND_SERVICE, "default", "foo-es-public")
    assert _wait_for(lambda: any(s.name == "foo-es-public" for s in store.list(KIND_SERVICE)))
    svc = store.get(KIND_SERVICE, "default", "foo-es-public")
    assert svc.spec["selector"] == {"scr.cluster": "foo", "scr.role": "worker"}

    assert all(err is None for _, _, err in results)


def test_manager_scales_and_reports_status(harness):
    store, manager, _ = harness
    store.create(make_spec(nodes=5).to_resource())
    assert _wait_for(lambda: len(_pods(store)) == 5)

    _apply(store, make_spec(nodes=3))

    assert _wait_for(lambda: _pods(store) == ["foo-es-group-0-1", "foo-es-group-0-2", "foo-es-group-0-3"])
    assert _wait_for(lambda: _desired_nodes(store) == 3)


def test_manager_cluster_delete_cascades(harness):
    store, manager, results = harness
    store.create(make_spec(nodes=2).to_resource())
    assert _wait_for(lambda: _desired_nodes(store) == 2 and len(store.list(KIND_SERVICE)) == 2)

    store.delete(KIND_CLUSTER, "default", "foo")

    assert store.list(KIND_POD) == []
    assert store.list(KIND_SERVICE) == []
    assert _wait_for(lambda: any(r is not None and r.state is State.DROPPED for _, r, _ in results))


def test_manager_picks_up_clusters_created_while_stopped(tmp_path):
    cfg = replace(Settings(), db_path=str(tmp_path / "late.db"), resync_interval_s=60, shutdown_timeout_s=2.0)
    store = SqliteStore(cfg.db_path)
    store.create(make_spec(nodes=1).to_resource())

    manager = Manager(store, cfg)
    manager.start()
    try:
        assert manager.started
        assert _wait_for(lambda: _pods(store) == ["foo-es-group-0-1"])
    finally:
        assert manager.stop()
    assert not manager.started
