import time
from unittest.mock import MagicMock

import pytest
import urllib3
from kubernetes.client.rest import ApiException

from scr.errors import AlreadyExists, Conflict, NotFound, Unavailable, ValidationError
from scr.kube import CRD_GROUP, CRD_PLURAL, CRD_VERSION, KubeStore, translate_api_error
from scr.resources import KIND_CLUSTER, KIND_JOB, KIND_POD, KIND_SERVICE, Resource


def _api_error(status, reason="", body=""):
    e = ApiException(status=status, reason=reason)
    e.body = body
    return e


def _manifest(kind, name, **meta):
    return {"kind": kind, "metadata": {"name": name, "namespace": "default", **meta}, "spec": {}, "status": {}}


@pytest.fixture
def kube():
    store = KubeStore(api_client=MagicMock())
    store.core = MagicMock()
    store.batch = MagicMock()
    store.custom = MagicMock()
    return store


@pytest.mark.parametrize(
    "status,body,expected",
    [
        (404, "", NotFound),
        (409, '{"reason": "AlreadyExists"}', AlreadyExists),
        (409, '{"reason": "Conflict"}', Conflict),
        (422, "", ValidationError),
        (500, "", Unavailable),
        (403, "", Unavailable),
    ],
)
def test_translate_api_error(status, body, expected):
    err = translate_api_error(_api_error(status, reason="r", body=body), "Pod default/x")
    assert type(err) is expected


def test_get_pod_reads_core_api(kube):
    kube.core.read_namespaced_pod.return_value = _manifest(KIND_POD, "p", uid="u1", resourceVersion="7")

    res = kube.get(KIND_POD, "default", "p")

    kube.core.read_namespaced_pod.assert_called_once_with("p", "default")
    assert res.kind == KIND_POD
    assert res.uid == "u1"
    assert res.resource_version == "7"


def test_get_cluster_reads_custom_object(kube):
    kube.custom.get_namespaced_custom_object.return_value = _manifest(KIND_CLUSTER, "foo")

    kube.get(KIND_CLUSTER, "default", "foo")

    kube.custom.get_namespaced_custom_object.assert_called_once_with(
        CRD_GROUP, CRD_VERSION, "default", CRD_PLURAL, "foo"
    )


def test_api_errors_are_translated(kube):
    kube.batch.read_namespaced_job.side_effect = _api_error(404)
    with pytest.raises(NotFound):
        kube.get(KIND_JOB, "default", "j")

    kube.core.read_namespaced_service.side_effect = urllib3.exceptions.ProtocolError("connection reset")
    with pytest.raises(Unavailable):
        kube.get(KIND_SERVICE, "default", "s")


def test_list_passes_label_selector(kube):
    result = MagicMock()
    result.items = [_manifest(KIND_POD, "b"), _manifest(KIND_POD, "a")]
    kube.core.list_namespaced_pod.return_value = result

    pods = kube.list(KIND_POD, "default", {"scr.role": "worker", "scr.cluster": "foo"})

    kube.core.list_namespaced_pod.assert_called_once_with("default", label_selector="scr.cluster=foo,scr.role=worker")
    assert [p.name for p in pods] == ["a", "b"]


def test_list_clusters_across_namespaces(kube):
    kube.custom.list_cluster_custom_object.return_value = {"items": [_manifest(KIND_CLUSTER, "foo")]}

    clusters = kube.list(KIND_CLUSTER)

    kube.custom.list_cluster_custom_object.assert_called_once_with(
        CRD_GROUP, CRD_VERSION, CRD_PLURAL, label_selector=""
    )
    assert clusters[0].kind == KIND_CLUSTER


def test_create_sends_manifest_without_status(kube):
    kube.core.create_namespaced_service.return_value = _manifest(KIND_SERVICE, "s")
    res = Resource(kind=KIND_SERVICE, name="s", spec={"selector": {"a": "b"}}, status={"ignored": True})

    kube.create(res)

    namespace, body = kube.core.create_namespaced_service.call_args.args
    assert namespace == "default"
    assert "status" not in body
    assert body["spec"] == {"selector": {"a": "b"}}


def test_pod_update_patches_metadata_and_images_only(kube):
    kube.core.patch_namespaced_pod.return_value = _manifest(KIND_POD, "p")
    pod = Resource(
        kind=KIND_POD,
        name="p",
        labels={"scr.version": "7.1.0"},
        annotations={"scr.spec-hash": "abc"},
        spec={"nodeName": "n1", "containers": [{"name": "search", "image": "es:7.1.0", "env": []}]},
        resource_version="12",
    )

    kube.update(pod)

    name, namespace, patch = kube.core.patch_namespaced_pod.call_args.args
    assert (name, namespace) == ("p", "default")
    assert patch == {
        "metadata": {"labels": {"scr.version": "7.1.0"}, "annotations": {"scr.spec-hash": "abc"}, "resourceVersion": "12"},
        "spec": {"containers": [{"name": "search", "image": "es:7.1.0"}]},
    }


def test_status_updates_use_status_subresource(kube):
    kube.custom.replace_namespaced_custom_object_status.return_value = _manifest(KIND_CLUSTER, "foo")
    kube.core.patch_namespaced_pod_status.return_value = _manifest(KIND_POD, "p")

    kube.update_status(Resource(kind=KIND_CLUSTER, name="foo", status={"phase": "Ready"}))
    kube.update_status(Resource(kind=KIND_POD, name="p", status={"conditions": []}))

    body = kube.custom.replace_namespaced_custom_object_status.call_args.args[-1]
    assert body["status"] == {"phase": "Ready"}
    patch = kube.core.patch_namespaced_pod_status.call_args.args[-1]
    # no resourceVersion: nothing to check against
    assert patch == {"metadata": {}, "status": {"conditions": []}}


def test_delete_propagates_in_background(kube):
    kube.delete(KIND_JOB, "default", "j")
    kube.batch.delete_namespaced_job.assert_called_once_with("j", "default", propagation_policy="Background")


def test_log_event_buffers_and_emits_kubernetes_event(kube):
    kube.core.create_namespaced_event.side_effect = _api_error(403)

    kube.log_event("warn", "something happened", cluster="foo", namespace="default")
    kube.log_event("info", "controller started")

    events = kube.latest_events(10)
    assert [e["message"] for e in events] == ["controller started", "something happened"]
    assert events[1]["level"] == "WARN"
    namespace, body = kube.core.create_namespaced_event.call_args.args
    assert namespace == "default"
    assert body["type"] == "Warning"
    assert body["involvedObject"]["name"] == "foo"
    # only cluster-scoped events go to the API server
    assert kube.core.create_namespaced_event.call_count == 1


class _FlakyWatch:
    """First stream blows up mid-way, the next one delivers a pod, later ones idle."""

    streams = 0

    def stream(self, fn, *args, **kwargs):
        type(self).streams += 1
        if type(self).streams == 1:
            raise RuntimeError("malformed object")
        if type(self).streams == 2:
            yield {"type": "ADDED", "object": _manifest("Pod", "foo-es-group-0-1")}
        time.sleep(0.01)

    def stop(self):
        pass


def test_watch_survives_unexpected_errors(kube, monkeypatch):
    monkeypatch.setattr(_FlakyWatch, "streams", 0)
    monkeypatch.setattr("scr.kube.watch.Watch", _FlakyWatch)
    kube.watch_retry_s = 0.01
    seen = []

    unsubscribe = kube.watch(KIND_POD, seen.append)
    try:
        deadline = time.monotonic() + 5
        while not seen and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        unsubscribe()

    assert seen[0].resource.name == "foo-es-group-0-1"
    errors = [e for e in kube.latest_events(50) if e["level"] == "ERROR"]
    assert "malformed object" in errors[-1]["message"]
