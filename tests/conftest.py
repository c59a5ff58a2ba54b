import os
import sys

import pytest

# Ensure project root is importable (so `import main` works without installing the project)
_project_root = os.path.dirname(os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from scr.accessor import Accessor  # noqa: E402
from scr.models import ClusterSpec, TopologyGroup  # noqa: E402
from scr.reconciler import Reconciler  # noqa: E402
from scr.store import SqliteStore  # noqa: E402


@pytest.fixture
def store(tmp_path):
    return SqliteStore(str(tmp_path / "scr.db"))


@pytest.fixture
def accessor(store):
    return Accessor(store)


@pytest.fixture
def reconciler(accessor):
    return Reconciler(accessor, requeue_after_s=0.05, pending_requeue_s=0.1)


def make_spec(name="foo", version="7.0.0", nodes=3, **kwargs) -> ClusterSpec:
    topologies = kwargs.pop("topologies", (TopologyGroup(node_count=nodes),))
    return ClusterSpec(name=name, version=version, topologies=tuple(topologies), **kwargs)


@pytest.fixture
def foo(accessor):
    """The three node 7.0.0 cluster, stored but not reconciled yet."""
    return accessor.create(make_spec().to_resource())
