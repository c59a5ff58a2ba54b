from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .errors import Problem, ValidationError
from .resources import KIND_CLUSTER, ClusterKey, Resource


@dataclass(frozen=True)
class TopologyGroup:
    node_count: int
    name: str | None = None
    resources: dict[str, Any] | None = None


@dataclass(frozen=True)
class ClusterSpec:
    name: str
    namespace: str = "default"
    version: str = ""
    set_vm_max_map_count: bool = False
    topologies: tuple[TopologyGroup, ...] = field(default_factory=tuple)
    uid: str = ""
    generation: int = 0

    @property
    def key(self) -> ClusterKey:
        return ClusterKey(self.namespace, self.name)

    @property
    def total_nodes(self) -> int:
        return sum(max(0, g.node_count) for g in self.topologies)

    def to_spec_dict(self) -> dict[str, Any]:
        groups: list[dict[str, Any]] = []
        for g in self.topologies:
            d: dict[str, Any] = {"nodeCount": g.node_count}
            if g.name:
                d["name"] = g.name
            if g.resources:
                d["resources"] = g.resources
            groups.append(d)
        return {"version": self.version, "setVmMaxMapCount": self.set_vm_max_map_count, "topologies": groups}

    def to_resource(self) -> Resource:
        return Resource(kind=KIND_CLUSTER, name=self.name, namespace=self.namespace, spec=self.to_spec_dict())

    @classmethod
    def from_resource(cls, res: Resource) -> "ClusterSpec":
        """Decode a stored SearchCluster.

        Only type shape is checked here; value constraints (negative counts,
        naming) are the translator's job.
        """
        spec = res.spec or {}
        problems: list[Problem] = []

        version = spec.get("version", "")
        if not isinstance(version, str):
            problems.append(Problem("spec.version", "must be a string"))
            version = ""

        tunable = spec.get("setVmMaxMapCount", False)
        if not isinstance(tunable, bool):
            problems.append(Problem("spec.setVmMaxMapCount", "must be a boolean"))
            tunable = False

        raw_groups = spec.get("topologies") or []
        if not isinstance(raw_groups, list):
            problems.append(Problem("spec.topologies", "must be a list"))
            raw_groups = []

        groups: list[TopologyGroup] = []
        for i, raw in enumerate(raw_groups):
            path = f"spec.topologies[{i}]"
            if not isinstance(raw, dict):
                problems.append(Problem(path, "must be an object"))
                continue
            count = raw.get("nodeCount", 0)
            if isinstance(count, bool) or not isinstance(count, int):
                problems.append(Problem(f"{path}.nodeCount", "must be an integer"))
                continue
            name = raw.get("name")
            if name is not None and not isinstance(name, str):
                problems.append(Problem(f"{path}.name", "must be a string"))
                continue
            shape = raw.get("resources")
            if shape is not None and not isinstance(shape, dict):
                problems.append(Problem(f"{path}.resources", "must be an object"))
                continue
            groups.append(TopologyGroup(node_count=count, name=name or None, resources=shape or None))

        if problems:
            raise ValidationError(problems)

        return cls(
            name=res.name,
            namespace=res.namespace,
            version=version,
            set_vm_max_map_count=tunable,
            topologies=tuple(groups),
            uid=res.uid,
            generation=res.generation,
        )
