from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from .models import ClusterSpec, TopologyGroup


class TopologyGroupRequest(BaseModel):
    node_count: int = Field(..., ge=0, le=100, description="Number of search nodes in this group")
    name: str | None = Field(None, description="Group name (dns-safe); defaults to group-<position>")
    resources: dict[str, Any] | None = Field(None, description="Container resources: {requests, limits}")


class ClusterRequest(BaseModel):
    version: str = Field(..., description="Search service version, e.g. 7.0.0")
    set_vm_max_map_count: bool = Field(False, description="Raise vm.max_map_count on every worker's host first")
    topologies: list[TopologyGroupRequest] = Field(default_factory=list)

    def to_spec(self, name: str, namespace: str) -> ClusterSpec:
        return ClusterSpec(
            name=name,
            namespace=namespace,
            version=self.version,
            set_vm_max_map_count=self.set_vm_max_map_count,
            topologies=tuple(
                TopologyGroup(node_count=t.node_count, name=t.name, resources=t.resources) for t in self.topologies
            ),
        )


class ClusterSummary(BaseModel):
    namespace: str
    name: str
    version: str
    phase: str = "Pending"
    desired_nodes: int = 0
    ready_nodes: int = 0
