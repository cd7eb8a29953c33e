from dataclasses import dataclass
from typing import FrozenSet
from typing import Iterable
from typing import Mapping

from node_repository.interface import ApplicationId
from node_repository.interface import ClusterType
from node_repository.interface import Node
from node_repository.interface import NodeState
from node_repository.interface import NodeType


def _split(value: str) -> FrozenSet[str]:
    return frozenset(part.strip() for part in value.split(",") if part.strip())


@dataclass(frozen=True)
class NodeFilter:
    """Selects nodes the way the node management API does

    Each non-empty dimension must match (AND), and within a dimension any of
    the given values may match (OR). An empty filter matches every node.
    """

    hostnames: FrozenSet[str] = frozenset()
    flavors: FrozenSet[str] = frozenset()
    cluster_types: FrozenSet[ClusterType] = frozenset()
    cluster_ids: FrozenSet[str] = frozenset()
    states: FrozenSet[NodeState] = frozenset()
    node_types: FrozenSet[NodeType] = frozenset()
    parent_hostnames: FrozenSet[str] = frozenset()
    os_versions: FrozenSet[str] = frozenset()
    applications: FrozenSet[ApplicationId] = frozenset()

    def matches(self, node: Node) -> bool:
        allocation = node.allocation
        cluster = allocation.membership.cluster if allocation else None
        checks = (
            (self.hostnames, lambda: node.hostname in self.hostnames),
            (self.flavors, lambda: node.flavor.name in self.flavors),
            (
                self.cluster_types,
                lambda: cluster is not None and cluster.type in self.cluster_types,
            ),
            (
                self.cluster_ids,
                lambda: cluster is not None and cluster.id in self.cluster_ids,
            ),
            (self.states, lambda: node.state in self.states),
            (self.node_types, lambda: node.type in self.node_types),
            (
                self.parent_hostnames,
                lambda: node.parent_hostname in self.parent_hostnames,
            ),
            (self.os_versions, lambda: node.status.os_version in self.os_versions),
            (
                self.applications,
                lambda: allocation is not None
                and allocation.owner in self.applications,
            ),
        )
        return all(check() for values, check in checks if values)

    def __call__(self, node: Node) -> bool:
        return self.matches(node)

    @staticmethod
    def from_nodes(nodes: Iterable[Node]) -> "NodeFilter":
        return NodeFilter(hostnames=frozenset(node.hostname for node in nodes))

    @staticmethod
    def from_application(application: ApplicationId) -> "NodeFilter":
        return NodeFilter(applications=frozenset({application}))

    @staticmethod
    def from_query(params: Mapping[str, str]) -> "NodeFilter":
        """Build a filter from query parameters with comma separated values

        Recognized parameters: hostname, flavor, clusterType, clusterId, state,
        nodeType, parentHost, osVersion and application (tenant.app.instance).
        Unknown enum values raise ValueError.
        """
        return NodeFilter(
            hostnames=_split(params.get("hostname", "")),
            flavors=_split(params.get("flavor", "")),
            cluster_types=frozenset(
                ClusterType(value) for value in _split(params.get("clusterType", ""))
            ),
            cluster_ids=_split(params.get("clusterId", "")),
            states=frozenset(
                NodeState(value) for value in _split(params.get("state", ""))
            ),
            node_types=frozenset(
                NodeType(value) for value in _split(params.get("nodeType", ""))
            ),
            parent_hostnames=_split(params.get("parentHost", "")),
            os_versions=_split(params.get("osVersion", "")),
            applications=frozenset(
                _parse_application(value)
                for value in _split(params.get("application", ""))
            ),
        )


def _parse_application(value: str) -> ApplicationId:
    parts = value.split(".")
    if len(parts) != 3:
        raise ValueError(
            f"Application ids must be on the form tenant.application.instance, "
            f"got '{value}'"
        )
    return ApplicationId(tenant=parts[0], application=parts[1], instance=parts[2])
