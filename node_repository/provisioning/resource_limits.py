import logging
from typing import Optional

from node_repository.config import HostOverhead
from node_repository.config import ResourceLimits
from node_repository.errors import InvalidSpecificationError
from node_repository.flavors import NodeFlavors
from node_repository.interface import ApplicationId
from node_repository.interface import Capacity
from node_repository.interface import ClusterSpec
from node_repository.interface import Environment
from node_repository.interface import Node
from node_repository.interface import NodeResources
from node_repository.interface import Zone

logger = logging.getLogger(__name__)


class NodeResourceLimits:
    """Minimum resources allowed for nodes

    Requests are checked against the advertised minimums before anything is
    allocated. Each node is checked against the real minimums, what remains
    after the host overhead, when the allocation engine considers it.
    """

    def __init__(
        self,
        limits: ResourceLimits = ResourceLimits(),
        host_overhead: HostOverhead = HostOverhead(),
    ):
        self._limits = limits
        self._host_overhead = host_overhead

    def ensure_within_advertised_limits(
        self, kind: str, requested: NodeResources, cluster: ClusterSpec
    ) -> None:
        limits = self._limits
        if requested.vcpu < limits.min_advertised_vcpu:
            self._illegal(kind, "vcpu", "", cluster, requested.vcpu, limits.min_advertised_vcpu)
        if requested.memory_gb < limits.min_advertised_memory_gb:
            self._illegal(
                kind,
                "memory",
                "Gb",
                cluster,
                requested.memory_gb,
                limits.min_advertised_memory_gb,
            )
        if requested.disk_gb < limits.min_advertised_disk_gb:
            self._illegal(
                kind, "disk", "Gb", cluster, requested.disk_gb, limits.min_advertised_disk_gb
            )

    def real_resources(self, node: Node) -> NodeResources:
        """What a node offers once its host has taken its overhead"""
        if node.parent_hostname is None:
            return node.resources
        return node.resources.subtract(
            NodeResources(
                memory_gb=self._host_overhead.memory_gb,
                disk_gb=self._host_overhead.disk_gb,
            )
        )

    def is_within_real_limits(self, node: Node) -> bool:
        real = self.real_resources(node)
        return (
            real.memory_gb >= self._limits.min_real_memory_gb
            and real.disk_gb >= self._limits.min_real_disk_gb
        )

    @staticmethod
    def _illegal(
        kind: str,
        resource: str,
        unit: str,
        cluster: ClusterSpec,
        requested: float,
        minimum: float,
    ) -> None:
        unit = f" {unit}" if unit else ""
        raise InvalidSpecificationError(
            f"{cluster.type.value} cluster '{cluster.id}': {kind} {resource} size is "
            f"{requested:.2f}{unit} but must be at least {minimum:.2f}{unit}"
        )


class CapacityPolicies:
    """How requested capacity translates to actual capacity in a zone"""

    def __init__(self, zone: Zone, flavors: NodeFlavors, default_flavor: str = "default"):
        self._zone = zone
        self._flavors = flavors
        self._default_flavor = default_flavor

    def decide_size(
        self,
        requested: int,
        capacity: Capacity,
        cluster: ClusterSpec,
        application: ApplicationId,
    ) -> int:
        nodes = self._ensure_redundancy(requested, cluster, capacity.can_fail)
        if application.is_tester:
            return 1
        if capacity.required:
            return nodes
        environment = self._zone.environment
        if environment in (Environment.dev, Environment.test):
            return 1
        if environment == Environment.perf:
            return min(nodes, 3)
        if environment == Environment.staging:
            return nodes if nodes <= 1 else max(1, nodes // 10)
        return nodes

    @staticmethod
    def decide_groups(size: int, requested_groups: int) -> int:
        """Groups follow the size down when the environment shrinks a cluster"""
        groups = max(1, min(requested_groups, size))
        if size % groups != 0:
            return 1
        return groups

    def decide_resources(self, requested: Optional[NodeResources]) -> NodeResources:
        if requested is not None:
            return requested
        flavor = self._flavors.get_flavor(self._default_flavor)
        if flavor is None:
            raise InvalidSpecificationError(
                f"No resources requested and the default flavor "
                f"'{self._default_flavor}' is not available"
            )
        return flavor.resources

    def _ensure_redundancy(self, nodes: int, cluster: ClusterSpec, can_fail: bool) -> int:
        if can_fail and nodes == 1 and self._zone.environment.is_production:
            raise InvalidSpecificationError(
                f"{cluster}: Deployments to prod require at least 2 nodes per "
                "cluster for redundancy"
            )
        return nodes
