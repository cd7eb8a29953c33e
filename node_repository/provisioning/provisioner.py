import logging
from dataclasses import replace
from typing import List
from typing import Optional
from typing import Sequence
from typing import Tuple

from node_repository.config import ProvisioningConfig
from node_repository.errors import InvalidSpecificationError
from node_repository.flavors import NodeFlavors
from node_repository.interface import ApplicationId
from node_repository.interface import Capacity
from node_repository.interface import ClusterSpec
from node_repository.interface import HostSpec
from node_repository.interface import Node
from node_repository.interface import NodeState
from node_repository.node_filter import NodeFilter
from node_repository.provisioning.activator import Activator
from node_repository.provisioning.allocation import AllocationContext
from node_repository.provisioning.node_spec import CountNodeSpec
from node_repository.provisioning.node_spec import NodeSpec
from node_repository.provisioning.node_spec import RangeNodeSpec
from node_repository.provisioning.preparer import GroupPreparer
from node_repository.provisioning.preparer import Preparer
from node_repository.provisioning.resource_limits import CapacityPolicies
from node_repository.provisioning.resource_limits import NodeResourceLimits
from node_repository.provisioning.timeout_budget import TimeoutBudget
from node_repository.repository import NodeRepository

logger = logging.getLogger(__name__)


class NodeRepositoryProvisioner:
    """Allocates nodes to application clusters from the node repository

    A deployment first calls `prepare` for each cluster, which reserves the
    nodes and returns them as host specs, then `activate` with all of the
    host specs of the application.
    """

    def __init__(
        self,
        node_repository: NodeRepository,
        config: ProvisioningConfig,
        flavors: NodeFlavors,
    ):
        self._node_repository = node_repository
        self._config = config
        self._capacity_policies = CapacityPolicies(
            config.zone, flavors, config.default_flavor
        )
        self._limits = NodeResourceLimits(config.resource_limits, config.host_overhead)
        context = AllocationContext(
            zone=config.zone, limits=self._limits, clock=node_repository.clock
        )
        self._preparer = Preparer(
            node_repository,
            GroupPreparer(node_repository, context, config.dynamic_virtual_nodes),
        )
        self._activator = Activator(node_repository)

    def prepare(
        self,
        application: ApplicationId,
        cluster: ClusterSpec,
        requested: Capacity,
        budget: Optional[TimeoutBudget] = None,
    ) -> List[HostSpec]:
        budget = budget or TimeoutBudget(
            self._node_repository.clock, self._config.prepare_timeout
        )
        logger.debug(
            "Received deploy prepare request for %s for %s in %s",
            requested,
            cluster,
            application,
        )
        if requested.max.nodes == 0:
            logger.info("Removing %s from %s: No nodes requested", cluster, application)
            return []
        self._validate(requested)

        if requested.is_range:
            node_spec, groups = self._range_spec(application, cluster, requested)
        else:
            node_spec, groups = self._count_spec(application, cluster, requested)

        budget.assert_not_expired("pre-allocation")
        nodes = self._preparer.prepare(application, cluster, node_spec, groups)
        budget.assert_not_expired("post-allocation")
        return as_sorted_hosts(nodes)

    def _validate(self, requested: Capacity) -> None:
        for resources in (requested.min, requested.max):
            if resources.nodes % resources.groups != 0:
                raise InvalidSpecificationError(
                    f"{resources.nodes} nodes cannot be divided evenly into "
                    f"{resources.groups} groups"
                )
        if requested.min.nodes > requested.max.nodes:
            raise InvalidSpecificationError(
                f"Min capacity {requested.min} is larger than max {requested.max}"
            )
        if requested.min.groups > requested.max.groups:
            raise InvalidSpecificationError(
                f"Min groups {requested.min.groups} is larger than max groups "
                f"{requested.max.groups}"
            )
        min_resources, max_resources = (
            requested.min.node_resources,
            requested.max.node_resources,
        )
        if (
            min_resources is not None
            and max_resources is not None
            and not max_resources.just_numbers().satisfies(min_resources.just_numbers())
        ):
            raise InvalidSpecificationError(
                f"Min resources {min_resources} are larger than max {max_resources}"
            )

    def _count_spec(
        self, application: ApplicationId, cluster: ClusterSpec, requested: Capacity
    ) -> Tuple[NodeSpec, int]:
        target = requested.min
        resources = self._capacity_policies.decide_resources(target.node_resources)
        self._limits.ensure_within_advertised_limits("Min", resources, cluster)
        size = self._capacity_policies.decide_size(
            target.nodes, requested, cluster, application
        )
        groups = self._capacity_policies.decide_groups(size, target.groups)
        spec = CountNodeSpec(
            count=size,
            node_resources=resources,
            exclusive=cluster.exclusive,
            can_fail=requested.can_fail,
        )
        return spec, groups

    def _range_spec(
        self, application: ApplicationId, cluster: ClusterSpec, requested: Capacity
    ) -> Tuple[NodeSpec, int]:
        min_resources = self._capacity_policies.decide_resources(
            requested.min.node_resources
        )
        max_resources = self._capacity_policies.decide_resources(
            requested.max.node_resources
        )
        self._limits.ensure_within_advertised_limits("Min", min_resources, cluster)
        min_size = self._capacity_policies.decide_size(
            requested.min.nodes, requested, cluster, application
        )
        max_size = self._capacity_policies.decide_size(
            requested.max.nodes, requested, cluster, application
        )
        groups = self._capacity_policies.decide_groups(
            min_size, self._current_groups(application, cluster, requested)
        )
        spec = RangeNodeSpec(
            min_count=min_size,
            max_count=max_size,
            min_resources=min_resources,
            max_resources=max_resources,
            exclusive=cluster.exclusive,
            can_fail=requested.can_fail,
        )
        return spec, groups

    def _current_groups(
        self, application: ApplicationId, cluster: ClusterSpec, requested: Capacity
    ) -> int:
        """The current group count if it is within the range, else the minimum"""
        current = (
            self._node_repository.list(NodeState.active)
            .owner(application)
            .cluster(cluster)
            .not_retired()
        )
        groups = {
            node.allocation.membership.cluster.group
            for node in current
            if node.allocation is not None
        }
        if requested.min.groups <= len(groups) <= requested.max.groups:
            return len(groups)
        return requested.min.groups

    def activate(self, application: ApplicationId, hosts: Sequence[HostSpec]) -> None:
        self._activator.activate(application, hosts)

    def remove(self, application: ApplicationId) -> None:
        removed = self._node_repository.remove_application(application)
        logger.info("Removed %s, deactivating %d nodes", application, len(removed))

    def restart(self, application: ApplicationId, node_filter: NodeFilter) -> List[Node]:
        return self._node_repository.restart(
            replace(node_filter, applications=frozenset({application}))
        )


def as_sorted_hosts(nodes: Sequence[Node]) -> List[HostSpec]:
    return [
        HostSpec.from_node(node)
        for node in sorted(
            nodes,
            key=lambda node: node.allocation.membership.index if node.allocation else 0,
        )
    ]

