import logging
from typing import Dict
from typing import List
from typing import Optional
from typing import Tuple

from node_repository.errors import OutOfCapacityError
from node_repository.interface import Agent
from node_repository.interface import ApplicationId
from node_repository.interface import ClusterSpec
from node_repository.interface import Node
from node_repository.interface import NodeState
from node_repository.node_list import NodeList
from node_repository.provisioning.allocation import AllocationContext
from node_repository.provisioning.allocation import NodeAllocation
from node_repository.provisioning.node_spec import NodeSpec
from node_repository.provisioning.prioritizer import NodePrioritizer
from node_repository.repository import NodeRepository

logger = logging.getLogger(__name__)


class GroupPreparer:
    """Allocates the nodes of a single group and reserves them"""

    def __init__(
        self,
        node_repository: NodeRepository,
        context: AllocationContext,
        allocate_new_nodes: bool = True,
    ):
        self._node_repository = node_repository
        self._context = context
        self._allocate_new_nodes = allocate_new_nodes

    def prepare(
        self,
        application: ApplicationId,
        cluster: ClusterSpec,
        requested: NodeSpec,
        surplus_active_nodes: List[Node],
        highest_index: int,
    ) -> Tuple[List[Node], int]:
        """Returns the nodes of the group and the new highest index

        Surplus nodes used by this group are removed from
        `surplus_active_nodes`.
        """
        with self._node_repository.lock(application):
            with self._node_repository.lock_unallocated():
                all_nodes = self._node_repository.list()
                allocation = NodeAllocation(
                    all_nodes,
                    application,
                    cluster,
                    requested,
                    highest_index,
                    self._context,
                )
                prioritizer = NodePrioritizer(
                    all_nodes,
                    application,
                    cluster,
                    requested,
                    self._allocate_new_nodes,
                )
                prioritizer.add_application_nodes()
                prioritizer.add_surplus_nodes(surplus_active_nodes)
                prioritizer.add_ready_nodes()
                prioritizer.add_new_nodes()
                allocation.offer(prioritizer.prioritize())

                if not allocation.fulfilled() and requested.can_fail:
                    group = "" if cluster.group is None else f" in group {cluster.group}"
                    raise OutOfCapacityError(
                        f"Could not satisfy {requested}{group} for {cluster} in "
                        f"{application}{allocation.out_of_capacity_details()}",
                        allocation.rejection_reasons(),
                    )

                self._node_repository.reserve(allocation.reservable_nodes())
                self._node_repository.add_virtual_nodes(allocation.new_nodes())
                used = {node.hostname for node in allocation.surplus_nodes()}
                surplus_active_nodes[:] = [
                    node for node in surplus_active_nodes if node.hostname not in used
                ]
                return allocation.final_nodes(), allocation.highest_index


class Preparer:
    """Prepares the nodes of a cluster, one group at a time"""

    def __init__(self, node_repository: NodeRepository, group_preparer: GroupPreparer):
        self._node_repository = node_repository
        self._group_preparer = group_preparer

    def prepare(
        self,
        application: ApplicationId,
        cluster: ClusterSpec,
        requested: NodeSpec,
        wanted_groups: int,
    ) -> List[Node]:
        nodes = self._node_repository.list()
        surplus_nodes = self._find_nodes_in_removable_groups(
            nodes, application, cluster, wanted_groups
        )
        highest_index = self._find_highest_index(nodes, application, cluster)

        accepted: Dict[str, Node] = {}
        for group_index in range(wanted_groups):
            group_cluster = cluster.with_group(group_index)
            group_nodes, highest_index = self._group_preparer.prepare(
                application,
                group_cluster,
                requested.fraction(wanted_groups),
                surplus_nodes,
                highest_index,
            )
            accepted.update((node.hostname, node) for node in group_nodes)

        now = self._node_repository.clock()
        for node in self._move_to_active_group(surplus_nodes, wanted_groups, cluster.group):
            accepted[node.hostname] = node.retire(Agent.application, now)
        return list(accepted.values())

    @staticmethod
    def _find_nodes_in_removable_groups(
        nodes: NodeList,
        application: ApplicationId,
        cluster: ClusterSpec,
        wanted_groups: int,
    ) -> List[Node]:
        """Active nodes of the cluster in groups beyond the wanted number"""
        return [
            node
            for node in nodes.owner(application).state(NodeState.active).cluster(cluster)
            if node.allocation is not None
            and (node.allocation.membership.cluster.group or 0) >= wanted_groups
        ]

    @staticmethod
    def _move_to_active_group(
        surplus_nodes: List[Node], wanted_groups: int, target_group: Optional[int]
    ) -> List[Node]:
        moved = []
        for node in surplus_nodes:
            membership = node.allocation.membership if node.allocation else None
            if membership is None:
                continue
            group = target_group if target_group is not None else 0
            if (membership.cluster.group or 0) >= wanted_groups:
                membership = membership.with_cluster(membership.cluster.with_group(group))
            moved.append(node.with_membership(membership))
        return moved

    @staticmethod
    def _find_highest_index(
        nodes: NodeList, application: ApplicationId, cluster: ClusterSpec
    ) -> int:
        highest_index = -1
        for node in nodes.owner(application).cluster(cluster):
            if node.state.is_allocated and node.allocation is not None:
                highest_index = max(highest_index, node.allocation.membership.index)
        return highest_index
