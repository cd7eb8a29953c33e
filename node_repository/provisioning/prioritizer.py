import logging
from dataclasses import dataclass
from dataclasses import replace
from typing import Dict
from typing import List
from typing import Optional
from typing import Sequence
from typing import Tuple

from node_repository.interface import ApplicationId
from node_repository.interface import ClusterMembership
from node_repository.interface import ClusterSpec
from node_repository.interface import Flavor
from node_repository.interface import Node
from node_repository.interface import NodeState
from node_repository.interface import NodeType
from node_repository.node_list import NodeList
from node_repository.provisioning.node_spec import NodeSpec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Candidate:
    """A node offered to one allocation pass, with what that pass knows about it

    Candidates only live for the duration of a pass and are never stored.
    """

    node: Node
    parent: Optional[Node] = None
    is_new_node: bool = False
    is_surplus_node: bool = False
    is_resizable: bool = False

    def with_node(self, node: Node) -> "Candidate":
        return replace(self, node=node)


class NodePrioritizer:
    """Collects the nodes an allocation pass may use, most preferred first

    Nodes already belonging to the application come first, then nodes from
    groups the application no longer wants, then ready nodes, and finally
    new virtual nodes which could be created on hosts with spare capacity.
    """

    def __init__(
        self,
        all_nodes: NodeList,
        application: ApplicationId,
        cluster: ClusterSpec,
        requested: NodeSpec,
        allocate_new_nodes: bool = True,
    ):
        self._all_nodes = all_nodes
        self._application = application
        self._cluster = cluster
        self._requested = requested
        self._allocate_new_nodes = allocate_new_nodes
        self._candidates: Dict[str, Candidate] = {}

    def _parent_of(self, node: Node) -> Optional[Node]:
        return self._all_nodes.parent_of(node)

    def _is_resizable(self, node: Node, parent: Optional[Node]) -> bool:
        if parent is None or node.allocation is None:
            return False
        if not self._requested.needs_resize(node):
            return False
        target = self._requested.resize_target(node).just_numbers()
        # The node's own share is given back to the host when it is resized
        available = self._all_nodes.free_capacity_of(parent).add(node.resources)
        return available.satisfies(target)

    def _add(self, node: Node, is_surplus_node: bool = False) -> None:
        parent = self._parent_of(node)
        self._candidates[node.hostname] = Candidate(
            node=node,
            parent=parent,
            is_surplus_node=is_surplus_node,
            is_resizable=self._is_resizable(node, parent),
        )

    def add_application_nodes(self) -> None:
        states = (NodeState.active, NodeState.inactive, NodeState.reserved)
        for node in (
            self._all_nodes.owner(self._application)
            .state(*states)
            .node_type(NodeType.tenant)
        ):
            self._add(node)

    def add_surplus_nodes(self, surplus_nodes: Sequence[Node]) -> None:
        for node in surplus_nodes:
            self._add(node, is_surplus_node=True)

    def add_ready_nodes(self) -> None:
        for node in self._all_nodes.state(NodeState.ready).node_type(NodeType.tenant):
            if node.hostname not in self._candidates:
                self._add(node)

    def add_new_nodes(self) -> None:
        """Offer one new virtual node on each active host with room for it"""
        resources = self._requested.resources
        if not self._allocate_new_nodes or resources is None:
            return
        taken = self._all_nodes.hostnames()
        for host in self._all_nodes.node_type(NodeType.host).state(NodeState.active):
            if not host.resources.disk_speed.compatible_with(resources.disk_speed):
                continue
            if not host.resources.storage_type.compatible_with(resources.storage_type):
                continue
            if not self._all_nodes.free_capacity_of(host).satisfies(
                resources.just_numbers()
            ):
                continue
            hostname = next(
                (name for name in host.ip_config.pool if name not in taken), None
            )
            if hostname is None:
                logger.debug("No free hostnames left on %s", host.hostname)
                continue
            node_resources = resources.with_disk_speed(
                host.resources.disk_speed
            ).with_storage_type(host.resources.storage_type)
            node = Node.create(
                hostname=hostname,
                flavor=Flavor.from_resources(node_resources),
                parent_hostname=host.hostname,
            )
            self._candidates[hostname] = Candidate(
                node=node, parent=host, is_new_node=True
            )

    def _sort_key(self, candidate: Candidate) -> Tuple:
        node = candidate.node
        state = node.state
        parent_resources = candidate.parent.resources if candidate.parent else None
        membership: Optional[ClusterMembership] = node.membership
        return (
            state != NodeState.active,
            candidate.is_surplus_node,
            state != NodeState.inactive,
            not (state == NodeState.reserved and not candidate.is_new_node),
            state != NodeState.ready,
            not (self._requested.is_compatible(node) or candidate.is_resizable),
            parent_resources.disk_speed.rank if parent_resources else 0,
            parent_resources.storage_type.rank if parent_resources else 0,
            membership.index if membership is not None else 0,
            node.flavor.cost,
            node.hostname,
        )

    def prioritize(self) -> List[Candidate]:
        return sorted(self._candidates.values(), key=self._sort_key)
