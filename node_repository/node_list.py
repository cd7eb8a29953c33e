from typing import Callable
from typing import Iterable
from typing import Iterator
from typing import List
from typing import Optional
from typing import Sequence
from typing import Set

from node_repository.interface import ApplicationId
from node_repository.interface import ClusterSpec
from node_repository.interface import Node
from node_repository.interface import NodeResources
from node_repository.interface import NodeState
from node_repository.interface import NodeType


class NodeList(Sequence[Node]):
    """An immutable, filterable snapshot of nodes"""

    def __init__(self, nodes: Iterable[Node] = ()):
        self._nodes = tuple(nodes)

    def __iter__(self) -> Iterator[Node]:
        return iter(self._nodes)

    def __len__(self) -> int:
        return len(self._nodes)

    def __getitem__(self, index):
        return self._nodes[index]

    def __repr__(self):
        return f"NodeList({[node.hostname for node in self._nodes]})"

    def matching(self, predicate: Callable[[Node], bool]) -> "NodeList":
        return NodeList(node for node in self._nodes if predicate(node))

    def not_matching(self, predicate: Callable[[Node], bool]) -> "NodeList":
        return self.matching(lambda node: not predicate(node))

    def owner(self, application: ApplicationId) -> "NodeList":
        return self.matching(
            lambda node: node.allocation is not None
            and node.allocation.owner == application
        )

    def state(self, *states: NodeState) -> "NodeList":
        return self.matching(lambda node: node.state in states)

    def node_type(self, *types: NodeType) -> "NodeList":
        return self.matching(lambda node: node.type in types)

    def allocated(self) -> "NodeList":
        return self.matching(lambda node: node.allocation is not None)

    def cluster(self, cluster: ClusterSpec) -> "NodeList":
        """Nodes of the given cluster id, in any group"""
        return self.matching(
            lambda node: node.allocation is not None
            and node.allocation.membership.cluster.id == cluster.id
        )

    def retired(self) -> "NodeList":
        return self.matching(lambda node: node.is_retired)

    def not_retired(self) -> "NodeList":
        return self.not_matching(lambda node: node.is_retired)

    def children_of(self, hostname: str) -> "NodeList":
        return self.matching(lambda node: node.parent_hostname == hostname)

    def parent_of(self, node: Node) -> Optional[Node]:
        if node.parent_hostname is None:
            return None
        for candidate in self._nodes:
            if candidate.hostname == node.parent_hostname:
                return candidate
        return None

    def node(self, hostname: str) -> Optional[Node]:
        for node in self._nodes:
            if node.hostname == hostname:
                return node
        return None

    def hostnames(self) -> Set[str]:
        return {node.hostname for node in self._nodes}

    def free_capacity_of(self, host: Node) -> NodeResources:
        """What is left of a host's resources after its children have taken theirs"""
        free = host.resources.just_numbers()
        for child in self.children_of(host.hostname):
            free = free.subtract(child.resources)
        return free

    def as_list(self) -> List[Node]:
        return list(self._nodes)
