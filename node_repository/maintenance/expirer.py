import logging
from abc import abstractmethod
from collections import defaultdict
from datetime import timedelta
from typing import Dict
from typing import List
from typing import Optional

from node_repository.interface import ApplicationId
from node_repository.interface import EventType
from node_repository.interface import Node
from node_repository.interface import NodeState
from node_repository.maintenance.maintainer import JobControl
from node_repository.maintenance.maintainer import NodeRepositoryMaintainer
from node_repository.repository import NodeRepository

logger = logging.getLogger(__name__)


class Expirer(NodeRepositoryMaintainer):
    """Moves nodes which have been in a state for too long

    A node has expired when the last event of the given type (the one
    recorded when it entered the state) happened more than `expiry_time` ago.
    """

    def __init__(
        self,
        from_state: NodeState,
        event_type: EventType,
        node_repository: NodeRepository,
        expiry_time: timedelta,
        interval: timedelta,
        job_control: JobControl,
        initial_delay: Optional[timedelta] = None,
    ):
        super().__init__(node_repository, interval, job_control, initial_delay=initial_delay)
        self.from_state = from_state
        self.event_type = event_type
        self.expiry_time = expiry_time

    def is_expired(self, node: Node) -> bool:
        expiry = self.node_repository.clock() - self.expiry_time
        return node.history.has_event_before(self.event_type, expiry)

    def maintain(self) -> bool:
        expired = [
            node
            for node in self.node_repository.list(self.from_state)
            if self.is_expired(node)
        ]
        by_owner: Dict[Optional[ApplicationId], List[Node]] = defaultdict(list)
        for node in expired:
            by_owner[node.allocation.owner if node.allocation else None].append(node)

        success = True
        for owner, nodes in by_owner.items():
            try:
                if owner is None:
                    self._expire_current(nodes)
                    continue
                # A deployment of the owner may be taking these nodes back right now
                with self.node_repository.lock(owner):
                    self._expire_current(nodes)
            except Exception:  # pylint: disable=broad-except
                logger.warning(
                    "%s: Exception while expiring nodes of %s",
                    self.name,
                    owner,
                    exc_info=True,
                )
                success = False
        return success

    def _expire_current(self, nodes: List[Node]) -> None:
        current = []
        for node in nodes:
            node = self.node_repository.get_node(node.hostname, self.from_state)
            if node is not None and self.is_expired(node):
                current.append(node)
        if current:
            logger.info(
                "%s: %s expired in %s",
                self.name,
                ", ".join(node.hostname for node in current),
                self.from_state.value,
            )
            self.expire(current)

    @abstractmethod
    def expire(self, nodes: List[Node]) -> None:
        pass
