import logging
import threading
from contextlib import contextmanager
from datetime import timedelta
from typing import Dict
from typing import FrozenSet
from typing import Iterator
from typing import List
from typing import Optional
from typing import Sequence

from node_repository.clock import Clock
from node_repository.clock import system_clock
from node_repository.config import ProvisioningConfig
from node_repository.errors import ConcurrentModificationError
from node_repository.errors import InvalidStateTransitionError
from node_repository.errors import LockTimeoutError
from node_repository.errors import NodeNotFoundError
from node_repository.interface import Agent
from node_repository.interface import ApplicationId
from node_repository.interface import EventType
from node_repository.interface import Node
from node_repository.interface import NodeState
from node_repository.interface import NodeType
from node_repository.interface import STATE_EVENTS
from node_repository.node_filter import NodeFilter
from node_repository.node_list import NodeList

logger = logging.getLogger(__name__)

# Moving a node to the state it is already in is always allowed
ALLOWED_TRANSITIONS: Dict[NodeState, FrozenSet[NodeState]] = {
    NodeState.provisioned: frozenset(
        {NodeState.dirty, NodeState.failed, NodeState.parked}
    ),
    NodeState.dirty: frozenset({NodeState.ready, NodeState.failed, NodeState.parked}),
    NodeState.ready: frozenset(
        {NodeState.reserved, NodeState.dirty, NodeState.failed, NodeState.parked}
    ),
    NodeState.reserved: frozenset(
        {
            NodeState.active,
            NodeState.inactive,
            NodeState.dirty,
            NodeState.failed,
            NodeState.parked,
        }
    ),
    NodeState.active: frozenset(
        {NodeState.inactive, NodeState.failed, NodeState.parked}
    ),
    NodeState.inactive: frozenset(
        {NodeState.reserved, NodeState.dirty, NodeState.failed, NodeState.parked}
    ),
    NodeState.failed: frozenset({NodeState.dirty, NodeState.parked, NodeState.active}),
    NodeState.parked: frozenset({NodeState.dirty, NodeState.failed}),
    NodeState.deprovisioned: frozenset(),
}

RESERVABLE_STATES = frozenset({NodeState.ready, NodeState.reserved, NodeState.inactive})


@contextmanager
def _hold(lock, what: str, timeout: timedelta) -> Iterator[None]:
    seconds = timeout.total_seconds()
    if not lock.acquire(timeout=seconds):
        raise LockTimeoutError(
            f"Timed out after {seconds:g} seconds waiting for the lock on {what}"
        )
    try:
        yield
    finally:
        lock.release()


class NodeRepository:
    """The inventory of nodes in a zone, and the locks serializing changes to it

    Nodes are immutable values keyed by hostname. Changes are made by
    writing new node values, usually through one of the state transition
    methods, which validate the move and record it in the node history.

    Callers changing the nodes of an application hold `lock(application)`,
    callers taking unallocated nodes additionally hold `lock_unallocated()`.
    """

    def __init__(
        self,
        clock: Clock = system_clock,
        lock_timeout: timedelta = timedelta(minutes=1),
    ):
        self._clock = clock
        self._lock_timeout = lock_timeout
        self._nodes: Dict[str, Node] = {}
        self._store_lock = threading.RLock()
        self._application_locks: Dict[ApplicationId, threading.RLock] = {}
        self._unallocated_lock = threading.RLock()

    @classmethod
    def from_config(
        cls, config: ProvisioningConfig, clock: Clock = system_clock
    ) -> "NodeRepository":
        return cls(clock=clock, lock_timeout=config.lock_timeout)

    @property
    def clock(self) -> Clock:
        return self._clock

    # ---- Locks ----

    def lock(
        self, application: ApplicationId, timeout: Optional[timedelta] = None
    ):
        with self._store_lock:
            lock = self._application_locks.setdefault(application, threading.RLock())
        return _hold(lock, f"application {application}", timeout or self._lock_timeout)

    def lock_unallocated(self, timeout: Optional[timedelta] = None):
        return _hold(
            self._unallocated_lock, "unallocated nodes", timeout or self._lock_timeout
        )

    # ---- Reads ----

    def get_node(self, hostname: str, *states: NodeState) -> Optional[Node]:
        with self._store_lock:
            node = self._nodes.get(hostname)
        if node is None or (states and node.state not in states):
            return None
        return node

    def get_nodes(
        self, application: Optional[ApplicationId] = None, *states: NodeState
    ) -> List[Node]:
        nodes = self.list(*states)
        if application is not None:
            nodes = nodes.owner(application)
        return nodes.as_list()

    def list(self, *states: NodeState) -> NodeList:
        with self._store_lock:
            nodes = sorted(self._nodes.values(), key=lambda node: node.hostname)
        if states:
            return NodeList(nodes).state(*states)
        return NodeList(nodes)

    def _require(self, hostname: str) -> Node:
        node = self._nodes.get(hostname)
        if node is None:
            raise NodeNotFoundError(f"No node with hostname '{hostname}'")
        return node

    # ---- Writes ----

    def write(self, nodes: Sequence[Node]) -> List[Node]:
        """Store the given nodes as they are, without any state checks"""
        with self._store_lock:
            for node in nodes:
                self._nodes[node.hostname] = node
        return list(nodes)

    def add_nodes(self, nodes: Sequence[Node], agent: Agent = Agent.system) -> List[Node]:
        now = self._clock()
        with self._store_lock:
            for node in nodes:
                if node.hostname in self._nodes:
                    raise ValueError(
                        f"Cannot add {node.hostname}: A node with this name already exists"
                    )
                if node.state != NodeState.provisioned:
                    raise ValueError(
                        f"Cannot add {node}: Nodes must be added in state provisioned"
                    )
            added = [
                node.with_history_event(EventType.provisioned, agent, now)
                for node in nodes
            ]
            return self.write(added)

    def add_virtual_nodes(self, nodes: Sequence[Node]) -> List[Node]:
        """Add new allocated child nodes, written directly as reserved"""
        if not nodes:
            return []
        now = self._clock()
        with self._store_lock:
            for node in nodes:
                if node.hostname in self._nodes:
                    raise ConcurrentModificationError(
                        f"Cannot add {node.hostname}: A node with this name already exists"
                    )
                if node.parent_hostname not in self._nodes:
                    raise ValueError(
                        f"Cannot add {node.hostname}: Parent host "
                        f"{node.parent_hostname} does not exist"
                    )
            added = [
                node.with_state(NodeState.reserved)
                .with_history_event(EventType.provisioned, Agent.application, now)
                .with_history_event(EventType.reserved, Agent.application, now)
                for node in nodes
            ]
            logger.info(
                "Added %d new virtual nodes: %s",
                len(added),
                ", ".join(node.hostname for node in added),
            )
            return self.write(added)

    def _move(
        self,
        nodes: Sequence[Node],
        to_state: NodeState,
        agent: Agent,
        reason: Optional[str] = None,
    ) -> List[Node]:
        if not nodes:
            return []
        now = self._clock()
        with self._store_lock:
            for node in nodes:
                current = self._require(node.hostname)
                if (
                    current.state != to_state
                    and to_state not in ALLOWED_TRANSITIONS[current.state]
                ):
                    raise InvalidStateTransitionError(
                        f"Cannot move {current} to {to_state.value}"
                    )
            moved = []
            for node in nodes:
                current = self._require(node.hostname)
                node = node.with_state(to_state)
                # Re-reserving records a new event, this extends the reservation
                if current.state != to_state or to_state == NodeState.reserved:
                    node = node.with_history_event(STATE_EVENTS[to_state], agent, now)
                moved.append(node)
            self.write(moved)
        logger.info(
            "%s moved %s to %s%s",
            agent.value,
            ", ".join(node.hostname for node in moved),
            to_state.value,
            f": {reason}" if reason else "",
        )
        return moved

    def reserve(self, nodes: Sequence[Node]) -> List[Node]:
        """Reserve allocated nodes, failing if any was taken since it was read"""
        with self._store_lock:
            for node in nodes:
                if node.allocation is None:
                    raise ValueError(f"Cannot reserve {node}: It is not allocated")
                current = self._require(node.hostname)
                if current.state not in RESERVABLE_STATES:
                    raise ConcurrentModificationError(
                        f"Cannot reserve {node.hostname}: It was moved to "
                        f"{current.state.value} concurrently"
                    )
                if (
                    current.allocation is not None
                    and current.allocation.owner != node.allocation.owner
                ):
                    raise ConcurrentModificationError(
                        f"Cannot reserve {node.hostname}: It was allocated to "
                        f"{current.allocation.owner} concurrently"
                    )
            return self._move(nodes, NodeState.reserved, Agent.application)

    def activate(self, nodes: Sequence[Node], agent: Agent = Agent.application) -> List[Node]:
        return self._move(nodes, NodeState.active, agent)

    def deactivate(
        self, nodes: Sequence[Node], agent: Agent = Agent.application
    ) -> List[Node]:
        """Move nodes to inactive, clearing their retired and removable flags"""
        deactivated = []
        for node in nodes:
            if node.allocation is not None:
                node = node.unretire()
                node = node.with_allocation(node.allocation.with_removable(False))
            deactivated.append(node)
        return self._move(deactivated, NodeState.inactive, agent)

    def remove_application(self, application: ApplicationId) -> List[Node]:
        """Deactivate every reserved and active node of an application"""
        with self.lock(application):
            nodes = self.get_nodes(application, NodeState.reserved, NodeState.active)
            return self.deactivate(nodes, Agent.application)

    def set_dirty(
        self, nodes: Sequence[Node], agent: Agent, reason: Optional[str] = None
    ) -> List[Node]:
        """Deallocate nodes, they must be cleaned before they are used again"""
        return self._move(
            [node.with_allocation(None) for node in nodes],
            NodeState.dirty,
            agent,
            reason,
        )

    def set_ready(
        self, nodes: Sequence[Node], agent: Agent, reason: Optional[str] = None
    ) -> List[Node]:
        for node in nodes:
            current = self._require(node.hostname)
            if current.state not in (NodeState.dirty, NodeState.ready):
                raise InvalidStateTransitionError(
                    f"Cannot make {current} ready: It is not dirty"
                )
        return self._move(nodes, NodeState.ready, agent, reason)

    def deallocate(
        self, nodes: Sequence[Node], agent: Agent, reason: Optional[str] = None
    ) -> List[Node]:
        """Release nodes: parked if they should leave the zone, otherwise dirty"""
        to_park = [node for node in nodes if node.status.want_to_deprovision]
        to_clean = [node for node in nodes if not node.status.want_to_deprovision]
        parked = [
            self.park(node.hostname, agent, reason or "Deallocated") for node in to_park
        ]
        return parked + self.set_dirty(to_clean, agent, reason)

    def fail(self, hostname: str, agent: Agent, reason: str) -> Node:
        with self._store_lock:
            node = self._require(hostname)
            status = node.status.model_copy(
                update={"fail_count": node.status.fail_count + 1}
            )
            return self._move([node.with_status(status)], NodeState.failed, agent, reason)[0]

    def park(self, hostname: str, agent: Agent, reason: str) -> Node:
        with self._store_lock:
            node = self._require(hostname)
            return self._move([node], NodeState.parked, agent, reason)[0]

    def set_removable(
        self, application: ApplicationId, nodes: Sequence[Node]
    ) -> List[Node]:
        """Mark nodes to be dropped from the application on its next deployment"""
        with self.lock(application), self._store_lock:
            removable = []
            for node in nodes:
                current = self._require(node.hostname)
                if current.allocation is None or current.allocation.owner != application:
                    raise ConcurrentModificationError(
                        f"Cannot mark {node.hostname} removable: "
                        f"It is no longer allocated to {application}"
                    )
                removable.append(current.removable())
            return self.write(removable)

    def set_want_to_retire(
        self, hostname: str, want_to_retire: bool, agent: Agent
    ) -> Node:
        with self._store_lock:
            node = self._require(hostname)
            return self.write(
                [node.with_want_to_retire(want_to_retire, agent, self._clock())]
            )[0]

    def restart(self, node_filter: NodeFilter) -> List[Node]:
        """Increase the wanted restart generation of matching allocated nodes"""
        with self._store_lock:
            nodes = self.list().matching(node_filter).allocated()
            return self.write(
                [
                    node.with_restart(
                        node.allocation.restart_generation.with_increased_wanted()
                    )
                    for node in nodes
                    if node.allocation is not None
                ]
            )

    def reboot(self, node_filter: NodeFilter) -> List[Node]:
        """Increase the wanted reboot generation of matching nodes"""
        with self._store_lock:
            nodes = self.list().matching(node_filter)
            return self.write(
                [node.with_reboot(node.status.reboot.with_increased_wanted()) for node in nodes]
            )

    def hosts(self) -> NodeList:
        return self.list().node_type(NodeType.host)
