import logging
from dataclasses import dataclass
from typing import Dict
from typing import List
from typing import Optional
from typing import Sequence
from typing import Set

from node_repository.clock import Clock
from node_repository.clock import system_clock
from node_repository.interface import Agent
from node_repository.interface import ApplicationId
from node_repository.interface import ClusterMembership
from node_repository.interface import ClusterSpec
from node_repository.interface import Node
from node_repository.interface import NodeState
from node_repository.interface import Zone
from node_repository.node_list import NodeList
from node_repository.provisioning.node_spec import NodeSpec
from node_repository.provisioning.prioritizer import Candidate
from node_repository.provisioning.resource_limits import NodeResourceLimits

logger = logging.getLogger(__name__)

REJECTED_EXCLUSIVITY = "host exclusivity constraints"
REJECTED_PARENT_HOST = "insufficient nodes available on separate physical hosts"
RETIRED_JUST_NOW = "retirement of allocated nodes"
REJECTED_REAL_RESOURCES = "insufficient real resources on hosts"
NOT_ENOUGH_NODES = "insufficient free nodes with the requested resources"

_RESERVABLE_STATES = (NodeState.inactive, NodeState.ready, NodeState.reserved)


@dataclass(frozen=True)
class AllocationContext:
    """Zone wide settings an allocation pass needs"""

    zone: Zone
    limits: NodeResourceLimits
    clock: Clock = system_clock


class NodeAllocation:
    """Decides which of the offered nodes a cluster (group) gets

    One instance is used for a single pass: candidates are offered in
    priority order, and the accepted nodes are read back with
    `final_nodes()` once offering is done. Accepted nodes are new node
    values; nothing is written to the repository here.
    """

    def __init__(
        self,
        all_nodes: NodeList,
        application: ApplicationId,
        cluster: ClusterSpec,
        requested: NodeSpec,
        highest_index: int,
        context: AllocationContext,
    ):
        self._all_nodes = all_nodes
        self._application = application
        self._cluster = cluster
        self._requested = requested
        self._limits = context.limits
        self._clock = context.clock
        # The highest index of any node of this cluster, shared by all groups
        self.highest_index = highest_index
        # Accepted nodes, in the order they were accepted
        self._nodes: Dict[str, Candidate] = {}
        self._indexes: Set[int] = set()

        self._accepted = 0
        self._accepted_without_resizing_retired = 0
        self.was_retired_just_now = 0
        self.rejected_due_to_exclusivity = 0
        self.rejected_due_to_clashing_parent_host = 0
        self.rejected_due_to_insufficient_real_resources = 0

        self._retire_before_remove = cluster.type.retire_before_remove
        self._check_parent_hosts = (
            context.zone.environment.is_production and not application.is_tester
        )

    def offer(self, candidates: Sequence[Candidate]) -> List[Node]:
        """Offer candidates in priority order, returning the ones accepted"""
        accepted: List[Node] = []
        for candidate in candidates:
            node = candidate.node
            allocation = node.allocation
            if allocation is not None:
                membership = allocation.membership
                if allocation.owner != self._application:
                    continue  # wrong application
                if membership.cluster.id == self._cluster.id:
                    self.highest_index = max(self.highest_index, membership.index)
                if not membership.cluster.satisfies(self._cluster):
                    continue  # wrong cluster id/type
                if (
                    not candidate.is_surplus_node or self.saturated()
                ) and membership.cluster.group != self._cluster.group:
                    continue  # wrong group, and we can't or have no reason to change it
                if allocation.removable:
                    continue  # being removed
                if membership.index in self._indexes:
                    continue  # duplicate index

                if self._requested.consider_retiring:
                    want_to_retire = self._want_to_retire(candidate)
                    if (
                        not self.saturated() and self._has_compatible_flavor(candidate)
                    ) or self._accept_to_retire(candidate):
                        accepted.append(
                            self._accept(
                                candidate, want_to_retire, candidate.is_resizable
                            )
                        )
                else:
                    accepted.append(self._accept(candidate, False, False))
            elif not self.saturated() and self._has_compatible_flavor(candidate):
                if not self._limits.is_within_real_limits(node):
                    self.rejected_due_to_insufficient_real_resources += 1
                    continue
                if self._violates_parent_host_policy(node):
                    self.rejected_due_to_clashing_parent_host += 1
                    continue
                if not self._exclusive_to(node.parent_hostname):
                    self.rejected_due_to_exclusivity += 1
                    continue
                if self._requested.exclusive and not self._hosts_only(
                    node.parent_hostname
                ):
                    self.rejected_due_to_exclusivity += 1
                    continue
                if node.status.want_to_retire:
                    continue

                self.highest_index += 1
                node = node.allocate(
                    self._application,
                    ClusterMembership(cluster=self._cluster, index=self.highest_index),
                    self._requested.resources or node.resources,
                )
                accepted.append(self._accept(candidate.with_node(node), False, False))
        return accepted

    def _want_to_retire(self, candidate: Candidate) -> bool:
        node = candidate.node
        return (
            not self._limits.is_within_real_limits(node)
            or self._violates_parent_host_policy(node)
            or not self._has_compatible_flavor(candidate)
            or node.status.want_to_retire
            or (self._requested.exclusive and not self._hosts_only(node.parent_hostname))
        )

    def _violates_parent_host_policy(self, node: Node) -> bool:
        """Nodes of the same cluster should not share a physical host"""
        if not self._check_parent_hosts or node.parent_hostname is None:
            return False
        for accepted in self._nodes.values():
            if (
                accepted.node.parent_hostname == node.parent_hostname
                and accepted.node.hostname != node.hostname
            ):
                return True
        return False

    def _exclusive_to(self, parent_hostname: Optional[str]) -> bool:
        """False if the host holds a node of another application's exclusive cluster"""
        if parent_hostname is None:
            return True
        for child in self._all_nodes.children_of(parent_hostname):
            allocation = child.allocation
            if allocation is None:
                continue
            if allocation.membership.cluster.exclusive and not self._owned_by_application(
                allocation.owner
            ):
                return False
        return True

    def _hosts_only(self, parent_hostname: Optional[str]) -> bool:
        """True if the host holds nodes of no other application"""
        if parent_hostname is None:
            return True  # bare metal nodes are always exclusive
        for child in self._all_nodes.children_of(parent_hostname):
            allocation = child.allocation
            if allocation is not None and not self._owned_by_application(
                allocation.owner
            ):
                return False
        return True

    def _owned_by_application(self, owner: ApplicationId) -> bool:
        """Instances of one application may share exclusive hosts"""
        return (owner.tenant, owner.application) == (
            self._application.tenant,
            self._application.application,
        )

    def _accept_to_retire(self, candidate: Candidate) -> bool:
        """Whether an unwanted node should be kept, retired, rather than dropped"""
        node = candidate.node
        if node.state != NodeState.active:
            return False
        membership = node.allocation.membership if node.allocation else None
        if membership is None or membership.cluster.group != self._cluster.group:
            return False
        if membership.retired:
            return True  # don't second-guess if it was retired earlier
        return self._retire_before_remove or not self._has_compatible_flavor(candidate)

    def _has_compatible_flavor(self, candidate: Candidate) -> bool:
        return self._requested.is_compatible(candidate.node) or candidate.is_resizable

    def _accept(
        self, candidate: Candidate, want_to_retire: bool, resizeable: bool
    ) -> Node:
        node = candidate.node
        node = node.with_requested_resources(
            self._requested.resources or node.resources
        )
        if not want_to_retire:
            self._accepted += 1
            retired = node.is_retired
            if not (self._requested.needs_resize(node) and retired):
                self._accepted_without_resizing_retired += 1
            if resizeable and not retired:
                node = self._resize(candidate.with_node(node))
            if node.state != NodeState.active:
                # reactivated node, wipe the retirement it had while it was away
                node = node.unretire()
        else:
            self.was_retired_just_now += 1
            node = node.retire(Agent.system, self._clock())
            logger.debug("Retiring %s in %s", node.hostname, self._cluster)

        membership = node.allocation.membership if node.allocation else None
        if membership is not None and membership.cluster != self._cluster:
            node = node.with_membership(membership.with_cluster(self._cluster))
        index = node.allocation.membership.index if node.allocation else 0
        self._indexes.add(index)
        self.highest_index = max(self.highest_index, index)
        self._nodes[node.hostname] = candidate.with_node(node)
        return node

    def _resize(self, candidate: Candidate) -> Node:
        node = candidate.node
        parent = candidate.parent
        if parent is None:
            return node
        target = (
            self._requested.resize_target(node)
            .with_disk_speed(parent.resources.disk_speed)
            .with_storage_type(parent.resources.storage_type)
        )
        logger.debug("Resizing %s from %s to %s", node.hostname, node.resources, target)
        return node.with_resources(target)

    def fulfilled(self) -> bool:
        return self._requested.fulfilled_by(self._accepted)

    def saturated(self) -> bool:
        return self._requested.saturated_by(self._accepted_without_resizing_retired)

    def final_nodes(self) -> List[Node]:
        """The accepted nodes, with retirement adjusted to match the request

        Surplus nodes are retired, highest index first. If fewer nodes are
        accepted than wanted, retired nodes are brought back, preferring those
        not wanting to retire and then the lowest index.
        """
        candidates = list(self._nodes.values())
        current_retired = sum(1 for c in candidates if c.node.is_retired)
        delta = (
            self._requested.ideal_retired_count(len(candidates), current_retired)
            - current_retired
        )
        if delta > 0:  # retire
            for candidate in sorted(candidates, key=_index, reverse=True):
                node = candidate.node
                if not node.is_retired and node.state == NodeState.active:
                    node = node.retire(Agent.application, self._clock())
                    self._nodes[node.hostname] = candidate.with_node(node)
                    delta -= 1
                    if delta == 0:
                        break
        elif delta < 0:  # unretire
            for candidate in sorted(
                candidates,
                key=lambda c: (c.node.status.want_to_retire, _index(c)),
            ):
                if candidate.node.is_retired and self._has_compatible_flavor(candidate):
                    node = candidate.node
                    if candidate.is_resizable:
                        node = self._resize(candidate)
                    node = node.unretire()
                    self._nodes[node.hostname] = candidate.with_node(node)
                    delta += 1
                    if delta == 0:
                        break

        final = []
        for hostname, candidate in self._nodes.items():
            node = candidate.node
            membership = node.allocation.membership if node.allocation else None
            if membership is not None:
                node = node.with_membership(
                    membership.with_cluster(
                        membership.cluster.with_exclusive(self._requested.exclusive)
                    )
                )
                self._nodes[hostname] = candidate.with_node(node)
            final.append(node)
        return final

    def reservable_nodes(self) -> List[Node]:
        """Accepted nodes which need to be (re)reserved"""
        return [
            c.node
            for c in self._nodes.values()
            if c.node.state in _RESERVABLE_STATES and not c.is_new_node
        ]

    def surplus_nodes(self) -> List[Node]:
        return [c.node for c in self._nodes.values() if c.is_surplus_node]

    def new_nodes(self) -> List[Node]:
        return [c.node for c in self._nodes.values() if c.is_new_node]

    def rejection_reasons(self) -> List[str]:
        reasons = []
        if self.rejected_due_to_exclusivity > 0:
            reasons.append(REJECTED_EXCLUSIVITY)
        if self.rejected_due_to_clashing_parent_host > 0:
            reasons.append(REJECTED_PARENT_HOST)
        if self.was_retired_just_now > 0:
            reasons.append(RETIRED_JUST_NOW)
        if self.rejected_due_to_insufficient_real_resources > 0:
            reasons.append(REJECTED_REAL_RESOURCES)
        return reasons

    def out_of_capacity_details(self) -> str:
        reasons = self.rejection_reasons() or [NOT_ENOUGH_NODES]
        return ": Not enough nodes available due to " + ", ".join(reasons)


def _index(candidate: Candidate) -> int:
    allocation = candidate.node.allocation
    return allocation.membership.index if allocation else 0
