import logging
from typing import Dict
from typing import List
from typing import Sequence

from node_repository.errors import ActivationConflictError
from node_repository.interface import Agent
from node_repository.interface import ApplicationId
from node_repository.interface import HostSpec
from node_repository.interface import Node
from node_repository.interface import NodeState
from node_repository.repository import NodeRepository

logger = logging.getLogger(__name__)


class Activator:
    """Makes a prepared set of hosts the active nodes of an application"""

    def __init__(self, node_repository: NodeRepository):
        self._node_repository = node_repository

    def activate(self, application: ApplicationId, hosts: Sequence[HostSpec]) -> None:
        """Activate exactly the given hosts for the application

        Reserved nodes in the list become active, active nodes not in the
        list become inactive, and every activated node gets the membership and
        resources of its host spec. Nothing is changed if any host is missing.
        """
        with self._node_repository.lock(application):
            hostnames = {host.hostname for host in hosts}
            application_nodes = self._node_repository.list().owner(application)

            reserved_to_activate = [
                node
                for node in application_nodes.state(NodeState.reserved)
                if node.hostname in hostnames
            ]
            old_active = application_nodes.state(NodeState.active)
            continued_active = [node for node in old_active if node.hostname in hostnames]
            active_to_remove = [
                node for node in old_active if node.hostname not in hostnames
            ]

            found = {node.hostname for node in reserved_to_activate + continued_active}
            missing = sorted(hostnames - found)
            if missing:
                raise ActivationConflictError(
                    f"Activation of {application} failed. Could not find all "
                    f"requested hosts. Requested: {sorted(hostnames)}, "
                    f"reserved: {sorted(node.hostname for node in reserved_to_activate)}, "
                    f"active: {sorted(node.hostname for node in continued_active)}. "
                    "This might happen if the time from reserving host to "
                    "activation takes longer time than reservation expiry "
                    "(the hosts will then no longer be reserved)"
                )

            self._node_repository.deactivate(active_to_remove, Agent.application)
            self._node_repository.activate(
                self._update_from(hosts, continued_active + reserved_to_activate),
                Agent.application,
            )
            logger.info(
                "Activated %d nodes for %s, deactivated %d",
                len(hosts),
                application,
                len(active_to_remove),
            )

    def _update_from(self, hosts: Sequence[HostSpec], nodes: List[Node]) -> List[Node]:
        by_hostname: Dict[str, HostSpec] = {host.hostname: host for host in hosts}
        now = self._node_repository.clock()
        updated = []
        for node in nodes:
            host = by_hostname[node.hostname]
            if host.membership.retired and not node.is_retired:
                node = node.retire(Agent.application, now)
            node = node.with_membership(host.membership)
            if host.requested_resources is not None:
                node = node.with_requested_resources(host.requested_resources)
            if not node.resources.compatible_with(host.resources):
                node = node.with_resources(host.resources)
            updated.append(node)
        return updated
