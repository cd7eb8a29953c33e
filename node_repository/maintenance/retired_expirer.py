import logging
from datetime import timedelta
from typing import List
from typing import Optional

from node_repository.errors import LockTimeoutError
from node_repository.errors import OrchestrationError
from node_repository.interface import ApplicationId
from node_repository.interface import EventType
from node_repository.interface import Node
from node_repository.maintenance.deployment import Deployer
from node_repository.maintenance.deployment import MaintenanceDeployment
from node_repository.maintenance.maintainer import JobControl
from node_repository.maintenance.maintainer import NodeRepositoryMaintainer
from node_repository.maintenance.orchestrator import Orchestrator
from node_repository.repository import NodeRepository

logger = logging.getLogger(__name__)


class RetiredExpirer(NodeRepositoryMaintainer):
    """Removes retired nodes from their applications once it is safe

    A retired node may go when it has been retired for longer than the
    retirement window, or earlier if the orchestrator allows it. Nodes which
    may go are marked removable and the application is redeployed, which
    deactivates them.
    """

    def __init__(
        self,
        node_repository: NodeRepository,
        orchestrator: Orchestrator,
        deployer: Deployer,
        retired_expiry: timedelta,
        interval: timedelta,
        job_control: JobControl,
        initial_delay: Optional[timedelta] = None,
    ):
        super().__init__(node_repository, interval, job_control, initial_delay=initial_delay)
        self._orchestrator = orchestrator
        self._deployer = deployer
        self._retired_expiry = retired_expiry

    def maintain(self) -> bool:
        success = True
        nodes_by_application = self.active_nodes_by_application()
        for application in sorted(nodes_by_application, key=str):
            retired = [node for node in nodes_by_application[application] if node.is_retired]
            if not retired:
                continue
            try:
                self._maintain(application, retired)
            except Exception:  # pylint: disable=broad-except
                logger.warning(
                    "Exception while removing retired nodes of %s",
                    application,
                    exc_info=True,
                )
                success = False
        return success

    def _maintain(self, application: ApplicationId, retired: List[Node]) -> None:
        with MaintenanceDeployment(
            application, self._deployer, self.node_repository
        ) as deployment:
            if not deployment.is_valid():
                return
            to_remove = [node for node in retired if self.can_remove(node)]
            if not to_remove:
                return
            self.node_repository.set_removable(application, to_remove)
            deployment.activate()
            logger.info(
                "Redeployed %s to deactivate retired nodes: %s",
                application,
                ", ".join(node.hostname for node in to_remove),
            )

    def can_remove(self, node: Node) -> bool:
        """Whether a retired node may be removed from its application now"""
        expiry = self.node_repository.clock() - self._retired_expiry
        if node.history.has_event_before(EventType.retired, expiry):
            logger.info(
                "Node %s has been retired longer than %s: Allowing removal. "
                "This may cause data loss",
                node.hostname,
                self._retired_expiry,
            )
            return True

        try:
            self._orchestrator.acquire_permission_to_remove(node.hostname)
            logger.info("Node %s has been granted permission to be removed", node.hostname)
            return True
        except LockTimeoutError as e:
            logger.warning(
                "Timed out trying to acquire permission to remove %s: %s",
                node.hostname,
                e,
            )
            return False
        except OrchestrationError as e:
            logger.info("Did not get permission to remove retired %s: %s", node, e)
            return False
