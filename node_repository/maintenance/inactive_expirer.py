from datetime import timedelta
from typing import List
from typing import Optional

from node_repository.interface import Agent
from node_repository.interface import EventType
from node_repository.interface import Node
from node_repository.interface import NodeState
from node_repository.maintenance.expirer import Expirer
from node_repository.maintenance.maintainer import JobControl
from node_repository.repository import NodeRepository


class InactiveExpirer(Expirer):
    """Deallocates nodes which have been inactive for a while

    Inactive nodes keep their allocation for some time so that a redeploy of
    the application can take them back without losing data.
    """

    def __init__(
        self,
        node_repository: NodeRepository,
        inactive_expiry: timedelta,
        interval: timedelta,
        job_control: JobControl,
        initial_delay: Optional[timedelta] = None,
    ):
        super().__init__(
            NodeState.inactive,
            EventType.deactivated,
            node_repository,
            inactive_expiry,
            interval,
            job_control,
            initial_delay,
        )

    def expire(self, nodes: List[Node]) -> None:
        self.node_repository.deallocate(
            nodes, Agent.inactive_expirer, "Expired by InactiveExpirer"
        )
