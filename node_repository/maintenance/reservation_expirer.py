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


class ReservationExpirer(Expirer):
    """Releases nodes which stayed reserved longer than the reservation expiry

    A reservation is made by the prepare step of a deployment and is expected
    to be followed by activation. If activation never happens the nodes are
    moved to dirty, deallocated, so they can be used by others again.
    """

    def __init__(
        self,
        node_repository: NodeRepository,
        reservation_expiry: timedelta,
        interval: timedelta,
        job_control: JobControl,
        initial_delay: Optional[timedelta] = None,
    ):
        super().__init__(
            NodeState.reserved,
            EventType.reserved,
            node_repository,
            reservation_expiry,
            interval,
            job_control,
            initial_delay,
        )

    def expire(self, nodes: List[Node]) -> None:
        self.node_repository.set_dirty(
            nodes, Agent.reservation_expirer, "Expired by ReservationExpirer"
        )
