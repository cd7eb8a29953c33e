import logging
import random
from datetime import timedelta
from typing import Optional

from node_repository.interface import EventType
from node_repository.interface import Node
from node_repository.interface import NodeState
from node_repository.maintenance.maintainer import JobControl
from node_repository.maintenance.maintainer import NodeRepositoryMaintainer
from node_repository.node_filter import NodeFilter
from node_repository.repository import NodeRepository

logger = logging.getLogger(__name__)

REBOOT_EVENTS = (EventType.provisioned, EventType.rebooted, EventType.os_upgraded)


class NodeRebooter(NodeRepositoryMaintainer):
    """Schedules reboots of physical nodes which have not been rebooted in a while

    Overdue nodes are picked at random, with a probability growing with how
    overdue they are, so reboots are spread out rather than all at once.
    """

    def __init__(
        self,
        node_repository: NodeRepository,
        reboot_interval: timedelta,
        interval: timedelta,
        job_control: JobControl,
        rng: Optional[random.Random] = None,
        initial_delay: Optional[timedelta] = None,
    ):
        super().__init__(node_repository, interval, job_control, initial_delay=initial_delay)
        self._reboot_interval = reboot_interval
        self._random = rng or random.Random()

    def maintain(self) -> bool:
        to_reboot = [
            node
            for node in self.node_repository.list(NodeState.active, NodeState.ready)
            if node.parent_hostname is None and self._should_reboot(node)
        ]
        if to_reboot:
            logger.info(
                "Scheduling reboot of %s", ", ".join(node.hostname for node in to_reboot)
            )
            self.node_repository.reboot(NodeFilter.from_nodes(to_reboot))
        return True

    def _should_reboot(self, node: Node) -> bool:
        if node.status.reboot.pending:
            return False
        events = [node.history.event(event_type) for event_type in REBOOT_EVENTS]
        last = max((event.at for event in events if event is not None), default=None)
        if last is None:
            return False
        overdue = self.node_repository.clock() - last - self._reboot_interval
        if overdue < timedelta(0):
            return False
        probability = (overdue + self.interval) / self._reboot_interval
        return self._random.random() < probability
