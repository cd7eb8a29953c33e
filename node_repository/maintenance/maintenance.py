import logging
from datetime import timedelta
from typing import List
from typing import Optional

from node_repository.config import MaintenanceConfig
from node_repository.maintenance.deployment import Deployer
from node_repository.maintenance.inactive_expirer import InactiveExpirer
from node_repository.maintenance.maintainer import JobControl
from node_repository.maintenance.maintainer import Maintainer
from node_repository.maintenance.maintainer import staggered_delay
from node_repository.maintenance.node_rebooter import NodeRebooter
from node_repository.maintenance.orchestrator import Orchestrator
from node_repository.maintenance.reservation_expirer import ReservationExpirer
from node_repository.maintenance.retired_expirer import RetiredExpirer
from node_repository.repository import NodeRepository

logger = logging.getLogger(__name__)


class NodeRepositoryMaintenance:
    """All the maintainers of a node repository, started and stopped together"""

    def __init__(
        self,
        node_repository: NodeRepository,
        deployer: Deployer,
        orchestrator: Orchestrator,
        config: MaintenanceConfig = MaintenanceConfig(),
        job_control: Optional[JobControl] = None,
    ):
        self.job_control = job_control or JobControl()
        now = node_repository.clock()

        def delay(interval: timedelta) -> timedelta:
            return staggered_delay(
                interval, now, config.hostname, config.cluster_hostnames
            )

        self.reservation_expirer = ReservationExpirer(
            node_repository,
            config.reservation_expiry,
            config.reservation_expirer_interval,
            self.job_control,
            delay(config.reservation_expirer_interval),
        )
        self.retired_expirer = RetiredExpirer(
            node_repository,
            orchestrator,
            deployer,
            config.retired_expiry,
            config.retired_expirer_interval,
            self.job_control,
            delay(config.retired_expirer_interval),
        )
        self.inactive_expirer = InactiveExpirer(
            node_repository,
            config.inactive_expiry,
            config.inactive_expirer_interval,
            self.job_control,
            delay(config.inactive_expirer_interval),
        )
        self.node_rebooter = NodeRebooter(
            node_repository,
            config.reboot_interval,
            config.rebooter_interval,
            self.job_control,
            initial_delay=delay(config.rebooter_interval),
        )

    @property
    def maintainers(self) -> List[Maintainer]:
        return [
            self.reservation_expirer,
            self.retired_expirer,
            self.inactive_expirer,
            self.node_rebooter,
        ]

    def start(self) -> None:
        for maintainer in self.maintainers:
            maintainer.start()

    def close(self) -> None:
        for maintainer in self.maintainers:
            maintainer.close()
        logger.info("Stopped node repository maintenance")

    def __enter__(self) -> "NodeRepositoryMaintenance":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
