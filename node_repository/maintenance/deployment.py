import logging
import threading
from abc import ABC
from abc import abstractmethod
from contextlib import ExitStack
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict
from typing import List
from typing import Optional
from typing import Sequence
from typing import Tuple

from node_repository.errors import ActivationConflictError
from node_repository.errors import LockTimeoutError
from node_repository.interface import ApplicationId
from node_repository.interface import Capacity
from node_repository.interface import ClusterSpec
from node_repository.interface import HostSpec
from node_repository.provisioning.provisioner import NodeRepositoryProvisioner
from node_repository.provisioning.timeout_budget import TimeoutBudget
from node_repository.repository import NodeRepository

logger = logging.getLogger(__name__)


class Deployment(ABC):
    @abstractmethod
    def prepare(self) -> List[HostSpec]:
        pass

    @abstractmethod
    def activate(self) -> int:
        """Activate, preparing first if needed, returning the new generation"""


class Deployer(ABC):
    @abstractmethod
    def deploy_from_local_active(
        self, application: ApplicationId, timeout: Optional[timedelta] = None
    ) -> Optional[Deployment]:
        """A redeployment of the active application, None if it is not deployed"""


@dataclass(frozen=True)
class ApplicationSpec:
    """The clusters an application was last deployed with"""

    application: ApplicationId
    clusters: Tuple[Tuple[ClusterSpec, Capacity], ...]


class ApplicationDeployer(Deployer):
    """Deploys applications by provisioning each of their clusters

    Every activation bumps the generation of the application. A deployment
    created from an older generation than the active one can not be
    activated, so a slow deployment never overwrites a newer one.
    """

    def __init__(
        self,
        provisioner: NodeRepositoryProvisioner,
        node_repository: NodeRepository,
        timeout: timedelta = timedelta(minutes=5),
    ):
        self.provisioner = provisioner
        self.node_repository = node_repository
        self._timeout = timeout
        self._lock = threading.Lock()
        self._applications: Dict[ApplicationId, ApplicationSpec] = {}
        self._generations: Dict[ApplicationId, int] = {}
        self.activations = 0

    def deploy(
        self,
        application: ApplicationId,
        clusters: Sequence[Tuple[ClusterSpec, Capacity]],
        timeout: Optional[timedelta] = None,
    ) -> List[HostSpec]:
        """Deploy new cluster specs and remember them for redeployments"""
        spec = ApplicationSpec(application=application, clusters=tuple(clusters))
        deployment = ApplicationDeployment(
            self, spec, self.active_generation(application), timeout or self._timeout
        )
        deployment.activate()
        with self._lock:
            self._applications[application] = spec
        return deployment.hosts

    def deploy_from_local_active(
        self, application: ApplicationId, timeout: Optional[timedelta] = None
    ) -> Optional[Deployment]:
        with self._lock:
            spec = self._applications.get(application)
        if spec is None:
            return None
        return ApplicationDeployment(
            self, spec, self.active_generation(application), timeout or self._timeout
        )

    def active_generation(self, application: ApplicationId) -> int:
        with self._lock:
            return self._generations.get(application, 0)

    def commit(
        self,
        application: ApplicationId,
        base_generation: int,
        hosts: Sequence[HostSpec],
    ) -> int:
        with self._lock:
            active = self._generations.get(application, 0)
            if active != base_generation:
                raise ActivationConflictError(
                    f"Cannot activate generation {base_generation + 1} of "
                    f"{application}: The active generation changed from "
                    f"{base_generation} to {active} since it was prepared"
                )
            self.provisioner.activate(application, hosts)
            self._generations[application] = active + 1
            self.activations += 1
            return active + 1

    def remove(self, application: ApplicationId) -> None:
        with self.node_repository.lock(application):
            self.provisioner.remove(application)
            with self._lock:
                self._applications.pop(application, None)


class ApplicationDeployment(Deployment):
    def __init__(
        self,
        deployer: ApplicationDeployer,
        spec: ApplicationSpec,
        base_generation: int,
        timeout: timedelta,
    ):
        self._deployer = deployer
        self._spec = spec
        self._base_generation = base_generation
        self._timeout = timeout
        self.hosts: List[HostSpec] = []
        self._prepared = False

    @property
    def application(self) -> ApplicationId:
        return self._spec.application

    def prepare(self) -> List[HostSpec]:
        node_repository = self._deployer.node_repository
        budget = TimeoutBudget(node_repository.clock, self._timeout)
        with node_repository.lock(self.application):
            hosts: List[HostSpec] = []
            for cluster, capacity in self._spec.clusters:
                hosts.extend(
                    self._deployer.provisioner.prepare(
                        self.application, cluster, capacity, budget
                    )
                )
            budget.assert_not_expired("post-commit")
        self.hosts = hosts
        self._prepared = True
        return hosts

    def activate(self) -> int:
        with self._deployer.node_repository.lock(self.application):
            if not self._prepared:
                self.prepare()
            generation = self._deployer.commit(
                self.application, self._base_generation, self.hosts
            )
        logger.info(
            "Activated generation %d of %s with %d hosts",
            generation,
            self.application,
            len(self.hosts),
        )
        return generation


class MaintenanceDeployment:
    """A redeployment made by a maintainer, holding the application lock

    Use as a context manager. The deployment is valid if the lock was
    obtained and the application is deployed.
    """

    def __init__(
        self,
        application: ApplicationId,
        deployer: Deployer,
        node_repository: NodeRepository,
        lock_timeout: timedelta = timedelta(seconds=10),
    ):
        self.application = application
        self._deployer = deployer
        self._node_repository = node_repository
        self._lock_timeout = lock_timeout
        self._stack = ExitStack()
        self._deployment: Optional[Deployment] = None

    def __enter__(self) -> "MaintenanceDeployment":
        try:
            self._stack.enter_context(
                self._node_repository.lock(self.application, self._lock_timeout)
            )
        except LockTimeoutError as e:
            logger.info(
                "Could not lock %s for maintenance deployment, will retry later: %s",
                self.application,
                e,
            )
            return self
        try:
            self._deployment = self._deployer.deploy_from_local_active(self.application)
        except Exception:
            self._stack.close()
            raise
        return self

    def __exit__(self, *exc_info) -> None:
        self._stack.close()

    def is_valid(self) -> bool:
        return self._deployment is not None

    def activate(self) -> Optional[int]:
        if self._deployment is None:
            return None
        return self._deployment.activate()
