from abc import ABC
from abc import abstractmethod


class Orchestrator(ABC):
    """Decides whether taking a node out of service is safe right now"""

    @abstractmethod
    def acquire_permission_to_remove(self, hostname: str) -> None:
        """Raise OrchestrationError if the node may not be removed now

        LockTimeoutError is raised when the decision could not be made in time.
        """


class AllowAllOrchestrator(Orchestrator):
    def acquire_permission_to_remove(self, hostname: str) -> None:
        pass
