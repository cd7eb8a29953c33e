from typing import Sequence


class NodeRepositoryError(Exception):
    """Base class for errors raised by the node repository"""


class OutOfCapacityError(NodeRepositoryError):
    """Raised when a request which may fail cannot be fully satisfied

    `reasons` holds the human readable rejection causes which were observed
    while offering candidate nodes, in the order they are reported.
    """

    def __init__(self, message: str, reasons: Sequence[str] = ()):
        super().__init__(message)
        self.reasons = tuple(reasons)


class InvalidSpecificationError(NodeRepositoryError, ValueError):
    """The requested capacity is malformed or violates a policy"""


class ActivationConflictError(NodeRepositoryError):
    """Activation does not match the current state of the repository"""


class ProvisionTimeoutError(NodeRepositoryError, TimeoutError):
    """A deployment did not complete within its time budget"""


class LockTimeoutError(NodeRepositoryError, TimeoutError):
    pass


class OrchestrationError(NodeRepositoryError):
    """The orchestrator refused an operation on a node"""


class ConcurrentModificationError(NodeRepositoryError):
    """A node changed between being read and being written"""


class InvalidStateTransitionError(NodeRepositoryError, ValueError):
    pass


class NodeNotFoundError(NodeRepositoryError, KeyError):
    def __str__(self):
        # KeyError quotes its argument
        return str(self.args[0]) if self.args else ""
