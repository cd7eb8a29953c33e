from datetime import datetime
from datetime import timedelta
from typing import List
from typing import Tuple

from node_repository.clock import Clock
from node_repository.errors import ProvisionTimeoutError


class TimeoutBudget:
    """A deadline for a multi step operation, checked between the steps"""

    def __init__(self, clock: Clock, timeout: timedelta):
        self._clock = clock
        self._start = clock()
        self._timeout = timeout
        self._checkpoints: List[Tuple[str, datetime]] = []

    @property
    def time_left(self) -> timedelta:
        return max(timedelta(0), self._start + self._timeout - self._clock())

    def assert_not_expired(self, step: str) -> None:
        now = self._clock()
        self._checkpoints.append((step, now))
        if now >= self._start + self._timeout:
            raise ProvisionTimeoutError(
                f"Timed out after {self._timeout.total_seconds():g} seconds "
                f"at {step}: {self.time_log()}"
            )

    def time_log(self) -> str:
        return ", ".join(
            f"{step}: {(at - self._start).total_seconds():g}s"
            for step, at in self._checkpoints
        )
