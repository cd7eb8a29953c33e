from datetime import datetime
from datetime import timedelta
from datetime import timezone
from typing import Callable
from typing import Optional

# Anything returning the current (timezone aware) instant
Clock = Callable[[], datetime]


def system_clock() -> datetime:
    return datetime.now(timezone.utc)


class ManualClock:
    """A clock which only moves when told to, for tests and simulations"""

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2020, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self._now

    def advance(self, delta: timedelta) -> datetime:
        self._now = self._now + delta
        return self._now

    def set(self, instant: datetime) -> None:
        self._now = instant
