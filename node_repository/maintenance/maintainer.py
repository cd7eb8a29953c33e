import logging
import threading
from abc import ABC
from abc import abstractmethod
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime
from datetime import timedelta
from typing import Dict
from typing import Iterator
from typing import List
from typing import Optional
from typing import Sequence
from typing import Set

from node_repository.errors import LockTimeoutError
from node_repository.interface import ApplicationId
from node_repository.interface import Node
from node_repository.interface import NodeState
from node_repository.repository import NodeRepository

logger = logging.getLogger(__name__)


def staggered_delay(
    interval: timedelta,
    now: datetime,
    hostname: str,
    cluster_hostnames: Sequence[str],
) -> timedelta:
    """Delay before the first run, spreading runs evenly over the servers

    Each server of the cluster gets its own slot within the interval, so the
    same job does not run on all of them at once.
    """
    if hostname not in cluster_hostnames:
        return interval
    interval_ms = int(interval.total_seconds() * 1000)
    if interval_ms == 0:
        return interval
    offset_ms = cluster_hostnames.index(hostname) * interval_ms // len(cluster_hostnames)
    now_ms = int(now.timestamp() * 1000)
    return timedelta(milliseconds=(offset_ms - now_ms) % interval_ms)


class JobControl:
    """Keeps track of maintenance jobs, which may be deactivated by name

    Runs of the same job are serialized through a lock per job.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._started: Dict[str, "Maintainer"] = {}
        self._inactive: Set[str] = set()
        self._job_locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)

    def started(self, name: str, maintainer: "Maintainer") -> None:
        with self._lock:
            self._started[name] = maintainer

    def stopped(self, name: str) -> None:
        with self._lock:
            self._started.pop(name, None)

    def jobs(self) -> List[str]:
        with self._lock:
            return sorted(self._started)

    def is_active(self, name: str) -> bool:
        with self._lock:
            return name not in self._inactive

    def set_active(self, name: str, active: bool) -> None:
        with self._lock:
            if active:
                self._inactive.discard(name)
            else:
                self._inactive.add(name)

    def run(self, name: str) -> bool:
        """Run a job once, right now"""
        with self._lock:
            maintainer = self._started.get(name)
        if maintainer is None:
            raise KeyError(f"No job named '{name}'")
        return maintainer.run()

    @contextmanager
    def lock(self, name: str) -> Iterator[None]:
        with self._lock:
            job_lock = self._job_locks[name]
        if not job_lock.acquire(blocking=False):
            raise LockTimeoutError(f"Job {name} is already running")
        try:
            yield
        finally:
            job_lock.release()


class Maintainer(ABC):
    """A job which runs `maintain` at a fixed interval in its own thread

    A failing run is logged and the job is tried again at the next interval.
    """

    def __init__(
        self,
        interval: timedelta,
        job_control: JobControl,
        name: Optional[str] = None,
        initial_delay: Optional[timedelta] = None,
    ):
        self.name = name or type(self).__name__
        self.interval = interval
        self._initial_delay = interval if initial_delay is None else initial_delay
        self._job_control = job_control
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        job_control.started(self.name, self)

    @abstractmethod
    def maintain(self) -> bool:
        """Do one round of maintenance, returning whether it fully succeeded"""

    def run(self) -> bool:
        if not self._job_control.is_active(self.name):
            return False
        try:
            with self._job_control.lock(self.name):
                return self.maintain()
        except LockTimeoutError as e:
            # Another run of this job holds the lock
            logger.debug("%s skipped: %s", self.name, e)
        except Exception:  # pylint: disable=broad-except
            logger.warning(
                "%s failed. Will retry in %.1f minutes",
                self.name,
                self.interval.total_seconds() / 60,
                exc_info=True,
            )
        return False

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._loop, name=f"maintainer-{self.name}", daemon=True
        )
        self._thread.start()
        logger.info(
            "Started %s, running every %s after %s",
            self.name,
            self.interval,
            self._initial_delay,
        )

    def _loop(self) -> None:
        if self._stop.wait(self._initial_delay.total_seconds()):
            return
        while True:
            self.run()
            if self._stop.wait(self.interval.total_seconds()):
                return

    def close(self, timeout: timedelta = timedelta(seconds=30)) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout.total_seconds())
            if self._thread.is_alive():
                logger.warning(
                    "%s did not stop within %s", self.name, timeout
                )
        self._job_control.stopped(self.name)

    def __str__(self):
        return self.name


class NodeRepositoryMaintainer(Maintainer):
    """A maintainer working on the nodes of the node repository"""

    def __init__(
        self,
        node_repository: NodeRepository,
        interval: timedelta,
        job_control: JobControl,
        name: Optional[str] = None,
        initial_delay: Optional[timedelta] = None,
    ):
        super().__init__(interval, job_control, name, initial_delay)
        self.node_repository = node_repository

    def active_nodes_by_application(self) -> Dict[ApplicationId, List[Node]]:
        """Active nodes grouped by owner, tester instances left out"""
        by_application: Dict[ApplicationId, List[Node]] = defaultdict(list)
        for node in self.node_repository.list(NodeState.active):
            if node.allocation is None or node.allocation.owner.is_tester:
                continue
            by_application[node.allocation.owner].append(node)
        return dict(by_application)
