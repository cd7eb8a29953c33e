import threading
from contextlib import contextmanager
from typing import Iterable
from typing import Iterator
from typing import List
from typing import Optional
from typing import Sequence
from typing import Set
from typing import Union

from node_repository.clock import ManualClock
from node_repository.config import NodeRepositoryConfig
from node_repository.config import ProvisioningConfig
from node_repository.errors import OrchestrationError
from node_repository.interface import Agent
from node_repository.interface import ApplicationId
from node_repository.interface import Capacity
from node_repository.interface import ClusterSpec
from node_repository.interface import ClusterType
from node_repository.interface import Environment
from node_repository.interface import Flavor
from node_repository.interface import HostSpec
from node_repository.interface import IpConfig
from node_repository.interface import Node
from node_repository.interface import NodeResources
from node_repository.interface import NodeState
from node_repository.interface import NodeType
from node_repository.interface import Zone
from node_repository.maintenance.deployment import ApplicationDeployer
from node_repository.maintenance.orchestrator import Orchestrator
from node_repository.node_list import NodeList
from node_repository.provisioning.provisioner import NodeRepositoryProvisioner
from node_repository.repository import NodeRepository

# Same as the bundled "small" and "medium" flavors
SMALL = NodeResources(vcpu=1, memory_gb=4, disk_gb=10, bandwidth_gbps=1)
MEDIUM = NodeResources(vcpu=2, memory_gb=16, disk_gb=100, bandwidth_gbps=1)


def container_cluster(cluster_id: str = "container0", **kwargs) -> ClusterSpec:
    return ClusterSpec(
        type=ClusterType.container, id=cluster_id, vespa_version="7.1.0", **kwargs
    )


def content_cluster(cluster_id: str = "content0", **kwargs) -> ClusterSpec:
    return ClusterSpec(
        type=ClusterType.content, id=cluster_id, vespa_version="7.1.0", **kwargs
    )


def capacity(
    nodes: int,
    groups: int = 1,
    resources: Optional[NodeResources] = SMALL,
    can_fail: bool = True,
) -> Capacity:
    return Capacity.from_count(nodes, groups, resources, can_fail=can_fail)


def indices(hosts: Iterable[Union[HostSpec, Node]]) -> List[int]:
    result = []
    for host in hosts:
        membership = host.membership
        assert membership is not None
        result.append(membership.index)
    return sorted(result)


def retired_indices(hosts: Iterable[Union[HostSpec, Node]]) -> List[int]:
    return indices(
        host for host in hosts if host.membership is not None and host.membership.retired
    )


@contextmanager
def held_lock(repository: NodeRepository, application: ApplicationId) -> Iterator[None]:
    """Holds the lock of an application in another thread"""
    acquired = threading.Event()
    release = threading.Event()

    def hold():
        with repository.lock(application):
            acquired.set()
            release.wait(10)

    holder = threading.Thread(target=hold)
    holder.start()
    try:
        assert acquired.wait(10)
        yield
    finally:
        release.set()
        holder.join(10)


class MockOrchestrator(Orchestrator):
    """Refuses removal of the hostnames in `denied`"""

    def __init__(self, denied: Optional[Set[str]] = None):
        self.denied: Set[str] = denied or set()
        self.requests: List[str] = []

    def acquire_permission_to_remove(self, hostname: str) -> None:
        self.requests.append(hostname)
        if hostname in self.denied:
            raise OrchestrationError(f"Removing {hostname} would reduce redundancy")


class ProvisioningTester:
    """A node repository with a manual clock, and helpers to fill it"""

    def __init__(
        self,
        environment: Environment = Environment.prod,
        config: Optional[ProvisioningConfig] = None,
        flavor_paths: Sequence[str] = (),
    ):
        self.clock = ManualClock()
        self.config = config or ProvisioningConfig(zone=Zone(environment=environment))
        self.flavors = NodeRepositoryConfig(
            provisioning=self.config, flavor_paths=tuple(flavor_paths)
        ).load_flavors()
        self.node_repository = NodeRepository.from_config(self.config, clock=self.clock)
        self.provisioner = NodeRepositoryProvisioner(
            self.node_repository, self.config, self.flavors
        )
        self.deployer = ApplicationDeployer(self.provisioner, self.node_repository)
        self._applications = 0
        self._nodes = 0
        self._hosts = 0

    def make_application_id(self, instance: str = "default") -> ApplicationId:
        self._applications += 1
        return ApplicationId(
            tenant="tenant1",
            application=f"application{self._applications}",
            instance=instance,
        )

    def _flavor(self, flavor: Union[str, NodeResources]) -> Flavor:
        if isinstance(flavor, str):
            return self.flavors.get_flavor_or_throw(flavor)
        return Flavor.from_resources(flavor)

    def make_ready(self, nodes: Sequence[Node]) -> List[Node]:
        added = self.node_repository.add_nodes(nodes)
        dirty = self.node_repository.set_dirty(added, Agent.system)
        return self.node_repository.set_ready(dirty, Agent.system)

    def make_ready_nodes(
        self, count: int, flavor: Union[str, NodeResources] = "small"
    ) -> List[Node]:
        nodes = []
        for _ in range(count):
            self._nodes += 1
            nodes.append(Node.create(f"node-{self._nodes:03d}", self._flavor(flavor)))
        return self.make_ready(nodes)

    def make_hosts(
        self, count: int, flavor: Union[str, NodeResources] = "host", pool_size: int = 0
    ) -> List[Node]:
        """Active hosts, each with `pool_size` hostnames free for new children"""
        hosts = []
        for _ in range(count):
            self._hosts += 1
            hostname = f"host-{self._hosts:03d}"
            pool = tuple(f"{hostname}-new-{i}" for i in range(pool_size))
            hosts.append(
                Node.create(
                    hostname,
                    self._flavor(flavor),
                    NodeType.host,
                    ip_config=IpConfig(pool=pool),
                )
            )
        added = self.node_repository.add_nodes(hosts)
        return self.node_repository.write(
            [host.with_state(NodeState.active) for host in added]
        )

    def make_ready_children(
        self,
        hosts: Sequence[Node],
        per_host: int = 1,
        flavor: Union[str, NodeResources] = "small",
    ) -> List[Node]:
        children = []
        for host in hosts:
            for i in range(per_host):
                children.append(
                    Node.create(
                        f"{host.hostname}-vm-{i}",
                        self._flavor(flavor),
                        parent_hostname=host.hostname,
                    )
                )
        return self.make_ready(children)

    def prepare(
        self, application: ApplicationId, cluster: ClusterSpec, requested: Capacity
    ) -> List[HostSpec]:
        return self.provisioner.prepare(application, cluster, requested)

    def activate(self, application: ApplicationId, hosts: Sequence[HostSpec]) -> None:
        self.provisioner.activate(application, hosts)

    def prepare_and_activate(
        self, application: ApplicationId, cluster: ClusterSpec, requested: Capacity
    ) -> List[HostSpec]:
        hosts = self.prepare(application, cluster, requested)
        self.activate(application, hosts)
        return hosts

    def nodes(self, application: ApplicationId, *states: NodeState) -> NodeList:
        return NodeList(self.node_repository.get_nodes(application, *states))

    def node(self, hostname: str) -> Node:
        node = self.node_repository.get_node(hostname)
        assert node is not None, f"No node {hostname}"
        return node
