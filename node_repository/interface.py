# pylint: disable=too-many-lines
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict
from typing import Optional
from typing import Tuple

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field

# Resource dimensions closer than this are considered equal
RESOURCE_EPSILON = 1e-6


class ValueModel(BaseModel):
    """Immutable value: every change produces a new instance"""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    def _with(self, **update):
        return self.model_copy(update=update)


###############################################################################
#              Models (structs) for how we describe resources                 #
###############################################################################


class DiskSpeed(str, Enum):
    """Speed class of the disk backing a node, `any` matches both"""

    fast = "fast"
    slow = "slow"
    any = "any"

    def compatible_with(self, other: DiskSpeed) -> bool:
        return DiskSpeed.any in (self, other) or self == other

    @property
    def rank(self) -> int:
        # Cheapest to most expensive to hand out, fast disks are preferred
        return _DISK_SPEED_RANK[self]


class StorageType(str, Enum):
    """Whether the disk is local to the host or remote (network attached)"""

    local = "local"
    remote = "remote"
    any = "any"

    def compatible_with(self, other: StorageType) -> bool:
        return StorageType.any in (self, other) or self == other

    @property
    def rank(self) -> int:
        return _STORAGE_TYPE_RANK[self]


_DISK_SPEED_RANK: Dict[DiskSpeed, int] = {
    DiskSpeed.fast: 0,
    DiskSpeed.any: 1,
    DiskSpeed.slow: 2,
}

_STORAGE_TYPE_RANK: Dict[StorageType, int] = {
    StorageType.local: 0,
    StorageType.any: 1,
    StorageType.remote: 2,
}


def _equal(a: float, b: float) -> bool:
    return abs(a - b) < RESOURCE_EPSILON


class NodeResources(ValueModel):
    """The advertised resource envelope of a node

    Numeric dimensions are compared with a small tolerance so values which
    went through arithmetic (host capacity minus children) still match.
    """

    vcpu: float = 0
    memory_gb: float = 0
    disk_gb: float = 0
    bandwidth_gbps: float = 0
    disk_speed: DiskSpeed = DiskSpeed.fast
    storage_type: StorageType = StorageType.any

    def with_disk_speed(self, disk_speed: DiskSpeed) -> NodeResources:
        return self._with(disk_speed=disk_speed)

    def with_storage_type(self, storage_type: StorageType) -> NodeResources:
        return self._with(storage_type=storage_type)

    def just_numbers(self) -> NodeResources:
        return self._with(disk_speed=DiskSpeed.any, storage_type=StorageType.any)

    def add(self, other: NodeResources) -> NodeResources:
        return self._with(
            vcpu=self.vcpu + other.vcpu,
            memory_gb=self.memory_gb + other.memory_gb,
            disk_gb=self.disk_gb + other.disk_gb,
            bandwidth_gbps=self.bandwidth_gbps + other.bandwidth_gbps,
        )

    def subtract(self, other: NodeResources) -> NodeResources:
        return self._with(
            vcpu=self.vcpu - other.vcpu,
            memory_gb=self.memory_gb - other.memory_gb,
            disk_gb=self.disk_gb - other.disk_gb,
            bandwidth_gbps=self.bandwidth_gbps - other.bandwidth_gbps,
        )

    def _compatible_classes(self, other: NodeResources) -> bool:
        return self.disk_speed.compatible_with(
            other.disk_speed
        ) and self.storage_type.compatible_with(other.storage_type)

    def compatible_with(self, other: NodeResources) -> bool:
        """True if these resources are the same as other, modulo `any`"""
        return (
            _equal(self.vcpu, other.vcpu)
            and _equal(self.memory_gb, other.memory_gb)
            and _equal(self.disk_gb, other.disk_gb)
            and _equal(self.bandwidth_gbps, other.bandwidth_gbps)
            and self._compatible_classes(other)
        )

    def satisfies(self, other: NodeResources) -> bool:
        """True if these resources are at least as large as other"""
        return (
            self.vcpu >= other.vcpu - RESOURCE_EPSILON
            and self.memory_gb >= other.memory_gb - RESOURCE_EPSILON
            and self.disk_gb >= other.disk_gb - RESOURCE_EPSILON
            and self.bandwidth_gbps >= other.bandwidth_gbps - RESOURCE_EPSILON
            and self._compatible_classes(other)
        )

    def __str__(self):
        extras = ""
        if self.disk_speed != DiskSpeed.fast:
            extras += f", disk speed: {self.disk_speed.value}"
        if self.storage_type != StorageType.any:
            extras += f", storage type: {self.storage_type.value}"
        return (
            f"[vcpu: {self.vcpu:.1f}, memory: {self.memory_gb:.1f} Gb, "
            f"disk {self.disk_gb:.1f} Gb, bandwidth: {self.bandwidth_gbps:.1f} Gbps"
            f"{extras}]"
        )


class Flavor(ValueModel):
    """A named or explicit resource envelope

    Named flavors come from the flavor profiles, explicit ones are created
    on the fly for virtual nodes (and when virtual nodes are resized).
    """

    name: str
    resources: NodeResources
    # Relative cost used to break ties between otherwise equal nodes
    cost: float = 0

    @staticmethod
    def from_resources(resources: NodeResources) -> Flavor:
        name = (
            f"d-{resources.vcpu:g}-{resources.memory_gb:g}-"
            f"{resources.disk_gb:g}-{resources.bandwidth_gbps:g}"
        )
        return Flavor(name=name, resources=resources)


###############################################################################
#              Models (structs) for how we describe zones                     #
###############################################################################


class Environment(str, Enum):
    prod = "prod"
    staging = "staging"
    perf = "perf"
    test = "test"
    dev = "dev"

    @property
    def is_production(self) -> bool:
        return self == Environment.prod


class SystemName(str, Enum):
    main = "main"
    cd = "cd"
    public = "public"
    dev = "dev"


class Zone(ValueModel):
    system: SystemName = SystemName.main
    environment: Environment = Environment.prod
    region: str = "default"

    def __str__(self):
        return f"{self.environment.value}.{self.region}"


###############################################################################
#              Models (structs) for applications and clusters                 #
###############################################################################


class ApplicationId(ValueModel):
    tenant: str
    application: str
    instance: str = "default"

    @property
    def is_tester(self) -> bool:
        """Internal test/tooling instances are named with a -t suffix"""
        return self.instance.endswith("-t")

    @property
    def serialized_form(self) -> str:
        return f"{self.tenant}:{self.application}:{self.instance}"

    @staticmethod
    def from_serialized_form(value: str) -> ApplicationId:
        parts = value.split(":")
        if len(parts) != 3:
            raise ValueError(
                f"Application ids must be on the form tenant:application:instance, "
                f"got '{value}'"
            )
        return ApplicationId(tenant=parts[0], application=parts[1], instance=parts[2])

    def __str__(self):
        return f"{self.tenant}.{self.application}.{self.instance}"


class ClusterType(str, Enum):
    container = "container"
    content = "content"
    combined = "combined"

    @property
    def is_content(self) -> bool:
        """Content and combined clusters both hold data"""
        return _CONTAINS_DATA[self]

    @property
    def retire_before_remove(self) -> bool:
        """Whether surplus nodes of this type must be retired before removal

        Data must be migrated off content nodes before they go away, so
        these are always retired first.
        """
        return _CONTAINS_DATA[self]


_CONTAINS_DATA: Dict[ClusterType, bool] = {
    ClusterType.container: False,
    ClusterType.content: True,
    ClusterType.combined: True,
}


def _major_version(version: str) -> int:
    return int(version.split(".")[0])


def versions_compatible(allocated: Optional[str], requested: Optional[str]) -> bool:
    """A request may keep nodes unless it moves back to an older major"""
    if allocated is None or requested is None:
        return True
    return _major_version(requested) >= _major_version(allocated)


class ClusterSpec(ValueModel):
    type: ClusterType
    id: str
    group: Optional[int] = None
    exclusive: bool = False
    vespa_version: Optional[str] = None
    combined_id: Optional[str] = None

    def with_group(self, group: Optional[int]) -> ClusterSpec:
        return self._with(group=group)

    def with_exclusive(self, exclusive: bool) -> ClusterSpec:
        return self._with(exclusive=exclusive)

    def satisfies(self, other: ClusterSpec) -> bool:
        """True if nodes allocated to this cluster can be used for other"""
        if other.id != self.id:
            return False
        if not versions_compatible(self.vespa_version, other.vespa_version):
            return False
        if other.type.is_content or self.type.is_content:
            # Allow seamless transition between content and combined
            return other.type.is_content == self.type.is_content
        return other.type == self.type

    def __str__(self):
        version = f" {self.vespa_version}" if self.vespa_version else ""
        return f"{self.type.value} cluster '{self.id}'{version}"


class ClusterMembership(ValueModel):
    cluster: ClusterSpec
    index: int
    retired: bool = False

    def retire(self) -> ClusterMembership:
        return self._with(retired=True)

    def unretire(self) -> ClusterMembership:
        return self._with(retired=False)

    def with_cluster(self, cluster: ClusterSpec) -> ClusterMembership:
        return self._with(cluster=cluster)

    @property
    def string_value(self) -> str:
        group = "" if self.cluster.group is None else str(self.cluster.group)
        value = f"{self.cluster.type.value}/{self.cluster.id}/{group}/{self.index}"
        if self.retired:
            value += "/retired"
        return value


class Generation(ValueModel):
    """A pair of wanted/current counters used for restarts and reboots"""

    wanted: int = 0
    current: int = 0

    @property
    def pending(self) -> bool:
        return self.current < self.wanted

    def with_increased_wanted(self) -> Generation:
        return self._with(wanted=self.wanted + 1)


class Allocation(ValueModel):
    owner: ApplicationId
    membership: ClusterMembership
    # The resources requested when this node was (last) allocated
    requested_resources: NodeResources
    restart_generation: Generation = Generation()
    # Marked by maintainers, causes the node to be dropped on next deployment
    removable: bool = False

    def with_membership(self, membership: ClusterMembership) -> Allocation:
        return self._with(membership=membership)

    def with_requested_resources(self, resources: NodeResources) -> Allocation:
        return self._with(requested_resources=resources)

    def with_restart(self, generation: Generation) -> Allocation:
        return self._with(restart_generation=generation)

    def with_removable(self, removable: bool) -> Allocation:
        return self._with(removable=removable)


###############################################################################
#              Models (structs) for nodes                                     #
###############################################################################


class NodeState(str, Enum):
    provisioned = "provisioned"
    dirty = "dirty"
    ready = "ready"
    reserved = "reserved"
    active = "active"
    inactive = "inactive"
    failed = "failed"
    parked = "parked"
    deprovisioned = "deprovisioned"

    @property
    def is_allocated(self) -> bool:
        return self in ALLOCATED_STATES


ALLOCATED_STATES = frozenset(
    {
        NodeState.reserved,
        NodeState.active,
        NodeState.inactive,
        NodeState.failed,
        NodeState.parked,
    }
)


class NodeType(str, Enum):
    tenant = "tenant"
    host = "host"
    proxy = "proxy"
    config = "config"


class Agent(str, Enum):
    """Who caused a change to a node"""

    system = "system"
    application = "application"
    operator = "operator"
    reservation_expirer = "ReservationExpirer"
    inactive_expirer = "InactiveExpirer"
    retired_expirer = "RetiredExpirer"
    rebooter = "NodeRebooter"


class EventType(str, Enum):
    provisioned = "provisioned"
    deallocated = "deallocated"
    readied = "readied"
    reserved = "reserved"
    activated = "activated"
    deactivated = "deactivated"
    retired = "retired"
    failed = "failed"
    parked = "parked"
    deprovisioned = "deprovisioned"
    rebooted = "rebooted"
    os_upgraded = "osUpgraded"
    want_to_retire = "wantToRetire"


# The history event recorded when a node enters a state
STATE_EVENTS: Dict[NodeState, EventType] = {
    NodeState.provisioned: EventType.provisioned,
    NodeState.dirty: EventType.deallocated,
    NodeState.ready: EventType.readied,
    NodeState.reserved: EventType.reserved,
    NodeState.active: EventType.activated,
    NodeState.inactive: EventType.deactivated,
    NodeState.failed: EventType.failed,
    NodeState.parked: EventType.parked,
    NodeState.deprovisioned: EventType.deprovisioned,
}


class HistoryEvent(ValueModel):
    type: EventType
    agent: Agent
    at: datetime


class History(ValueModel):
    """Append-only log of lifecycle events for a node"""

    events: Tuple[HistoryEvent, ...] = ()

    def with_event(self, event: HistoryEvent) -> History:
        return History(events=self.events + (event,))

    def event(self, event_type: EventType) -> Optional[HistoryEvent]:
        """The most recent event of the given type, if any"""
        for event in reversed(self.events):
            if event.type == event_type:
                return event
        return None

    def has_event_before(self, event_type: EventType, instant: datetime) -> bool:
        event = self.event(event_type)
        return event is not None and event.at < instant


class Status(ValueModel):
    reboot: Generation = Generation()
    want_to_retire: bool = False
    want_to_deprovision: bool = False
    os_version: Optional[str] = None
    fail_count: int = 0


class IpConfig(ValueModel):
    # Addresses of the node itself
    primary: Tuple[str, ...] = ()
    # For hosts: the hostnames which may be given to child nodes
    pool: Tuple[str, ...] = ()


class Node(ValueModel):
    """A physical or virtual node as stored in the node repository

    Nodes are immutable, all the `with_` and lifecycle methods return a
    modified copy which the caller has to write back to the repository.
    """

    hostname: str
    id: str = ""
    flavor: Flavor
    state: NodeState = NodeState.provisioned
    type: NodeType = NodeType.tenant
    parent_hostname: Optional[str] = None
    ip_config: IpConfig = IpConfig()
    allocation: Optional[Allocation] = None
    status: Status = Status()
    history: History = History()

    @staticmethod
    def create(
        hostname: str,
        flavor: Flavor,
        node_type: NodeType = NodeType.tenant,
        parent_hostname: Optional[str] = None,
        ip_config: Optional[IpConfig] = None,
    ) -> Node:
        return Node(
            hostname=hostname,
            id=hostname,
            flavor=flavor,
            type=node_type,
            parent_hostname=parent_hostname,
            ip_config=ip_config or IpConfig(),
        )

    @property
    def resources(self) -> NodeResources:
        return self.flavor.resources

    @property
    def membership(self) -> Optional[ClusterMembership]:
        if self.allocation is None:
            return None
        return self.allocation.membership

    @property
    def is_retired(self) -> bool:
        return self.allocation is not None and self.allocation.membership.retired

    def with_state(self, state: NodeState) -> Node:
        return self._with(state=state)

    def with_flavor(self, flavor: Flavor) -> Node:
        return self._with(flavor=flavor)

    def with_resources(self, resources: NodeResources) -> Node:
        return self.with_flavor(Flavor.from_resources(resources))

    def with_allocation(self, allocation: Optional[Allocation]) -> Node:
        return self._with(allocation=allocation)

    def with_status(self, status: Status) -> Node:
        return self._with(status=status)

    def with_history_event(
        self, event_type: EventType, agent: Agent, at: datetime
    ) -> Node:
        event = HistoryEvent(type=event_type, agent=agent, at=at)
        return self._with(history=self.history.with_event(event))

    def _require_allocation(self) -> Allocation:
        if self.allocation is None:
            raise ValueError(f"Node {self.hostname} is not allocated")
        return self.allocation

    def with_membership(self, membership: ClusterMembership) -> Node:
        return self.with_allocation(
            self._require_allocation().with_membership(membership)
        )

    def with_requested_resources(self, resources: NodeResources) -> Node:
        return self.with_allocation(
            self._require_allocation().with_requested_resources(resources)
        )

    def allocate(
        self,
        owner: ApplicationId,
        membership: ClusterMembership,
        requested_resources: NodeResources,
    ) -> Node:
        allocation = Allocation(
            owner=owner,
            membership=membership,
            requested_resources=requested_resources,
        )
        return self.with_allocation(allocation)

    def retire(self, agent: Agent, at: datetime) -> Node:
        allocation = self._require_allocation()
        node = self.with_membership(allocation.membership.retire())
        return node.with_history_event(EventType.retired, agent, at)

    def unretire(self) -> Node:
        allocation = self._require_allocation()
        if not allocation.membership.retired:
            return self
        return self.with_membership(allocation.membership.unretire())

    def removable(self) -> Node:
        return self.with_allocation(self._require_allocation().with_removable(True))

    def with_want_to_retire(self, want_to_retire: bool, agent: Agent, at: datetime):
        node = self.with_status(self.status._with(want_to_retire=want_to_retire))
        if want_to_retire:
            node = node.with_history_event(EventType.want_to_retire, agent, at)
        return node

    def with_restart(self, generation: Generation) -> Node:
        return self.with_allocation(self._require_allocation().with_restart(generation))

    def with_reboot(self, generation: Generation) -> Node:
        return self.with_status(self.status._with(reboot=generation))

    def __str__(self):
        membership = self.membership
        allocated = f" allocated to {membership.string_value}" if membership else ""
        return f"{self.state.value} node '{self.hostname}'{allocated}"


###############################################################################
#              Models (structs) for capacity requests and results             #
###############################################################################


class ClusterResources(ValueModel):
    nodes: int = Field(ge=0)
    groups: int = Field(default=1, ge=1)
    # None means "use the zone default"
    node_resources: Optional[NodeResources] = None

    def __str__(self):
        resources = str(self.node_resources) if self.node_resources else "default"
        return f"{self.nodes} nodes in {self.groups} groups with {resources}"


class Capacity(ValueModel):
    """The capacity requested for a cluster

    `min` and `max` are equal for a fixed size request. `required` requests
    are not scaled down outside production, and a request which `can_fail`
    raises when it cannot be satisfied instead of returning fewer nodes.
    """

    min: ClusterResources
    max: ClusterResources
    required: bool = False
    can_fail: bool = True

    @staticmethod
    def from_resources(
        min_resources: ClusterResources,
        max_resources: Optional[ClusterResources] = None,
        required: bool = False,
        can_fail: bool = True,
    ) -> Capacity:
        return Capacity(
            min=min_resources,
            max=max_resources or min_resources,
            required=required,
            can_fail=can_fail,
        )

    @staticmethod
    def from_count(
        nodes: int,
        groups: int = 1,
        resources: Optional[NodeResources] = None,
        required: bool = False,
        can_fail: bool = True,
    ) -> Capacity:
        cluster_resources = ClusterResources(
            nodes=nodes, groups=groups, node_resources=resources
        )
        return Capacity.from_resources(
            cluster_resources, required=required, can_fail=can_fail
        )

    @property
    def is_range(self) -> bool:
        return self.min != self.max


class HostSpec(ValueModel):
    """A node as handed back to the deployment after prepare"""

    hostname: str
    membership: ClusterMembership
    resources: NodeResources
    requested_resources: Optional[NodeResources] = None
    parent_hostname: Optional[str] = None

    @staticmethod
    def from_node(node: Node) -> HostSpec:
        allocation = node._require_allocation()
        return HostSpec(
            hostname=node.hostname,
            membership=allocation.membership,
            resources=node.resources,
            requested_resources=allocation.requested_resources,
            parent_hostname=node.parent_hostname,
        )
