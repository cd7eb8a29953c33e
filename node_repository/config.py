import json
import logging
from datetime import timedelta
from pathlib import Path
from typing import Any
from typing import Optional
from typing import Tuple
from typing import Union

import isodate  # type: ignore
from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import field_validator

from node_repository.flavors import NodeFlavors
from node_repository.flavors import load_flavors_from_disk
from node_repository.interface import Zone

logger = logging.getLogger(__name__)

# Calendar parts of a duration have no fixed length, so use the usual ones
DAYS_PER_MONTH = 30
DAYS_PER_YEAR = 365


def to_timedelta(value: Any) -> timedelta:
    """Durations are given as ISO-8601 strings ("PT10M") or seconds"""
    if isinstance(value, str):
        value = isodate.parse_duration(value)
    if isinstance(value, isodate.Duration):
        days = value.years * DAYS_PER_YEAR + value.months * DAYS_PER_MONTH
        return value.tdelta + timedelta(days=float(days))
    if isinstance(value, timedelta):
        return value
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)
    raise ValueError(f"Cannot interpret {value!r} as a duration")


class ResourceLimits(BaseModel):
    """Lower bounds on node resources

    The advertised limits apply to what an application may request. The real
    limits apply to what a node actually offers once the host has taken its
    share, and are checked node by node during allocation.
    """

    model_config = ConfigDict(frozen=True)

    min_advertised_vcpu: float = 0.5
    min_advertised_memory_gb: float = 4.0
    min_advertised_disk_gb: float = 10.0
    min_real_memory_gb: float = 2.3
    min_real_disk_gb: float = 8.0


class HostOverhead(BaseModel):
    """Resources a host keeps for itself out of each child's advertised share"""

    model_config = ConfigDict(frozen=True)

    memory_gb: float = 0.7
    disk_gb: float = 1.0


class ProvisioningConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    zone: Zone = Zone()
    resource_limits: ResourceLimits = ResourceLimits()
    host_overhead: HostOverhead = HostOverhead()
    # Used when a request does not name any resources
    default_flavor: str = "default"
    # Whether new virtual nodes may be created on hosts with free capacity
    dynamic_virtual_nodes: bool = True
    prepare_timeout: timedelta = timedelta(minutes=5)
    lock_timeout: timedelta = timedelta(minutes=1)

    @field_validator("prepare_timeout", "lock_timeout", mode="before")
    @classmethod
    def _parse_duration(cls, value):
        return to_timedelta(value)


class MaintenanceConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    reservation_expiry: timedelta = timedelta(minutes=10)
    reservation_expirer_interval: timedelta = timedelta(minutes=1)
    retired_expiry: timedelta = timedelta(days=4)
    retired_expirer_interval: timedelta = timedelta(minutes=10)
    inactive_expiry: timedelta = timedelta(hours=2)
    inactive_expirer_interval: timedelta = timedelta(minutes=5)
    reboot_interval: timedelta = timedelta(days=30)
    rebooter_interval: timedelta = timedelta(minutes=25)
    # Maintainers are staggered across the config servers of the zone
    hostname: str = "localhost"
    cluster_hostnames: Tuple[str, ...] = ()

    @field_validator(
        "reservation_expiry",
        "reservation_expirer_interval",
        "retired_expiry",
        "retired_expirer_interval",
        "inactive_expiry",
        "inactive_expirer_interval",
        "reboot_interval",
        "rebooter_interval",
        mode="before",
    )
    @classmethod
    def _parse_duration(cls, value):
        return to_timedelta(value)


class NodeRepositoryConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    provisioning: ProvisioningConfig = ProvisioningConfig()
    maintenance: MaintenanceConfig = MaintenanceConfig()
    # Extra flavor profiles, merged with the bundled ones
    flavor_paths: Tuple[str, ...] = ()

    def load_flavors(self) -> NodeFlavors:
        return load_flavors_from_disk(flavor_paths=[Path(p) for p in self.flavor_paths])


def load_config(path: Optional[Union[str, Path]] = None) -> NodeRepositoryConfig:
    if path is None:
        return NodeRepositoryConfig()
    logger.debug("Loading node repository config from: %s", path)
    with open(path, encoding="utf-8") as fd:
        return NodeRepositoryConfig(**json.load(fd))

