import json
import logging
import os
from functools import reduce
from pathlib import Path
from typing import Dict
from typing import List
from typing import Optional
from typing import Union

from pydantic import BaseModel

from node_repository.interface import Flavor
from node_repository.interface import NodeResources

logger = logging.getLogger(__name__)

BUNDLED_FLAVORS = Path(__file__).resolve().parent / "profiles" / "flavors.json"


class FlavorProfile(BaseModel):
    resources: NodeResources
    cost: float = 0


class FlavorProfiles(BaseModel):
    flavors: Dict[str, FlavorProfile] = {}


def merge_profiles(existing: FlavorProfiles, override: FlavorProfiles) -> FlavorProfiles:
    """Merge two profile files, the same flavor may only be defined once"""
    merged = dict(existing.flavors)
    for name, profile in override.flavors.items():
        if name in merged:
            raise ValueError(
                f"Duplicate flavor {name}! Only one file should contain a flavor"
            )
        merged[name] = profile
    return FlavorProfiles(flavors=merged)


class NodeFlavors:
    """The named flavors nodes may be created with"""

    def __init__(self, profiles: FlavorProfiles):
        self._flavors: Dict[str, Flavor] = {
            name: Flavor(name=name, resources=profile.resources, cost=profile.cost)
            for name, profile in profiles.flavors.items()
        }

    def get_flavor(self, name: str) -> Optional[Flavor]:
        return self._flavors.get(name)

    def get_flavor_or_throw(self, name: str) -> Flavor:
        flavor = self._flavors.get(name)
        if flavor is None:
            raise KeyError(f"Unknown flavor '{name}'")
        return flavor

    def exists(self, name: str) -> bool:
        return name in self._flavors

    def names(self) -> List[str]:
        return sorted(self._flavors)

    def __len__(self):
        return len(self._flavors)


def load_flavors_from_disk(
    flavor_paths: Union[List[Path], Optional[str]] = os.environ.get("NODE_FLAVORS"),
    include_bundled: bool = True,
) -> NodeFlavors:
    if isinstance(flavor_paths, str):
        flavor_paths = [Path(path) for path in flavor_paths.split(os.pathsep)]
    if flavor_paths is None:
        flavor_paths = []
    if include_bundled:
        flavor_paths = [BUNDLED_FLAVORS] + list(flavor_paths)

    profiles = [FlavorProfiles()]
    for path in flavor_paths:
        logger.debug("Loading flavors from: %s", path)
        with open(path, encoding="utf-8") as fd:
            profiles.append(FlavorProfiles(**json.load(fd)))

    return NodeFlavors(reduce(merge_profiles, profiles))
