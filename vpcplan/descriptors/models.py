"""
Data models for desired and provisioned network resources.
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Mapping


class ResourceKind(Enum):
    """Resource kinds, declared in planning precedence order."""
    VPC = "vpc"
    GATEWAY = "gateway"
    SUBNET = "subnet"
    ROUTE_TABLE = "route_table"
    SECURITY_GROUP = "security_group"
    ENDPOINT = "endpoint"

    @property
    def precedence(self) -> int:
        return list(ResourceKind).index(self)


def freeze(value: Any) -> Any:
    """Recursively convert dicts and lists into read-only equivalents."""
    if isinstance(value, Mapping):
        return MappingProxyType({k: freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(v) for v in value)
    if isinstance(value, (set, frozenset)):
        return frozenset(value)
    return value


def thaw(value: Any) -> Any:
    """Inverse of freeze, producing JSON-serialisable values."""
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, (tuple, list)):
        return [thaw(v) for v in value]
    if isinstance(value, frozenset):
        return sorted(value)
    return value


@dataclass(frozen=True)
class ResourceDescriptor:
    """
    Desired state of a single resource.

    Attribute values that point at other resources hold descriptor keys, which
    the executor resolves to provider ids at apply time.
    """
    key: str                    # unique, e.g. "subnet/public-1"
    kind: ResourceKind
    name: str                   # value of the Name tag
    attributes: Mapping[str, Any] = field(default_factory=dict, hash=False)
    tags: Mapping[str, str] = field(default_factory=dict, hash=False)
    depends_on: FrozenSet[str] = frozenset()
    order: int = 0              # declaration index, used as a tie-break

    def __post_init__(self):
        object.__setattr__(self, "attributes", freeze(self.attributes))
        object.__setattr__(self, "tags", MappingProxyType(dict(self.tags)))
        object.__setattr__(self, "depends_on", frozenset(self.depends_on))

    @property
    def label(self) -> str:
        return f"{self.kind.value}({self.name})"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "kind": self.kind.value,
            "name": self.name,
            "attributes": thaw(self.attributes),
            "tags": dict(self.tags),
            "depends_on": sorted(self.depends_on),
        }


@dataclass
class ProvisionedResource:
    """A descriptor that has been created or matched to an existing resource."""
    resource_id: str
    descriptor: ResourceDescriptor
    action: str                 # "created" | "reused"
    attempts: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.descriptor.key,
            "kind": self.descriptor.kind.value,
            "name": self.descriptor.name,
            "resource_id": self.resource_id,
            "action": self.action,
            "attempts": self.attempts,
        }
