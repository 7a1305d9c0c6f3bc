"""
Dependency planner: topological ordering of resource descriptors.
"""

import heapq
import logging
from typing import Dict, Iterable, List, Set, Tuple

from ..config import NetworkConfig
from ..descriptors import build_descriptors
from ..descriptors.models import ResourceDescriptor
from ..errors import ConfigurationError, CyclicDependencyError
from .plan import Plan

logger = logging.getLogger(__name__)


def _priority(descriptor: ResourceDescriptor) -> Tuple[int, int, str]:
    # kind precedence, then declaration order
    return (descriptor.kind.precedence, descriptor.order, descriptor.key)


def build_plan(descriptors: Iterable[ResourceDescriptor]) -> Plan:
    """
    Order descriptors so each one follows everything it depends on.

    Among descriptors whose dependencies are all satisfied, the one with the
    highest kind precedence (VPC, Gateway, Subnet, RouteTable, SecurityGroup,
    Endpoint) goes first, then the one declared first.

    Args:
        descriptors: Descriptor set with dependency edges

    Returns:
        Plan in topological order

    Raises:
        ConfigurationError: On duplicate keys or a dependency on an unknown key
        CyclicDependencyError: If no valid order exists
    """
    by_key: Dict[str, ResourceDescriptor] = {}
    for descriptor in descriptors:
        if descriptor.key in by_key:
            raise ConfigurationError(f"Duplicate resource key '{descriptor.key}'", [descriptor.key])
        by_key[descriptor.key] = descriptor

    remaining: Dict[str, Set[str]] = {}
    dependents: Dict[str, List[str]] = {key: [] for key in by_key}
    for key, descriptor in by_key.items():
        unknown = sorted(descriptor.depends_on - by_key.keys())
        if unknown:
            raise ConfigurationError(
                f"{key} depends on unknown resource(s): {', '.join(unknown)}", [key] + unknown
            )
        remaining[key] = set(descriptor.depends_on)
        for dep in descriptor.depends_on:
            dependents[dep].append(key)

    ready = [(_priority(d), d.key) for d in by_key.values() if not remaining[d.key]]
    heapq.heapify(ready)

    ordered: List[ResourceDescriptor] = []
    while ready:
        _, key = heapq.heappop(ready)
        ordered.append(by_key[key])
        for dependent in dependents[key]:
            remaining[dependent].discard(key)
            if not remaining[dependent]:
                heapq.heappush(ready, (_priority(by_key[dependent]), dependent))

    if len(ordered) != len(by_key):
        stuck = sorted(key for key, deps in remaining.items() if deps)
        raise CyclicDependencyError(
            f"Dependency cycle among: {', '.join(stuck)}", stuck
        )

    logger.debug(f"Planned {len(ordered)} steps: {[d.key for d in ordered]}")
    return Plan(descriptors=tuple(ordered))


def plan_from_config(config: NetworkConfig) -> Plan:
    """Build descriptors from a configuration and plan them."""
    return build_plan(build_descriptors(config))
