"""
Resource descriptor model: typed desired state and its dependency edges.
"""

from .models import ResourceKind, ResourceDescriptor, ProvisionedResource
from .build import build_descriptors, validate_network, default_security_groups

__all__ = [
    "ResourceKind",
    "ResourceDescriptor",
    "ProvisionedResource",
    "build_descriptors",
    "validate_network",
    "default_security_groups",
]
