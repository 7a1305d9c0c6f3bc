"""
Provider interface consumed by the reconciler and the executor.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from ..descriptors.models import ResourceDescriptor
from ..errors import FatalProviderError


class Provider(ABC):
    """Abstract cloud provider client."""

    @abstractmethod
    def find_by_tags(self, descriptor: ResourceDescriptor, tags: Dict[str, str],
                     vpc_id: Optional[str] = None) -> List[str]:
        """
        Return ids of existing resources of the descriptor's kind carrying ``tags``.

        Args:
            descriptor: Descriptor being reconciled
            tags: Tags every match must carry
            vpc_id: Restrict the search to this VPC (None for the VPC itself)

        Returns:
            Matching resource ids, possibly empty
        """
        pass

    @abstractmethod
    def create(self, descriptor: ResourceDescriptor, refs: Dict[str, str]) -> str:
        """
        Create the resource and return its provider id.

        Args:
            descriptor: Descriptor to create
            refs: Provider ids of already applied descriptors, by key

        Returns:
            The new resource id
        """
        pass

    def configure(self, descriptor: ResourceDescriptor, resource_id: str, refs: Dict[str, str]) -> None:
        """
        Bring an existing resource's settings in line with ``descriptor``.

        Runs after every create and every reuse, so implementations must only
        add what is missing (routes, associations, rules, attachments).

        Args:
            descriptor: Descriptor the resource was created or reused for
            resource_id: Provider id of the resource
            refs: Provider ids of already applied descriptors, by key
        """
        pass

    @abstractmethod
    def delete(self, descriptor: ResourceDescriptor, resource_id: str, refs: Dict[str, str]) -> None:
        """Delete a resource previously created for ``descriptor``."""
        pass


def resolve(refs: Dict[str, str], key: str, descriptor: ResourceDescriptor) -> str:
    """Look up the provider id of a referenced descriptor key."""
    try:
        return refs[key]
    except KeyError:
        raise FatalProviderError(
            f"{descriptor.key} references {key}, which has not been applied",
            code="UnresolvedReference",
        ) from None
