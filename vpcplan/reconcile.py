"""
State reconciler: match descriptors against existing tagged resources.
"""

import logging
from typing import Optional

from .descriptors.models import ResourceDescriptor, ResourceKind
from .errors import AmbiguousResourceError
from .provider.base import Provider
from .tags import identity_tags

logger = logging.getLogger(__name__)


class StateReconciler:
    """Decides create-vs-reuse for a descriptor by querying the provider."""

    def __init__(self, provider: Provider):
        self.provider = provider

    def lookup(self, descriptor: ResourceDescriptor, vpc_id: Optional[str] = None) -> Optional[str]:
        """
        Find the existing resource equivalent to ``descriptor``.

        Args:
            descriptor: Descriptor to reconcile
            vpc_id: VPC to search in; ignored for the VPC descriptor itself

        Returns:
            The existing resource id, or None if nothing matches

        Raises:
            AmbiguousResourceError: If more than one resource matches
        """
        scope = None if descriptor.kind == ResourceKind.VPC else vpc_id
        matches = self.provider.find_by_tags(descriptor, identity_tags(dict(descriptor.tags)), scope)

        if not matches:
            logger.debug(f"{descriptor.key}: no existing resource")
            return None
        if len(matches) > 1:
            raise AmbiguousResourceError(descriptor.key, sorted(matches))

        logger.debug(f"{descriptor.key}: matched existing {matches[0]}")
        return matches[0]
