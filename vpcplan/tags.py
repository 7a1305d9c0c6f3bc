"""
Tagging utilities for consistent resource tagging and reconciliation.

Every resource vpcplan creates carries the same policy tags. A subset of them,
the identity tags, is what reconciliation matches on.
"""

from typing import Dict, Iterable, List, Optional

MANAGED_BY = "vpcplan"

# Tags that decide whether an existing resource "is" a descriptor
IDENTITY_TAG_KEYS = ("Name", "Environment", "ManagedBy")


def base_tags(
    name: str,
    environment: str,
    owner: Optional[str] = None,
    cost_center: Optional[str] = None,
    extra: Optional[Dict[str, str]] = None,
) -> Dict[str, str]:
    """
    Generate the policy tags for a single resource.

    Args:
        name: Value of the Name tag
        environment: Environment name (e.g. "dev", "prod")
        owner: Optional owner tag
        cost_center: Optional cost-center tag
        extra: Additional tags to include; cannot override identity tags

    Returns:
        Dictionary of tags to apply to the resource
    """
    tags = {}
    if extra:
        tags.update(extra)

    if owner:
        tags["Owner"] = owner
    if cost_center:
        tags["CostCenter"] = cost_center

    tags["Name"] = name
    tags["Environment"] = environment
    tags["ManagedBy"] = MANAGED_BY

    return tags


def identity_tags(tags: Dict[str, str]) -> Dict[str, str]:
    """Return the reconciliation key subset of a tag set."""
    return {key: tags[key] for key in IDENTITY_TAG_KEYS if key in tags}


def parse_user_tags(tag_strings: Iterable[str]) -> Dict[str, str]:
    """
    Parse user-provided tag strings in format "key=value".

    Args:
        tag_strings: Tag strings in "key=value" format

    Returns:
        Dictionary of parsed tags

    Raises:
        ValueError: If tag string format is invalid
    """
    tags = {}

    for tag_str in tag_strings:
        if "=" not in tag_str:
            raise ValueError(f"Invalid tag format: {tag_str}. Expected 'key=value'")

        key, value = tag_str.split("=", 1)
        if not key.strip() or not value.strip():
            raise ValueError(f"Invalid tag format: {tag_str}. Key and value must not be empty")

        tags[key.strip()] = value.strip()

    return tags


def to_aws_tags(tags: Dict[str, str]) -> List[Dict[str, str]]:
    """Convert a tag dict into the EC2 Key/Value list shape."""
    return [{"Key": key, "Value": value} for key, value in sorted(tags.items())]


def tag_filters(tags: Dict[str, str]) -> List[Dict[str, object]]:
    """Build describe_* filters that match every tag in ``tags``."""
    return [{"Name": f"tag:{key}", "Values": [value]} for key, value in sorted(tags.items())]
