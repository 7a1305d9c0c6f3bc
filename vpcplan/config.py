"""
Network configuration loading.

Configuration files are YAML (JSON works too). They are parsed into plain
dataclasses here; address-level validation happens when descriptors are built.
"""

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
import logging

import yaml

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

SUBNET_TIERS = ("public", "private", "database")
DEFAULT_ENDPOINT_SERVICES = ["s3", "dynamodb"]
DEFAULT_REGION = "us-west-2"


@dataclass
class SubnetSpec:
    name: str
    cidr: str
    az: str
    tier: str  # "public" | "private" | "database"


@dataclass
class RuleSpec:
    """A single security-group rule. Exactly one of cidr/source_group is set."""
    protocol: str               # "tcp" | "udp" | "icmp" | "-1"
    from_port: int
    to_port: int
    cidr: Optional[str] = None
    source_group: Optional[str] = None
    description: str = ""


@dataclass
class SecurityGroupSpec:
    name: str
    description: str
    ingress: List[RuleSpec] = field(default_factory=list)
    egress: List[RuleSpec] = field(default_factory=list)


@dataclass
class TagPolicy:
    environment: str
    owner: Optional[str] = None
    cost_center: Optional[str] = None
    extra: Dict[str, str] = field(default_factory=dict)


@dataclass
class NetworkConfig:
    name: str
    cidr: str
    region: str
    availability_zones: List[str]
    public_subnets: List[SubnetSpec]
    private_subnets: List[SubnetSpec]
    database_subnets: List[SubnetSpec]
    admin_cidr: str
    tags: TagPolicy
    enable_nat_gateway: bool = True
    enable_vpc_endpoints: bool = False
    endpoint_services: List[str] = field(default_factory=lambda: list(DEFAULT_ENDPOINT_SERVICES))
    security_groups: List[SecurityGroupSpec] = field(default_factory=list)
    database_port: int = 5432
    enable_dns: bool = True

    @property
    def subnets(self) -> List[SubnetSpec]:
        """All subnets in declaration order: public, private, database."""
        return self.public_subnets + self.private_subnets + self.database_subnets

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def load_config(path: Union[str, Path], overrides: Optional[Dict[str, Any]] = None) -> NetworkConfig:
    """
    Load a network configuration file.

    Args:
        path: Path to a YAML or JSON file
        overrides: Optional top-level overrides ("region", "environment", "tags")

    Returns:
        Parsed NetworkConfig

    Raises:
        ConfigurationError: If the file is missing, unparsable or incomplete
    """
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Could not parse {config_path}: {e}") from e

    logger.debug(f"Loaded configuration from {config_path}")
    return parse_config(data, overrides)


def parse_config(data: Dict[str, Any], overrides: Optional[Dict[str, Any]] = None) -> NetworkConfig:
    """
    Parse a configuration mapping into a NetworkConfig.

    Args:
        data: Raw mapping, as loaded from YAML
        overrides: Optional top-level overrides ("region", "environment", "tags")

    Returns:
        Parsed NetworkConfig
    """
    if not isinstance(data, dict):
        raise ConfigurationError("Configuration must be a mapping")

    overrides = overrides or {}
    vpc = _require(data, "vpc", dict)

    subnets = data.get("subnets") or {}
    if not isinstance(subnets, dict):
        raise ConfigurationError("'subnets' must be a mapping of tier to subnet list")
    unknown_tiers = set(subnets) - set(SUBNET_TIERS)
    if unknown_tiers:
        raise ConfigurationError(f"Unknown subnet tier(s): {', '.join(sorted(unknown_tiers))}")

    tag_data = data.get("tags") or {}
    if not isinstance(tag_data, dict):
        raise ConfigurationError("'tags' must be a mapping")
    extra_tags = {str(k): str(v) for k, v in (tag_data.get("extra") or {}).items()}
    extra_tags.update(overrides.get("tags") or {})
    tags = TagPolicy(
        environment=str(overrides.get("environment") or tag_data.get("environment") or "dev"),
        owner=tag_data.get("owner"),
        cost_center=tag_data.get("cost_center"),
        extra=extra_tags,
    )

    azs = data.get("availability_zones") or []
    if not isinstance(azs, list) or not all(isinstance(az, str) for az in azs):
        raise ConfigurationError("'availability_zones' must be a list of names")

    services = data.get("endpoint_services", DEFAULT_ENDPOINT_SERVICES)
    if not isinstance(services, list):
        raise ConfigurationError("'endpoint_services' must be a list")

    return NetworkConfig(
        name=str(_require(vpc, "name", str)),
        cidr=str(_require(vpc, "cidr", str)),
        region=str(overrides.get("region") or vpc.get("region") or DEFAULT_REGION),
        availability_zones=list(azs),
        public_subnets=_parse_subnets(subnets.get("public"), "public"),
        private_subnets=_parse_subnets(subnets.get("private"), "private"),
        database_subnets=_parse_subnets(subnets.get("database"), "database"),
        admin_cidr=str(data.get("admin_cidr") or vpc.get("cidr")),
        tags=tags,
        enable_nat_gateway=_flag(data, "enable_nat_gateway", True),
        enable_vpc_endpoints=_flag(data, "enable_vpc_endpoints", False),
        endpoint_services=[str(s) for s in services],
        security_groups=[_parse_security_group(sg) for sg in data.get("security_groups") or []],
        database_port=_integer(data, "database_port", 5432),
        enable_dns=_flag(vpc, "enable_dns", True),
    )


def _require(data: Dict[str, Any], key: str, expected_type: type) -> Any:
    if key not in data or data[key] in (None, ""):
        raise ConfigurationError(f"Missing required key: '{key}'")
    if not isinstance(data[key], expected_type):
        raise ConfigurationError(f"'{key}' must be a {expected_type.__name__}")
    return data[key]


def _flag(data: Dict[str, Any], key: str, default: bool) -> bool:
    # YAML only yields a bool for unquoted true/false; "false" stays a string
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigurationError(f"'{key}' must be true or false, got {value!r}")
    return value


def _integer(data: Dict[str, Any], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(f"'{key}' must be an integer, got {value!r}")
    return value


def _parse_subnets(items: Optional[List[Dict[str, Any]]], tier: str) -> List[SubnetSpec]:
    if items is None:
        return []
    if not isinstance(items, list):
        raise ConfigurationError(f"'subnets.{tier}' must be a list")

    specs = []
    for item in items:
        if not isinstance(item, dict):
            raise ConfigurationError(f"Each entry in 'subnets.{tier}' must be a mapping")
        specs.append(SubnetSpec(
            name=str(_require(item, "name", str)),
            cidr=str(_require(item, "cidr", str)),
            az=str(_require(item, "az", str)),
            tier=tier,
        ))
    return specs


def _parse_rule(item: Dict[str, Any], group: str) -> RuleSpec:
    if not isinstance(item, dict):
        raise ConfigurationError(f"Rules of security group '{group}' must be mappings")

    protocol = str(item.get("protocol", "tcp"))
    if "port" in item:
        from_port = to_port = item["port"]
    else:
        from_port = item.get("from_port", -1 if protocol == "-1" else None)
        to_port = item.get("to_port", from_port)
    if from_port is None:
        raise ConfigurationError(f"Rule in security group '{group}' needs 'port' or 'from_port'")

    try:
        from_port, to_port = int(from_port), int(to_port)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Rule in security group '{group}' has a non-numeric port") from e

    return RuleSpec(
        protocol=protocol,
        from_port=from_port,
        to_port=to_port,
        cidr=item.get("cidr"),
        source_group=item.get("source_group"),
        description=str(item.get("description", "")),
    )


def _parse_security_group(item: Dict[str, Any]) -> SecurityGroupSpec:
    if not isinstance(item, dict):
        raise ConfigurationError("Each entry in 'security_groups' must be a mapping")

    name = str(_require(item, "name", str))
    return SecurityGroupSpec(
        name=name,
        description=str(item.get("description") or f"{name} security group"),
        ingress=[_parse_rule(rule, name) for rule in item.get("ingress") or []],
        egress=[_parse_rule(rule, name) for rule in item.get("egress") or []],
    )
