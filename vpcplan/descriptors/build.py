"""
Build resource descriptors from a network configuration.

The configuration's subnet and security-group lists are expanded once here
into a flat descriptor set with explicit dependency edges. Address validation
happens first, so a bad configuration never reaches the provider.
"""

import ipaddress
import logging
from typing import Dict, List, Optional

from ..config import NetworkConfig, RuleSpec, SecurityGroupSpec, SubnetSpec
from ..errors import ConfigurationError
from ..tags import base_tags
from .models import ResourceDescriptor, ResourceKind

logger = logging.getLogger(__name__)

GATEWAY_ENDPOINT_SERVICES = ("s3", "dynamodb")
VALID_PROTOCOLS = ("tcp", "udp", "icmp", "-1")
ANYWHERE = "0.0.0.0/0"


def subnet_key(name: str) -> str:
    return f"subnet/{name}"


def security_group_key(name: str) -> str:
    return f"security_group/{name}"


def _parse_network(cidr: str, what: str, key: Optional[str] = None) -> ipaddress.IPv4Network:
    try:
        network = ipaddress.ip_network(cidr, strict=True)
    except ValueError as e:
        raise ConfigurationError(f"{what} has an invalid CIDR '{cidr}': {e}", [key] if key else None) from e
    if network.version != 4:
        raise ConfigurationError(f"{what} must be an IPv4 CIDR, got '{cidr}'", [key] if key else None)
    return network


def validate_network(config: NetworkConfig) -> None:
    """
    Validate addressing and references in a configuration.

    Args:
        config: Parsed network configuration

    Raises:
        ConfigurationError: On the first violation found
    """
    vpc_net = _parse_network(config.cidr, f"VPC '{config.name}'")
    _parse_network(config.admin_cidr, "admin_cidr")

    if len(set(config.availability_zones)) != len(config.availability_zones):
        raise ConfigurationError("availability_zones contains duplicates")

    seen: Dict[str, ipaddress.IPv4Network] = {}
    for subnet in config.subnets:
        key = subnet_key(subnet.name)
        if key in seen:
            raise ConfigurationError(f"Duplicate subnet name '{subnet.name}'", [key])

        net = _parse_network(subnet.cidr, key, key)
        if not net.subnet_of(vpc_net):
            raise ConfigurationError(
                f"{key} CIDR {subnet.cidr} is not contained in VPC CIDR {config.cidr}", [key]
            )

        if subnet.az not in config.availability_zones:
            raise ConfigurationError(
                f"{key} uses availability zone '{subnet.az}' which is not in "
                f"availability_zones {config.availability_zones}",
                [key],
            )

        for other_key, other_net in seen.items():
            if net.overlaps(other_net):
                raise ConfigurationError(
                    f"{other_key} ({other_net}) overlaps {key} ({net})", [other_key, key]
                )
        seen[key] = net

    if config.private_subnets and config.enable_nat_gateway and not config.public_subnets:
        raise ConfigurationError("A NAT gateway for private subnets needs at least one public subnet")

    if not 0 < config.database_port < 65536:
        raise ConfigurationError(f"database_port {config.database_port} is out of range")

    for service in config.endpoint_services:
        if not service or not service.replace("-", "").replace(".", "").isalnum():
            raise ConfigurationError(f"Invalid endpoint service name '{service}'")

    group_names = [sg.name for sg in config.security_groups]
    if len(set(group_names)) != len(group_names):
        raise ConfigurationError("security_groups contains duplicate names")
    for group in config.security_groups:
        for rule in group.ingress + group.egress:
            _validate_rule(rule, group.name, group_names)


def _validate_rule(rule: RuleSpec, group: str, group_names: List[str]) -> None:
    where = f"{security_group_key(group)} rule"
    if rule.protocol not in VALID_PROTOCOLS:
        raise ConfigurationError(f"{where} has unknown protocol '{rule.protocol}'")

    if (rule.cidr is None) == (rule.source_group is None):
        raise ConfigurationError(f"{where} needs exactly one of 'cidr' or 'source_group'")
    if rule.cidr is not None:
        _parse_network(rule.cidr, where)
    if rule.source_group is not None and rule.source_group not in group_names:
        raise ConfigurationError(f"{where} references unknown security group '{rule.source_group}'")

    if rule.protocol in ("tcp", "udp"):
        if not (0 <= rule.from_port <= rule.to_port <= 65535):
            raise ConfigurationError(
                f"{where} has invalid port range {rule.from_port}-{rule.to_port}"
            )
    elif rule.protocol == "icmp":
        if not (-1 <= rule.from_port <= 255 and -1 <= rule.to_port <= 255):
            raise ConfigurationError(f"{where} has invalid ICMP type/code")


def default_security_groups(config: NetworkConfig) -> List[SecurityGroupSpec]:
    """Web/app/database groups used when the configuration declares none."""
    admin_ssh = RuleSpec("tcp", 22, 22, cidr=config.admin_cidr, description="SSH from admin network")
    groups = [
        SecurityGroupSpec(
            name="web",
            description="Public web tier",
            ingress=[
                RuleSpec("tcp", 80, 80, cidr=ANYWHERE, description="HTTP"),
                RuleSpec("tcp", 443, 443, cidr=ANYWHERE, description="HTTPS"),
                admin_ssh,
            ],
        ),
        SecurityGroupSpec(
            name="app",
            description="Private application tier",
            ingress=[
                RuleSpec("tcp", 0, 65535, cidr=config.cidr, description="TCP from within the VPC"),
                admin_ssh,
            ],
        ),
    ]
    if config.database_subnets:
        groups.append(SecurityGroupSpec(
            name="database",
            description="Database tier",
            ingress=[
                RuleSpec("tcp", config.database_port, config.database_port,
                         source_group="app", description="Database from app tier"),
            ],
        ))
    return groups


class _DescriptorBuilder:
    """Accumulates descriptors in declaration order."""

    def __init__(self, config: NetworkConfig):
        self.config = config
        self.descriptors: List[ResourceDescriptor] = []
        self.vpc_key = f"vpc/{config.name}"

    def add(self, key: str, kind: ResourceKind, name: str, attributes: Dict, depends_on) -> str:
        tags = base_tags(
            name,
            self.config.tags.environment,
            owner=self.config.tags.owner,
            cost_center=self.config.tags.cost_center,
            extra=self.config.tags.extra,
        )
        self.descriptors.append(ResourceDescriptor(
            key=key,
            kind=kind,
            name=name,
            attributes=attributes,
            tags=tags,
            depends_on=frozenset(depends_on),
            order=len(self.descriptors),
        ))
        return key

    def resource_name(self, suffix: str) -> str:
        return f"{self.config.name}-{suffix}"


def build_descriptors(config: NetworkConfig) -> List[ResourceDescriptor]:
    """
    Expand a configuration into resource descriptors.

    Args:
        config: Parsed network configuration

    Returns:
        Descriptors in declaration order

    Raises:
        ConfigurationError: If the configuration fails validation
    """
    validate_network(config)
    b = _DescriptorBuilder(config)
    vpc = b.vpc_key

    b.add(vpc, ResourceKind.VPC, config.name, {
        "cidr": config.cidr,
        "region": config.region,
        "enable_dns": config.enable_dns,
    }, [])

    igw = None
    if config.public_subnets:
        igw = b.add(f"gateway/{config.name}-igw", ResourceKind.GATEWAY, b.resource_name("igw"), {
            "gateway_type": "internet",
            "vpc": vpc,
        }, [vpc])

    subnets_by_tier: Dict[str, List[str]] = {"public": [], "private": [], "database": []}
    for subnet in config.subnets:
        subnets_by_tier[subnet.tier].append(_add_subnet(b, subnet))

    nat = None
    if config.private_subnets and config.enable_nat_gateway:
        nat_subnet = subnets_by_tier["public"][0]
        nat = b.add(f"gateway/{config.name}-nat", ResourceKind.GATEWAY, b.resource_name("nat"), {
            "gateway_type": "nat",
            "vpc": vpc,
            "subnet": nat_subnet,
            "internet_gateway": igw,
        }, [vpc, nat_subnet, igw])

    route_tables: Dict[str, str] = {}
    for tier, target, target_type in (("public", igw, "internet"), ("private", nat, "nat"), ("database", None, None)):
        members = subnets_by_tier[tier]
        if not members:
            continue
        routes = [{"destination": ANYWHERE, "target": target, "target_type": target_type}] if target else []
        deps = [vpc] + members + ([target] if target else [])
        route_tables[tier] = b.add(
            f"route_table/{config.name}-{tier}", ResourceKind.ROUTE_TABLE, b.resource_name(f"{tier}-rt"),
            {"tier": tier, "vpc": vpc, "subnets": members, "routes": routes},
            deps,
        )

    groups = config.security_groups or default_security_groups(config)
    for group in groups:
        _add_security_group(b, group)

    if config.enable_vpc_endpoints:
        _add_endpoints(b, route_tables, subnets_by_tier)

    logger.info(f"Built {len(b.descriptors)} descriptors for VPC {config.name}")
    return b.descriptors


def _add_subnet(b: _DescriptorBuilder, subnet: SubnetSpec) -> str:
    return b.add(subnet_key(subnet.name), ResourceKind.SUBNET, b.resource_name(subnet.name), {
        "cidr": subnet.cidr,
        "az": subnet.az,
        "tier": subnet.tier,
        "vpc": b.vpc_key,
        "map_public_ip": subnet.tier == "public",
    }, [b.vpc_key])


def _rule_attributes(rule: RuleSpec) -> Dict:
    attrs = {
        "protocol": rule.protocol,
        "from_port": rule.from_port,
        "to_port": rule.to_port,
        "description": rule.description,
    }
    if rule.source_group:
        attrs["source_group"] = security_group_key(rule.source_group)
    else:
        attrs["cidr"] = rule.cidr
    return attrs


def _add_security_group(b: _DescriptorBuilder, group: SecurityGroupSpec) -> str:
    ingress = [_rule_attributes(rule) for rule in group.ingress]
    egress = [_rule_attributes(rule) for rule in group.egress]
    references = {r["source_group"] for r in ingress + egress if "source_group" in r}
    # A group may reference itself; that edge is resolved by the provider.
    references.discard(security_group_key(group.name))

    return b.add(security_group_key(group.name), ResourceKind.SECURITY_GROUP, b.resource_name(group.name), {
        "vpc": b.vpc_key,
        "group_name": b.resource_name(group.name),
        "description": group.description,
        "ingress": ingress,
        "egress": egress,
    }, [b.vpc_key] + sorted(references))


def _add_endpoints(b: _DescriptorBuilder, route_tables: Dict[str, str], subnets_by_tier: Dict[str, List[str]]) -> None:
    private_tables = [route_tables[t] for t in ("private", "database") if t in route_tables]
    tables = private_tables or list(route_tables.values())

    # Interface endpoints take one subnet per availability zone
    interface_subnets = []
    seen_azs = set()
    for tier in ("private", "database", "public"):
        for key in subnets_by_tier[tier]:
            az = next(d.attributes["az"] for d in b.descriptors if d.key == key)
            if az not in seen_azs:
                seen_azs.add(az)
                interface_subnets.append(key)
        if interface_subnets:
            break

    for service in b.config.endpoint_services:
        if service in GATEWAY_ENDPOINT_SERVICES:
            attrs = {"service": service, "endpoint_type": "Gateway", "vpc": b.vpc_key, "route_tables": tables}
            deps = [b.vpc_key] + tables
        else:
            if not interface_subnets:
                raise ConfigurationError(f"Interface endpoint '{service}' needs at least one subnet")
            attrs = {"service": service, "endpoint_type": "Interface", "vpc": b.vpc_key, "subnets": interface_subnets}
            deps = [b.vpc_key] + interface_subnets
        b.add(f"endpoint/{service}", ResourceKind.ENDPOINT, b.resource_name(f"{service}-endpoint"), attrs, deps)
