"""
AWS EC2 provider built on boto3.
"""

import logging
import time
from typing import Any, Dict, List, Optional, Set, Tuple

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from ..descriptors.models import ResourceDescriptor, ResourceKind
from ..errors import FatalProviderError, TransientProviderError
from ..tags import tag_filters, to_aws_tags
from .base import Provider, resolve
from .classify import ProviderErrorClassifier

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30
LIVE_NAT_STATES = ["pending", "available"]
LIVE_ENDPOINT_STATES = ["pendingAcceptance", "pending", "available"]
ALLOW_ALL_EGRESS = ("-1", None, None, "0.0.0.0/0")


def make_ec2_client(region: str, profile: Optional[str] = None,
                    timeout: int = DEFAULT_TIMEOUT_SECONDS):
    """
    Create an EC2 client with bounded timeouts and botocore retries disabled.

    Retries are owned by vpcplan's RetryPolicy so attempts are counted once.
    """
    session = boto3.Session(profile_name=profile, region_name=region)
    config = Config(
        connect_timeout=timeout,
        read_timeout=timeout,
        retries={"total_max_attempts": 1, "mode": "standard"},
    )
    return session.client("ec2", region_name=region, config=config)


class AwsProvider(Provider):
    """
    Provider that creates VPC resources through the EC2 API.

    Args:
        client: EC2 client handle (see make_ec2_client)
        region: Region used for endpoint service names; defaults to the client's
        poll_interval: Seconds between NAT gateway deletion polls
        poll_attempts: Polls before giving up on NAT gateway deletion
    """

    def __init__(self, client, region: Optional[str] = None,
                 poll_interval: float = 15.0, poll_attempts: int = 40,
                 classifier: Optional[ProviderErrorClassifier] = None):
        self._ec2 = client
        self.region = region or client.meta.region_name
        self.poll_interval = poll_interval
        self.poll_attempts = poll_attempts
        self.classifier = classifier or ProviderErrorClassifier()

    def _call(self, operation: str, **kwargs) -> Dict[str, Any]:
        logger.debug(f"ec2.{operation}({sorted(kwargs)})")
        try:
            return getattr(self._ec2, operation)(**kwargs)
        except (ClientError, BotoCoreError) as e:
            raise self.classifier.to_provider_error(e, operation) from e

    def _wait(self, waiter_name: str, **kwargs) -> None:
        try:
            self._ec2.get_waiter(waiter_name).wait(**kwargs)
        except (ClientError, BotoCoreError) as e:
            raise self.classifier.to_provider_error(e, waiter_name) from e

    @staticmethod
    def _tag_spec(resource_type: str, descriptor: ResourceDescriptor) -> List[Dict[str, Any]]:
        return [{"ResourceType": resource_type, "Tags": to_aws_tags(dict(descriptor.tags))}]

    # Lookup

    def find_by_tags(self, descriptor: ResourceDescriptor, tags: Dict[str, str],
                     vpc_id: Optional[str] = None) -> List[str]:
        filters = tag_filters(tags)
        scope = [{"Name": "vpc-id", "Values": [vpc_id]}] if vpc_id else []
        kind = descriptor.kind

        if kind == ResourceKind.VPC:
            response = self._call("describe_vpcs", Filters=filters)
            return [vpc["VpcId"] for vpc in response.get("Vpcs", [])]

        if kind == ResourceKind.SUBNET:
            response = self._call("describe_subnets", Filters=filters + scope)
            return [subnet["SubnetId"] for subnet in response.get("Subnets", [])]

        if kind == ResourceKind.GATEWAY:
            if descriptor.attributes["gateway_type"] == "nat":
                response = self._call("describe_nat_gateways", Filter=filters + scope + [
                    {"Name": "state", "Values": LIVE_NAT_STATES},
                ])
                return [nat["NatGatewayId"] for nat in response.get("NatGateways", [])]
            # Not scoped by attachment: a gateway left detached by an interrupted
            # run must still be found. configure() attaches it.
            response = self._call("describe_internet_gateways", Filters=filters)
            return [gateway["InternetGatewayId"] for gateway in response.get("InternetGateways", [])]

        if kind == ResourceKind.ROUTE_TABLE:
            response = self._call("describe_route_tables", Filters=filters + scope)
            return [table["RouteTableId"] for table in response.get("RouteTables", [])]

        if kind == ResourceKind.SECURITY_GROUP:
            response = self._call("describe_security_groups", Filters=filters + scope)
            return [group["GroupId"] for group in response.get("SecurityGroups", [])]

        if kind == ResourceKind.ENDPOINT:
            response = self._call("describe_vpc_endpoints", Filters=filters + scope + [
                {"Name": "vpc-endpoint-state", "Values": LIVE_ENDPOINT_STATES},
            ])
            return [endpoint["VpcEndpointId"] for endpoint in response.get("VpcEndpoints", [])]

        raise FatalProviderError(f"Unsupported resource kind {kind.value}", code="UnsupportedKind")

    # Create
    #
    # Each creator makes exactly one resource-creating call. Everything that
    # follows it (attributes, attachments, routes, rules) lives in configure(),
    # which the executor retries on its own and also runs on reuse.

    def create(self, descriptor: ResourceDescriptor, refs: Dict[str, str]) -> str:
        creators = {
            ResourceKind.VPC: self._create_vpc,
            ResourceKind.SUBNET: self._create_subnet,
            ResourceKind.GATEWAY: self._create_gateway,
            ResourceKind.ROUTE_TABLE: self._create_route_table,
            ResourceKind.SECURITY_GROUP: self._create_security_group,
            ResourceKind.ENDPOINT: self._create_endpoint,
        }
        resource_id = creators[descriptor.kind](descriptor, refs)
        logger.info(f"Created {descriptor.label}: {resource_id}")
        return resource_id

    def _create_vpc(self, descriptor: ResourceDescriptor, refs: Dict[str, str]) -> str:
        response = self._call("create_vpc", CidrBlock=descriptor.attributes["cidr"],
                              TagSpecifications=self._tag_spec("vpc", descriptor))
        return response["Vpc"]["VpcId"]

    def _create_subnet(self, descriptor: ResourceDescriptor, refs: Dict[str, str]) -> str:
        attrs = descriptor.attributes
        response = self._call(
            "create_subnet",
            VpcId=resolve(refs, attrs["vpc"], descriptor),
            CidrBlock=attrs["cidr"],
            AvailabilityZone=attrs["az"],
            TagSpecifications=self._tag_spec("subnet", descriptor),
        )
        return response["Subnet"]["SubnetId"]

    def _create_gateway(self, descriptor: ResourceDescriptor, refs: Dict[str, str]) -> str:
        if descriptor.attributes["gateway_type"] == "nat":
            return self._create_nat_gateway(descriptor, refs)

        response = self._call("create_internet_gateway",
                              TagSpecifications=self._tag_spec("internet-gateway", descriptor))
        return response["InternetGateway"]["InternetGatewayId"]

    def _find_free_address(self, descriptor: ResourceDescriptor) -> Optional[str]:
        """Reuse an address left behind by an interrupted NAT gateway create."""
        response = self._call("describe_addresses", Filters=tag_filters(dict(descriptor.tags)))
        for address in response.get("Addresses", []):
            if not address.get("AssociationId"):
                return address["AllocationId"]
        return None

    def _create_nat_gateway(self, descriptor: ResourceDescriptor, refs: Dict[str, str]) -> str:
        allocation_id = self._find_free_address(descriptor)
        if allocation_id is None:
            address = self._call("allocate_address", Domain="vpc",
                                 TagSpecifications=self._tag_spec("elastic-ip", descriptor))
            allocation_id = address["AllocationId"]
            logger.info(f"Allocated Elastic IP {allocation_id} for {descriptor.label}")

        response = self._call(
            "create_nat_gateway",
            SubnetId=resolve(refs, descriptor.attributes["subnet"], descriptor),
            AllocationId=allocation_id,
            TagSpecifications=self._tag_spec("natgateway", descriptor),
        )
        return response["NatGateway"]["NatGatewayId"]

    def _create_route_table(self, descriptor: ResourceDescriptor, refs: Dict[str, str]) -> str:
        response = self._call("create_route_table",
                              VpcId=resolve(refs, descriptor.attributes["vpc"], descriptor),
                              TagSpecifications=self._tag_spec("route-table", descriptor))
        return response["RouteTable"]["RouteTableId"]

    def _create_security_group(self, descriptor: ResourceDescriptor, refs: Dict[str, str]) -> str:
        attrs = descriptor.attributes
        response = self._call(
            "create_security_group",
            GroupName=attrs["group_name"],
            Description=attrs["description"],
            VpcId=resolve(refs, attrs["vpc"], descriptor),
            TagSpecifications=self._tag_spec("security-group", descriptor),
        )
        return response["GroupId"]

    def _create_endpoint(self, descriptor: ResourceDescriptor, refs: Dict[str, str]) -> str:
        attrs = descriptor.attributes
        kwargs: Dict[str, Any] = {
            "VpcEndpointType": attrs["endpoint_type"],
            "VpcId": resolve(refs, attrs["vpc"], descriptor),
            "ServiceName": f"com.amazonaws.{self.region}.{attrs['service']}",
            "TagSpecifications": self._tag_spec("vpc-endpoint", descriptor),
        }
        if attrs["endpoint_type"] == "Gateway":
            kwargs["RouteTableIds"] = [resolve(refs, key, descriptor) for key in attrs.get("route_tables", ())]
        else:
            kwargs["SubnetIds"] = [resolve(refs, key, descriptor) for key in attrs.get("subnets", ())]
            kwargs["PrivateDnsEnabled"] = True

        response = self._call("create_vpc_endpoint", **kwargs)
        return response["VpcEndpoint"]["VpcEndpointId"]

    # Configure

    def configure(self, descriptor: ResourceDescriptor, resource_id: str, refs: Dict[str, str]) -> None:
        configurers = {
            ResourceKind.VPC: self._configure_vpc,
            ResourceKind.SUBNET: self._configure_subnet,
            ResourceKind.GATEWAY: self._configure_gateway,
            ResourceKind.ROUTE_TABLE: self._configure_route_table,
            ResourceKind.SECURITY_GROUP: self._configure_security_group,
        }
        configurer = configurers.get(descriptor.kind)
        if configurer is not None:
            configurer(descriptor, resource_id, refs)

    def _configure_vpc(self, descriptor: ResourceDescriptor, vpc_id: str, refs: Dict[str, str]) -> None:
        self._wait("vpc_available", VpcIds=[vpc_id])
        if descriptor.attributes.get("enable_dns", True):
            # One attribute per call
            self._call("modify_vpc_attribute", VpcId=vpc_id, EnableDnsSupport={"Value": True})
            self._call("modify_vpc_attribute", VpcId=vpc_id, EnableDnsHostnames={"Value": True})

    def _configure_subnet(self, descriptor: ResourceDescriptor, subnet_id: str, refs: Dict[str, str]) -> None:
        if descriptor.attributes.get("map_public_ip"):
            self._call("modify_subnet_attribute", SubnetId=subnet_id, MapPublicIpOnLaunch={"Value": True})

    def _configure_gateway(self, descriptor: ResourceDescriptor, gateway_id: str, refs: Dict[str, str]) -> None:
        attrs = descriptor.attributes
        if attrs["gateway_type"] == "nat":
            logger.info(f"Waiting for NAT gateway {gateway_id} to become available")
            self._wait("nat_gateway_available", NatGatewayIds=[gateway_id])
            return

        vpc_id = resolve(refs, attrs["vpc"], descriptor)
        response = self._call("describe_internet_gateways", InternetGatewayIds=[gateway_id])
        attached = [
            attachment["VpcId"]
            for gateway in response.get("InternetGateways", [])
            for attachment in gateway.get("Attachments", [])
            if attachment.get("State") != "detached"
        ]
        if vpc_id in attached:
            return
        if attached:
            raise FatalProviderError(
                f"Internet gateway {gateway_id} is attached to {attached[0]}, not {vpc_id}",
                code="Resource.AlreadyAssociated",
                hint="Detach the gateway or remove its vpcplan tags",
            )
        self._call("attach_internet_gateway", InternetGatewayId=gateway_id, VpcId=vpc_id)
        logger.info(f"Attached {gateway_id} to {vpc_id}")

    @staticmethod
    def _route_target(route: Dict[str, Any]) -> Optional[str]:
        return route.get("NatGatewayId") or route.get("GatewayId")

    def _configure_route_table(self, descriptor: ResourceDescriptor, table_id: str,
                               refs: Dict[str, str]) -> None:
        attrs = descriptor.attributes
        response = self._call("describe_route_tables", RouteTableIds=[table_id])
        tables = response.get("RouteTables", [])
        current = {
            route.get("DestinationCidrBlock"): route
            for table in tables for route in table.get("Routes", [])
        }
        associated = {
            association.get("SubnetId")
            for table in tables for association in table.get("Associations", [])
        }

        for route in attrs.get("routes", ()):
            target_id = resolve(refs, route["target"], descriptor)
            target_arg = "NatGatewayId" if route["target_type"] == "nat" else "GatewayId"
            existing = current.get(route["destination"])
            if existing is None:
                self._call("create_route", RouteTableId=table_id,
                           DestinationCidrBlock=route["destination"], **{target_arg: target_id})
            elif self._route_target(existing) != target_id or existing.get("State") == "blackhole":
                # Left pointing at a gateway from an earlier run
                self._call("replace_route", RouteTableId=table_id,
                           DestinationCidrBlock=route["destination"], **{target_arg: target_id})

        for subnet in attrs.get("subnets", ()):
            subnet_id = resolve(refs, subnet, descriptor)
            if subnet_id not in associated:
                self._call("associate_route_table", RouteTableId=table_id, SubnetId=subnet_id)

    def _ip_permissions(self, rules, descriptor: ResourceDescriptor, group_id: str,
                        refs: Dict[str, str]) -> List[Dict[str, Any]]:
        permissions = []
        for rule in rules:
            permission: Dict[str, Any] = {"IpProtocol": rule["protocol"]}
            if rule["protocol"] != "-1":
                permission["FromPort"] = rule["from_port"]
                permission["ToPort"] = rule["to_port"]

            description = {"Description": rule["description"]} if rule.get("description") else {}
            if "source_group" in rule:
                source = group_id if rule["source_group"] == descriptor.key else resolve(
                    refs, rule["source_group"], descriptor)
                permission["UserIdGroupPairs"] = [{"GroupId": source, **description}]
            else:
                permission["IpRanges"] = [{"CidrIp": rule["cidr"], **description}]
            permissions.append(permission)
        return permissions

    @staticmethod
    def _permission_keys(permissions) -> Set[Tuple]:
        """Flatten permissions to (protocol, from, to, source) tuples, ignoring descriptions."""
        keys = set()
        for permission in permissions:
            ports = (permission["IpProtocol"], permission.get("FromPort"), permission.get("ToPort"))
            for ip_range in permission.get("IpRanges", []):
                keys.add(ports + (ip_range["CidrIp"],))
            for pair in permission.get("UserIdGroupPairs", []):
                keys.add(ports + (pair["GroupId"],))
        return keys

    def _missing_permissions(self, wanted: List[Dict[str, Any]], current: Set[Tuple]) -> List[Dict[str, Any]]:
        return [p for p in wanted if not self._permission_keys([p]) <= current]

    def _configure_security_group(self, descriptor: ResourceDescriptor, group_id: str,
                                  refs: Dict[str, str]) -> None:
        attrs = descriptor.attributes
        response = self._call("describe_security_groups", GroupIds=[group_id])
        groups = response.get("SecurityGroups", [])
        ingress = self._permission_keys(p for g in groups for p in g.get("IpPermissions", []))
        egress = self._permission_keys(p for g in groups for p in g.get("IpPermissionsEgress", []))

        missing = self._missing_permissions(
            self._ip_permissions(attrs.get("ingress", ()), descriptor, group_id, refs), ingress)
        if missing:
            self._call("authorize_security_group_ingress", GroupId=group_id, IpPermissions=missing)

        if attrs.get("egress"):
            wanted = self._ip_permissions(attrs["egress"], descriptor, group_id, refs)
            if ALLOW_ALL_EGRESS in egress and ALLOW_ALL_EGRESS not in self._permission_keys(wanted):
                # Replace the default allow-all egress rule with the declared ones
                self._call("revoke_security_group_egress", GroupId=group_id, IpPermissions=[
                    {"IpProtocol": "-1", "IpRanges": [{"CidrIp": "0.0.0.0/0"}]},
                ])
            missing = self._missing_permissions(wanted, egress)
            if missing:
                self._call("authorize_security_group_egress", GroupId=group_id, IpPermissions=missing)

    # Delete

    def delete(self, descriptor: ResourceDescriptor, resource_id: str, refs: Dict[str, str]) -> None:
        kind = descriptor.kind

        if kind == ResourceKind.VPC:
            self._call("delete_vpc", VpcId=resource_id)
        elif kind == ResourceKind.SUBNET:
            self._call("delete_subnet", SubnetId=resource_id)
        elif kind == ResourceKind.GATEWAY:
            if descriptor.attributes["gateway_type"] == "nat":
                self._delete_nat_gateway(descriptor, resource_id)
            else:
                self._delete_internet_gateway(resource_id)
        elif kind == ResourceKind.ROUTE_TABLE:
            self._delete_route_table(resource_id)
        elif kind == ResourceKind.SECURITY_GROUP:
            self._call("delete_security_group", GroupId=resource_id)
        elif kind == ResourceKind.ENDPOINT:
            self._call("delete_vpc_endpoints", VpcEndpointIds=[resource_id])

        logger.info(f"Deleted {descriptor.label}: {resource_id}")

    def _delete_internet_gateway(self, igw_id: str) -> None:
        response = self._call("describe_internet_gateways", InternetGatewayIds=[igw_id])
        for gateway in response.get("InternetGateways", []):
            for attachment in gateway.get("Attachments", []):
                self._call("detach_internet_gateway", InternetGatewayId=igw_id,
                           VpcId=attachment["VpcId"])
        self._call("delete_internet_gateway", InternetGatewayId=igw_id)

    def _delete_nat_gateway(self, descriptor: ResourceDescriptor, nat_id: str) -> None:
        self._call("delete_nat_gateway", NatGatewayId=nat_id)

        # The address and subnet stay in use until the gateway is fully deleted
        for _ in range(self.poll_attempts):
            response = self._call("describe_nat_gateways", NatGatewayIds=[nat_id])
            states = [nat["State"] for nat in response.get("NatGateways", [])]
            if all(state == "deleted" for state in states):
                break
            time.sleep(self.poll_interval)
        else:
            raise TransientProviderError(f"NAT gateway {nat_id} was not deleted in time", code="WaiterTimeout")

        response = self._call("describe_addresses", Filters=tag_filters(dict(descriptor.tags)))
        for address in response.get("Addresses", []):
            self._call("release_address", AllocationId=address["AllocationId"])
            logger.info(f"Released Elastic IP {address['AllocationId']}")

    def _delete_route_table(self, table_id: str) -> None:
        response = self._call("describe_route_tables", RouteTableIds=[table_id])
        for table in response.get("RouteTables", []):
            for association in table.get("Associations", []):
                if not association.get("Main"):
                    self._call("disassociate_route_table",
                               AssociationId=association["RouteTableAssociationId"])
        self._call("delete_route_table", RouteTableId=table_id)
