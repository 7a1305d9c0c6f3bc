import copy
from typing import Callable, Dict, List, Optional

import pytest

from vpcplan.config import parse_config
from vpcplan.descriptors.models import ResourceDescriptor, ResourceKind
from vpcplan.provider.base import Provider
from vpcplan.retry import RetryPolicy

ID_PREFIX = {
    ResourceKind.VPC: "vpc",
    ResourceKind.SUBNET: "subnet",
    ResourceKind.ROUTE_TABLE: "rtb",
    ResourceKind.SECURITY_GROUP: "sg",
    ResourceKind.ENDPOINT: "vpce",
}

EXAMPLE_CONFIG = {
    "vpc": {"name": "demo", "cidr": "10.0.0.0/16", "region": "us-west-2"},
    "availability_zones": ["us-west-2a", "us-west-2b"],
    "subnets": {
        "public": [
            {"name": "public-1", "cidr": "10.0.1.0/24", "az": "us-west-2a"},
            {"name": "public-2", "cidr": "10.0.2.0/24", "az": "us-west-2b"},
        ],
    },
    "admin_cidr": "203.0.113.0/24",
    "tags": {"environment": "test", "owner": "netops", "cost_center": "cc-42"},
}


class FakeProvider(Provider):
    """In-memory provider recording every call."""

    def __init__(self):
        self.resources: Dict[str, Dict] = {}
        self.create_calls: List[str] = []
        self.delete_calls: List[str] = []
        self.lookup_calls: List[str] = []
        self.configure_calls: List[str] = []
        self.create_failures: Dict[str, List[Exception]] = {}
        self.configure_failures: Dict[str, List[Exception]] = {}
        self.on_create: Optional[Callable[[ResourceDescriptor], None]] = None
        self._counter = 0

    def add_existing(self, descriptor: ResourceDescriptor, vpc_id: Optional[str] = None) -> str:
        self._counter += 1
        resource_id = f"{self._prefix(descriptor)}-{self._counter:04d}"
        self.resources[resource_id] = {
            "kind": descriptor.kind,
            "key": descriptor.key,
            "tags": dict(descriptor.tags),
            "vpc_id": vpc_id,
        }
        return resource_id

    @staticmethod
    def _prefix(descriptor: ResourceDescriptor) -> str:
        if descriptor.kind == ResourceKind.GATEWAY:
            return "nat" if descriptor.attributes["gateway_type"] == "nat" else "igw"
        return ID_PREFIX[descriptor.kind]

    def find_by_tags(self, descriptor, tags, vpc_id=None):
        self.lookup_calls.append(descriptor.key)
        return [
            resource_id for resource_id, resource in self.resources.items()
            if resource["kind"] == descriptor.kind
            and all(resource["tags"].get(k) == v for k, v in tags.items())
            and (vpc_id is None or resource["vpc_id"] == vpc_id)
        ]

    def create(self, descriptor, refs):
        self.create_calls.append(descriptor.key)
        pending = self.create_failures.get(descriptor.key)
        if pending:
            raise pending.pop(0)

        vpc_id = None if descriptor.kind == ResourceKind.VPC else refs[descriptor.attributes["vpc"]]
        resource_id = self.add_existing(descriptor, vpc_id)
        if descriptor.kind == ResourceKind.VPC:
            self.resources[resource_id]["vpc_id"] = resource_id
        if self.on_create:
            self.on_create(descriptor)
        return resource_id

    def configure(self, descriptor, resource_id, refs):
        self.configure_calls.append(descriptor.key)
        pending = self.configure_failures.get(descriptor.key)
        if pending:
            raise pending.pop(0)

    def delete(self, descriptor, resource_id, refs):
        self.delete_calls.append(descriptor.key)
        del self.resources[resource_id]


@pytest.fixture
def example_data():
    return copy.deepcopy(EXAMPLE_CONFIG)


@pytest.fixture
def example_config(example_data):
    return parse_config(example_data)


@pytest.fixture
def full_data(example_data):
    data = example_data
    data["subnets"]["private"] = [
        {"name": "private-1", "cidr": "10.0.11.0/24", "az": "us-west-2a"},
        {"name": "private-2", "cidr": "10.0.12.0/24", "az": "us-west-2b"},
    ]
    data["subnets"]["database"] = [
        {"name": "db-1", "cidr": "10.0.21.0/24", "az": "us-west-2a"},
        {"name": "db-2", "cidr": "10.0.22.0/24", "az": "us-west-2b"},
    ]
    data["enable_vpc_endpoints"] = True
    return data


@pytest.fixture
def full_config(full_data):
    return parse_config(full_data)


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def no_sleep_retry():
    sleeps: List[float] = []
    policy = RetryPolicy(sleep=sleeps.append)
    policy.sleeps = sleeps
    return policy


@pytest.fixture
def vpcplan_home(tmp_path, monkeypatch):
    monkeypatch.setenv("VPCPLAN_HOME", str(tmp_path / "home"))
    return tmp_path / "home"
