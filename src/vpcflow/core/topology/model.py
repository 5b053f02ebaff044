# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

"""Typed network topology resources and their load-time validation.

A topology is an arena of :class:`Resource` entities indexed by their logical names. Attribute values are either
literals or :class:`Reference` objects pointing at another resource's attribute (`id` by default). References can be
nested in lists and dicts (e.g route entries of a route table).

Validation raises :class:`SchemaError` for unknown kinds, unresolved references, malformed CIDR blocks and for the
structural invariants of a two-tier (public/private) VPC:

    - exactly one VPC, subnets within its range and pairwise disjoint,
    - one public and one private subnet for each availability zone in use,
    - at most one internet gateway per VPC,
    - NAT gateways in public subnets, one per zone with private subnets, each with its own elastic IP,
    - one route table association per subnet,
    - public subnets egress through the internet gateway, private subnets through the NAT gateway of their own zone.
"""
import ipaddress
import logging
from collections import defaultdict
from enum import Enum, unique
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from vpcflow.core.entity import CoreData
from vpcflow.core.errors import SchemaError

module_logger = logging.getLogger(__name__)

DEFAULT_ROUTE_CIDR = "0.0.0.0/0"
REFERENCE_KEY = "$ref"


@unique
class ResourceKind(str, Enum):
    VPC = "vpc"
    SUBNET = "subnet"
    INTERNET_GATEWAY = "internet_gateway"
    ELASTIC_IP = "elastic_ip"
    NAT_GATEWAY = "nat_gateway"
    ROUTE_TABLE = "route_table"
    ROUTE_TABLE_ASSOCIATION = "route_table_association"


@unique
class ReplaceStrategy(str, Enum):
    # new object can coexist with the old one
    CREATE_BEFORE_DESTROY = "create_before_destroy"
    # new object would conflict with the old one (unique CIDR, single attachment, etc)
    DESTROY_BEFORE_CREATE = "destroy_before_create"


@unique
class Visibility(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"


class KindSpec(CoreData):
    def __init__(
        self,
        kind: ResourceKind,
        required: Sequence[str] = (),
        immutable: Sequence[str] = (),
        implied_dependencies: Sequence[ResourceKind] = (),
        replace_strategy: ReplaceStrategy = ReplaceStrategy.DESTROY_BEFORE_CREATE,
        taggable: bool = True,
    ) -> None:
        self.kind = kind
        self.required = tuple(required)
        self.immutable = frozenset(immutable)
        self.implied_dependencies = tuple(implied_dependencies)
        self.replace_strategy = replace_strategy
        self.taggable = taggable


KIND_SPECS: Dict[ResourceKind, KindSpec] = {
    ResourceKind.VPC: KindSpec(ResourceKind.VPC, required=["cidr_block"], immutable=["cidr_block"]),
    ResourceKind.SUBNET: KindSpec(
        ResourceKind.SUBNET,
        required=["vpc_id", "cidr_block", "availability_zone", "visibility"],
        immutable=["vpc_id", "cidr_block", "availability_zone", "visibility"],
    ),
    ResourceKind.INTERNET_GATEWAY: KindSpec(ResourceKind.INTERNET_GATEWAY, required=["vpc_id"], immutable=["vpc_id"]),
    ResourceKind.ELASTIC_IP: KindSpec(
        ResourceKind.ELASTIC_IP, immutable=["domain"], replace_strategy=ReplaceStrategy.CREATE_BEFORE_DESTROY
    ),
    # the provider requires the VPC to have an attached internet gateway before a public NAT gateway can be created,
    # even though no attribute of the NAT gateway refers to it.
    ResourceKind.NAT_GATEWAY: KindSpec(
        ResourceKind.NAT_GATEWAY,
        required=["allocation_id", "subnet_id"],
        immutable=["allocation_id", "subnet_id"],
        implied_dependencies=[ResourceKind.INTERNET_GATEWAY],
    ),
    ResourceKind.ROUTE_TABLE: KindSpec(
        ResourceKind.ROUTE_TABLE,
        required=["vpc_id"],
        immutable=["vpc_id"],
        replace_strategy=ReplaceStrategy.CREATE_BEFORE_DESTROY,
    ),
    ResourceKind.ROUTE_TABLE_ASSOCIATION: KindSpec(
        ResourceKind.ROUTE_TABLE_ASSOCIATION,
        required=["subnet_id", "route_table_id"],
        immutable=["subnet_id", "route_table_id"],
        taggable=False,
    ),
}

# attribute name -> kind of the resource it must refer to
REFERENCE_ATTRIBUTE_KINDS: Dict[str, ResourceKind] = {
    "vpc_id": ResourceKind.VPC,
    "subnet_id": ResourceKind.SUBNET,
    "allocation_id": ResourceKind.ELASTIC_IP,
    "route_table_id": ResourceKind.ROUTE_TABLE,
    "gateway_id": ResourceKind.INTERNET_GATEWAY,
    "nat_gateway_id": ResourceKind.NAT_GATEWAY,
}

ROUTE_TARGET_ATTRIBUTES = ("gateway_id", "nat_gateway_id")


def parse_kind(kind: Any) -> ResourceKind:
    try:
        return ResourceKind(kind)
    except ValueError:
        raise SchemaError(f"Unknown resource kind {kind!r}! Supported kinds: {[k.value for k in ResourceKind]}")


def kind_spec(kind: ResourceKind) -> KindSpec:
    return KIND_SPECS[ResourceKind(kind)]


def parse_cidr(value: Any, context: str) -> ipaddress.IPv4Network:
    if not isinstance(value, str):
        raise SchemaError(f"{context}: CIDR block must be a string, got {value!r}")
    try:
        network = ipaddress.ip_network(value, strict=True)
    except ValueError as error:
        raise SchemaError(f"{context}: malformed CIDR block {value!r} ({error})")
    if not isinstance(network, ipaddress.IPv4Network):
        raise SchemaError(f"{context}: only IPv4 CIDR blocks are supported, got {value!r}")
    return network


class Reference(CoreData):
    """Symbolic pointer to an attribute of another resource in the same topology."""

    def __init__(self, target: str, attribute: str = "id") -> None:
        self.target = target
        self.attribute = attribute

    def to_dict(self) -> Dict[str, str]:
        return {REFERENCE_KEY: self.target if self.attribute == "id" else f"{self.target}.{self.attribute}"}

    @classmethod
    def parse(cls, value: str) -> "Reference":
        target, _, attribute = value.partition(".")
        if not target:
            raise SchemaError(f"Malformed reference {value!r}")
        return Reference(target, attribute or "id")


def map_references(value: Any, func: Callable[[Reference], Any]) -> Any:
    """Return a copy of `value` where each nested Reference is replaced with func(reference)."""
    if isinstance(value, Reference):
        return func(value)
    if isinstance(value, dict):
        return {key: map_references(item, func) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [map_references(item, func) for item in value]
    return value


def iter_references(value: Any) -> Iterator[Reference]:
    if isinstance(value, Reference):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_references(item)


def _encode(value: Any) -> Any:
    return map_references(value, lambda ref: ref.to_dict())


def _decode(value: Any) -> Any:
    if isinstance(value, dict):
        if set(value.keys()) == {REFERENCE_KEY}:
            return Reference.parse(value[REFERENCE_KEY])
        return {key: _decode(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_decode(item) for item in value]
    return value


class Resource(CoreData):
    def __init__(
        self, name: str, kind: ResourceKind, attributes: Optional[Dict[str, Any]] = None, depends_on: Optional[Sequence[str]] = None
    ) -> None:
        if not name or not isinstance(name, str):
            raise SchemaError(f"Resource name must be a non-empty string, got {name!r}")
        self.name = name
        self.kind = parse_kind(kind)
        self.attributes = dict(attributes or {})
        self.depends_on = list(depends_on or [])

    @property
    def spec(self) -> KindSpec:
        return KIND_SPECS[self.kind]

    def get(self, attribute: str, default: Any = None) -> Any:
        return self.attributes.get(attribute, default)

    def references(self) -> List[Reference]:
        return list(iter_references(self.attributes))

    def ref(self, attribute: str = "id") -> Reference:
        return Reference(self.name, attribute)

    def to_dict(self) -> Dict[str, Any]:
        data = {"name": self.name, "kind": self.kind.value, "attributes": _encode(self.attributes)}
        if self.depends_on:
            data["depends_on"] = list(self.depends_on)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Resource":
        if not isinstance(data, dict):
            raise SchemaError(f"Resource declaration must be a mapping, got {data!r}")
        return Resource(data.get("name"), data.get("kind"), _decode(data.get("attributes", {})), data.get("depends_on"))


class Topology:
    """Arena of declared resources indexed by logical name (insertion order is preserved)."""

    def __init__(self, resources: Iterable[Resource] = ()) -> None:
        self._resources: Dict[str, Resource] = dict()
        for resource in resources:
            self.add(resource)

    def add(self, resource: Resource) -> Resource:
        if resource.name in self._resources:
            raise SchemaError(f"Duplicate resource name {resource.name!r}")
        self._resources[resource.name] = resource
        return resource

    def get(self, name: str) -> Optional[Resource]:
        return self._resources.get(name)

    def __getitem__(self, name: str) -> Resource:
        return self._resources[name]

    def __contains__(self, name: str) -> bool:
        return name in self._resources

    def __iter__(self) -> Iterator[Resource]:
        return iter(self._resources.values())

    def __len__(self) -> int:
        return len(self._resources)

    def names(self) -> List[str]:
        return list(self._resources.keys())

    def of_kind(self, kind: ResourceKind) -> List[Resource]:
        return [resource for resource in self._resources.values() if resource.kind == kind]

    def resolve(self, reference: Reference) -> Resource:
        resource = self._resources.get(reference.target)
        if resource is None:
            raise SchemaError(f"Unresolved reference to {reference.target!r}")
        return resource

    def owning_vpc(self, resource: Resource) -> Optional[Resource]:
        """Follow references until a VPC is reached."""
        visited: Set[str] = set()
        pending = [resource]
        while pending:
            current = pending.pop(0)
            if current.kind == ResourceKind.VPC:
                return current
            if current.name in visited:
                continue
            visited.add(current.name)
            for reference in current.references():
                target = self._resources.get(reference.target)
                if target is not None:
                    pending.append(target)
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {"resources": [resource.to_dict() for resource in self]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Topology":
        if not isinstance(data, dict) or not isinstance(data.get("resources"), list):
            raise SchemaError("Topology declaration must be a mapping with a 'resources' list")
        return Topology(Resource.from_dict(item) for item in data["resources"])

    # Validation
    def validate(self) -> "Topology":
        for resource in self:
            self._validate_resource(resource)
        self._validate_network()
        return self

    def _validate_resource(self, resource: Resource) -> None:
        context = f"{resource.kind.value} {resource.name!r}"
        for attribute in resource.spec.required:
            if resource.attributes.get(attribute) is None:
                raise SchemaError(f"{context}: missing required attribute {attribute!r}")

        for reference in resource.references():
            if reference.target not in self._resources:
                raise SchemaError(f"{context}: unresolved reference to {reference.target!r}")
            if reference.target == resource.name:
                raise SchemaError(f"{context}: refers to itself")
        for dependency in resource.depends_on:
            if dependency not in self._resources:
                raise SchemaError(f"{context}: depends on undeclared resource {dependency!r}")

        for attribute, value in resource.attributes.items():
            self._check_reference_kind(context, attribute, value)

        if "cidr_block" in resource.attributes:
            parse_cidr(resource.attributes["cidr_block"], context)

        if resource.kind == ResourceKind.SUBNET:
            visibility = resource.get("visibility")
            if visibility not in [v.value for v in Visibility]:
                raise SchemaError(f"{context}: visibility must be one of {[v.value for v in Visibility]}, got {visibility!r}")
        elif resource.kind == ResourceKind.ROUTE_TABLE:
            self._validate_routes(context, resource.get("routes", []))

        tags = resource.attributes.get("tags")
        if tags is not None:
            if not resource.spec.taggable:
                raise SchemaError(f"{context}: resource kind does not support tags")
            if not isinstance(tags, dict) or not all(isinstance(k, str) and isinstance(v, str) for k, v in tags.items()):
                raise SchemaError(f"{context}: tags must be a mapping of strings")

    def _check_reference_kind(self, context: str, attribute: str, value: Any) -> None:
        expected_kind = REFERENCE_ATTRIBUTE_KINDS.get(attribute)
        if expected_kind is None:
            return
        if not isinstance(value, Reference):
            raise SchemaError(f"{context}: attribute {attribute!r} must refer to a declared {expected_kind.value}")
        target = self._resources[value.target]
        if target.kind != expected_kind:
            raise SchemaError(
                f"{context}: attribute {attribute!r} must refer to a {expected_kind.value}, "
                f"but {target.name!r} is a {target.kind.value}"
            )

    def _validate_routes(self, context: str, routes: Any) -> None:
        if not isinstance(routes, list):
            raise SchemaError(f"{context}: routes must be a list")
        destinations: Set[str] = set()
        for route in routes:
            if not isinstance(route, dict):
                raise SchemaError(f"{context}: route entries must be mappings, got {route!r}")
            destination = route.get("destination_cidr_block")
            parse_cidr(destination, f"{context} route")
            if destination in destinations:
                raise SchemaError(f"{context}: duplicate route for {destination!r}")
            destinations.add(destination)
            targets = [attr for attr in ROUTE_TARGET_ATTRIBUTES if route.get(attr) is not None]
            if len(targets) != 1:
                raise SchemaError(f"{context}: route {destination!r} must have exactly one of {list(ROUTE_TARGET_ATTRIBUTES)}")
            for attribute in targets:
                self._check_reference_kind(f"{context} route {destination!r}", attribute, route[attribute])

    def _validate_network(self) -> None:
        vpcs = self.of_kind(ResourceKind.VPC)
        if len(vpcs) != 1:
            raise SchemaError(f"Topology must declare exactly one VPC, found {len(vpcs)}")
        vpc = vpcs[0]
        vpc_network = parse_cidr(vpc.get("cidr_block"), f"vpc {vpc.name!r}")

        subnets = self.of_kind(ResourceKind.SUBNET)
        subnet_networks: List[Tuple[Resource, ipaddress.IPv4Network]] = []
        zones: Dict[str, Dict[str, List[str]]] = defaultdict(lambda: defaultdict(list))
        for subnet in subnets:
            network = parse_cidr(subnet.get("cidr_block"), f"subnet {subnet.name!r}")
            if not network.subnet_of(vpc_network):
                raise SchemaError(f"subnet {subnet.name!r}: CIDR {network} is not within VPC CIDR {vpc_network}")
            for sibling, sibling_network in subnet_networks:
                if network.overlaps(sibling_network):
                    raise SchemaError(
                        f"subnet {subnet.name!r}: CIDR {network} overlaps with subnet {sibling.name!r} ({sibling_network})"
                    )
            subnet_networks.append((subnet, network))
            zones[subnet.get("availability_zone")][subnet.get("visibility")].append(subnet.name)

        for zone, roles in zones.items():
            for visibility in Visibility:
                if len(roles.get(visibility.value, [])) != 1:
                    raise SchemaError(
                        f"availability zone {zone!r} must have exactly one {visibility.value} subnet, "
                        f"found {roles.get(visibility.value, [])}"
                    )

        igws_per_vpc: Dict[str, int] = defaultdict(int)
        for igw in self.of_kind(ResourceKind.INTERNET_GATEWAY):
            igws_per_vpc[igw.get("vpc_id").target] += 1
        for vpc_name, count in igws_per_vpc.items():
            if count > 1:
                raise SchemaError(f"vpc {vpc_name!r}: at most one internet gateway can be attached, found {count}")

        nat_zone: Dict[str, str] = dict()
        nats_per_zone: Dict[str, List[str]] = defaultdict(list)
        eip_owner: Dict[str, str] = dict()
        for nat in self.of_kind(ResourceKind.NAT_GATEWAY):
            subnet = self.resolve(nat.get("subnet_id"))
            if subnet.get("visibility") != Visibility.PUBLIC.value:
                raise SchemaError(f"nat_gateway {nat.name!r}: must be placed in a public subnet, {subnet.name!r} is private")
            eip_name = nat.get("allocation_id").target
            if eip_name in eip_owner:
                raise SchemaError(f"nat_gateway {nat.name!r}: elastic IP {eip_name!r} is already bound to {eip_owner[eip_name]!r}")
            eip_owner[eip_name] = nat.name
            zone = subnet.get("availability_zone")
            nat_zone[nat.name] = zone
            nats_per_zone[zone].append(nat.name)

        for zone, roles in zones.items():
            if roles.get(Visibility.PRIVATE.value) and len(nats_per_zone.get(zone, [])) != 1:
                raise SchemaError(
                    f"availability zone {zone!r} must have exactly one NAT gateway for private egress, "
                    f"found {nats_per_zone.get(zone, [])}"
                )

        associations: Dict[str, List[Resource]] = defaultdict(list)
        for association in self.of_kind(ResourceKind.ROUTE_TABLE_ASSOCIATION):
            associations[association.get("subnet_id").target].append(association)

        for subnet in subnets:
            subnet_associations = associations.get(subnet.name, [])
            if len(subnet_associations) != 1:
                raise SchemaError(
                    f"subnet {subnet.name!r} must have exactly one route table association, "
                    f"found {[a.name for a in subnet_associations]}"
                )
            route_table = self.resolve(subnet_associations[0].get("route_table_id"))
            self._validate_egress(subnet, route_table, nat_zone)

    def _validate_egress(self, subnet: Resource, route_table: Resource, nat_zone: Dict[str, str]) -> None:
        context = f"subnet {subnet.name!r} (route table {route_table.name!r})"
        default_route = next(
            (route for route in route_table.get("routes", []) if route.get("destination_cidr_block") == DEFAULT_ROUTE_CIDR), None
        )
        if default_route is None:
            raise SchemaError(f"{context}: no default route ({DEFAULT_ROUTE_CIDR})")

        if subnet.get("visibility") == Visibility.PUBLIC.value:
            if default_route.get("gateway_id") is None:
                raise SchemaError(f"{context}: public subnets must route {DEFAULT_ROUTE_CIDR} to the internet gateway")
        else:
            nat_reference = default_route.get("nat_gateway_id")
            if nat_reference is None:
                raise SchemaError(f"{context}: private subnets must route {DEFAULT_ROUTE_CIDR} to a NAT gateway")
            zone = subnet.get("availability_zone")
            if nat_zone.get(nat_reference.target) != zone:
                raise SchemaError(
                    f"{context}: routes to NAT gateway {nat_reference.target!r} in zone "
                    f"{nat_zone.get(nat_reference.target)!r} but the subnet is in {zone!r} (cross-zone NAT)"
                )
