# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

"""Declares the two-tier VPC layout used as the network foundation of an EKS cluster.

For each availability zone a public subnet (with a NAT gateway and its elastic IP) and a private subnet are declared.
Public subnets share one route table with a default route to the internet gateway, each private subnet gets its own
route table with a default route to the NAT gateway of its zone.
"""
from typing import Dict, Optional, Sequence

from vpcflow.core.entity import CoreData
from vpcflow.core.errors import SchemaError
from vpcflow.core.topology.model import DEFAULT_ROUTE_CIDR, Resource, ResourceKind, Topology, Visibility


class ZoneLayout(CoreData):
    def __init__(self, availability_zone: str, public_cidr: str, private_cidr: str) -> None:
        self.availability_zone = availability_zone
        self.public_cidr = public_cidr
        self.private_cidr = private_cidr


def two_tier_topology(
    vpc_cidr: str,
    zones: Sequence[ZoneLayout],
    enable_dns_support: bool = True,
    enable_dns_hostnames: bool = True,
    map_public_ip_on_launch: bool = True,
    tags: Optional[Dict[str, str]] = None,
) -> Topology:
    if not zones:
        raise SchemaError("At least one availability zone layout is required")

    topology = Topology()
    extra_tags = dict(tags or {})

    def _add(name: str, kind: ResourceKind, attributes: Dict) -> Resource:
        if extra_tags and kind != ResourceKind.ROUTE_TABLE_ASSOCIATION:
            attributes["tags"] = dict(extra_tags)
        return topology.add(Resource(name, kind, attributes))

    vpc = _add(
        "vpc",
        ResourceKind.VPC,
        {"cidr_block": vpc_cidr, "enable_dns_support": enable_dns_support, "enable_dns_hostnames": enable_dns_hostnames},
    )
    igw = _add("igw", ResourceKind.INTERNET_GATEWAY, {"vpc_id": vpc.ref()})
    public_route_table = _add(
        "public-rt",
        ResourceKind.ROUTE_TABLE,
        {"vpc_id": vpc.ref(), "routes": [{"destination_cidr_block": DEFAULT_ROUTE_CIDR, "gateway_id": igw.ref()}]},
    )

    for zone in zones:
        az = zone.availability_zone
        public_subnet = _add(
            f"public-{az}",
            ResourceKind.SUBNET,
            {
                "vpc_id": vpc.ref(),
                "cidr_block": zone.public_cidr,
                "availability_zone": az,
                "visibility": Visibility.PUBLIC.value,
                "map_public_ip_on_launch": map_public_ip_on_launch,
            },
        )
        private_subnet = _add(
            f"private-{az}",
            ResourceKind.SUBNET,
            {
                "vpc_id": vpc.ref(),
                "cidr_block": zone.private_cidr,
                "availability_zone": az,
                "visibility": Visibility.PRIVATE.value,
                "map_public_ip_on_launch": False,
            },
        )
        eip = _add(f"eip-{az}", ResourceKind.ELASTIC_IP, {"domain": "vpc"})
        nat = _add(f"nat-{az}", ResourceKind.NAT_GATEWAY, {"allocation_id": eip.ref(), "subnet_id": public_subnet.ref()})
        private_route_table = _add(
            f"private-rt-{az}",
            ResourceKind.ROUTE_TABLE,
            {"vpc_id": vpc.ref(), "routes": [{"destination_cidr_block": DEFAULT_ROUTE_CIDR, "nat_gateway_id": nat.ref()}]},
        )
        _add(
            f"public-rta-{az}",
            ResourceKind.ROUTE_TABLE_ASSOCIATION,
            {"subnet_id": public_subnet.ref(), "route_table_id": public_route_table.ref()},
        )
        _add(
            f"private-rta-{az}",
            ResourceKind.ROUTE_TABLE_ASSOCIATION,
            {"subnet_id": private_subnet.ref(), "route_table_id": private_route_table.ref()},
        )

    return topology
