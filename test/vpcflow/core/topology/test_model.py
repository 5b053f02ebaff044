# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

import json

import pytest

from vpcflow.core.errors import SchemaError
from vpcflow.core.topology.model import (
    KIND_SPECS,
    Reference,
    ReplaceStrategy,
    Resource,
    ResourceKind,
    Topology,
    iter_references,
    map_references,
)


def _without(topology: Topology, *names: str) -> Topology:
    return Topology.from_dict({"resources": [r for r in topology.to_dict()["resources"] if r["name"] not in names]})


class TestTopologyModel:
    def test_two_zone_layout_is_valid(self, two_zone_topology):
        topology = two_zone_topology.validate()

        counts = {kind: len(topology.of_kind(kind)) for kind in ResourceKind}
        assert counts == {
            ResourceKind.VPC: 1,
            ResourceKind.SUBNET: 4,
            ResourceKind.INTERNET_GATEWAY: 1,
            ResourceKind.ELASTIC_IP: 2,
            ResourceKind.NAT_GATEWAY: 2,
            ResourceKind.ROUTE_TABLE: 3,
            ResourceKind.ROUTE_TABLE_ASSOCIATION: 4,
        }
        assert len(topology) == 17

    def test_kind_specs(self):
        assert set(KIND_SPECS.keys()) == set(ResourceKind)
        assert KIND_SPECS[ResourceKind.NAT_GATEWAY].implied_dependencies == (ResourceKind.INTERNET_GATEWAY,)
        assert KIND_SPECS[ResourceKind.ROUTE_TABLE].replace_strategy == ReplaceStrategy.CREATE_BEFORE_DESTROY
        assert KIND_SPECS[ResourceKind.SUBNET].replace_strategy == ReplaceStrategy.DESTROY_BEFORE_CREATE
        assert "cidr_block" in KIND_SPECS[ResourceKind.SUBNET].immutable
        assert "routes" not in KIND_SPECS[ResourceKind.ROUTE_TABLE].immutable
        assert not KIND_SPECS[ResourceKind.ROUTE_TABLE_ASSOCIATION].taggable

    def test_unknown_kind(self):
        with pytest.raises(SchemaError, match="Unknown resource kind"):
            Resource("lb", "load_balancer", {})

        with pytest.raises(SchemaError, match="Unknown resource kind"):
            Topology.from_dict({"resources": [{"name": "x", "kind": "security_group", "attributes": {}}]})

    def test_duplicate_name(self, two_zone_topology):
        with pytest.raises(SchemaError, match="Duplicate resource name"):
            two_zone_topology.add(Resource("vpc", ResourceKind.VPC, {"cidr_block": "10.1.0.0/16"}))

    def test_subnet_outside_vpc(self, two_zone_topology):
        two_zone_topology["public-us-east-1a"].attributes["cidr_block"] = "10.1.0.0/24"
        with pytest.raises(SchemaError, match="not within VPC CIDR"):
            two_zone_topology.validate()

    def test_overlapping_subnets(self, two_zone_topology):
        two_zone_topology["private-us-east-1b"].attributes["cidr_block"] = "10.0.10.128/25"
        with pytest.raises(SchemaError, match="overlaps with subnet"):
            two_zone_topology.validate()

    @pytest.mark.parametrize("cidr", ["10.0.0.0/33", "10.0.0.1/24", "not-a-cidr", "fd00::/64"])
    def test_malformed_cidr(self, two_zone_topology, cidr):
        two_zone_topology["public-us-east-1a"].attributes["cidr_block"] = cidr
        with pytest.raises(SchemaError, match="CIDR"):
            two_zone_topology.validate()

    def test_missing_required_attribute(self, two_zone_topology):
        del two_zone_topology["nat-us-east-1a"].attributes["subnet_id"]
        with pytest.raises(SchemaError, match="missing required attribute 'subnet_id'"):
            two_zone_topology.validate()

    def test_unresolved_reference(self, two_zone_topology):
        two_zone_topology["nat-us-east-1a"].attributes["allocation_id"] = Reference("eip-missing")
        with pytest.raises(SchemaError, match="unresolved reference to 'eip-missing'"):
            two_zone_topology.validate()

    def test_unresolved_depends_on(self, two_zone_topology):
        two_zone_topology["vpc"].depends_on.append("bucket")
        with pytest.raises(SchemaError, match="undeclared resource 'bucket'"):
            two_zone_topology.validate()

    def test_reference_to_wrong_kind(self, two_zone_topology):
        two_zone_topology["public-us-east-1a"].attributes["vpc_id"] = Reference("igw")
        with pytest.raises(SchemaError, match="must refer to a vpc"):
            two_zone_topology.validate()

    def test_literal_instead_of_reference(self, two_zone_topology):
        two_zone_topology["igw"].attributes["vpc_id"] = "vpc-0123"
        with pytest.raises(SchemaError, match="must refer to a declared vpc"):
            two_zone_topology.validate()

    def test_single_vpc(self, two_zone_topology):
        two_zone_topology.add(Resource("other-vpc", ResourceKind.VPC, {"cidr_block": "10.1.0.0/16"}))
        with pytest.raises(SchemaError, match="exactly one VPC"):
            two_zone_topology.validate()

    def test_zone_needs_both_tiers(self, two_zone_topology):
        topology = _without(two_zone_topology, "private-us-east-1b", "private-rta-us-east-1b")
        with pytest.raises(SchemaError, match="'us-east-1b' must have exactly one private subnet"):
            topology.validate()

    def test_single_internet_gateway(self, two_zone_topology):
        two_zone_topology.add(Resource("igw-2", ResourceKind.INTERNET_GATEWAY, {"vpc_id": Reference("vpc")}))
        with pytest.raises(SchemaError, match="at most one internet gateway"):
            two_zone_topology.validate()

    def test_nat_in_private_subnet(self, two_zone_topology):
        two_zone_topology["nat-us-east-1a"].attributes["subnet_id"] = Reference("private-us-east-1a")
        with pytest.raises(SchemaError, match="must be placed in a public subnet"):
            two_zone_topology.validate()

    def test_shared_elastic_ip(self, two_zone_topology):
        two_zone_topology["nat-us-east-1b"].attributes["allocation_id"] = Reference("eip-us-east-1a")
        with pytest.raises(SchemaError, match="already bound"):
            two_zone_topology.validate()

    def test_one_nat_per_private_zone(self, two_zone_topology):
        # both NAT gateways in zone a
        two_zone_topology["nat-us-east-1b"].attributes["subnet_id"] = Reference("public-us-east-1a")
        with pytest.raises(SchemaError, match="exactly one NAT gateway"):
            two_zone_topology.validate()

    def test_every_subnet_associated_once(self, two_zone_topology):
        with pytest.raises(SchemaError, match="exactly one route table association"):
            _without(two_zone_topology, "private-rta-us-east-1b").validate()

        two_zone_topology.add(
            Resource(
                "extra-rta",
                ResourceKind.ROUTE_TABLE_ASSOCIATION,
                {"subnet_id": Reference("public-us-east-1a"), "route_table_id": Reference("public-rt")},
            )
        )
        with pytest.raises(SchemaError, match="exactly one route table association"):
            two_zone_topology.validate()

    def test_cross_zone_nat_is_rejected(self, two_zone_topology):
        routes = two_zone_topology["private-rt-us-east-1a"].attributes["routes"]
        routes[0]["nat_gateway_id"] = Reference("nat-us-east-1b")
        with pytest.raises(SchemaError, match="cross-zone NAT"):
            two_zone_topology.validate()

    def test_public_subnet_must_egress_through_internet_gateway(self, two_zone_topology):
        two_zone_topology["public-rta-us-east-1a"].attributes["route_table_id"] = Reference("private-rt-us-east-1a")
        with pytest.raises(SchemaError, match="public subnets must route"):
            two_zone_topology.validate()

    def test_private_subnet_needs_default_route(self, two_zone_topology):
        two_zone_topology["private-rt-us-east-1b"].attributes["routes"] = []
        with pytest.raises(SchemaError, match="no default route"):
            two_zone_topology.validate()

    def test_route_needs_exactly_one_target(self, two_zone_topology):
        routes = two_zone_topology["public-rt"].attributes["routes"]
        routes[0]["nat_gateway_id"] = Reference("nat-us-east-1a")
        with pytest.raises(SchemaError, match="exactly one of"):
            two_zone_topology.validate()

    def test_association_is_not_taggable(self, two_zone_topology):
        two_zone_topology["public-rta-us-east-1a"].attributes["tags"] = {"Name": "x"}
        with pytest.raises(SchemaError, match="does not support tags"):
            two_zone_topology.validate()

    def test_load_from_json(self, two_zone_topology):
        body = json.dumps(two_zone_topology.to_dict())
        assert '{"$ref": "vpc"}' in body

        loaded = Topology.from_dict(json.loads(body)).validate()

        assert loaded.names() == two_zone_topology.names()
        assert loaded["nat-us-east-1a"] == two_zone_topology["nat-us-east-1a"]
        assert loaded["private-rt-us-east-1b"].get("routes") == [
            {"destination_cidr_block": "0.0.0.0/0", "nat_gateway_id": Reference("nat-us-east-1b")}
        ]

    def test_reference_with_attribute(self):
        reference = Reference.parse("eip-a.public_ip")
        assert reference == Reference("eip-a", "public_ip")
        assert reference.to_dict() == {"$ref": "eip-a.public_ip"}
        assert Reference.parse("vpc") == Reference("vpc", "id")

        with pytest.raises(SchemaError):
            Reference.parse(".id")

    def test_nested_references(self):
        value = {"routes": [{"destination_cidr_block": "0.0.0.0/0", "gateway_id": Reference("igw")}], "vpc_id": Reference("vpc")}

        assert sorted(ref.target for ref in iter_references(value)) == ["igw", "vpc"]
        assert map_references(value, lambda ref: f"{ref.target}-id") == {
            "routes": [{"destination_cidr_block": "0.0.0.0/0", "gateway_id": "igw-id"}],
            "vpc_id": "vpc-id",
        }

    def test_owning_vpc(self, two_zone_topology):
        assert two_zone_topology.owning_vpc(two_zone_topology["nat-us-east-1a"]).name == "vpc"
        assert two_zone_topology.owning_vpc(two_zone_topology["eip-us-east-1a"]) is None
