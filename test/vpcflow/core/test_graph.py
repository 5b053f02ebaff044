# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

import pytest

from vpcflow.core.errors import CycleError, SchemaError
from vpcflow.core.graph import GraphBuilder, find_cycle, topological_levels
from vpcflow.core.topology.model import Reference


class TestGraphBuilder:
    def test_edges_from_references_and_implied_kinds(self, two_zone_topology, conventions):
        graph = GraphBuilder(conventions).build(two_zone_topology)

        assert graph.dependencies_of("vpc") == []
        assert graph.dependencies_of("public-us-east-1a") == ["vpc"]
        # the internet gateway is not referenced by the NAT gateway, it is implied by the kind
        assert graph.dependencies_of("nat-us-east-1a") == ["eip-us-east-1a", "igw", "public-us-east-1a"]
        assert graph.dependencies_of("private-rt-us-east-1b") == ["nat-us-east-1b", "vpc"]
        assert graph.dependencies_of("public-rta-us-east-1b") == ["public-rt", "public-us-east-1b"]
        assert graph.dependents_of("igw") == ["nat-us-east-1a", "nat-us-east-1b", "public-rt"]

    def test_conventions_are_applied(self, two_zone_topology, conventions):
        graph = GraphBuilder(conventions).build(two_zone_topology)

        tags = graph.node("private-us-east-1a").attributes["tags"]
        assert tags["kubernetes.io/role/internal-elb"] == "1"
        assert tags["kubernetes.io/cluster/test-cluster"] == "shared"
        assert graph.node("vpc").attributes["cidr_block"] == "10.0.0.0/16"
        assert "tags" not in graph.node("private-rta-us-east-1a").attributes
        assert graph.conventions is conventions

    def test_topological_order_is_deterministic(self, two_zone_topology, topology_factory):
        order = GraphBuilder().build(two_zone_topology).topological_order()

        assert order == GraphBuilder().build(topology_factory()).topological_order()
        assert len(order) == 17
        position = {name: i for i, name in enumerate(order)}
        for zone in ("us-east-1a", "us-east-1b"):
            assert position[f"nat-{zone}"] > position["igw"]
            assert position[f"nat-{zone}"] > position[f"public-{zone}"]
            assert position[f"private-rta-{zone}"] > position[f"private-rt-{zone}"] > position[f"nat-{zone}"]
        assert order[0] == "eip-us-east-1a"

    def test_reverse_order(self, two_zone_topology):
        graph = GraphBuilder().build(two_zone_topology)
        assert graph.reverse_topological_order() == list(reversed(graph.topological_order()))
        assert graph.reverse_topological_order()[-1] in ("vpc", "eip-us-east-1a", "eip-us-east-1b")

    def test_levels(self, two_zone_topology):
        levels = GraphBuilder().build(two_zone_topology).levels()

        assert levels[0] == ["eip-us-east-1a", "eip-us-east-1b", "vpc"]
        assert levels[1] == ["igw", "private-us-east-1a", "private-us-east-1b", "public-us-east-1a", "public-us-east-1b"]
        assert levels[2] == ["nat-us-east-1a", "nat-us-east-1b", "public-rt"]
        flattened = [name for level in levels for name in level]
        assert sorted(flattened) == sorted(two_zone_topology.names())

    def test_cycle_through_depends_on(self, two_zone_topology):
        two_zone_topology["vpc"].depends_on.append("public-rt")

        with pytest.raises(CycleError) as error:
            GraphBuilder().build(two_zone_topology)

        participants = error.value.participants
        assert participants[0] == participants[-1]
        assert "vpc" in participants
        assert "public-rt" in participants

    def test_schema_errors_come_first(self, two_zone_topology):
        two_zone_topology["vpc"].depends_on.append("public-rt")
        two_zone_topology["igw"].attributes["vpc_id"] = Reference("nowhere")

        with pytest.raises(SchemaError):
            GraphBuilder().build(two_zone_topology)


class TestGraphAlgorithms:
    def test_find_cycle(self):
        assert find_cycle({"a": ["b"], "b": ["c"], "c": []}) is None
        assert find_cycle({"a": ["b"], "b": ["c"], "c": ["a"]}) == ["a", "b", "c", "a"]
        assert find_cycle({"a": [], "b": ["b"]}) == ["b", "b"]

    def test_topological_levels(self):
        assert topological_levels({"a": [], "b": ["a"], "c": ["a"], "d": ["b", "c"]}) == [["a"], ["b", "c"], ["d"]]

        with pytest.raises(CycleError) as error:
            topological_levels({"a": [], "b": ["a", "c"], "c": ["b"]})
        assert set(error.value.participants) == {"b", "c"}
