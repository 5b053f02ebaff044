# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

import logging
import threading

import pytest
from mock import ANY, MagicMock

from vpcflow.core.engine import ProvisioningEngine
from vpcflow.core.errors import CycleError, PermanentProviderError, SchemaError, StateConflict
from vpcflow.core.reconciler import ChangeType, Operation
from vpcflow.core.store import InMemoryStateStore, LocalFileStateStore
from vpcflow.core.topology.model import ResourceKind, Topology
from vpcflow.provider.memory import InMemoryProviderClient


class TestProvisioningEngine:
    @pytest.fixture
    def provider(self):
        return InMemoryProviderClient()

    @pytest.fixture
    def engine(self, provider, conventions, fast_config):
        return ProvisioningEngine(provider, InMemoryStateStore(), conventions, fast_config)

    def test_provision_two_zone_topology(self, engine, provider, two_zone_topology, caplog):
        caplog.set_level(logging.INFO, logger="vpcflow")

        plan = engine.plan(two_zone_topology)
        assert len(provider.calls) == 0
        state, result = engine.apply(plan)

        assert result.ok
        assert result.plan_id == plan.plan_id
        assert len(state) == 17
        assert len(provider) == 17
        # one durable write per completed action
        assert state.serial == 17
        assert engine.load_state().serial == 17
        assert len(provider.resources_of(ResourceKind.NAT_GATEWAY)) == 2
        assert "Plan: 17 to create" in caplog.text

        created = provider.calls_of("create")
        for zone in ("us-east-1a", "us-east-1b"):
            nat_id = state.get(f"nat-{zone}").resource_id
            assert created.index(state.get("igw").resource_id) < created.index(nat_id)
            assert created.index(state.get(f"public-{zone}").resource_id) < created.index(nat_id)
            private_rt = provider.resources_of(ResourceKind.ROUTE_TABLE)[state.get(f"private-rt-{zone}").resource_id]
            assert private_rt["routes"] == [{"destination_cidr_block": "0.0.0.0/0", "nat_gateway_id": nat_id}]

        public_subnet = provider.resources_of(ResourceKind.SUBNET)[state.get("public-us-east-1a").resource_id]
        assert public_subnet["tags"]["kubernetes.io/role/elb"] == "1"
        assert public_subnet["tags"]["kubernetes.io/cluster/test-cluster"] == "shared"
        assert public_subnet["tags"]["Name"] == "test-cluster-public-us-east-1a"

    def test_apply_is_idempotent(self, engine, provider, two_zone_topology):
        engine.apply(engine.plan(two_zone_topology))
        calls = len(provider.calls)

        plan = engine.plan(two_zone_topology)
        state, result = engine.apply(plan)

        assert plan.is_empty()
        assert plan.summary()[ChangeType.NOOP] == 17
        assert result.ok
        assert len(provider.calls) == calls
        assert state.serial == 17

    def test_resume_after_partial_failure(self, conventions, fast_config, two_zone_topology):
        # with some latency the whole NAT gateway wave is in flight when one of them fails
        provider = InMemoryProviderClient(latency_secs=0.01)
        engine = ProvisioningEngine(provider, InMemoryStateStore(), conventions, fast_config)
        provider.fail_next(
            "create",
            ResourceKind.NAT_GATEWAY,
            PermanentProviderError,
            predicate=lambda attributes: attributes["tags"]["Name"] == "test-cluster-nat-us-east-1b",
        )

        _, first = engine.apply(engine.plan(two_zone_topology))

        assert not first.ok
        assert list(first.errors.keys()) == ["create:nat-us-east-1b"]
        stored = engine.load_state()
        assert "nat-us-east-1a" in stored
        assert "nat-us-east-1b" not in stored
        assert len(stored) == len(first.completed)

        plan = engine.plan(two_zone_topology)
        assert sorted(action.name for action in plan.actions) == [
            "nat-us-east-1b",
            "private-rt-us-east-1a",
            "private-rt-us-east-1b",
            "private-rta-us-east-1a",
            "private-rta-us-east-1b",
            "public-rta-us-east-1a",
            "public-rta-us-east-1b",
        ]
        assert all(action.operation == Operation.CREATE for action in plan.actions)
        state, second = engine.apply(plan)

        assert second.ok
        assert len(state) == 17
        assert len(provider) == 17
        assert engine.plan(two_zone_topology).is_empty()

    def test_destroy_before_create_replacement(self, engine, provider, two_zone_topology, topology_factory):
        state, _ = engine.apply(engine.plan(two_zone_topology))
        old_subnet = state.get("private-us-east-1a").resource_id
        old_association = state.get("private-rta-us-east-1a").resource_id
        changed = topology_factory()
        changed["private-us-east-1a"].attributes["cidr_block"] = "10.0.12.0/24"

        plan = engine.plan(changed)
        state, result = engine.apply(plan)

        assert plan.summary()[ChangeType.REPLACE] == 2
        assert result.ok
        assert not provider.exists(old_subnet)
        assert not provider.exists(old_association)
        new_subnet = state.get("private-us-east-1a")
        assert new_subnet.resource_id != old_subnet
        assert new_subnet.attributes["cidr_block"] == "10.0.12.0/24"
        assert state.get("private-rta-us-east-1a").attributes["subnet_id"] == new_subnet.resource_id
        assert len(provider) == 17
        assert engine.plan(changed).is_empty()

    def test_create_before_destroy_replacement(self, engine, provider, two_zone_topology, topology_factory):
        state, _ = engine.apply(engine.plan(two_zone_topology))
        old_eip = state.get("eip-us-east-1a").resource_id
        changed = topology_factory()
        changed["eip-us-east-1a"].attributes["domain"] = "standard"

        state, result = engine.apply(engine.plan(changed))

        assert result.ok
        assert state.deposed() == []
        assert not provider.exists(old_eip)
        new_eip = state.get("eip-us-east-1a").resource_id
        nat = state.get("nat-us-east-1a")
        assert nat.attributes["allocation_id"] == new_eip
        route_table = provider.resources_of(ResourceKind.ROUTE_TABLE)[state.get("private-rt-us-east-1a").resource_id]
        assert route_table["routes"][0]["nat_gateway_id"] == nat.resource_id
        # the new elastic IP existed before the old one was released
        calls = [(operation, resource_id) for operation, _, resource_id in provider.calls]
        assert calls.index(("create", new_eip)) < calls.index(("delete", old_eip))
        assert len(provider) == 17

    def test_undeclared_resources_are_removed(self, engine, provider, two_zone_topology):
        engine.apply(engine.plan(two_zone_topology))
        one_zone = two_zone_topology.to_dict()
        one_zone["resources"] = [resource for resource in one_zone["resources"] if not resource["name"].endswith("us-east-1b")]

        state, result = engine.apply(engine.plan(Topology.from_dict(one_zone)))

        assert result.ok
        assert len(state) == 10
        assert len(provider) == 10

    def test_destroy_all(self, engine, provider, two_zone_topology):
        engine.apply(engine.plan(two_zone_topology))

        result = engine.destroy_all()

        assert result.ok
        assert len(result.completed) == 17
        assert len(provider) == 0
        assert engine.load_state().is_empty()
        deletes = provider.calls_of("delete")
        assert deletes[-1].startswith("vpc-") or deletes[-1].startswith("eipalloc-")
        assert engine.destroy_all().ok

    def test_stale_plan_is_rejected(self, engine, provider, two_zone_topology):
        plan = engine.plan(two_zone_topology)
        stale = engine.plan(two_zone_topology)
        engine.apply(plan)
        calls = len(provider.calls)

        with pytest.raises(StateConflict, match="Please plan again"):
            engine.apply(stale)
        assert len(provider.calls) == calls

    def test_concurrent_engines_on_the_same_store(self, provider, conventions, fast_config, two_zone_topology, tmp_path):
        store_path = tmp_path / "state.json"
        first = ProvisioningEngine(provider, LocalFileStateStore(store_path), conventions, fast_config)
        second = ProvisioningEngine(provider, LocalFileStateStore(store_path), conventions, fast_config)
        first_plan = first.plan(two_zone_topology)
        second_plan = second.plan(two_zone_topology)

        assert first.apply(first_plan)[1].ok
        with pytest.raises(StateConflict):
            second.apply(second_plan)
        assert second.plan(two_zone_topology).is_empty()

    def test_refresh_drops_resources_deleted_out_of_band(self, engine, provider, two_zone_topology):
        state, _ = engine.apply(engine.plan(two_zone_topology))
        provider.delete(ResourceKind.ROUTE_TABLE_ASSOCIATION, state.get("public-rta-us-east-1b").resource_id)

        refreshed = engine.refresh()

        assert "public-rta-us-east-1b" not in refreshed
        assert refreshed.serial == 18
        plan = engine.plan(two_zone_topology)
        assert [action.action_id for action in plan.actions] == ["create:public-rta-us-east-1b"]
        assert engine.apply(plan)[1].ok
        assert len(provider) == 17

    def test_refresh_without_drift_does_not_write(self, engine, two_zone_topology):
        engine.apply(engine.plan(two_zone_topology))
        assert engine.refresh().serial == 17

    def test_dry_run(self, engine, provider, two_zone_topology):
        plan, result = engine.run(two_zone_topology, dry_run=True)

        assert result is None
        assert len(plan) == 17
        assert len(provider.calls) == 0
        assert engine.load_state().is_empty()

        plan, result = engine.run(two_zone_topology)
        assert result.ok

    def test_cancelled_apply_can_be_resumed(self, engine, provider, two_zone_topology):
        cancel = threading.Event()
        cancel.set()

        _, result = engine.apply(engine.plan(two_zone_topology), cancel)

        assert result.cancelled
        assert len(result.not_attempted) == 17
        assert len(provider.calls) == 0
        assert engine.run(two_zone_topology)[1].ok

    def test_invalid_declarations(self, engine, provider, two_zone_topology):
        two_zone_topology["vpc"].attributes["cidr_block"] = "10.0.0.0/33"
        with pytest.raises(SchemaError):
            engine.plan(two_zone_topology)

    def test_cyclic_declarations(self, engine, topology_factory):
        topology = topology_factory()
        topology["igw"].depends_on.append("nat-us-east-1a")
        with pytest.raises(CycleError):
            engine.plan(topology)

    def test_state_is_persisted_after_each_action(self, provider, conventions, fast_config, two_zone_topology):
        store = MagicMock(wraps=InMemoryStateStore())
        engine = ProvisioningEngine(provider, store, conventions, fast_config)

        engine.apply(engine.plan(two_zone_topology))

        assert store.save.call_count == 17
        store.save.assert_called_with(ANY)
