# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

import json

import pytest

from vpcflow.core.state import STATE_FORMAT_VERSION, ResourceState, StateRecord
from vpcflow.core.topology.model import ResourceKind


def _subnet(resource_id: str = "subnet-01") -> ResourceState:
    return ResourceState(
        "public-us-east-1a",
        ResourceKind.SUBNET,
        resource_id,
        {"vpc_id": "vpc-01", "cidr_block": "10.0.0.0/24", "tags": {"Name": "public-us-east-1a"}},
        {"id": resource_id},
        ["vpc"],
    )


class TestStateRecord:
    def test_json_round_trip(self):
        record = StateRecord(
            "lineage-1",
            3,
            [ResourceState("vpc", ResourceKind.VPC, "vpc-01", {"cidr_block": "10.0.0.0/16"}, {"state": "available"}), _subnet()],
            [_subnet("subnet-00")],
        )

        loaded = StateRecord.from_json(record.to_json())

        assert loaded.lineage == "lineage-1"
        assert loaded.serial == 3
        assert loaded.names() == ["public-us-east-1a", "vpc"]
        assert loaded.get("public-us-east-1a") == record.get("public-us-east-1a")
        assert loaded.get("vpc").get_output("state") == "available"
        assert [resource.resource_id for resource in loaded.deposed()] == ["subnet-00"]
        assert json.loads(record.to_json())["format_version"] == STATE_FORMAT_VERSION

    @pytest.mark.parametrize("format_version", [None, "not-a-version", "2.0"])
    def test_unsupported_format_version(self, format_version):
        with pytest.raises(ValueError):
            StateRecord.from_dict({"format_version": format_version, "resources": []})

    def test_older_minor_version_is_accepted(self):
        assert StateRecord.from_dict({"format_version": "1.0.0", "serial": 2}).serial == 2

    def test_outputs_fall_back_to_attributes(self):
        subnet = _subnet()
        assert subnet.get_output("id") == "subnet-01"
        assert subnet.get_output("cidr_block") == "10.0.0.0/24"
        assert subnet.get_output("ipv6_cidr_block") is None

    def test_depose_and_forget(self):
        record = StateRecord(resources=[_subnet("subnet-old")])

        assert record.depose("public-us-east-1a").resource_id == "subnet-old"
        assert "public-us-east-1a" not in record
        record.put(_subnet("subnet-new"))

        # a stale id never drops the newer object
        assert not record.forget("public-us-east-1a", "subnet-other")
        assert record.forget("public-us-east-1a", "subnet-old")
        assert record.deposed() == []
        assert record.get("public-us-east-1a").resource_id == "subnet-new"
        assert record.forget("public-us-east-1a", "subnet-new")
        assert record.is_empty()

    def test_dependents(self):
        record = StateRecord(resources=[ResourceState("vpc", ResourceKind.VPC, "vpc-01"), _subnet()])
        assert record.dependents_of("vpc") == ["public-us-east-1a"]
        assert record.dependents_of("public-us-east-1a") == []

    def test_next_serial_assigns_lineage(self):
        record = StateRecord()
        assert record.lineage is None

        record.next_serial()
        lineage = record.lineage
        record.next_serial()

        assert lineage
        assert record.lineage == lineage
        assert record.serial == 2
        assert record.updated_at is not None

    def test_copy_is_independent(self):
        record = StateRecord("lineage-1", 1, [_subnet()])
        duplicate = record.copy()
        duplicate.get("public-us-east-1a").attributes["cidr_block"] = "10.0.1.0/24"
        duplicate.forget("public-us-east-1a", "subnet-01")

        assert record.get("public-us-east-1a").attributes["cidr_block"] == "10.0.0.0/24"
        assert duplicate.lineage == "lineage-1"
        assert duplicate.is_empty()

    def test_entity_locks_are_per_name(self):
        record = StateRecord()
        assert record.lock_for("vpc") is record.lock_for("vpc")
        assert record.lock_for("vpc") is not record.lock_for("igw")
