# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

import pytest

from vpcflow.core.config import EngineConfiguration
from vpcflow.core.topology.conventions import TopologyConventions
from vpcflow.core.topology.two_tier import ZoneLayout, two_tier_topology

ZONE_A = "us-east-1a"
ZONE_B = "us-east-1b"

TWO_ZONES = [
    ZoneLayout(ZONE_A, public_cidr="10.0.0.0/24", private_cidr="10.0.10.0/24"),
    ZoneLayout(ZONE_B, public_cidr="10.0.1.0/24", private_cidr="10.0.11.0/24"),
]


def build_two_zone_topology(**kwargs):
    return two_tier_topology("10.0.0.0/16", TWO_ZONES, **kwargs)


@pytest.fixture
def two_zone_topology():
    return build_two_zone_topology()


@pytest.fixture
def conventions():
    return TopologyConventions("test-cluster", common_tags={"Team": "infra"})


@pytest.fixture
def fast_config():
    return EngineConfiguration.builder().with_max_concurrency(4).with_retry(3, initial_backoff_secs=0.0, max_backoff_secs=0.0).build()


@pytest.fixture
def topology_factory():
    return build_two_zone_topology
