# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

from typing import Dict, Optional

import boto3

from ._logging_config import init_basic_logging
from .core.config import EngineConfiguration, EngineParams
from .core.engine import ProvisioningEngine
from .core.errors import (
    ActionTimeoutError,
    CycleError,
    PermanentProviderError,
    ProviderError,
    ProvisioningError,
    ResourceNotFound,
    SchemaError,
    StateConflict,
    TransientProviderError,
)
from .core.executor import ActionStatus, ApplyResult
from .core.reconciler import ActionPlan, ChangeType, Operation
from .core.state import ResourceState, StateRecord
from .core.store import InMemoryStateStore, LocalFileStateStore, StateStore
from .core.topology.conventions import TopologyConventions
from .core.topology.model import Reference, Resource, ResourceKind, Topology
from .core.topology.two_tier import ZoneLayout, two_tier_topology
from .provider.aws.ec2 import AWSEC2ProviderClient
from .provider.aws.s3_state_store import S3StateStore
from .provider.base import ProviderClient
from .provider.memory import InMemoryProviderClient

Ref = Reference


def create_aws_engine(
    region: str,
    cluster_name: Optional[str] = None,
    state_bucket: Optional[str] = None,
    state_key: Optional[str] = None,
    state_file: Optional[str] = None,
    common_tags: Optional[Dict[str, str]] = None,
    config: Optional[EngineConfiguration] = None,
    session: Optional[boto3.Session] = None,
) -> ProvisioningEngine:
    """Wire up an engine against EC2 in `region`.

    The state record goes to `s3://state_bucket/state_key` if a bucket is given, otherwise to `state_file` (defaults to
    ./<cluster_name or 'vpcflow'>.state.json).
    """
    session = session if session is not None else boto3.Session(region_name=region)
    config = config if config is not None else EngineConfiguration()
    if state_bucket:
        state_key = state_key if state_key else f"vpcflow/{cluster_name or 'default'}/state.json"
        store: StateStore = S3StateStore(session, state_bucket, state_key, region)
    else:
        store = LocalFileStateStore(state_file if state_file else f"{cluster_name or 'vpcflow'}.state.json")
    return ProvisioningEngine(
        AWSEC2ProviderClient(session, region, config),
        store,
        TopologyConventions(cluster_name, common_tags=common_tags),
        config,
    )
