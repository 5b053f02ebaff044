# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

"""Entry point of the provisioning engine.

    engine = ProvisioningEngine(provider, LocalFileStateStore("vpc.state.json"), TopologyConventions("my-cluster"))
    plan = engine.plan(topology)          # dry-run, no provider calls
    state, result = engine.apply(plan)    # converge, state is persisted after every action
    engine.destroy_all()                  # tear everything down in reverse dependency order
"""
import logging
import threading
from typing import Optional, Tuple

from vpcflow.core.config import EngineConfiguration
from vpcflow.core.errors import ResourceNotFound, StateConflict
from vpcflow.core.executor import ApplyResult, WaveExecutor
from vpcflow.core.graph import DependencyGraph, GraphBuilder
from vpcflow.core.reconciler import ActionPlan, StateReconciler
from vpcflow.core.state import ResourceState, StateRecord
from vpcflow.core.store import InMemoryStateStore, StateStore
from vpcflow.core.topology.conventions import TopologyConventions
from vpcflow.core.topology.model import Topology
from vpcflow.provider.base import ProviderClient

module_logger = logging.getLogger(__name__)


class ProvisioningEngine:
    def __init__(
        self,
        provider: ProviderClient,
        state_store: Optional[StateStore] = None,
        conventions: Optional[TopologyConventions] = None,
        config: Optional[EngineConfiguration] = None,
    ) -> None:
        self._provider = provider
        self._store = state_store if state_store is not None else InMemoryStateStore()
        self._conventions = conventions if conventions is not None else TopologyConventions()
        self._config = config if config is not None else EngineConfiguration()
        self._graph_builder = GraphBuilder(self._conventions)
        self._reconciler = StateReconciler()
        self._executor = WaveExecutor(provider, self._config)

    @property
    def state_store(self) -> StateStore:
        return self._store

    @property
    def config(self) -> EngineConfiguration:
        return self._config

    def load_state(self) -> StateRecord:
        return self._store.load()

    def plan(self, declarations: Topology, prior_state: Optional[StateRecord] = None) -> ActionPlan:
        """Diff `declarations` against `prior_state` (or the stored state) without calling the provider.

        Raises SchemaError or CycleError for invalid declarations.
        """
        state = prior_state if prior_state is not None else self._store.load()
        graph = self._graph_builder.build(declarations)
        plan = self._reconciler.reconcile(graph, state)
        module_logger.info(f"Plan {plan.plan_id} against state serial {state.serial}:\n{plan.render()}")
        return plan

    def apply(self, plan: ActionPlan, cancel_event: Optional[threading.Event] = None) -> Tuple[StateRecord, ApplyResult]:
        """Execute the plan against the provider.

        Raises StateConflict if the stored state moved on since the plan was made. Provider failures do not raise,
        they are reported in the ApplyResult and the returned state reflects everything that completed.
        """
        state = self._store.load()
        if state.lineage != plan.state_lineage or state.serial != plan.state_serial:
            raise StateConflict(
                f"Plan {plan.plan_id} was made against state serial {plan.state_serial} (lineage={plan.state_lineage}) "
                f"but the stored state is at serial {state.serial} (lineage={state.lineage}). Please plan again."
            )
        if plan.is_empty():
            module_logger.info(f"Plan {plan.plan_id} has no actions, nothing to apply.")
        result = self._executor.execute(plan, state, self._store.save, cancel_event)
        if not result.ok:
            module_logger.error(
                f"Plan {plan.plan_id} partially applied: {len(result.completed)} completed, "
                f"failed: {list(result.errors.keys())}, {len(result.not_attempted)} not attempted."
            )
        return state, result

    def destroy_all(self, state: Optional[StateRecord] = None, cancel_event: Optional[threading.Event] = None) -> ApplyResult:
        """Delete every recorded resource in reverse dependency order."""
        state = state if state is not None else self._store.load()
        plan = self._reconciler.reconcile(DependencyGraph.empty(self._conventions), state)
        module_logger.info(f"Destroy plan {plan.plan_id}:\n{plan.render()}")
        _, result = self.apply(plan, cancel_event)
        return result

    def refresh(self, state: Optional[StateRecord] = None) -> StateRecord:
        """Drop the records of resources that were deleted out of band and refresh provider reported attributes."""
        state = state if state is not None else self._store.load()
        changed = False
        for record in state.resources():
            try:
                outputs = self._provider.read(record.kind, record.resource_id)
            except ResourceNotFound:
                module_logger.warning(f"{record.kind.value} {record.resource_id} ({record.name!r}) no longer exists, dropping it from the state.")
                state.forget(record.name, record.resource_id)
                changed = True
                continue
            refreshed = {key: value for key, value in outputs.items() if key in record.outputs}
            if refreshed != record.outputs:
                state.put(
                    ResourceState(record.name, record.kind, record.resource_id, record.attributes, refreshed, record.dependencies)
                )
                changed = True
        if changed:
            self._store.save(state)
        return state

    def run(
        self, declarations: Topology, dry_run: bool = False, cancel_event: Optional[threading.Event] = None
    ) -> Tuple[ActionPlan, Optional[ApplyResult]]:
        plan = self.plan(declarations)
        if dry_run:
            return plan, None
        _, result = self.apply(plan, cancel_event)
        return plan, result
