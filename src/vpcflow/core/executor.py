# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

import concurrent.futures
import logging
import threading
import time
from enum import Enum, unique
from typing import Any, Callable, Dict, List, Optional, Tuple

from vpcflow.core.config import EngineConfiguration
from vpcflow.core.entity import CoreData
from vpcflow.core.errors import (
    PermanentProviderError,
    ProvisioningError,
    ResourceNotFound,
    TransientProviderError,
)
from vpcflow.core.reconciler import ActionPlan, Operation, PlannedAction
from vpcflow.core.state import ResourceState, StateRecord
from vpcflow.core.topology.model import Reference, map_references
from vpcflow.provider.base import ProviderClient

module_logger = logging.getLogger(__name__)


@unique
class ActionStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    NOT_ATTEMPTED = "not_attempted"


class ActionOutcome(CoreData):
    def __init__(
        self,
        action: PlannedAction,
        status: ActionStatus,
        attempts: int = 0,
        error: Optional[Exception] = None,
        resource_id: Optional[str] = None,
    ) -> None:
        self.action = action
        self.status = status
        self.attempts = attempts
        self.error = error
        self.resource_id = resource_id

    @property
    def action_id(self) -> str:
        return self.action.action_id


class ApplyResult(CoreData):
    def __init__(self, plan_id: str, outcomes: List[ActionOutcome], cancelled: bool = False) -> None:
        self.plan_id = plan_id
        self.outcomes = outcomes
        self.cancelled = cancelled

    def _with_status(self, status: ActionStatus) -> List[ActionOutcome]:
        return [outcome for outcome in self.outcomes if outcome.status == status]

    @property
    def completed(self) -> List[ActionOutcome]:
        return self._with_status(ActionStatus.COMPLETED)

    @property
    def failed(self) -> List[ActionOutcome]:
        return self._with_status(ActionStatus.FAILED)

    @property
    def not_attempted(self) -> List[ActionOutcome]:
        return self._with_status(ActionStatus.NOT_ATTEMPTED)

    @property
    def errors(self) -> Dict[str, Exception]:
        return {outcome.action_id: outcome.error for outcome in self.failed}

    @property
    def ok(self) -> bool:
        return not self.failed and not self.not_attempted and not self.cancelled

    def outcome(self, action_id: str) -> ActionOutcome:
        return next(outcome for outcome in self.outcomes if outcome.action_id == action_id)

    def __repr__(self) -> str:
        return (
            f"ApplyResult(plan_id={self.plan_id!r}, completed={len(self.completed)}, failed={[o.action_id for o in self.failed]}, "
            f"not_attempted={len(self.not_attempted)}, cancelled={self.cancelled})"
        )


class WaveExecutor:
    """Runs an action plan wave by wave (levels of the action DAG).

    Actions within a wave are independent and run concurrently on a thread pool bounded by the configured
    concurrency. Every completed action is persisted through `persist` right away so that a crash or a failure in a
    sibling action never loses a provisioned resource. A failed or timed-out action aborts its wave (queued actions of
    the wave are not started) and, like a cancellation request, stops admission of further waves.
    """

    def __init__(
        self, provider: ProviderClient, config: Optional[EngineConfiguration] = None, sleep: Callable[[float], None] = time.sleep
    ) -> None:
        self._provider = provider
        self._config = config if config is not None else EngineConfiguration()
        self._sleep = sleep
        self._persist_lock = threading.RLock()

    def execute(
        self,
        plan: ActionPlan,
        state: StateRecord,
        persist: Callable[[StateRecord], None],
        cancel_event: Optional[threading.Event] = None,
    ) -> ApplyResult:
        outcomes: Dict[str, ActionOutcome] = dict()
        cancelled = False
        levels = plan.levels()
        for wave_index, wave in enumerate(levels):
            if cancel_event is not None and cancel_event.is_set():
                module_logger.warning(f"Cancellation requested, waves {wave_index + 1}..{len(levels)} will not be admitted.")
                cancelled = True
                break
            module_logger.info(f"Admitting wave {wave_index + 1}/{len(levels)}: {[action.action_id for action in wave]}")
            wave_outcomes, aborted = self._execute_wave(wave, state, persist)
            outcomes.update(wave_outcomes)
            if aborted:
                module_logger.error(f"Wave {wave_index + 1} was aborted, no further waves will be admitted.")
                break

        ordered: List[ActionOutcome] = []
        for action in plan.actions:
            ordered.append(outcomes.get(action.action_id, ActionOutcome(action, ActionStatus.NOT_ATTEMPTED)))
        result = ApplyResult(plan.plan_id, ordered, cancelled)
        module_logger.info(f"Apply finished: {result!r}")
        return result

    def _execute_wave(
        self, wave: List[PlannedAction], state: StateRecord, persist: Callable[[StateRecord], None]
    ) -> Tuple[Dict[str, ActionOutcome], bool]:
        """Run the actions of one wave, returns their outcomes and whether the wave was aborted.

        A failed or timed-out action aborts the wave: queued actions are not started anymore and are left out of the
        outcomes. Actions already running cannot be interrupted, they are awaited and reported with what they
        actually did (a timed-out action that eventually succeeded is recorded in the state, so it is COMPLETED).
        """
        outcomes: Dict[str, ActionOutcome] = dict()
        abort = threading.Event()
        timed_out: List[str] = []
        pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=min(self._config.max_concurrency, len(wave)), thread_name_prefix="vpcflow-action"
        )
        futures = [(action, pool.submit(self._run_action, action, state, persist, abort)) for action in wave]
        try:
            for action, future in futures:
                try:
                    outcome = future.result(timeout=self._config.action_timeout_secs)
                except concurrent.futures.TimeoutError:
                    module_logger.error(
                        f"Action {action.action_id} did not complete within {self._config.action_timeout_secs} seconds, "
                        f"aborting the wave."
                    )
                    timed_out.append(action.action_id)
                    abort.set()
                    break
                if outcome is not None:
                    outcomes[action.action_id] = outcome
                if abort.is_set():
                    break
        finally:
            pool.shutdown(wait=True, cancel_futures=True)

        for action, future in futures:
            if action.action_id in outcomes or future.cancelled():
                continue
            outcome = future.result()
            if outcome is None:
                continue
            if action.action_id in timed_out and outcome.status == ActionStatus.COMPLETED:
                module_logger.warning(f"Action {action.action_id} completed after its timeout, it is recorded in the state.")
            outcomes[action.action_id] = outcome
        return outcomes, abort.is_set()

    def _run_action(
        self, action: PlannedAction, state: StateRecord, persist: Callable[[StateRecord], None], abort: threading.Event
    ) -> Optional[ActionOutcome]:
        if abort.is_set():
            # the wave was aborted while this action was queued
            return None
        outcome = self._perform(action, state, persist)
        if outcome.status == ActionStatus.FAILED:
            abort.set()
        return outcome

    def _perform(self, action: PlannedAction, state: StateRecord, persist: Callable[[StateRecord], None]) -> ActionOutcome:
        attempts = [0]
        with state.lock_for(action.name):
            try:
                if action.operation == Operation.CREATE:
                    resource_id = self._create(action, state, attempts)
                elif action.operation == Operation.UPDATE:
                    resource_id = self._update(action, state, attempts)
                else:
                    resource_id = self._delete(action, state, attempts)
                with self._persist_lock:
                    persist(state)
            except ProvisioningError as error:
                module_logger.error(f"Action {action.action_id} failed after {attempts[0]} attempt(s): {error!r}")
                return ActionOutcome(action, ActionStatus.FAILED, attempts[0], error)
            except Exception as error:
                # anything outside of the provider contract is not worth retrying
                wrapped = PermanentProviderError(f"Unexpected error in action {action.action_id}: {error!r}")
                wrapped.__cause__ = error
                module_logger.exception(f"Action {action.action_id} failed with an unexpected error.")
                return ActionOutcome(action, ActionStatus.FAILED, attempts[0], wrapped)
        module_logger.info(f"Action {action.action_id} completed ({resource_id}).")
        return ActionOutcome(action, ActionStatus.COMPLETED, attempts[0], resource_id=resource_id)

    def _call(self, attempts: List[int], action: PlannedAction, func: Callable[..., Any], *args) -> Any:
        """Invoke the provider, retrying transient errors with exponential backoff."""
        backoff = self._config.initial_backoff_secs
        while True:
            attempts[0] += 1
            try:
                return func(*args)
            except TransientProviderError as error:
                if attempts[0] >= self._config.max_attempts:
                    raise
                module_logger.warning(
                    f"Transient error on {action.action_id} (attempt {attempts[0]}/{self._config.max_attempts}): {error!r}. "
                    f"Retrying in {backoff} seconds."
                )
                self._sleep(backoff)
                backoff = min(backoff * 2, self._config.max_backoff_secs)

    @staticmethod
    def resolve(attributes: Dict[str, Any], state: StateRecord) -> Dict[str, Any]:
        def _resolve(reference: Reference) -> Any:
            target = state.get(reference.target)
            if target is None:
                raise PermanentProviderError(f"Reference to {reference.target!r} cannot be resolved, it is not provisioned.")
            return target.get_output(reference.attribute)

        return map_references(attributes, _resolve)

    def _create(self, action: PlannedAction, state: StateRecord, attempts: List[int]) -> str:
        attributes = self.resolve(action.attributes, state)
        resource_id, outputs = self._call(attempts, action, self._provider.create, action.kind, attributes)
        current = state.get(action.name)
        if current is not None and current.resource_id != resource_id:
            # the superseded object stays tracked until its own delete action runs
            module_logger.info(f"Deposing {current.resource_id} of {action.name!r} in favor of {resource_id}.")
            state.depose(action.name)
        state.put(ResourceState(action.name, action.kind, resource_id, attributes, outputs, action.resource_dependencies))
        return resource_id

    def _update(self, action: PlannedAction, state: StateRecord, attempts: List[int]) -> str:
        current = state.get(action.name)
        if current is None:
            raise PermanentProviderError(f"Cannot update {action.name!r}, it is not recorded in the state.")
        attributes = self.resolve(action.attributes, state)
        outputs = self._call(attempts, action, self._provider.update, action.kind, current.resource_id, attributes, current.attributes)
        state.put(ResourceState(action.name, action.kind, current.resource_id, attributes, outputs, action.resource_dependencies))
        return current.resource_id

    def _delete(self, action: PlannedAction, state: StateRecord, attempts: List[int]) -> str:
        try:
            self._call(attempts, action, self._provider.delete, action.kind, action.resource_id)
        except ResourceNotFound:
            module_logger.info(f"{action.kind.value} {action.resource_id} ({action.name!r}) is already gone.")
        if not state.forget(action.name, action.resource_id):
            module_logger.warning(f"{action.resource_id} ({action.name!r}) was not recorded in the state anymore.")
        return action.resource_id
