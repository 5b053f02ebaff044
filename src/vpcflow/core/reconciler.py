# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

"""Diffs the dependency graph of declared resources against the state record and derives an ordered action plan.

Every declared resource gets a change type (create, no-op, update or replace), recorded resources which are not
declared anymore and deposed objects are deleted. Changes are expanded into provider actions:

    create  -> create:<name>
    update  -> update:<name>
    replace -> create:<name> + delete:<name> (ordered by the replace strategy of the kind)
    delete  -> delete:<name> (or delete-deposed:<name>:<id> for deposed objects)

Ordering rules between actions:

    - create/update of a resource follows the create/update of its dependencies,
    - delete of a resource follows the deletes of its dependents (as declared now or as provisioned before),
    - unless the delete is the first half of a destroy-before-create replacement, it also follows the
      creates/updates of its dependents so that they are moved away from the object before it is deleted.

Planning never calls the provider.
"""
import logging
from enum import Enum, unique
from typing import Any, Dict, List, Optional, Sequence, Set

import shortuuid

from vpcflow.core.entity import CoreData
from vpcflow.core.errors import CycleError
from vpcflow.core.graph import DependencyGraph, GraphNode, topological_levels
from vpcflow.core.state import ResourceState, StateRecord
from vpcflow.core.topology.conventions import TopologyConventions
from vpcflow.core.topology.model import Reference, ReplaceStrategy, ResourceKind, kind_spec, map_references

module_logger = logging.getLogger(__name__)

UNKNOWN_VALUE = "(known after apply)"


@unique
class ChangeType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    NOOP = "no-op"


@unique
class Operation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


# within a wave deletes are listed first
_OPERATION_RANK = {Operation.DELETE: 0, Operation.CREATE: 1, Operation.UPDATE: 2}

_CHANGE_SYMBOLS = {
    ChangeType.CREATE: "+",
    ChangeType.UPDATE: "~",
    ChangeType.REPLACE: "-/+",
    ChangeType.DELETE: "-",
    ChangeType.NOOP: " ",
}


class ResourceChange(CoreData):
    def __init__(
        self,
        name: str,
        kind: ResourceKind,
        change_type: ChangeType,
        changed_attributes: Optional[Sequence[str]] = None,
        resource_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        self.name = name
        self.kind = kind
        self.change_type = change_type
        self.changed_attributes = list(changed_attributes or [])
        self.resource_id = resource_id
        self.reason = reason


class PlannedAction(CoreData):
    def __init__(
        self,
        action_id: str,
        operation: Operation,
        name: str,
        kind: ResourceKind,
        attributes: Optional[Dict[str, Any]] = None,
        resource_id: Optional[str] = None,
        replace: bool = False,
        deposed: bool = False,
        resource_dependencies: Optional[Sequence[str]] = None,
    ) -> None:
        self.action_id = action_id
        self.operation = operation
        self.name = name
        self.kind = kind
        # symbolic (reference carrying) attributes, resolved by the executor right before the provider call
        self.attributes = dict(attributes or {})
        self.resource_id = resource_id
        self.replace = replace
        self.deposed = deposed
        # logical names the resource depends on, recorded into the state along with the result
        self.resource_dependencies = sorted(resource_dependencies or [])
        self.dependencies: Set[str] = set()

    @property
    def replace_strategy(self) -> ReplaceStrategy:
        return kind_spec(self.kind).replace_strategy


class ActionPlan:
    def __init__(
        self,
        changes: Sequence[ResourceChange],
        actions: Sequence[PlannedAction],
        state_lineage: Optional[str],
        state_serial: int,
        plan_id: Optional[str] = None,
    ) -> None:
        self.plan_id = plan_id if plan_id else shortuuid.uuid()
        self.changes = list(changes)
        self._actions: Dict[str, PlannedAction] = {action.action_id: action for action in actions}
        self.state_lineage = state_lineage
        self.state_serial = state_serial
        self._levels = self._compute_levels()

    def _compute_levels(self) -> List[List[PlannedAction]]:
        try:
            levels = topological_levels({action_id: action.dependencies for action_id, action in self._actions.items()})
        except CycleError as cycle:
            module_logger.error(f"Action plan is not executable, cyclic action dependencies: {cycle.participants}")
            raise
        return [
            sorted((self._actions[action_id] for action_id in level), key=lambda a: (_OPERATION_RANK[a.operation], a.name, a.action_id))
            for level in levels
        ]

    @property
    def actions(self) -> List[PlannedAction]:
        """Actions in a valid execution order."""
        return [action for level in self._levels for action in level]

    def levels(self) -> List[List[PlannedAction]]:
        return [list(level) for level in self._levels]

    def action(self, action_id: str) -> PlannedAction:
        return self._actions[action_id]

    def __contains__(self, action_id: str) -> bool:
        return action_id in self._actions

    def __len__(self) -> int:
        return len(self._actions)

    def is_empty(self) -> bool:
        return not self._actions

    def change_for(self, name: str) -> Optional[ResourceChange]:
        return next((change for change in self.changes if change.name == name), None)

    def actions_of(self, operation: Operation, kind: Optional[ResourceKind] = None) -> List[PlannedAction]:
        return [a for a in self.actions if a.operation == operation and (kind is None or a.kind == kind)]

    def summary(self) -> Dict[ChangeType, int]:
        counts = {change_type: 0 for change_type in ChangeType}
        for change in self.changes:
            counts[change.change_type] += 1
        return counts

    def render(self) -> str:
        lines = []
        for change in self.changes:
            if change.change_type == ChangeType.NOOP:
                continue
            line = f"{_CHANGE_SYMBOLS[change.change_type]} {change.kind.value} {change.name!r}"
            if change.changed_attributes:
                line += f" (changed: {', '.join(change.changed_attributes)})"
            if change.reason:
                line += f" [{change.reason}]"
            lines.append(line)
        counts = self.summary()
        lines.append(
            f"Plan: {counts[ChangeType.CREATE]} to create, {counts[ChangeType.UPDATE]} to update, "
            f"{counts[ChangeType.REPLACE]} to replace, {counts[ChangeType.DELETE]} to delete, "
            f"{counts[ChangeType.NOOP]} unchanged."
        )
        return "\n".join(lines)

    def __repr__(self) -> str:
        return f"ActionPlan(plan_id={self.plan_id!r}, actions={[a.action_id for a in self.actions]})"


def create_action_id(name: str) -> str:
    return f"{Operation.CREATE.value}:{name}"


def update_action_id(name: str) -> str:
    return f"{Operation.UPDATE.value}:{name}"


def delete_action_id(name: str) -> str:
    return f"{Operation.DELETE.value}:{name}"


def delete_deposed_action_id(name: str, resource_id: str) -> str:
    return f"delete-deposed:{name}:{resource_id}"


class StateReconciler:
    def reconcile(self, graph: DependencyGraph, state: StateRecord) -> ActionPlan:
        conventions = graph.conventions
        changes: Dict[str, ResourceChange] = dict()
        # resources whose provider id is not known until apply
        pending: Set[str] = set()
        for name in graph.topological_order():
            change = self._diff(graph.node(name), state.get(name), state, pending, conventions)
            if change.change_type in (ChangeType.CREATE, ChangeType.REPLACE):
                pending.add(name)
            changes[name] = change

        removed = [record for record in state.resources() if record.name not in graph]
        for record in removed:
            changes[record.name] = ResourceChange(
                record.name, record.kind, ChangeType.DELETE, resource_id=record.resource_id, reason="no longer declared"
            )
        deposed_changes = [
            ResourceChange(
                record.name, record.kind, ChangeType.DELETE, resource_id=record.resource_id, reason=f"deposed object {record.resource_id}"
            )
            for record in state.deposed()
        ]

        actions = self._expand(graph, state, changes, removed)
        plan = ActionPlan(list(changes.values()) + deposed_changes, actions, state.lineage, state.serial)
        module_logger.info(f"Planned {len(plan)} actions: { {k.value: v for k, v in plan.summary().items() if v} }")
        return plan

    @staticmethod
    def _resolve_for_diff(value: Any, state: StateRecord, pending: Set[str]) -> Any:
        def _resolve(reference: Reference) -> Any:
            if reference.target in pending:
                return UNKNOWN_VALUE
            target = state.get(reference.target)
            if target is None:
                return UNKNOWN_VALUE
            return target.get_output(reference.attribute)

        return map_references(value, _resolve)

    def _diff(
        self, node: GraphNode, record: Optional[ResourceState], state: StateRecord, pending: Set[str], conventions: TopologyConventions
    ) -> ResourceChange:
        if record is None:
            return ResourceChange(node.name, node.kind, ChangeType.CREATE)
        if record.kind != node.kind:
            return ResourceChange(
                node.name, node.kind, ChangeType.REPLACE, resource_id=record.resource_id, reason=f"kind changed from {record.kind.value}"
            )

        desired = self._resolve_for_diff(node.attributes, state, pending)
        changed = sorted(key for key in set(desired) | set(record.attributes) if desired.get(key) != record.attributes.get(key))
        if not changed:
            return ResourceChange(node.name, node.kind, ChangeType.NOOP, resource_id=record.resource_id)

        immutable = kind_spec(node.kind).immutable
        forcing = [key for key in changed if key in immutable]
        if "tags" in changed:
            old_tags = record.attributes.get("tags") or {}
            new_tags = desired.get("tags") or {}
            for key in sorted(set(old_tags) | set(new_tags)):
                if conventions.is_immutable_tag(key) and old_tags.get(key) != new_tags.get(key):
                    forcing.append(f"tags[{key}]")

        if forcing:
            return ResourceChange(
                node.name, node.kind, ChangeType.REPLACE, changed, record.resource_id, reason=f"forced by {', '.join(forcing)}"
            )
        return ResourceChange(node.name, node.kind, ChangeType.UPDATE, changed, record.resource_id)

    @staticmethod
    def _effective_strategies(graph: DependencyGraph, changes: Dict[str, ResourceChange]) -> Dict[str, ReplaceStrategy]:
        """A replacement that depends on a destroy-before-create replacement must be destroyed before its
        dependency is, so it cannot outlive its own replacement either.
        """
        strategies: Dict[str, ReplaceStrategy] = dict()
        for name in graph.topological_order():
            if changes[name].change_type != ChangeType.REPLACE:
                continue
            strategy = kind_spec(changes[name].kind).replace_strategy
            if any(strategies.get(dep) == ReplaceStrategy.DESTROY_BEFORE_CREATE for dep in graph.dependencies_of(name)):
                strategy = ReplaceStrategy.DESTROY_BEFORE_CREATE
            strategies[name] = strategy
        return strategies

    def _expand(
        self, graph: DependencyGraph, state: StateRecord, changes: Dict[str, ResourceChange], removed: Sequence[ResourceState]
    ) -> List[PlannedAction]:
        actions: Dict[str, PlannedAction] = dict()
        strategies = self._effective_strategies(graph, changes)

        for name in graph.topological_order():
            node = graph.node(name)
            change = changes[name]
            dependencies = graph.dependencies_of(name)
            if change.change_type in (ChangeType.CREATE, ChangeType.REPLACE):
                actions[create_action_id(name)] = PlannedAction(
                    create_action_id(name),
                    Operation.CREATE,
                    name,
                    node.kind,
                    node.attributes,
                    replace=change.change_type == ChangeType.REPLACE,
                    resource_dependencies=dependencies,
                )
            if change.change_type == ChangeType.UPDATE:
                actions[update_action_id(name)] = PlannedAction(
                    update_action_id(name),
                    Operation.UPDATE,
                    name,
                    node.kind,
                    node.attributes,
                    resource_id=change.resource_id,
                    resource_dependencies=dependencies,
                )
            if change.change_type == ChangeType.REPLACE:
                record = state.get(name)
                actions[delete_action_id(name)] = PlannedAction(
                    delete_action_id(name), Operation.DELETE, name, record.kind, resource_id=record.resource_id, replace=True
                )

        for record in removed:
            actions[delete_action_id(record.name)] = PlannedAction(
                delete_action_id(record.name), Operation.DELETE, record.name, record.kind, resource_id=record.resource_id
            )
        deposed_actions: Dict[str, List[str]] = dict()
        for record in state.deposed():
            action_id = delete_deposed_action_id(record.name, record.resource_id)
            actions[action_id] = PlannedAction(
                action_id, Operation.DELETE, record.name, record.kind, resource_id=record.resource_id, deposed=True
            )
            deposed_actions.setdefault(record.name, []).append(action_id)

        def _apply_action(name: str) -> Optional[str]:
            for action_id in (create_action_id(name), update_action_id(name)):
                if action_id in actions:
                    return action_id
            return None

        def _delete_actions(name: str) -> List[str]:
            return ([delete_action_id(name)] if delete_action_id(name) in actions else []) + deposed_actions.get(name, [])

        for action in actions.values():
            name = action.name
            if action.operation in (Operation.CREATE, Operation.UPDATE):
                for dependency in graph.dependencies_of(name):
                    dependency_action = _apply_action(dependency)
                    if dependency_action:
                        action.dependencies.add(dependency_action)
                if action.replace and strategies[name] == ReplaceStrategy.DESTROY_BEFORE_CREATE:
                    action.dependencies.add(delete_action_id(name))
                continue

            # delete
            dependents = set(state.dependents_of(name))
            if name in graph:
                dependents.update(graph.dependents_of(name))
            destroy_first = action.replace and strategies.get(name) == ReplaceStrategy.DESTROY_BEFORE_CREATE
            for dependent in dependents:
                action.dependencies.update(_delete_actions(dependent))
                if not destroy_first:
                    dependent_action = _apply_action(dependent)
                    if dependent_action:
                        action.dependencies.add(dependent_action)
            if action.replace and not destroy_first:
                action.dependencies.add(create_action_id(name))
            action.dependencies.discard(action.action_id)

        return list(actions.values())
