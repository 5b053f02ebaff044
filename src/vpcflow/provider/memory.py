# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

"""Simulated cloud used for dry runs and tests.

Mimics the EC2 behaviors the engine has to respect: EC2-like ids, referential integrity (a resource cannot be created
against a missing dependency nor deleted while others refer to it), one route table association per subnet, one NAT
gateway per elastic IP and non-overlapping subnets. Faults can be injected per operation and kind.
"""
import copy
import ipaddress
import itertools
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from overrides import overrides

from vpcflow.core.errors import PermanentProviderError, ProviderError, ResourceNotFound, TransientProviderError
from vpcflow.core.topology.model import REFERENCE_ATTRIBUTE_KINDS, ROUTE_TARGET_ATTRIBUTES, ResourceKind
from vpcflow.provider.base import ProviderClient

module_logger = logging.getLogger(__name__)

ID_PREFIXES: Dict[ResourceKind, str] = {
    ResourceKind.VPC: "vpc",
    ResourceKind.SUBNET: "subnet",
    ResourceKind.INTERNET_GATEWAY: "igw",
    ResourceKind.ELASTIC_IP: "eipalloc",
    ResourceKind.NAT_GATEWAY: "nat",
    ResourceKind.ROUTE_TABLE: "rtb",
    ResourceKind.ROUTE_TABLE_ASSOCIATION: "rtbassoc",
}


class _Fault:
    def __init__(
        self,
        operation: str,
        kind: Optional[ResourceKind],
        error_type: Type[ProviderError],
        times: int,
        predicate: Optional[Callable[[Dict[str, Any]], bool]],
    ) -> None:
        self.operation = operation
        self.kind = kind
        self.error_type = error_type
        self.remaining = times
        self.predicate = predicate

    def matches(self, operation: str, kind: ResourceKind, attributes: Dict[str, Any]) -> bool:
        if self.remaining == 0 or self.operation != operation:
            return False
        if self.kind is not None and self.kind != kind:
            return False
        return self.predicate is None or self.predicate(attributes)


class InMemoryProviderClient(ProviderClient):
    def __init__(self, latency_secs: float = 0.0) -> None:
        self._resources: Dict[str, Tuple[ResourceKind, Dict[str, Any]]] = dict()
        self._lock = threading.RLock()
        self._sequence = itertools.count(1)
        self._faults: List[_Fault] = []
        self._latency_secs = latency_secs
        self._in_flight = 0
        self.max_in_flight = 0
        # (operation, kind, resource id) in the order the calls completed
        self.calls: List[Tuple[str, ResourceKind, str]] = []

    def fail_next(
        self,
        operation: str,
        kind: Optional[ResourceKind] = None,
        error_type: Type[ProviderError] = TransientProviderError,
        times: int = 1,
        predicate: Optional[Callable[[Dict[str, Any]], bool]] = None,
    ) -> None:
        """Make the next `times` matching calls fail with `error_type` (times=-1 for all of them)."""
        with self._lock:
            self._faults.append(_Fault(operation, kind, error_type, times, predicate))

    def _maybe_fail(self, operation: str, kind: ResourceKind, attributes: Dict[str, Any]) -> None:
        with self._lock:
            for fault in self._faults:
                if fault.matches(operation, kind, attributes):
                    fault.remaining -= 1
                    raise fault.error_type(f"Injected {fault.error_type.__name__} on {operation} {kind.value}", "InjectedFault")

    def _enter(self) -> None:
        with self._lock:
            self._in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self._in_flight)
        if self._latency_secs:
            time.sleep(self._latency_secs)

    def _exit(self) -> None:
        with self._lock:
            self._in_flight -= 1

    # Introspection
    def exists(self, resource_id: str) -> bool:
        with self._lock:
            return resource_id in self._resources

    def resources_of(self, kind: ResourceKind) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {rid: copy.deepcopy(attrs) for rid, (k, attrs) in self._resources.items() if k == kind}

    def calls_of(self, operation: str, kind: Optional[ResourceKind] = None) -> List[str]:
        with self._lock:
            return [rid for op, k, rid in self.calls if op == operation and (kind is None or k == kind)]

    def __len__(self) -> int:
        with self._lock:
            return len(self._resources)

    # ProviderClient
    @overrides
    def create(self, kind: ResourceKind, attributes: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        self._enter()
        try:
            with self._lock:
                self._maybe_fail("create", kind, attributes)
                self._check_references(kind, attributes)
                self._check_conflicts(kind, attributes)
                resource_id = f"{ID_PREFIXES[kind]}-{next(self._sequence):017x}"
                outputs = self._outputs(kind, resource_id, attributes)
                self._resources[resource_id] = (kind, dict(copy.deepcopy(attributes), **outputs))
                self.calls.append(("create", kind, resource_id))
                module_logger.debug(f"Created {kind.value} {resource_id}")
                return resource_id, outputs
        finally:
            self._exit()

    @overrides
    def read(self, kind: ResourceKind, resource_id: str) -> Dict[str, Any]:
        with self._lock:
            self._maybe_fail("read", kind, {})
            return copy.deepcopy(self._get(kind, resource_id))

    @overrides
    def update(self, kind: ResourceKind, resource_id: str, attributes: Dict[str, Any], previous: Dict[str, Any]) -> Dict[str, Any]:
        self._enter()
        try:
            with self._lock:
                self._maybe_fail("update", kind, attributes)
                current = self._get(kind, resource_id)
                self._check_references(kind, attributes)
                outputs = self._outputs(kind, resource_id, attributes, current)
                self._resources[resource_id] = (kind, dict(copy.deepcopy(attributes), **outputs))
                self.calls.append(("update", kind, resource_id))
                return outputs
        finally:
            self._exit()

    @overrides
    def delete(self, kind: ResourceKind, resource_id: str) -> None:
        self._enter()
        try:
            with self._lock:
                self._maybe_fail("delete", kind, {})
                self._get(kind, resource_id)
                referrers = sorted(rid for rid, (_, attrs) in self._resources.items() if resource_id in self._direct_references(attrs))
                if referrers:
                    raise PermanentProviderError(
                        f"{kind.value} {resource_id} has dependencies and cannot be deleted (referenced by {referrers})",
                        "DependencyViolation",
                    )
                del self._resources[resource_id]
                self.calls.append(("delete", kind, resource_id))
                module_logger.debug(f"Deleted {kind.value} {resource_id}")
        finally:
            self._exit()

    # Internals
    def _get(self, kind: ResourceKind, resource_id: str) -> Dict[str, Any]:
        entry = self._resources.get(resource_id)
        if entry is None or entry[0] != kind:
            raise ResourceNotFound(f"{kind.value} {resource_id} does not exist", f"Invalid{ID_PREFIXES[kind].capitalize()}ID.NotFound")
        return entry[1]

    @staticmethod
    def _direct_references(attributes: Dict[str, Any]) -> List[str]:
        # route targets do not block deletion, EC2 leaves a blackhole route behind
        return [value for key, value in attributes.items() if key in REFERENCE_ATTRIBUTE_KINDS and isinstance(value, str)]

    def _check_references(self, kind: ResourceKind, attributes: Dict[str, Any]) -> None:
        targets = [(key, value) for key, value in attributes.items() if key in REFERENCE_ATTRIBUTE_KINDS]
        for route in attributes.get("routes") or []:
            targets.extend((key, route[key]) for key in ROUTE_TARGET_ATTRIBUTES if route.get(key) is not None)
        for key, value in targets:
            entry = self._resources.get(value) if isinstance(value, str) else None
            if entry is None or entry[0] != REFERENCE_ATTRIBUTE_KINDS[key]:
                raise PermanentProviderError(f"{kind.value}: {key}={value!r} does not exist", "InvalidParameterValue")

    def _check_conflicts(self, kind: ResourceKind, attributes: Dict[str, Any]) -> None:
        for rid, (other_kind, other) in self._resources.items():
            if other_kind != kind:
                continue
            if kind == ResourceKind.SUBNET and other["vpc_id"] == attributes["vpc_id"]:
                if ipaddress.ip_network(other["cidr_block"]).overlaps(ipaddress.ip_network(attributes["cidr_block"])):
                    raise PermanentProviderError(
                        f"subnet CIDR {attributes['cidr_block']} conflicts with {rid} ({other['cidr_block']})", "InvalidSubnet.Conflict"
                    )
            elif kind == ResourceKind.ROUTE_TABLE_ASSOCIATION and other["subnet_id"] == attributes["subnet_id"]:
                raise PermanentProviderError(f"subnet {attributes['subnet_id']} is already associated ({rid})", "Resource.AlreadyAssociated")
            elif kind == ResourceKind.NAT_GATEWAY and other["allocation_id"] == attributes["allocation_id"]:
                raise PermanentProviderError(f"elastic IP {attributes['allocation_id']} is already in use by {rid}", "InvalidAllocationID.InUse")
            elif kind == ResourceKind.INTERNET_GATEWAY and other["vpc_id"] == attributes["vpc_id"]:
                raise PermanentProviderError(f"vpc {attributes['vpc_id']} already has an internet gateway ({rid})", "Resource.AlreadyAssociated")

    def _outputs(
        self, kind: ResourceKind, resource_id: str, attributes: Dict[str, Any], current: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        outputs: Dict[str, Any] = {"id": resource_id}
        if kind == ResourceKind.ELASTIC_IP:
            sequence = int(resource_id.split("-")[1], 16)
            outputs["public_ip"] = current["public_ip"] if current else f"203.0.{(sequence >> 8) % 256}.{sequence % 256}"
        elif kind == ResourceKind.NAT_GATEWAY:
            outputs["state"] = "available"
        elif kind == ResourceKind.VPC:
            outputs["state"] = "available"
            outputs["main_route_table_id"] = current["main_route_table_id"] if current else f"rtb-main-{resource_id.split('-')[1]}"
        return outputs
