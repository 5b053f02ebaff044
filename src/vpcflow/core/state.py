# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

"""Durable record of the resources the engine has provisioned.

For each logical name the record keeps the provider-assigned id, the resolved attributes it was created/updated with
(used for diffing against declarations) and the attributes reported by the provider. "Deposed" entries are objects
that were superseded by a create-before-destroy replacement but have not been deleted yet.
"""
import copy
import json
import logging
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import shortuuid
from dateutil import parser as date_parser
from dateutil.tz import tzutc
from packaging.version import InvalidVersion, Version

from vpcflow.core.entity import CoreData
from vpcflow.core.topology.model import ResourceKind

module_logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = "1.0"


def _now() -> datetime:
    return datetime.now(tzutc())


class ResourceState(CoreData):
    def __init__(
        self,
        name: str,
        kind: ResourceKind,
        resource_id: str,
        attributes: Optional[Dict[str, Any]] = None,
        outputs: Optional[Dict[str, Any]] = None,
        dependencies: Optional[Sequence[str]] = None,
        updated_at: Optional[datetime] = None,
    ) -> None:
        self.name = name
        self.kind = ResourceKind(kind)
        self.resource_id = resource_id
        self.attributes = dict(attributes or {})
        self.outputs = dict(outputs or {})
        self.dependencies = sorted(dependencies or [])
        self.updated_at = updated_at if updated_at is not None else _now()

    def get_output(self, attribute: str) -> Any:
        if attribute == "id":
            return self.resource_id
        return self.outputs.get(attribute, self.attributes.get(attribute))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "id": self.resource_id,
            "attributes": self.attributes,
            "outputs": self.outputs,
            "dependencies": self.dependencies,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResourceState":
        return ResourceState(
            data["name"],
            ResourceKind(data["kind"]),
            data["id"],
            data.get("attributes"),
            data.get("outputs"),
            data.get("dependencies"),
            date_parser.isoparse(data["updated_at"]) if data.get("updated_at") else None,
        )


class StateRecord:
    """Mutable, thread-safe state record.

    Concurrent actions of the executor mutate the record. Each logical name has its own re-entrant lock
    (see :meth:`lock_for`) which actions hold for their whole duration, structural changes to the record are
    serialized by an internal lock.
    """

    def __init__(
        self,
        lineage: Optional[str] = None,
        serial: int = 0,
        resources: Optional[Sequence[ResourceState]] = None,
        deposed: Optional[Sequence[ResourceState]] = None,
        updated_at: Optional[datetime] = None,
    ) -> None:
        self.lineage = lineage
        self.serial = serial
        self.updated_at = updated_at
        self._resources: Dict[str, ResourceState] = {resource.name: resource for resource in (resources or [])}
        self._deposed: List[ResourceState] = list(deposed or [])
        self._mutex = threading.RLock()
        self._entity_locks: Dict[str, threading.RLock] = dict()

    def lock_for(self, name: str) -> threading.RLock:
        with self._mutex:
            lock = self._entity_locks.get(name)
            if lock is None:
                lock = threading.RLock()
                self._entity_locks[name] = lock
            return lock

    def __contains__(self, name: str) -> bool:
        with self._mutex:
            return name in self._resources

    def __len__(self) -> int:
        with self._mutex:
            return len(self._resources)

    def is_empty(self) -> bool:
        with self._mutex:
            return not self._resources and not self._deposed

    def get(self, name: str) -> Optional[ResourceState]:
        with self._mutex:
            return self._resources.get(name)

    def names(self) -> List[str]:
        with self._mutex:
            return sorted(self._resources.keys())

    def resources(self) -> List[ResourceState]:
        with self._mutex:
            return [self._resources[name] for name in sorted(self._resources.keys())]

    def deposed(self) -> List[ResourceState]:
        with self._mutex:
            return list(self._deposed)

    def dependents_of(self, name: str) -> List[str]:
        """Names of recorded resources that were provisioned with a dependency on `name`."""
        with self._mutex:
            return sorted(resource.name for resource in self._resources.values() if name in resource.dependencies)

    def put(self, resource: ResourceState) -> None:
        with self._mutex:
            self._resources[resource.name] = resource

    def depose(self, name: str) -> Optional[ResourceState]:
        """Move the current object of `name` to the deposed list so that a replacement can take over the name."""
        with self._mutex:
            resource = self._resources.pop(name, None)
            if resource is not None:
                self._deposed.append(resource)
            return resource

    def forget(self, name: str, resource_id: str) -> bool:
        """Drop the entry (current or deposed) of `name` with the given provider id.

        Returns False if no such entry exists, so that a stale delete never drops a newer object.
        """
        with self._mutex:
            current = self._resources.get(name)
            if current is not None and current.resource_id == resource_id:
                del self._resources[name]
                return True
            for i, resource in enumerate(self._deposed):
                if resource.name == name and resource.resource_id == resource_id:
                    del self._deposed[i]
                    return True
            return False

    def copy(self) -> "StateRecord":
        with self._mutex:
            return StateRecord(
                self.lineage,
                self.serial,
                copy.deepcopy(list(self._resources.values())),
                copy.deepcopy(self._deposed),
                self.updated_at,
            )

    def to_dict(self) -> Dict[str, Any]:
        with self._mutex:
            return {
                "format_version": STATE_FORMAT_VERSION,
                "lineage": self.lineage,
                "serial": self.serial,
                "updated_at": self.updated_at.isoformat() if self.updated_at else None,
                "resources": [resource.to_dict() for resource in self.resources()],
                "deposed": [resource.to_dict() for resource in self._deposed],
            }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StateRecord":
        format_version = data.get("format_version")
        try:
            version = Version(str(format_version))
        except InvalidVersion:
            raise ValueError(f"State record has an invalid format version: {format_version!r}")
        if version.major > Version(STATE_FORMAT_VERSION).major:
            raise ValueError(
                f"State record format {format_version} is newer than the supported format {STATE_FORMAT_VERSION}. "
                f"Please upgrade vpcflow."
            )
        return StateRecord(
            data.get("lineage"),
            int(data.get("serial", 0)),
            [ResourceState.from_dict(item) for item in data.get("resources", [])],
            [ResourceState.from_dict(item) for item in data.get("deposed", [])],
            date_parser.isoparse(data["updated_at"]) if data.get("updated_at") else None,
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, sort_keys=True)

    @classmethod
    def from_json(cls, body: str) -> "StateRecord":
        return StateRecord.from_dict(json.loads(body))

    def next_serial(self) -> None:
        """Called by state stores right before a durable write."""
        if self.lineage is None:
            self.lineage = shortuuid.uuid()
        self.serial += 1
        self.updated_at = _now()
