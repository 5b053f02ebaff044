# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

from abc import ABC, abstractmethod
from typing import Any, Dict, Tuple

from vpcflow.core.topology.model import ResourceKind


class ProviderClient(ABC):
    """Contract between the engine and the cloud provider API.

    All operations are polymorphic over the resource kind. Attributes passed in are fully resolved (references
    replaced by provider ids). Implementations raise:

        - TransientProviderError for failures worth retrying (throttling, timeouts, eventual consistency),
        - PermanentProviderError for everything else,
        - ResourceNotFound (read/update/delete) when the object does not exist.

    Waiting for a resource to become usable (or to be gone) is the responsibility of the implementation, so that
    a successful `create` means dependents can be created right away.
    """

    @abstractmethod
    def create(self, kind: ResourceKind, attributes: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        """Create the resource and return its provider id and provider reported attributes."""
        ...

    @abstractmethod
    def read(self, kind: ResourceKind, resource_id: str) -> Dict[str, Any]:
        ...

    @abstractmethod
    def update(self, kind: ResourceKind, resource_id: str, attributes: Dict[str, Any], previous: Dict[str, Any]) -> Dict[str, Any]:
        """Apply in-place changes (only mutable attributes differ between `previous` and `attributes`)."""
        ...

    @abstractmethod
    def delete(self, kind: ResourceKind, resource_id: str) -> None:
        ...
