# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

"""Error taxonomy of the provisioning engine.

SchemaError and CycleError are raised before any provider call and are fatal for the given declarations.
Provider errors are split into transient (retried) and permanent (surfaced, stops the plan) ones.
StateConflict means that the state record changed under the caller, which should plan again.
"""
from typing import Optional, Sequence


class ProvisioningError(Exception):
    pass


class SchemaError(ProvisioningError):
    pass


class CycleError(ProvisioningError):
    def __init__(self, participants: Sequence[str]) -> None:
        self.participants = list(participants)
        super().__init__(f"Dependency cycle detected between resources: {' -> '.join(self.participants)}")


class StateConflict(ProvisioningError):
    pass


class ProviderError(ProvisioningError):
    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code


class TransientProviderError(ProviderError):
    """Throttling, timeouts and other failures that may succeed on a retry."""


class PermanentProviderError(ProviderError):
    """Invalid attributes, exceeded quotas, conflicting resources."""


class ResourceNotFound(ProviderError):
    pass


class ActionTimeoutError(TransientProviderError):
    pass
