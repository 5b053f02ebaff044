# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

import logging
from enum import Enum, unique
from typing import Any, Dict, Type

from vpcflow.core.entity import CoreData

module_logger = logging.getLogger(__name__)


@unique
class EngineParams(str, Enum):
    MAX_CONCURRENCY = "MAX_CONCURRENCY"
    MAX_ATTEMPTS = "MAX_ATTEMPTS"
    INITIAL_BACKOFF_SECS = "INITIAL_BACKOFF_SECS"
    MAX_BACKOFF_SECS = "MAX_BACKOFF_SECS"
    ACTION_TIMEOUT_SECS = "ACTION_TIMEOUT_SECS"
    PROVIDER_WAIT_TIMEOUT_SECS = "PROVIDER_WAIT_TIMEOUT_SECS"
    PROVIDER_POLL_INTERVAL_SECS = "PROVIDER_POLL_INTERVAL_SECS"


_DEFAULTS: Dict[EngineParams, Any] = {
    # keeps us well below the EC2 mutating API request rate limits
    EngineParams.MAX_CONCURRENCY: 4,
    EngineParams.MAX_ATTEMPTS: 5,
    EngineParams.INITIAL_BACKOFF_SECS: 1.0,
    EngineParams.MAX_BACKOFF_SECS: 32.0,
    # NAT gateways take a few minutes to become available
    EngineParams.ACTION_TIMEOUT_SECS: 15 * 60,
    EngineParams.PROVIDER_WAIT_TIMEOUT_SECS: 10 * 60,
    EngineParams.PROVIDER_POLL_INTERVAL_SECS: 15.0,
}


class EngineConfiguration(CoreData):
    """Tunables for the provisioning engine.

    Use the fluent builder:

        conf = EngineConfiguration.builder().with_max_concurrency(2).with_retry(max_attempts=3).build()
    """

    class _Builder:
        def __init__(self, conf_class: Type["EngineConfiguration"]) -> None:
            self._new_conf: EngineConfiguration = conf_class()

        def with_param(self, key: EngineParams, value: Any) -> "EngineConfiguration._Builder":
            self._new_conf.add_param(key, value)
            return self

        def with_max_concurrency(self, max_concurrency: int) -> "EngineConfiguration._Builder":
            if max_concurrency < 1:
                raise ValueError(f"max_concurrency must be a positive integer, got {max_concurrency!r}")
            return self.with_param(EngineParams.MAX_CONCURRENCY, max_concurrency)

        def with_retry(
            self, max_attempts: int, initial_backoff_secs: float = None, max_backoff_secs: float = None
        ) -> "EngineConfiguration._Builder":
            if max_attempts < 1:
                raise ValueError(f"max_attempts must be a positive integer, got {max_attempts!r}")
            self.with_param(EngineParams.MAX_ATTEMPTS, max_attempts)
            if initial_backoff_secs is not None:
                self.with_param(EngineParams.INITIAL_BACKOFF_SECS, initial_backoff_secs)
            if max_backoff_secs is not None:
                self.with_param(EngineParams.MAX_BACKOFF_SECS, max_backoff_secs)
            return self

        def with_action_timeout(self, timeout_secs: float) -> "EngineConfiguration._Builder":
            return self.with_param(EngineParams.ACTION_TIMEOUT_SECS, timeout_secs)

        def with_provider_wait(self, timeout_secs: float, poll_interval_secs: float = None) -> "EngineConfiguration._Builder":
            self.with_param(EngineParams.PROVIDER_WAIT_TIMEOUT_SECS, timeout_secs)
            if poll_interval_secs is not None:
                self.with_param(EngineParams.PROVIDER_POLL_INTERVAL_SECS, poll_interval_secs)
            return self

        def build(self) -> "EngineConfiguration":
            return self._new_conf

    @classmethod
    def builder(cls) -> "EngineConfiguration._Builder":
        return EngineConfiguration._Builder(cls)

    def __init__(self) -> None:
        self._params: Dict[EngineParams, Any] = dict(_DEFAULTS)

    def add_param(self, key: EngineParams, value: Any) -> None:
        self._params[EngineParams(key)] = value

    def get_param(self, key: EngineParams) -> Any:
        return self._params[EngineParams(key)]

    @property
    def max_concurrency(self) -> int:
        return self.get_param(EngineParams.MAX_CONCURRENCY)

    @property
    def max_attempts(self) -> int:
        return self.get_param(EngineParams.MAX_ATTEMPTS)

    @property
    def initial_backoff_secs(self) -> float:
        return self.get_param(EngineParams.INITIAL_BACKOFF_SECS)

    @property
    def max_backoff_secs(self) -> float:
        return self.get_param(EngineParams.MAX_BACKOFF_SECS)

    @property
    def action_timeout_secs(self) -> float:
        return self.get_param(EngineParams.ACTION_TIMEOUT_SECS)

    @property
    def provider_wait_timeout_secs(self) -> float:
        return self.get_param(EngineParams.PROVIDER_WAIT_TIMEOUT_SECS)

    @property
    def provider_poll_interval_secs(self) -> float:
        return self.get_param(EngineParams.PROVIDER_POLL_INTERVAL_SECS)
