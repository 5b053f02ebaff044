# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

import logging
import time
from typing import Dict, Iterable, List, Sequence, Tuple

from botocore.exceptions import BotoCoreError, ClientError, WaiterError

from vpcflow.core.errors import PermanentProviderError, ProviderError, ResourceNotFound, TransientProviderError

module_logger = logging.getLogger(__name__)


def get_code_for_exception(error):
    if isinstance(error, ClientError) and "Code" in error.response["Error"]:
        return error.response["Error"]["Code"]
    elif isinstance(error, WaiterError) and "Error" in error.last_response:
        return error.last_response["Error"]["Code"]
    elif isinstance(error, ProviderError) and error.code:
        return error.code
    elif hasattr(error, "error_code"):
        return error.error_code

    return error.__class__.__name__


# common AWS service errors
AWS_COMMON_RETRYABLE_ERRORS = [
    "TooManyRequestsException",
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "Unavailable",
    "InternalFailure",
    "InternalError",
    "InternalServerError",
    "ServiceUnavailable",
    "ServiceUnavailableException",
    # Now add botocore common retryable errors
    "ConnectTimeoutError",
    "ReadTimeoutError",
    "EndpointConnectionError",
    # We evaluate the following as retryable due to eventual consistency
    "InvalidClientTokenId",
    "UnrecognizedClientException",
    "InvalidAccessKeyId",
]


# the control params below are popped from the keyword arguments before `func` is called
INITIAL_SLEEP_INTERVAL_PARAM = "_initial_sleep_time_in_secs"
MAX_SLEEP_INTERVAL_PARAM = "_max_sleep_time_in_secs"
MAX_ATTEMPTS_PARAM = "_max_attempts"
SLEEP_PARAM = "_sleep"
INITIAL_SLEEP_INTERVAL_DEFAULT = 1
MAX_SLEEP_INTERVAL_DEFAULT = 64 + 1


def exponential_retry(func, service_retryable_errors, *func_args, **func_kwargs):
    """
    Retries the specified function with a simple exponential backoff algorithm.
    :param func: The function to retry.
    :param service_retryable_errors: AWS service specific retryable error codes. These are added to the AWS common
                                    retryable errors. Anything else is raised without a retry.
    :param func_args: The positional arguments to pass to the function.
    :param func_kwargs: The keyword arguments to pass to the function. Optional control params:
                        `_initial_sleep_time_in_secs` (first wait, doubled after each retry),
                        `_max_sleep_time_in_secs` (the last error is raised once the wait would exceed it),
                        `_max_attempts` (total number of calls) and `_sleep` (the function used to wait).
    :return: The return value of the retried function.
    """
    retryables = set(AWS_COMMON_RETRYABLE_ERRORS) | set(service_retryable_errors)
    sleep_secs = func_kwargs.pop(INITIAL_SLEEP_INTERVAL_PARAM, INITIAL_SLEEP_INTERVAL_DEFAULT)
    max_sleep_secs = func_kwargs.pop(MAX_SLEEP_INTERVAL_PARAM, MAX_SLEEP_INTERVAL_DEFAULT)
    max_attempts = func_kwargs.pop(MAX_ATTEMPTS_PARAM, None)
    sleep = func_kwargs.pop(SLEEP_PARAM, time.sleep)
    attempt = 0
    while True:
        attempt += 1
        try:
            func_return = func(*func_args, **func_kwargs)
        except Exception as error:
            error_code = get_code_for_exception(error)
            out_of_attempts = max_attempts is not None and attempt >= max_attempts
            if error_code not in retryables or out_of_attempts or sleep_secs > max_sleep_secs:
                raise
            module_logger.warning(f"Retryable error_code={error_code!r} (attempt {attempt}), sleeping for {sleep_secs} secs.")
            sleep(sleep_secs)
            sleep_secs = sleep_secs * 2
            continue
        module_logger.debug("Ran %s, got %s.", getattr(func, "__name__", str(func)), func_return)
        return func_return


def translate_client_error(
    error: Exception, context: str, not_found_codes: Iterable[str] = (), retryable_codes: Iterable[str] = ()
) -> ProviderError:
    """Map a botocore error to the engine's provider error taxonomy (the caller raises the returned error)."""
    error_code = get_code_for_exception(error)
    message = f"{context} failed with {error_code!r}: {error}"
    if error_code in not_found_codes:
        return ResourceNotFound(message, error_code)
    if error_code in AWS_COMMON_RETRYABLE_ERRORS or error_code in retryable_codes or isinstance(error, BotoCoreError):
        return TransientProviderError(message, error_code)
    return PermanentProviderError(message, error_code)


def to_aws_tags(tags: Dict[str, str]) -> List[Dict[str, str]]:
    return [{"Key": key, "Value": value} for key, value in sorted(tags.items())]


def from_aws_tags(tags: Sequence[Dict[str, str]]) -> Dict[str, str]:
    return {tag["Key"]: tag["Value"] for tag in (tags or [])}


def diff_tags(previous: Dict[str, str], desired: Dict[str, str]) -> Tuple[Dict[str, str], List[str]]:
    """Return the tags to (over)write and the tag keys to remove."""
    to_set = {key: value for key, value in desired.items() if previous.get(key) != value}
    to_delete = sorted(key for key in previous if key not in desired)
    return to_set, to_delete
