# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

import logging
from typing import Optional

import boto3
from botocore.exceptions import ClientError
from overrides import overrides

from vpcflow.core.store import StateStore
from vpcflow.provider.aws.common import exponential_retry, translate_client_error

logger = logging.getLogger(__name__)

DEFAULT_STATE_OBJECT_KEY = "vpcflow/state.json"

_OBJECT_NOT_FOUND_CODES = ["NoSuchKey", "404"]


class S3StateStore(StateStore):
    """Keeps the state record as a single JSON object in an S3 bucket.

    The bucket is expected to exist (versioning enabled is recommended so that earlier serials can be recovered).
    """

    def __init__(self, session: boto3.Session, bucket: str, key: str = DEFAULT_STATE_OBJECT_KEY, region: Optional[str] = None) -> None:
        super().__init__()
        self._bucket_name = bucket
        self._key = key
        self._bucket = session.resource("s3", region_name=region).Bucket(bucket)

    @property
    def bucket(self) -> str:
        return self._bucket_name

    @property
    def key(self) -> str:
        return self._key

    @overrides
    def _read(self) -> Optional[str]:
        try:
            response = exponential_retry(self._bucket.Object(self._key).get, {"ReadTimeoutError", "IncompleteReadError"})
            body = response["Body"].read()
        except ClientError as error:
            if error.response["Error"]["Code"] in _OBJECT_NOT_FOUND_CODES:
                return None
            logger.exception("Couldn't get state object '%s' from bucket '%s'.", self._key, self._bucket_name)
            raise translate_client_error(error, f"Reading state from s3://{self._bucket_name}/{self._key}") from error
        logger.info("Got state object '%s' from bucket '%s'.", self._key, self._bucket_name)
        return body.decode("utf-8")

    @overrides
    def _write(self, body: str) -> None:
        try:
            exponential_retry(
                self._bucket.Object(self._key).put, {"ServiceUnavailable"}, Body=body.encode("utf-8"), ContentType="application/json"
            )
        except ClientError as error:
            logger.exception("Couldn't put state object '%s' to bucket '%s'.", self._key, self._bucket_name)
            raise translate_client_error(error, f"Writing state to s3://{self._bucket_name}/{self._key}") from error
        logger.info("Put state object '%s' to bucket '%s'.", self._key, self._bucket_name)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}('s3://{self._bucket_name}/{self._key}')"
