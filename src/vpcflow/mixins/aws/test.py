# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

import os
from typing import Optional

import boto3
import pytest
from moto import mock_aws

from vpcflow.core.config import EngineConfiguration
from vpcflow.provider.aws.ec2 import AWSEC2ProviderClient
from vpcflow.provider.aws.s3_state_store import S3StateStore


class AWSTestBase:
    testing_keyname = "testing"
    region = "us-east-1"
    # default moto acc id
    account_id = "123456789012"
    state_bucket = "vpcflow-test-state"

    @pytest.fixture(scope="class", autouse=True)
    def aws_credentials(self):
        os.environ["AWS_ACCESS_KEY_ID"] = self.testing_keyname
        os.environ["AWS_SECRET_ACCESS_KEY"] = self.testing_keyname
        os.environ["AWS_SECURITY_TOKEN"] = self.testing_keyname
        os.environ["AWS_SESSION_TOKEN"] = self.testing_keyname
        os.environ["AWS_DEFAULT_REGION"] = self.region

    def patch_aws_start(self) -> None:
        self._aws_mock = mock_aws()
        self._aws_mock.start()

    def patch_aws_stop(self) -> None:
        self._aws_mock.stop()

    @property
    def session(self) -> boto3.Session:
        return boto3.Session(region_name=self.region)

    @property
    def ec2_client(self):
        return self.session.client("ec2", region_name=self.region)

    def create_provider(self, config: Optional[EngineConfiguration] = None) -> AWSEC2ProviderClient:
        # no real waiting against moto
        return AWSEC2ProviderClient(self.session, self.region, config, sleep=lambda secs: None)

    def create_state_store(self, key: str = "test/state.json") -> S3StateStore:
        self.session.client("s3", region_name=self.region).create_bucket(Bucket=self.state_bucket)
        return S3StateStore(self.session, self.state_bucket, key, self.region)
