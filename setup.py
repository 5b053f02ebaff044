# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

from setuptools import find_packages, setup
from src.vpcflow import __version__ as version

REQUIRED_PACKAGES = [
    'boto3 >= 1.41.1',
    'python-dateutil >= 2.9.0',
    'packaging >= 25.0',
    'shortuuid >= 1.0.13',
    'overrides >= 3.1.0',
]

TEST_PACKAGES = [
    'moto[ec2,s3] >= 5.0.0',
    'pytest',
    'mock'
]

setup(
    name="vpcflow",
    python_requires=">=3.10",
    version=version,
    description="vpcflow provisions the two-tier (public/private) VPC network foundation of an EKS cluster "
                "with an idempotent, dependency ordered plan/apply engine.",
    keywords="aws vpc eks subnet nat gateway route table provisioning infrastructure plan apply",
    author="Amazon.com Inc.",
    license="Apache 2.0",

    packages=find_packages(where="src", exclude=("test",)),
    package_dir={"": "src"},
    install_requires=REQUIRED_PACKAGES,
    tests_require=TEST_PACKAGES,
    extras_require={"test": TEST_PACKAGES},
    test_suite='test',
    include_package_data=True,
)
