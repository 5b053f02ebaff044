# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

"""boto3 (EC2) binding of the provider contract.

Primary mutating calls are not retried here (the executor retries TransientProviderError with its own backoff), only
follow-up calls on a freshly created object are wrapped with `exponential_retry` (capped by the engine retry settings)
to ride out EC2's eventual consistency. If a follow-up call fails the new object is deleted before the error is
surfaced so that a retried create does not leave an untracked duplicate behind. Once an object is fully configured,
`create` always returns its id: if it cannot be described afterwards only the id is reported as output.
"""
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from overrides import overrides

from vpcflow.core.config import EngineConfiguration
from vpcflow.core.errors import ActionTimeoutError, PermanentProviderError, ProviderError, ResourceNotFound
from vpcflow.core.topology.model import ResourceKind
from vpcflow.provider.aws.common import (
    INITIAL_SLEEP_INTERVAL_PARAM,
    MAX_ATTEMPTS_PARAM,
    MAX_SLEEP_INTERVAL_PARAM,
    SLEEP_PARAM,
    diff_tags,
    exponential_retry,
    to_aws_tags,
    translate_client_error,
)
from vpcflow.provider.base import ProviderClient

module_logger = logging.getLogger(__name__)

NAT_GATEWAY_NOT_FOUND_CODES = ["InvalidNatGatewayID.NotFound", "NatGatewayNotFound"]

NOT_FOUND_CODES: Dict[ResourceKind, List[str]] = {
    ResourceKind.VPC: ["InvalidVpcID.NotFound"],
    ResourceKind.SUBNET: ["InvalidSubnetID.NotFound", "InvalidSubnet.NotFound"],
    ResourceKind.INTERNET_GATEWAY: ["InvalidInternetGatewayID.NotFound"],
    ResourceKind.ELASTIC_IP: ["InvalidAllocationID.NotFound"],
    ResourceKind.NAT_GATEWAY: NAT_GATEWAY_NOT_FOUND_CODES,
    ResourceKind.ROUTE_TABLE: ["InvalidRouteTableID.NotFound"],
    ResourceKind.ROUTE_TABLE_ASSOCIATION: ["InvalidAssociationID.NotFound"],
}

# a dependency created a moment ago might not be visible yet
EVENTUAL_CONSISTENCY_CODES = [code for codes in NOT_FOUND_CODES.values() for code in codes]

# deletes racing with the teardown of dependents (ENIs of a NAT gateway, EIP association, etc)
DEPENDENCY_CODES = ["DependencyViolation", "InvalidAddress.InUse", "InvalidIPAddress.InUse"]

ROUTE_TARGET_PARAMS = {"gateway_id": "GatewayId", "nat_gateway_id": "NatGatewayId"}


class AWSEC2ProviderClient(ProviderClient):
    def __init__(
        self,
        session: boto3.Session,
        region: str,
        config: Optional[EngineConfiguration] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._session = session
        self._region = region
        self._config = config if config is not None else EngineConfiguration()
        self._sleep = sleep
        self._ec2_client = session.client("ec2", region_name=region)
        self._handlers: Dict[ResourceKind, Tuple[Callable, Callable, Callable, Callable]] = {
            ResourceKind.VPC: (self._create_vpc, self._read_vpc, self._update_vpc, self._delete_vpc),
            ResourceKind.SUBNET: (self._create_subnet, self._read_subnet, self._update_subnet, self._delete_subnet),
            ResourceKind.INTERNET_GATEWAY: (
                self._create_internet_gateway,
                self._read_internet_gateway,
                self._update_tags_only,
                self._delete_internet_gateway,
            ),
            ResourceKind.ELASTIC_IP: (self._create_elastic_ip, self._read_elastic_ip, self._update_tags_only, self._delete_elastic_ip),
            ResourceKind.NAT_GATEWAY: (self._create_nat_gateway, self._read_nat_gateway, self._update_tags_only, self._delete_nat_gateway),
            ResourceKind.ROUTE_TABLE: (self._create_route_table, self._read_route_table, self._update_route_table, self._delete_route_table),
            ResourceKind.ROUTE_TABLE_ASSOCIATION: (
                self._create_association,
                self._read_association,
                self._update_association,
                self._delete_association,
            ),
        }

    @property
    def region(self) -> str:
        return self._region

    @overrides
    def create(self, kind: ResourceKind, attributes: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        try:
            resource_id = self._handlers[kind][0](attributes)
        except (ClientError, BotoCoreError) as error:
            raise translate_client_error(error, f"Creating {kind.value}", retryable_codes=EVENTUAL_CONSISTENCY_CODES) from error
        module_logger.info(f"Created {kind.value} {resource_id}")
        # the object exists from here on, an error escaping now would make the executor create a second one
        try:
            outputs = self._retry(self._handlers[kind][1], NOT_FOUND_CODES[kind], resource_id)
        except (ClientError, BotoCoreError, ProviderError) as error:
            module_logger.warning(f"Could not describe the new {kind.value} {resource_id}, recording its id only: {error!r}")
            outputs = {"id": resource_id}
        return resource_id, outputs

    @overrides
    def read(self, kind: ResourceKind, resource_id: str) -> Dict[str, Any]:
        try:
            return self._handlers[kind][1](resource_id)
        except (ClientError, BotoCoreError) as error:
            raise translate_client_error(error, f"Reading {kind.value} {resource_id}", NOT_FOUND_CODES[kind]) from error

    @overrides
    def update(self, kind: ResourceKind, resource_id: str, attributes: Dict[str, Any], previous: Dict[str, Any]) -> Dict[str, Any]:
        try:
            self._handlers[kind][2](kind, resource_id, attributes, previous)
        except (ClientError, BotoCoreError) as error:
            raise translate_client_error(
                error, f"Updating {kind.value} {resource_id}", NOT_FOUND_CODES[kind], EVENTUAL_CONSISTENCY_CODES
            ) from error
        module_logger.info(f"Updated {kind.value} {resource_id}")
        return self.read(kind, resource_id)

    @overrides
    def delete(self, kind: ResourceKind, resource_id: str) -> None:
        try:
            self._handlers[kind][3](resource_id)
        except (ClientError, BotoCoreError) as error:
            raise translate_client_error(error, f"Deleting {kind.value} {resource_id}", NOT_FOUND_CODES[kind], DEPENDENCY_CODES) from error
        module_logger.info(f"Deleted {kind.value} {resource_id}")

    # Helpers
    def _retry(self, func: Callable, retryable_codes, *args, **kwargs) -> Any:
        return exponential_retry(
            func,
            retryable_codes,
            *args,
            **{
                INITIAL_SLEEP_INTERVAL_PARAM: self._config.initial_backoff_secs,
                MAX_SLEEP_INTERVAL_PARAM: self._config.max_backoff_secs,
                MAX_ATTEMPTS_PARAM: self._config.max_attempts,
                SLEEP_PARAM: self._sleep,
            },
            **kwargs,
        )

    def _apply_tags(self, resource_id: str, tags: Dict[str, str], not_found_code: str) -> None:
        if tags:
            self._retry(
                self._ec2_client.create_tags, {"RequestLimitExceeded", not_found_code}, Resources=[resource_id], Tags=to_aws_tags(tags)
            )

    def _update_tags(self, resource_id: str, attributes: Dict[str, Any], previous: Dict[str, Any]) -> None:
        to_set, to_delete = diff_tags(previous.get("tags") or {}, attributes.get("tags") or {})
        if to_set:
            self._ec2_client.create_tags(Resources=[resource_id], Tags=to_aws_tags(to_set))
        if to_delete:
            self._ec2_client.delete_tags(Resources=[resource_id], Tags=[{"Key": key} for key in to_delete])

    def _update_tags_only(self, kind: ResourceKind, resource_id: str, attributes: Dict[str, Any], previous: Dict[str, Any]) -> None:
        self._update_tags(resource_id, attributes, previous)

    def _rollback(self, kind: ResourceKind, resource_id: str) -> None:
        module_logger.warning(f"Rolling back partially configured {kind.value} {resource_id}")
        try:
            self._handlers[kind][3](resource_id)
        except (ClientError, BotoCoreError, ProviderError) as error:
            module_logger.error(f"Could not roll back {kind.value} {resource_id}, it needs to be deleted manually: {error}")

    def _finish_create(self, kind: ResourceKind, resource_id: str, *steps: Callable[[], Any]) -> str:
        try:
            for step in steps:
                step()
        except (ClientError, BotoCoreError, ProviderError):
            self._rollback(kind, resource_id)
            raise
        return resource_id

    def _wait_for(self, description: str, probe: Callable[[], bool]) -> None:
        """Poll `probe` until it returns True or the configured provider wait timeout elapses."""
        timeout_secs = self._config.provider_wait_timeout_secs
        deadline = time.monotonic() + timeout_secs
        while not probe():
            if time.monotonic() >= deadline:
                raise ActionTimeoutError(f"Timeout ({timeout_secs} secs) waiting for {description}", "WaitTimeout")
            module_logger.info(f"Waiting for {description}...")
            self._sleep(self._config.provider_poll_interval_secs)

    # VPC
    def _create_vpc(self, attributes: Dict[str, Any]) -> str:
        response = self._ec2_client.create_vpc(CidrBlock=attributes["cidr_block"])
        vpc_id = response["Vpc"]["VpcId"]
        steps = [lambda: self._apply_tags(vpc_id, attributes.get("tags"), "InvalidVpcID.NotFound")]
        # EC2 accepts only one attribute per modify_vpc_attribute call
        for attribute, param in (("enable_dns_support", "EnableDnsSupport"), ("enable_dns_hostnames", "EnableDnsHostnames")):
            if attribute in attributes:
                steps.append(
                    lambda param=param, value=bool(attributes[attribute]): self._retry(
                        self._ec2_client.modify_vpc_attribute, {"RequestLimitExceeded", "InvalidVpcID.NotFound"}, VpcId=vpc_id, **{param: {"Value": value}}
                    )
                )
        return self._finish_create(ResourceKind.VPC, vpc_id, *steps)

    def _read_vpc(self, vpc_id: str) -> Dict[str, Any]:
        vpc = self._ec2_client.describe_vpcs(VpcIds=[vpc_id])["Vpcs"][0]
        return {"id": vpc_id, "state": vpc.get("State"), "cidr_block": vpc["CidrBlock"], "owner_id": vpc.get("OwnerId")}

    def _update_vpc(self, kind: ResourceKind, vpc_id: str, attributes: Dict[str, Any], previous: Dict[str, Any]) -> None:
        self._update_tags(vpc_id, attributes, previous)
        for attribute, param in (("enable_dns_support", "EnableDnsSupport"), ("enable_dns_hostnames", "EnableDnsHostnames")):
            if attribute in attributes and attributes.get(attribute) != previous.get(attribute):
                self._ec2_client.modify_vpc_attribute(VpcId=vpc_id, **{param: {"Value": bool(attributes[attribute])}})

    def _delete_vpc(self, vpc_id: str) -> None:
        self._ec2_client.delete_vpc(VpcId=vpc_id)

    # Subnet
    def _create_subnet(self, attributes: Dict[str, Any]) -> str:
        response = self._ec2_client.create_subnet(
            VpcId=attributes["vpc_id"], CidrBlock=attributes["cidr_block"], AvailabilityZone=attributes["availability_zone"]
        )
        subnet_id = response["Subnet"]["SubnetId"]
        steps = [lambda: self._apply_tags(subnet_id, attributes.get("tags"), "InvalidSubnetID.NotFound")]
        if attributes.get("map_public_ip_on_launch"):
            steps.append(
                lambda: self._retry(
                    self._ec2_client.modify_subnet_attribute,
                    {"RequestLimitExceeded", "InvalidSubnetID.NotFound"},
                    SubnetId=subnet_id,
                    MapPublicIpOnLaunch={"Value": True},
                )
            )
        return self._finish_create(ResourceKind.SUBNET, subnet_id, *steps)

    def _read_subnet(self, subnet_id: str) -> Dict[str, Any]:
        subnet = self._ec2_client.describe_subnets(SubnetIds=[subnet_id])["Subnets"][0]
        return {
            "id": subnet_id,
            "vpc_id": subnet["VpcId"],
            "cidr_block": subnet["CidrBlock"],
            "availability_zone": subnet["AvailabilityZone"],
            "map_public_ip_on_launch": subnet.get("MapPublicIpOnLaunch", False),
        }

    def _update_subnet(self, kind: ResourceKind, subnet_id: str, attributes: Dict[str, Any], previous: Dict[str, Any]) -> None:
        self._update_tags(subnet_id, attributes, previous)
        if bool(attributes.get("map_public_ip_on_launch")) != bool(previous.get("map_public_ip_on_launch")):
            self._ec2_client.modify_subnet_attribute(
                SubnetId=subnet_id, MapPublicIpOnLaunch={"Value": bool(attributes.get("map_public_ip_on_launch"))}
            )

    def _delete_subnet(self, subnet_id: str) -> None:
        self._ec2_client.delete_subnet(SubnetId=subnet_id)

    # Internet gateway
    def _create_internet_gateway(self, attributes: Dict[str, Any]) -> str:
        igw_id = self._ec2_client.create_internet_gateway()["InternetGateway"]["InternetGatewayId"]
        return self._finish_create(
            ResourceKind.INTERNET_GATEWAY,
            igw_id,
            lambda: self._retry(
                self._ec2_client.attach_internet_gateway,
                {"RequestLimitExceeded", "InvalidInternetGatewayID.NotFound"},
                InternetGatewayId=igw_id,
                VpcId=attributes["vpc_id"],
            ),
            lambda: self._apply_tags(igw_id, attributes.get("tags"), "InvalidInternetGatewayID.NotFound"),
        )

    def _read_internet_gateway(self, igw_id: str) -> Dict[str, Any]:
        igw = self._ec2_client.describe_internet_gateways(InternetGatewayIds=[igw_id])["InternetGateways"][0]
        attachments = igw.get("Attachments", [])
        return {"id": igw_id, "vpc_id": attachments[0]["VpcId"] if attachments else None}

    def _delete_internet_gateway(self, igw_id: str) -> None:
        igw = self._ec2_client.describe_internet_gateways(InternetGatewayIds=[igw_id])["InternetGateways"][0]
        for attachment in igw.get("Attachments", []):
            try:
                self._ec2_client.detach_internet_gateway(InternetGatewayId=igw_id, VpcId=attachment["VpcId"])
            except ClientError as error:
                if error.response.get("Error", {}).get("Code") != "Gateway.NotAttached":
                    raise
                module_logger.info(f"Internet gateway {igw_id} already detached from {attachment['VpcId']}")
        self._ec2_client.delete_internet_gateway(InternetGatewayId=igw_id)

    # Elastic IP
    def _create_elastic_ip(self, attributes: Dict[str, Any]) -> str:
        allocation_id = self._ec2_client.allocate_address(Domain=attributes.get("domain", "vpc"))["AllocationId"]
        return self._finish_create(
            ResourceKind.ELASTIC_IP,
            allocation_id,
            lambda: self._apply_tags(allocation_id, attributes.get("tags"), "InvalidAllocationID.NotFound"),
        )

    def _describe_address(self, allocation_id: str) -> Dict[str, Any]:
        return self._ec2_client.describe_addresses(AllocationIds=[allocation_id])["Addresses"][0]

    def _read_elastic_ip(self, allocation_id: str) -> Dict[str, Any]:
        address = self._describe_address(allocation_id)
        return {"id": allocation_id, "public_ip": address.get("PublicIp"), "domain": address.get("Domain")}

    def _delete_elastic_ip(self, allocation_id: str) -> None:
        address = self._describe_address(allocation_id)
        if address.get("AssociationId"):
            self._ec2_client.disassociate_address(AssociationId=address["AssociationId"])
        self._ec2_client.release_address(AllocationId=allocation_id)

    # NAT gateway
    def _create_nat_gateway(self, attributes: Dict[str, Any]) -> str:
        response = self._ec2_client.create_nat_gateway(SubnetId=attributes["subnet_id"], AllocationId=attributes["allocation_id"])
        nat_gateway_id = response["NatGateway"]["NatGatewayId"]
        return self._finish_create(
            ResourceKind.NAT_GATEWAY,
            nat_gateway_id,
            lambda: self._apply_tags(nat_gateway_id, attributes.get("tags"), "InvalidNatGatewayID.NotFound"),
            lambda: self._wait_for(f"NAT gateway {nat_gateway_id} to become available", lambda: self._nat_gateway_available(nat_gateway_id)),
        )

    def _describe_nat_gateway(self, nat_gateway_id: str) -> Optional[Dict[str, Any]]:
        response = self._retry(self._ec2_client.describe_nat_gateways, {"RequestLimitExceeded"}, NatGatewayIds=[nat_gateway_id])
        return response["NatGateways"][0] if response.get("NatGateways") else None

    def _nat_gateway_available(self, nat_gateway_id: str) -> bool:
        nat = self._describe_nat_gateway(nat_gateway_id)
        state = nat["State"] if nat else None
        if state in ("failed", "deleting", "deleted", None):
            failure = nat.get("FailureMessage") if nat else "not found"
            raise PermanentProviderError(f"NAT gateway {nat_gateway_id} ended up in state {state!r}: {failure}", "NatGatewayFailed")
        return state == "available"

    def _read_nat_gateway(self, nat_gateway_id: str) -> Dict[str, Any]:
        nat = self._describe_nat_gateway(nat_gateway_id)
        if nat is None or nat["State"] == "deleted":
            raise ResourceNotFound(f"NAT gateway {nat_gateway_id} does not exist", NAT_GATEWAY_NOT_FOUND_CODES[0])
        addresses = nat.get("NatGatewayAddresses", [])
        return {
            "id": nat_gateway_id,
            "state": nat["State"],
            "subnet_id": nat.get("SubnetId"),
            "public_ip": addresses[0].get("PublicIp") if addresses else None,
        }

    def _nat_gateway_deleted(self, nat_gateway_id: str) -> bool:
        try:
            nat = self._describe_nat_gateway(nat_gateway_id)
        except ClientError as error:
            if error.response.get("Error", {}).get("Code") in NAT_GATEWAY_NOT_FOUND_CODES:
                return True
            raise
        return nat is None or nat["State"] == "deleted"

    def _delete_nat_gateway(self, nat_gateway_id: str) -> None:
        self._ec2_client.delete_nat_gateway(NatGatewayId=nat_gateway_id)
        # the elastic IP and the subnet stay in use until the NAT gateway is fully gone
        self._wait_for(f"NAT gateway {nat_gateway_id} to be deleted", lambda: self._nat_gateway_deleted(nat_gateway_id))

    # Route table
    def _route_params(self, route_table_id: str, route: Dict[str, Any]) -> Dict[str, Any]:
        params = {"RouteTableId": route_table_id, "DestinationCidrBlock": route["destination_cidr_block"]}
        for attribute, param in ROUTE_TARGET_PARAMS.items():
            if route.get(attribute):
                params[param] = route[attribute]
        return params

    def _create_route_table(self, attributes: Dict[str, Any]) -> str:
        route_table_id = self._ec2_client.create_route_table(VpcId=attributes["vpc_id"])["RouteTable"]["RouteTableId"]
        steps = [lambda: self._apply_tags(route_table_id, attributes.get("tags"), "InvalidRouteTableID.NotFound")]
        for route in attributes.get("routes") or []:
            steps.append(
                lambda route=route: self._retry(
                    self._ec2_client.create_route,
                    {"RequestLimitExceeded", "InvalidRouteTableID.NotFound"},
                    **self._route_params(route_table_id, route),
                )
            )
        return self._finish_create(ResourceKind.ROUTE_TABLE, route_table_id, *steps)

    def _describe_route_table(self, route_table_id: str) -> Dict[str, Any]:
        return self._ec2_client.describe_route_tables(RouteTableIds=[route_table_id])["RouteTables"][0]

    def _read_route_table(self, route_table_id: str) -> Dict[str, Any]:
        route_table = self._describe_route_table(route_table_id)
        return {"id": route_table_id, "vpc_id": route_table["VpcId"]}

    def _update_route_table(self, kind: ResourceKind, route_table_id: str, attributes: Dict[str, Any], previous: Dict[str, Any]) -> None:
        self._update_tags(route_table_id, attributes, previous)
        old_routes = {route["destination_cidr_block"]: route for route in previous.get("routes") or []}
        new_routes = {route["destination_cidr_block"]: route for route in attributes.get("routes") or []}
        for destination in sorted(old_routes.keys() - new_routes.keys()):
            self._ec2_client.delete_route(RouteTableId=route_table_id, DestinationCidrBlock=destination)
        for destination, route in sorted(new_routes.items()):
            if destination not in old_routes:
                self._ec2_client.create_route(**self._route_params(route_table_id, route))
            elif old_routes[destination] != route:
                self._ec2_client.replace_route(**self._route_params(route_table_id, route))

    def _delete_route_table(self, route_table_id: str) -> None:
        self._ec2_client.delete_route_table(RouteTableId=route_table_id)

    # Route table association
    def _create_association(self, attributes: Dict[str, Any]) -> str:
        response = self._ec2_client.associate_route_table(SubnetId=attributes["subnet_id"], RouteTableId=attributes["route_table_id"])
        return response["AssociationId"]

    def _read_association(self, association_id: str) -> Dict[str, Any]:
        response = self._ec2_client.describe_route_tables(
            Filters=[{"Name": "association.route-table-association-id", "Values": [association_id]}]
        )
        for route_table in response.get("RouteTables", []):
            for association in route_table.get("Associations", []):
                if association.get("RouteTableAssociationId") == association_id:
                    return {"id": association_id, "route_table_id": route_table["RouteTableId"], "subnet_id": association.get("SubnetId")}
        raise ResourceNotFound(f"Route table association {association_id} does not exist", "InvalidAssociationID.NotFound")

    def _update_association(self, kind: ResourceKind, association_id: str, attributes: Dict[str, Any], previous: Dict[str, Any]) -> None:
        # subnet and route table are immutable, there is nothing to change in place
        pass

    def _delete_association(self, association_id: str) -> None:
        self._ec2_client.disassociate_route_table(AssociationId=association_id)
