# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

import logging
from typing import Any, Dict, Optional

from vpcflow.core.entity import CoreData
from vpcflow.core.topology.model import Resource, ResourceKind, Visibility

module_logger = logging.getLogger(__name__)

NAME_TAG_KEY = "Name"
CLUSTER_TAG_KEY_PREFIX = "kubernetes.io/cluster/"
PUBLIC_ELB_ROLE_TAG_KEY = "kubernetes.io/role/elb"
INTERNAL_ELB_ROLE_TAG_KEY = "kubernetes.io/role/internal-elb"
ROLE_TAG_VALUE = "1"

# kinds the cluster uses for subnet/load balancer discovery
_CLUSTER_TAGGED_KINDS = {ResourceKind.VPC, ResourceKind.SUBNET}


class TopologyConventions(CoreData):
    """Naming and tagging scheme applied to every declared resource when the dependency graph is built.

    Tags are merged in this order (later wins): common tags, Name tag, tags declared on the resource,
    cluster-sharing and subnet role markers. Markers cannot be overridden by declarations since EKS relies on them
    for load balancer subnet discovery.
    """

    def __init__(
        self,
        cluster_name: Optional[str] = None,
        name_prefix: Optional[str] = None,
        common_tags: Optional[Dict[str, str]] = None,
        cluster_sharing: str = "shared",
    ) -> None:
        self.cluster_name = cluster_name
        self.name_prefix = name_prefix if name_prefix is not None else cluster_name
        self.common_tags = dict(common_tags or {})
        self.cluster_sharing = cluster_sharing

    @property
    def cluster_tag_key(self) -> Optional[str]:
        return f"{CLUSTER_TAG_KEY_PREFIX}{self.cluster_name}" if self.cluster_name else None

    def physical_name(self, logical_name: str) -> str:
        return f"{self.name_prefix}-{logical_name}" if self.name_prefix else logical_name

    @staticmethod
    def role_tags(visibility: str) -> Dict[str, str]:
        if visibility == Visibility.PUBLIC.value:
            return {PUBLIC_ELB_ROLE_TAG_KEY: ROLE_TAG_VALUE}
        return {INTERNAL_ELB_ROLE_TAG_KEY: ROLE_TAG_VALUE}

    @staticmethod
    def is_immutable_tag(key: str) -> bool:
        return key.startswith(CLUSTER_TAG_KEY_PREFIX) or key in (PUBLIC_ELB_ROLE_TAG_KEY, INTERNAL_ELB_ROLE_TAG_KEY)

    def tags_for(self, resource: Resource) -> Dict[str, str]:
        tags: Dict[str, str] = dict(self.common_tags)
        tags[NAME_TAG_KEY] = self.physical_name(resource.name)
        tags.update(resource.get("tags") or {})
        if self.cluster_tag_key and resource.kind in _CLUSTER_TAGGED_KINDS:
            tags[self.cluster_tag_key] = self.cluster_sharing
        if resource.kind == ResourceKind.SUBNET:
            tags.update(self.role_tags(resource.get("visibility")))
        return tags

    def decorate(self, resource: Resource) -> Dict[str, Any]:
        """Return the attributes of the resource with the conventional tags merged in."""
        attributes = dict(resource.attributes)
        if resource.spec.taggable:
            attributes["tags"] = self.tags_for(resource)
        return attributes
