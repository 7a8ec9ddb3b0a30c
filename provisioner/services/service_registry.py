"""
Resource Type Registry

Maps the `aws.*` type tags used by the lab declarations to the metadata the
planner and validator need: which build layer the type belongs to, which
attributes can never change in place, and which attributes must be present.

The engine itself is generic; unknown types are allowed and simply carry no
metadata.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, FrozenSet, Iterable, List, Optional


class Layer(IntEnum):
    """Build layers of the labs, leaves first."""
    NETWORK = 1
    ACCESS_CONTROL = 2
    COMPUTE = 3
    TRAFFIC = 4
    CAPACITY = 5
    DATA_STORE = 6
    OBJECT_STORAGE = 7
    IDENTITY = 8
    OBSERVABILITY = 9

    @property
    def label(self) -> str:
        return self.name.lower().replace("_", "-")


@dataclass(frozen=True)
class ResourceType:
    kind: str
    layer: Layer
    immutable: FrozenSet[str] = field(default_factory=frozenset)
    required: FrozenSet[str] = field(default_factory=frozenset)


SECRET_KIND = "aws.secret"


def _t(kind: str, layer: Layer, immutable: Iterable[str] = (), required: Iterable[str] = ()) -> ResourceType:
    return ResourceType(kind, layer, frozenset(immutable), frozenset(required))


_DEFAULT_TYPES: List[ResourceType] = [
    # Lab 1: networking
    _t("aws.vpc", Layer.NETWORK, ["cidr_block"], ["cidr_block"]),
    _t("aws.subnet", Layer.NETWORK, ["vpc_id", "cidr_block", "availability_zone"], ["vpc_id", "cidr_block"]),
    _t("aws.internet_gateway", Layer.NETWORK, [], ["vpc_id"]),
    _t("aws.route_table", Layer.NETWORK, ["vpc_id"], ["vpc_id"]),
    _t("aws.route_table_association", Layer.NETWORK, ["subnet_id", "route_table_id"], ["subnet_id", "route_table_id"]),
    # Lab 2: access control
    _t("aws.security_group", Layer.ACCESS_CONTROL, ["name", "vpc_id"], ["vpc_id"]),
    _t("aws.key_pair", Layer.ACCESS_CONTROL, ["key_name", "public_key"], ["key_name"]),
    # Lab 3: compute
    _t("aws.launch_template", Layer.COMPUTE, ["name"], ["image_id", "instance_type"]),
    _t("aws.instance", Layer.COMPUTE, ["ami", "subnet_id", "availability_zone"], ["ami", "instance_type"]),
    # Lab 4: load balancing
    _t("aws.lb", Layer.TRAFFIC, ["name", "internal", "load_balancer_type"], ["subnets"]),
    _t("aws.lb_target_group", Layer.TRAFFIC, ["name", "port", "protocol", "vpc_id"], ["port", "protocol", "vpc_id"]),
    _t("aws.lb_listener", Layer.TRAFFIC, ["load_balancer_arn"], ["load_balancer_arn", "port"]),
    # Lab 5: autoscaling
    _t("aws.autoscaling_group", Layer.CAPACITY, ["name"], ["min_size", "max_size"]),
    _t("aws.autoscaling_policy", Layer.CAPACITY, ["name", "autoscaling_group_name"], ["autoscaling_group_name"]),
    # Lab 6: managed database
    _t("aws.db_subnet_group", Layer.DATA_STORE, ["name"], ["subnet_ids"]),
    _t("aws.db_instance", Layer.DATA_STORE, ["identifier", "engine", "db_subnet_group_name"],
       ["engine", "instance_class", "allocated_storage"]),
    _t(SECRET_KIND, Layer.DATA_STORE, ["name"], []),
    # Lab 7: object storage
    _t("aws.s3_bucket", Layer.OBJECT_STORAGE, ["bucket"], ["bucket"]),
    _t("aws.s3_bucket_policy", Layer.OBJECT_STORAGE, ["bucket"], ["bucket", "policy"]),
    _t("aws.s3_bucket_lifecycle_configuration", Layer.OBJECT_STORAGE, ["bucket"], ["bucket", "rules"]),
    _t("aws.s3_bucket_public_access_block", Layer.OBJECT_STORAGE, ["bucket"], ["bucket"]),
    # Lab 8: IAM
    _t("aws.iam_role", Layer.IDENTITY, ["name"], ["assume_role_policy"]),
    _t("aws.iam_policy", Layer.IDENTITY, ["name"], ["policy"]),
    _t("aws.iam_role_policy_attachment", Layer.IDENTITY, ["role", "policy_arn"], ["role", "policy_arn"]),
    _t("aws.iam_instance_profile", Layer.IDENTITY, ["name"], ["role"]),
    # Lab 9: monitoring
    _t("aws.cloudwatch_log_group", Layer.OBSERVABILITY, ["name"], []),
    _t("aws.cloudwatch_metric_alarm", Layer.OBSERVABILITY, ["alarm_name"],
       ["metric_name", "comparison_operator", "threshold"]),
    _t("aws.cloudwatch_dashboard", Layer.OBSERVABILITY, ["dashboard_name"], ["dashboard_body"]),
    _t("aws.sns_topic", Layer.OBSERVABILITY, ["name"], []),
    _t("aws.sns_topic_subscription", Layer.OBSERVABILITY, ["topic_arn", "protocol", "endpoint"],
       ["topic_arn", "protocol", "endpoint"]),
]


class ServiceRegistry:
    """Registry of known resource types keyed by type tag."""

    def __init__(self, types: Optional[Iterable[ResourceType]] = None):
        self._service_registry: Dict[str, ResourceType] = {
            t.kind: t for t in (_DEFAULT_TYPES if types is None else types)
        }

    def register(self, resource_type: ResourceType) -> None:
        self._service_registry[resource_type.kind] = resource_type

    def get_type(self, kind: str) -> Optional[ResourceType]:
        return self._service_registry.get(kind)

    def immutable_attributes(self, kind: str) -> FrozenSet[str]:
        t = self._service_registry.get(kind)
        return t.immutable if t else frozenset()

    def get_supported_kinds(self) -> list:
        """Get list of all registered type tags"""
        return list(self._service_registry.keys())

    def is_supported(self, kind: str) -> bool:
        return kind in self._service_registry

    def is_secret(self, kind: str) -> bool:
        return kind == SECRET_KIND


DEFAULT_REGISTRY = ServiceRegistry()
