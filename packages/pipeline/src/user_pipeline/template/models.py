from __future__ import annotations

import ipaddress
from enum import StrEnum
from typing import Annotated, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StringConstraints,
    field_validator,
    model_validator,
)

StackName = Annotated[
    str,
    StringConstraints(min_length=1, max_length=128, pattern=r"^[A-Za-z][A-Za-z0-9\-]*$"),
]
ParameterName = Annotated[
    str,
    StringConstraints(min_length=1, max_length=64, pattern=r"^[A-Za-z][A-Za-z0-9]*$"),
]
ResourceName = Annotated[
    str,
    StringConstraints(min_length=1, max_length=255, pattern=r"^[A-Za-z0-9][A-Za-z0-9_\-\.]*$"),
]
Port = Annotated[int, Field(ge=1, le=65535)]


class NetworkSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    vpc_name: ResourceName
    max_azs: int = Field(default=3, ge=1, le=6)
    nat_gateways: int = Field(default=1, ge=0)


class IngressRule(BaseModel):
    """
    One inbound rule on the service security group.

    No rule is implied: an environment that wants to be reachable from any
    origin has to say `0.0.0.0/0` explicitly.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    cidr: str
    port: Port
    description: str = ""

    @field_validator("cidr")
    @classmethod
    def _valid_cidr(cls, v: str) -> str:
        return str(ipaddress.ip_network(v, strict=True))


class TaskSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    cpu: int = Field(default=512, ge=256)
    memory_mib: int = Field(default=1024, ge=512)


class SecretRef(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(..., min_length=1)
    secret_id: str = Field(..., min_length=1)


class ContainerSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: ResourceName
    port: Port = 8080
    host_port: Optional[Port] = None
    environment: dict[str, str] = Field(default_factory=dict)
    secrets: list[SecretRef] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_secret_names(self) -> "ContainerSpec":
        names = [s.name for s in self.secrets]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate secret names in container {self.name}")
        clash = sorted(set(names) & set(self.environment))
        if clash:
            raise ValueError(f"Names used both as secret and environment: {clash}")
        return self


class ServiceSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    desired_count: int = Field(default=1, ge=0)
    circuit_breaker_rollback: bool = True


class HealthCheckSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    protocol: str = "HTTP"
    path: str = "/actuator/health"
    port: Port = 8080
    interval_s: int = Field(default=60, ge=5, le=300)


class LoadBalancerSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    internet_facing: bool = True
    listener_port: Port = 80
    target_port: Port = 80
    health_check: HealthCheckSpec = Field(default_factory=HealthCheckSpec)


class ImageSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    repository: ResourceName
    repository_uri: Optional[str] = None
    tag_parameter: ParameterName = "ImageTag"


class EnvironmentSpec(BaseModel):
    """
    Description of the deployable environment, read from the infra source.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    spec_version: int = Field(..., ge=1)
    stack_name: StackName
    description: str = Field(default="Container service behind a network load balancer")

    network: NetworkSpec
    cluster_name: ResourceName
    task: TaskSpec = Field(default_factory=TaskSpec)
    container: ContainerSpec
    service: ServiceSpec = Field(default_factory=ServiceSpec)
    load_balancer: LoadBalancerSpec = Field(default_factory=LoadBalancerSpec)
    ingress: list[IngressRule] = Field(default_factory=list)
    image: ImageSpec

    # deferred parameters this environment is deployed with
    parameters: list[ParameterName] = Field(default_factory=lambda: ["ImageTag"])

    @model_validator(mode="after")
    def _validate(self) -> "EnvironmentSpec":
        if len(self.parameters) != len(set(self.parameters)):
            raise ValueError(f"Duplicate parameters in {self.stack_name}")
        if self.image.tag_parameter not in self.parameters:
            raise ValueError(
                f"Image tag parameter {self.image.tag_parameter!r} is not declared "
                f"in parameters {self.parameters}"
            )
        return self


class KeyType(StrEnum):
    S = "S"
    N = "N"
    B = "B"


class KeySpec(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(..., min_length=1)
    type: KeyType = KeyType.S


class IndexSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: ResourceName
    partition_key: KeySpec
    sort_key: Optional[KeySpec] = None


class RemovalPolicy(StrEnum):
    destroy = "destroy"
    retain = "retain"


class DatastoreSpec(BaseModel):
    """
    Key-value table deployed next to the service. Carries no deferred parameters.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    spec_version: int = Field(..., ge=1)
    stack_name: StackName
    table_name: ResourceName
    partition_key: KeySpec
    sort_key: Optional[KeySpec] = None
    global_secondary_indexes: list[IndexSpec] = Field(default_factory=list)
    removal_policy: RemovalPolicy = RemovalPolicy.destroy

    @model_validator(mode="after")
    def _validate(self) -> "DatastoreSpec":
        names = [i.name for i in self.global_secondary_indexes]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate index names in {self.stack_name}")
        types: dict[str, KeyType] = {}
        keys = [self.partition_key, self.sort_key]
        for idx in self.global_secondary_indexes:
            keys.extend([idx.partition_key, idx.sort_key])
        for k in keys:
            if k is None:
                continue
            if types.setdefault(k.name, k.type) != k.type:
                raise ValueError(f"Attribute {k.name} declared with conflicting types")
        return self
