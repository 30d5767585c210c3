from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Mapping

import structlog
from pydantic import ValidationError

from user_pipeline.core import TemplateError, stable_json_bytes

from .models import DatastoreSpec, EnvironmentSpec, KeySpec
from .template import Template

log = structlog.get_logger(__name__)

ENVIRONMENT_FILE = "environment.json"
DATASTORE_FILE = "datastore.json"
MANIFEST_FILE = "manifest.json"
FORMAT_VERSION = 1


@dataclass(frozen=True, slots=True)
class SynthConfig:
    environment_file: str = ENVIRONMENT_FILE
    datastore_file: str | None = DATASTORE_FILE
    # overrides the repository uri recorded in environment.json
    repository_uri: str | None = None


@dataclass(frozen=True, slots=True)
class SynthesisResult:
    templates: dict[str, Template] = field(default_factory=dict)

    def manifest(self) -> dict[str, Any]:
        return {
            "format_version": FORMAT_VERSION,
            "stacks": {
                name: {
                    "file": t.file_name,
                    "sha256": t.sha256,
                    "placeholders": list(t.placeholders),
                    "resources": t.resource_count(),
                }
                for name, t in sorted(self.templates.items())
            },
        }

    def files(self) -> dict[str, bytes]:
        out = {t.file_name: t.source for t in self.templates.values()}
        out[MANIFEST_FILE] = stable_json_bytes(self.manifest()) + b"\n"
        return out


def _ref(name: str) -> dict[str, str]:
    return {"Ref": name}


def _load_model(files: Mapping[str, bytes], name: str, model: type) -> Any:
    try:
        raw = json.loads(files[name].decode("utf-8"))
    except json.JSONDecodeError as e:
        raise TemplateError(f"{name} is not valid JSON: {e}") from e
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        raise TemplateError(f"{name} is invalid:\n{e}") from e


def synthesize_environment(
    spec: EnvironmentSpec, *, repository_uri: str | None = None
) -> dict[str, Any]:
    """
    Build the service template body. The image tag stays a placeholder.
    """
    uri = repository_uri or spec.image.repository_uri
    if not uri:
        raise TemplateError(
            f"No repository uri for {spec.image.repository}; set image.repository_uri"
        )

    c = spec.container
    lb = spec.load_balancer
    hc = lb.health_check

    parameters = {
        name: {
            "Type": "String",
            "Description": (
                f"Tag of the {spec.image.repository} image to run"
                if name == spec.image.tag_parameter
                else f"Deferred parameter {name}"
            ),
        }
        for name in spec.parameters
    }

    image = {"Fn::Join": ["", [uri, ":", _ref(spec.image.tag_parameter)]]}

    resources: dict[str, Any] = {
        "Vpc": {
            "Type": "Network::Vpc",
            "Properties": {
                "Name": spec.network.vpc_name,
                "MaxAzs": spec.network.max_azs,
                "NatGateways": spec.network.nat_gateways,
            },
        },
        "SecurityGroup": {
            "Type": "Network::SecurityGroup",
            "Properties": {
                "Name": f"{spec.stack_name}-sg",
                "Vpc": _ref("Vpc"),
                "AllowAllOutbound": True,
                "Ingress": [
                    {
                        "Cidr": rule.cidr,
                        "Port": rule.port,
                        "Protocol": "tcp",
                        "Description": rule.description,
                    }
                    for rule in spec.ingress
                ],
            },
        },
        "Cluster": {
            "Type": "Container::Cluster",
            "Properties": {"ClusterName": spec.cluster_name, "Vpc": _ref("Vpc")},
        },
        "TaskDefinition": {
            "Type": "Container::TaskDefinition",
            "Properties": {
                "Cpu": spec.task.cpu,
                "MemoryMiB": spec.task.memory_mib,
                "Containers": [
                    {
                        "Name": c.name,
                        "Image": image,
                        "PortMappings": [
                            {
                                "ContainerPort": c.port,
                                "HostPort": c.host_port or c.port,
                            }
                        ],
                        "Environment": dict(c.environment),
                        "Secrets": [
                            {"Name": s.name, "SecretId": s.secret_id}
                            for s in c.secrets
                        ],
                    }
                ],
            },
        },
        "Service": {
            "Type": "Container::Service",
            "Properties": {
                "Cluster": _ref("Cluster"),
                "TaskDefinition": _ref("TaskDefinition"),
                "DesiredCount": spec.service.desired_count,
                "SecurityGroups": [_ref("SecurityGroup")],
                "CircuitBreaker": {"Rollback": spec.service.circuit_breaker_rollback},
            },
        },
        "LoadBalancer": {
            "Type": "LoadBalancing::NetworkLoadBalancer",
            "Properties": {
                "Vpc": _ref("Vpc"),
                "InternetFacing": lb.internet_facing,
            },
        },
        "TargetGroup": {
            "Type": "LoadBalancing::TargetGroup",
            "Properties": {
                "Port": lb.target_port,
                "Protocol": hc.protocol,
                "Targets": [_ref("Service")],
                "HealthCheck": {
                    "Protocol": hc.protocol,
                    "Path": hc.path,
                    "Port": hc.port,
                    "IntervalSeconds": hc.interval_s,
                },
            },
        },
        "Listener": {
            "Type": "LoadBalancing::Listener",
            "Properties": {
                "LoadBalancer": _ref("LoadBalancer"),
                "Port": lb.listener_port,
                "DefaultTargetGroup": _ref("TargetGroup"),
            },
            "DependsOn": ["TargetGroup"],
        },
    }

    return {
        "FormatVersion": FORMAT_VERSION,
        "Description": spec.description,
        "Parameters": parameters,
        "Resources": resources,
        "Outputs": {
            "VpcId": {"Value": _ref("Vpc")},
            "LoadBalancerArn": {"Value": _ref("LoadBalancer")},
            "Image": {"Value": image},
        },
    }


def _key_schema(pk: KeySpec, sk: KeySpec | None) -> list[dict[str, str]]:
    out = [{"AttributeName": pk.name, "KeyType": "HASH"}]
    if sk is not None:
        out.append({"AttributeName": sk.name, "KeyType": "RANGE"})
    return out


def synthesize_datastore(spec: DatastoreSpec) -> dict[str, Any]:
    attrs: dict[str, str] = {}
    keys = [spec.partition_key, spec.sort_key]
    for idx in spec.global_secondary_indexes:
        keys.extend([idx.partition_key, idx.sort_key])
    for k in keys:
        if k is not None:
            attrs.setdefault(k.name, k.type.value)

    return {
        "FormatVersion": FORMAT_VERSION,
        "Description": f"Table {spec.table_name}",
        "Parameters": {},
        "Resources": {
            "Table": {
                "Type": "Database::Table",
                "Properties": {
                    "TableName": spec.table_name,
                    "KeySchema": _key_schema(spec.partition_key, spec.sort_key),
                    "AttributeDefinitions": [
                        {"AttributeName": n, "AttributeType": t}
                        for n, t in sorted(attrs.items())
                    ],
                    "GlobalSecondaryIndexes": [
                        {
                            "IndexName": idx.name,
                            "KeySchema": _key_schema(idx.partition_key, idx.sort_key),
                        }
                        for idx in spec.global_secondary_indexes
                    ],
                    "RemovalPolicy": spec.removal_policy.value,
                },
            }
        },
        "Outputs": {"TableName": {"Value": _ref("Table")}},
    }


class TemplateSynthesizer:
    """
    Turns an infra source payload into deployment templates.

    Synthesis is a pure function of the payload and the config: the same
    input bytes always yield byte-identical templates.
    """

    def __init__(self, cfg: SynthConfig | None = None) -> None:
        self.cfg = cfg or SynthConfig()

    def synthesize(self, files: Mapping[str, bytes]) -> SynthesisResult:
        if self.cfg.environment_file not in files:
            raise TemplateError(f"Infra source has no {self.cfg.environment_file}")

        env = _load_model(files, self.cfg.environment_file, EnvironmentSpec)
        templates = {
            env.stack_name: Template.from_dict(
                env.stack_name,
                synthesize_environment(env, repository_uri=self.cfg.repository_uri),
            )
        }

        ds_file = self.cfg.datastore_file
        if ds_file and ds_file in files:
            ds = _load_model(files, ds_file, DatastoreSpec)
            if ds.stack_name in templates:
                raise TemplateError(f"Stack name {ds.stack_name} used twice")
            templates[ds.stack_name] = Template.from_dict(
                ds.stack_name, synthesize_datastore(ds)
            )

        log.debug(
            "synth.done",
            stacks=sorted(templates),
            sha256={k: t.sha256 for k, t in sorted(templates.items())},
        )
        return SynthesisResult(templates=templates)


def load_templates(files: Mapping[str, bytes]) -> dict[str, Template]:
    """
    Read a template artifact back, checking each template against the manifest.
    """
    if MANIFEST_FILE not in files:
        raise TemplateError(f"Template artifact has no {MANIFEST_FILE}")
    manifest = json.loads(files[MANIFEST_FILE].decode("utf-8"))

    out: dict[str, Template] = {}
    for stack, entry in manifest.get("stacks", {}).items():
        name = entry["file"]
        if name not in files:
            raise TemplateError(f"Template artifact is missing {name}")
        t = Template.from_bytes(stack, files[name])
        if t.sha256 != entry["sha256"]:
            raise TemplateError(f"Template {name} does not match its manifest digest")
        out[stack] = t
    return out
