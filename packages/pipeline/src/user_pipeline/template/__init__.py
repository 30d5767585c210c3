from .models import (
    ContainerSpec,
    DatastoreSpec,
    EnvironmentSpec,
    HealthCheckSpec,
    ImageSpec,
    IndexSpec,
    IngressRule,
    KeySpec,
    KeyType,
    LoadBalancerSpec,
    NetworkSpec,
    RemovalPolicy,
    SecretRef,
    ServiceSpec,
    TaskSpec,
)
from .synth import (
    DATASTORE_FILE,
    ENVIRONMENT_FILE,
    MANIFEST_FILE,
    SynthConfig,
    SynthesisResult,
    TemplateSynthesizer,
    load_templates,
    synthesize_datastore,
    synthesize_environment,
)
from .template import TEMPLATE_SUFFIX, Template

__all__ = [
    "ContainerSpec",
    "DATASTORE_FILE",
    "DatastoreSpec",
    "ENVIRONMENT_FILE",
    "EnvironmentSpec",
    "HealthCheckSpec",
    "ImageSpec",
    "IndexSpec",
    "IngressRule",
    "KeySpec",
    "KeyType",
    "LoadBalancerSpec",
    "MANIFEST_FILE",
    "NetworkSpec",
    "RemovalPolicy",
    "SecretRef",
    "ServiceSpec",
    "SynthConfig",
    "SynthesisResult",
    "TEMPLATE_SUFFIX",
    "TaskSpec",
    "Template",
    "TemplateSynthesizer",
    "load_templates",
    "synthesize_datastore",
    "synthesize_environment",
]
