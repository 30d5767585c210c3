from .build import build_image
from .deploy import deploy_template
from .source import fetch_source, snapshot_from_payload
from .synth import synthesize_templates

__all__ = [
    "build_image",
    "deploy_template",
    "fetch_source",
    "snapshot_from_payload",
    "synthesize_templates",
]
