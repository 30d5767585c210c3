from .resources import template_schema
from .template import validate_template_dict, validate_template_json

__all__ = [
    "template_schema",
    "validate_template_dict",
    "validate_template_json",
]
