"""Template parsing, resource catalog and reference resolution."""

from stratus_deploy.template.catalog import ID_ATTRIBUTE, ResourceKind, get_kind, known_types, register_kind
from stratus_deploy.template.models import (
    OutputSpec,
    ParameterSpec,
    ReferenceEdge,
    ResourceGraph,
    ResourceNode,
)
from stratus_deploy.template.parser import TemplateParser
from stratus_deploy.template.resolver import (
    Deferred,
    NO_VALUE,
    OutputRegistry,
    Resolver,
    bind_parameters,
    content_hash,
    masked_values,
)

__all__ = [
    'ID_ATTRIBUTE',
    'ResourceKind',
    'get_kind',
    'known_types',
    'register_kind',
    'OutputSpec',
    'ParameterSpec',
    'ReferenceEdge',
    'ResourceGraph',
    'ResourceNode',
    'TemplateParser',
    'Deferred',
    'NO_VALUE',
    'OutputRegistry',
    'Resolver',
    'bind_parameters',
    'content_hash',
    'masked_values',
]
