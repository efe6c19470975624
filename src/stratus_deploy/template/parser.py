"""Template parser that builds a resource graph from a declarative document."""

import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Union

from pydantic import ValidationError as PydanticValidationError

from stratus_deploy.template.catalog import get_kind
from stratus_deploy.template.intrinsics import IntrinsicBuilder, iter_references, load_yaml
from stratus_deploy.template.models import (
    OutputSpec,
    ParameterSpec,
    ReferenceEdge,
    ResourceGraph,
    ResourceNode,
)
from stratus_deploy.utils.errors import ErrorContext, ParseError, ReferenceError
from stratus_deploy.utils.logging import get_logger

logger = get_logger(__name__)

LOGICAL_ID_PATTERN = re.compile(r'^[A-Za-z0-9]+$')

TOP_LEVEL_SECTIONS = {
    'AWSTemplateFormatVersion',
    'Description',
    'Metadata',
    'Parameters',
    'Resources',
    'Outputs',
}

UNSUPPORTED_SECTIONS = {'Conditions', 'Mappings', 'Transform', 'Rules'}

RESOURCE_KEYS = {'Type', 'Properties', 'DependsOn', 'DeletionPolicy', 'UpdateReplacePolicy', 'Metadata'}

DELETION_POLICIES = {'Delete', 'Retain'}


class TemplateParser:
    """Parses template documents into ResourceGraph objects.

    The parser has no side effects: nothing is resolved against a provider
    and nothing is read from state.
    """

    def parse_file(self, path: Union[str, Path]) -> ResourceGraph:
        """Parse a template file.

        Args:
            path: Path to a YAML or JSON template

        Returns:
            Parsed resource graph

        Raises:
            ParseError: If the file cannot be read or is malformed
        """
        path = Path(path)
        try:
            text = path.read_text(encoding='utf-8')
        except OSError as e:
            raise ParseError(f"Failed to read template {path}: {e}", cause=e)

        logger.debug(f"Parsing template {path}")
        return self.parse_text(text)

    def parse_text(self, text: str) -> ResourceGraph:
        """Parse template text (YAML, which includes JSON)."""
        return self.parse_document(load_yaml(text))

    def parse_document(self, document: Any) -> ResourceGraph:
        """Build a ResourceGraph from an already-loaded document.

        Args:
            document: Mapping with Parameters, Resources and Outputs sections

        Returns:
            Parsed resource graph

        Raises:
            ParseError: If the document is structurally invalid
            ReferenceError: If a reference names an undefined target
        """
        if not isinstance(document, dict):
            raise ParseError("Template must be a mapping")

        for section in document:
            if section in UNSUPPORTED_SECTIONS:
                raise ParseError(f"Template section '{section}' is not supported")
            if section not in TOP_LEVEL_SECTIONS:
                raise ParseError(f"Unknown template section '{section}'")

        parameters = self._parse_parameters(document.get('Parameters') or {})

        resources = document.get('Resources')
        if not isinstance(resources, dict) or not resources:
            raise ParseError("Template must declare at least one resource in 'Resources'")

        resource_types = self._collect_types(resources, parameters)
        builder = IntrinsicBuilder(resource_types, frozenset(parameters))

        graph = ResourceGraph(
            parameters=parameters,
            description=document.get('Description'),
        )

        for position, (logical_id, definition) in enumerate(resources.items()):
            node, edges = self._parse_resource(logical_id, definition, position, builder)
            graph.nodes[logical_id] = node
            graph.edges.extend(edges)

        graph.outputs = self._parse_outputs(document.get('Outputs') or {}, builder)

        logger.debug(
            f"Parsed template with {len(graph.nodes)} resources, "
            f"{len(graph.edges)} edges, {len(graph.parameters)} parameters"
        )
        return graph

    def _parse_parameters(self, section: Any) -> Dict[str, ParameterSpec]:
        if not isinstance(section, dict):
            raise ParseError("'Parameters' must be a mapping")

        parameters = {}
        for name, definition in section.items():
            if not isinstance(definition, dict):
                raise ParseError(f"Parameter '{name}' must be a mapping")
            try:
                parameters[name] = ParameterSpec(name=name, **definition)
            except PydanticValidationError as e:
                raise ParseError(f"Invalid parameter '{name}': {e}", cause=e)
        return parameters

    def _collect_types(
        self,
        resources: Dict[str, Any],
        parameters: Mapping[str, ParameterSpec]
    ) -> Dict[str, str]:
        types = {}
        for logical_id, definition in resources.items():
            if not isinstance(logical_id, str) or not LOGICAL_ID_PATTERN.match(logical_id):
                raise ParseError(f"Invalid resource identifier '{logical_id}'")
            if logical_id in parameters:
                raise ParseError(f"Resource '{logical_id}' has the same name as a parameter")
            if not isinstance(definition, dict):
                raise ParseError(f"Resource '{logical_id}' must be a mapping")

            resource_type = definition.get('Type')
            if not isinstance(resource_type, str):
                raise ParseError(f"Resource '{logical_id}' is missing 'Type'")
            if get_kind(resource_type) is None:
                raise ParseError(
                    f"Resource '{logical_id}' has unknown type '{resource_type}'",
                    context=ErrorContext(resource_id=logical_id, resource_type=resource_type)
                )
            types[logical_id] = resource_type
        return types

    def _parse_resource(
        self,
        logical_id: str,
        definition: Dict[str, Any],
        position: int,
        builder: IntrinsicBuilder
    ):
        unknown = set(definition) - RESOURCE_KEYS
        if unknown:
            raise ParseError(f"Resource '{logical_id}' has unsupported keys: {sorted(unknown)}")

        raw_properties = definition.get('Properties') or {}
        if not isinstance(raw_properties, dict):
            raise ParseError(f"Resource '{logical_id}': 'Properties' must be a mapping")

        properties = builder.build(raw_properties, f"{logical_id}.Properties")
        depends_on = self._parse_depends_on(logical_id, definition.get('DependsOn'), builder)

        deletion_policy = definition.get('DeletionPolicy', 'Delete')
        if deletion_policy not in DELETION_POLICIES:
            raise ParseError(
                f"Resource '{logical_id}': DeletionPolicy must be one of {sorted(DELETION_POLICIES)}"
            )

        edges: List[ReferenceEdge] = []
        seen = set()
        for reference in iter_references(properties):
            edge = ReferenceEdge(logical_id, reference.target, reference.attribute)
            if edge not in seen:
                seen.add(edge)
                edges.append(edge)
        for target in depends_on:
            edge = ReferenceEdge(logical_id, target, None)
            if edge not in seen:
                seen.add(edge)
                edges.append(edge)

        node = ResourceNode(
            id=logical_id,
            type=definition['Type'],
            properties=properties,
            depends_on=depends_on,
            position=position,
            deletion_policy=deletion_policy,
        )
        return node, edges

    def _parse_depends_on(self, logical_id: str, value: Any, builder: IntrinsicBuilder) -> List[str]:
        if value is None:
            return []
        targets = [value] if isinstance(value, str) else value
        if not isinstance(targets, list) or not all(isinstance(t, str) for t in targets):
            raise ParseError(f"Resource '{logical_id}': DependsOn must be a name or list of names")

        for target in targets:
            if target not in builder.resource_types:
                raise ReferenceError(
                    f"Resource '{logical_id}' depends on undefined resource '{target}'",
                    context=ErrorContext(resource_id=logical_id)
                )
        return list(dict.fromkeys(targets))

    def _parse_outputs(self, section: Any, builder: IntrinsicBuilder) -> Dict[str, OutputSpec]:
        if not isinstance(section, dict):
            raise ParseError("'Outputs' must be a mapping")

        outputs = {}
        for name, definition in section.items():
            if not isinstance(definition, dict) or 'Value' not in definition:
                raise ParseError(f"Output '{name}' must be a mapping with a 'Value'")
            outputs[name] = OutputSpec(
                name=name,
                value=builder.build(definition['Value'], f"Outputs.{name}"),
                description=definition.get('Description'),
            )
        return outputs
