"""Data models for parsed templates."""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from stratus_deploy.utils.errors import ValidationError

SSM_PARAMETER_PREFIX = 'AWS::SSM::Parameter::Value<'

PARAMETER_TYPES = (
    'String',
    'Number',
    'CommaDelimitedList',
    'List<Number>',
)


class ParameterSpec(BaseModel):
    """Declaration of a template input from the Parameters section."""

    model_config = ConfigDict(populate_by_name=True, extra='forbid')

    name: str = ''
    type: str = Field(alias='Type')
    default: Optional[Any] = Field(default=None, alias='Default')
    description: Optional[str] = Field(default=None, alias='Description')
    allowed_values: Optional[List[Any]] = Field(default=None, alias='AllowedValues')
    allowed_pattern: Optional[str] = Field(default=None, alias='AllowedPattern')
    min_length: Optional[int] = Field(default=None, alias='MinLength')
    max_length: Optional[int] = Field(default=None, alias='MaxLength')
    min_value: Optional[float] = Field(default=None, alias='MinValue')
    max_value: Optional[float] = Field(default=None, alias='MaxValue')
    no_echo: bool = Field(default=False, alias='NoEcho')
    constraint_description: Optional[str] = Field(default=None, alias='ConstraintDescription')

    @model_validator(mode='after')
    def validate_type(self) -> 'ParameterSpec':
        """Accept plain types, AWS-specific types and SSM lookup types."""
        if (self.type not in PARAMETER_TYPES
                and not self.type.startswith('AWS::')
                and not self.type.startswith('List<AWS::')):
            raise ValueError(f"Unsupported parameter type '{self.type}'")
        if self.allowed_pattern is not None:
            try:
                re.compile(self.allowed_pattern)
            except re.error as e:
                raise ValueError(f"Invalid AllowedPattern: {e}")
        return self

    @property
    def is_ssm_lookup(self) -> bool:
        """True when the value names an SSM parameter to resolve."""
        return self.type.startswith(SSM_PARAMETER_PREFIX)

    @property
    def is_list(self) -> bool:
        return self.type == 'CommaDelimitedList' or self.type.startswith('List<')

    def validate_value(self, value: Any) -> Any:
        """Check a supplied value against the declared constraints.

        Args:
            value: Raw supplied value (string, number or list)

        Returns:
            The value converted to its declared shape

        Raises:
            ValidationError: If a constraint is violated
        """
        if self.is_list and not self.is_ssm_lookup:
            items = value if isinstance(value, list) else [
                item.strip() for item in str(value).split(',')
            ]
            for item in items:
                self._check_scalar(item)
            return items

        if self.type == 'Number':
            try:
                number = float(value)
            except (TypeError, ValueError):
                raise self._violation(f"'{value}' is not a number")
            self._check_scalar(number)
            return int(number) if number.is_integer() else number

        text = str(value)
        self._check_scalar(text)
        return text

    def _check_scalar(self, value: Any):
        if self.allowed_values is not None:
            allowed = [str(item) for item in self.allowed_values]
            if str(value) not in allowed and value not in self.allowed_values:
                raise self._violation(f"value must be one of {allowed}")

        if isinstance(value, str):
            if self.allowed_pattern is not None and not re.fullmatch(self.allowed_pattern, value):
                raise self._violation(f"value does not match pattern {self.allowed_pattern}")
            if self.min_length is not None and len(value) < self.min_length:
                raise self._violation(f"value is shorter than {self.min_length} characters")
            if self.max_length is not None and len(value) > self.max_length:
                raise self._violation(f"value is longer than {self.max_length} characters")
        else:
            if self.min_value is not None and value < self.min_value:
                raise self._violation(f"value is less than {self.min_value}")
            if self.max_value is not None and value > self.max_value:
                raise self._violation(f"value is greater than {self.max_value}")

    def _violation(self, detail: str) -> ValidationError:
        message = f"Parameter '{self.name}': {detail}"
        if self.constraint_description:
            message += f" ({self.constraint_description})"
        return ValidationError(message)


@dataclass
class ResourceNode:
    """A declared resource: identifier, kind and property bag."""

    id: str
    type: str
    properties: Dict[str, Any]
    depends_on: List[str] = field(default_factory=list)
    position: int = 0
    deletion_policy: str = 'Delete'


@dataclass(frozen=True)
class ReferenceEdge:
    """``source`` needs ``attribute`` of ``target``; None means ordering only."""

    source: str
    target: str
    attribute: Optional[str] = None


@dataclass
class OutputSpec:
    name: str
    value: Any
    description: Optional[str] = None


@dataclass
class ResourceGraph:
    """Parsed template: nodes in declaration order plus reference edges."""

    nodes: Dict[str, ResourceNode] = field(default_factory=dict)
    edges: List[ReferenceEdge] = field(default_factory=list)
    parameters: Dict[str, ParameterSpec] = field(default_factory=dict)
    outputs: Dict[str, OutputSpec] = field(default_factory=dict)
    description: Optional[str] = None

    def get_node(self, node_id: str) -> Optional[ResourceNode]:
        return self.nodes.get(node_id)

    def dependencies_of(self, node_id: str) -> List[str]:
        """Distinct edge targets of a node, in first-seen order."""
        seen: Dict[str, None] = {}
        for edge in self.edges:
            if edge.source == node_id:
                seen.setdefault(edge.target)
        return list(seen)

    def to_dependency_graph(self):
        """Build the dependency graph used for ordering."""
        from stratus_deploy.orchestrator.dependency_graph import DependencyGraph

        graph = DependencyGraph()
        for node in self.nodes.values():
            graph.add_node(node.id, self.dependencies_of(node.id), node.position)
        return graph

    def __len__(self) -> int:
        return len(self.nodes)
