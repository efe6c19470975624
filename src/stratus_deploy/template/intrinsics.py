"""Intrinsic functions embedded in template property bags.

Templates are read with a YAML loader that understands the short-form tags
(``!Ref``, ``!GetAtt``, ``!Sub`` ...) and turns them into the equivalent
long-form mappings (``{"Ref": ...}``, ``{"Fn::GetAtt": ...}``). The
``IntrinsicBuilder`` then replaces every long-form mapping with a typed
placeholder. Placeholders are immutable and are evaluated against a
``Resolver`` only when a run needs the concrete value.
"""

import base64
import re
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterator, List, Mapping, Optional, Tuple

import yaml

from stratus_deploy.template.catalog import ID_ATTRIBUTE, get_kind
from stratus_deploy.utils.errors import ErrorContext, ParseError, ReferenceError

PSEUDO_PARAMETERS = frozenset({
    'AWS::AccountId',
    'AWS::NoValue',
    'AWS::Partition',
    'AWS::Region',
    'AWS::StackName',
    'AWS::URLSuffix',
})

_SUB_PATTERN = re.compile(r'\$\{([^}]*)\}')


class TemplateLoader(yaml.SafeLoader):
    """YAML loader that rejects duplicate keys and accepts intrinsic tags."""

    def construct_mapping(self, node, deep=False):
        seen = {}
        for key_node, _ in node.value:
            if key_node.tag == 'tag:yaml.org,2002:merge':
                continue
            key = self.construct_object(key_node, deep=deep)
            try:
                duplicate = key in seen
            except TypeError:
                raise ParseError(f"Unhashable mapping key at line {key_node.start_mark.line + 1}")
            if duplicate:
                raise ParseError(
                    f"Duplicate key '{key}' at line {key_node.start_mark.line + 1} "
                    f"(first defined at line {seen[key]})"
                )
            seen[key] = key_node.start_mark.line + 1
        return super().construct_mapping(node, deep=deep)


def _construct_intrinsic(loader: TemplateLoader, tag_suffix: str, node) -> Dict[str, Any]:
    if isinstance(node, yaml.ScalarNode):
        value = loader.construct_scalar(node)
    elif isinstance(node, yaml.SequenceNode):
        value = loader.construct_sequence(node, deep=True)
    else:
        value = loader.construct_mapping(node, deep=True)

    if tag_suffix == 'Ref':
        return {'Ref': value}
    if tag_suffix == 'GetAtt' and isinstance(value, str):
        value = value.split('.', 1)
    return {f'Fn::{tag_suffix}': value}


TemplateLoader.add_multi_constructor('!', _construct_intrinsic)


def load_yaml(text: str) -> Any:
    """Load template text, translating YAML failures to ParseError."""
    try:
        return yaml.load(text, Loader=TemplateLoader)
    except yaml.YAMLError as e:
        raise ParseError(f"Failed to parse template: {e}", cause=e)


@dataclass(frozen=True)
class Reference:
    """A dependency of a value on an output attribute of another node.

    ``attribute`` is None for ordering-only dependencies (DependsOn).
    """

    target: str
    attribute: Optional[str] = ID_ATTRIBUTE


class Deferred(str):
    """Stand-in for an output that is not known until a dependency applies."""

    def __new__(cls, reference: Reference):
        value = super().__new__(cls, f"${{Deferred:{reference.target}.{reference.attribute}}}")
        value.reference = reference
        return value


class Intrinsic:
    """Base class for placeholders embedded in a property bag."""

    function_name = ''

    def references(self) -> Iterator[Reference]:
        """Yield the node references this placeholder needs."""
        for arg in self._arguments():
            yield from iter_references(arg)

    def evaluate(self, resolver) -> Any:
        raise NotImplementedError

    def _arguments(self) -> Tuple[Any, ...]:
        return ()


@dataclass(frozen=True)
class Ref(Intrinsic):
    """Provider-assigned identifier of another node."""

    target: str
    function_name = 'Ref'

    def references(self) -> Iterator[Reference]:
        yield Reference(self.target, ID_ATTRIBUTE)

    def evaluate(self, resolver) -> Any:
        return resolver.output(self.target, ID_ATTRIBUTE)


@dataclass(frozen=True)
class GetAtt(Intrinsic):
    """Output attribute of another node."""

    target: str
    attribute: str
    function_name = 'Fn::GetAtt'

    def references(self) -> Iterator[Reference]:
        yield Reference(self.target, self.attribute)

    def evaluate(self, resolver) -> Any:
        return resolver.output(self.target, self.attribute)


@dataclass(frozen=True)
class ParameterRef(Intrinsic):
    """Value bound to a template parameter for this run."""

    name: str
    function_name = 'Ref'

    def evaluate(self, resolver) -> Any:
        return resolver.parameter(self.name)


@dataclass(frozen=True)
class PseudoRef(Intrinsic):
    """Engine-provided value such as AWS::Region or AWS::StackName."""

    name: str
    function_name = 'Ref'

    def evaluate(self, resolver) -> Any:
        return resolver.pseudo_parameter(self.name)


@dataclass(frozen=True)
class Sub(Intrinsic):
    """String interpolation; literal text and placeholders alternate in ``parts``."""

    parts: Tuple[Any, ...]
    function_name = 'Fn::Sub'

    def _arguments(self) -> Tuple[Any, ...]:
        return self.parts

    def evaluate(self, resolver) -> Any:
        return ''.join(_to_text(resolver.resolve(part)) for part in self.parts)


@dataclass(frozen=True)
class Join(Intrinsic):
    delimiter: str
    values: Any
    function_name = 'Fn::Join'

    def _arguments(self) -> Tuple[Any, ...]:
        return (self.values,)

    def evaluate(self, resolver) -> Any:
        values = resolver.resolve(self.values)
        if isinstance(values, Deferred):
            return values
        if not isinstance(values, list):
            raise ParseError(f"Fn::Join expects a list, got {type(values).__name__}")
        return self.delimiter.join(_to_text(value) for value in values)


@dataclass(frozen=True)
class Select(Intrinsic):
    index: Any
    values: Any
    function_name = 'Fn::Select'

    def _arguments(self) -> Tuple[Any, ...]:
        return (self.index, self.values)

    def evaluate(self, resolver) -> Any:
        index = resolver.resolve(self.index)
        if isinstance(index, Deferred):
            return index
        try:
            index = int(index)
        except (TypeError, ValueError):
            raise ParseError(f"Fn::Select index must be an integer, got {index!r}") from None
        values = resolver.resolve(self.values)
        if isinstance(values, Deferred):
            return values
        if isinstance(values, str):
            values = values.split(',')
        if not isinstance(values, list) or not 0 <= index < len(values):
            raise ParseError(f"Fn::Select index {index} out of range")
        return values[index]


@dataclass(frozen=True)
class GetAZs(Intrinsic):
    """Availability zones of a region, looked up through the provider."""

    region: Any
    function_name = 'Fn::GetAZs'

    def _arguments(self) -> Tuple[Any, ...]:
        return (self.region,)

    def evaluate(self, resolver) -> Any:
        region = resolver.resolve(self.region) or resolver.pseudo_parameter('AWS::Region')
        return list(resolver.lookup('availability_zones', region))


@dataclass(frozen=True)
class Base64(Intrinsic):
    value: Any
    function_name = 'Fn::Base64'

    def _arguments(self) -> Tuple[Any, ...]:
        return (self.value,)

    def evaluate(self, resolver) -> Any:
        text = _to_text(resolver.resolve(self.value))
        return base64.b64encode(text.encode('utf-8')).decode('ascii')


def _to_text(value: Any) -> str:
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, (list, dict)):
        raise ParseError(f"Cannot interpolate a {type(value).__name__} into a string")
    return str(value)


def iter_references(value: Any) -> Iterator[Reference]:
    """Yield every node reference inside a (possibly nested) value."""
    if isinstance(value, Intrinsic):
        yield from value.references()
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_references(item)


class IntrinsicBuilder:
    """Converts long-form intrinsic mappings into typed placeholders.

    Validates every reference against the resource ids, their kinds and the
    parameter names of the template being built.
    """

    def __init__(self, resource_types: Mapping[str, str], parameter_names: FrozenSet[str]):
        self.resource_types = resource_types
        self.parameter_names = parameter_names

    def build(self, value: Any, path: str) -> Any:
        """Return ``value`` with every intrinsic replaced by a placeholder."""
        if isinstance(value, dict):
            if len(value) == 1:
                key = next(iter(value))
                if key == 'Ref' or (isinstance(key, str) and key.startswith('Fn::')):
                    return self._build_function(key, value[key], path)
                if key == 'Condition':
                    raise ParseError(f"{path}: conditions are not supported")
            return {key: self.build(item, f"{path}.{key}") for key, item in value.items()}
        if isinstance(value, list):
            return [self.build(item, f"{path}[{i}]") for i, item in enumerate(value)]
        return value

    def _build_function(self, name: str, args: Any, path: str) -> Intrinsic:
        handler = getattr(self, '_build_' + name.replace('Fn::', '').lower(), None)
        if handler is None:
            raise ParseError(f"{path}: unsupported intrinsic function '{name}'")
        return handler(args, path)

    def _build_ref(self, args: Any, path: str) -> Intrinsic:
        if not isinstance(args, str):
            raise ParseError(f"{path}: Ref expects a name")
        return self.reference_for(args, path)

    def reference_for(self, name: str, path: str) -> Intrinsic:
        """Resolve a bare name to a resource, parameter or pseudo parameter reference."""
        if name in self.resource_types:
            return Ref(name)
        if name in self.parameter_names:
            return ParameterRef(name)
        if name in PSEUDO_PARAMETERS:
            return PseudoRef(name)
        raise ReferenceError(
            f"{path}: reference to undefined resource or parameter '{name}'",
            context=ErrorContext(additional_info={'path': path})
        )

    def _build_getatt(self, args: Any, path: str) -> Intrinsic:
        if (not isinstance(args, list) or len(args) != 2
                or not all(isinstance(arg, str) for arg in args)):
            raise ParseError(f"{path}: Fn::GetAtt expects [resource, attribute]")
        return self.attribute_for(args[0], args[1], path)

    def attribute_for(self, target: str, attribute: str, path: str) -> GetAtt:
        """Build a GetAtt placeholder after checking the target publishes the attribute."""
        resource_type = self.resource_types.get(target)
        if resource_type is None:
            raise ReferenceError(f"{path}: Fn::GetAtt references undefined resource '{target}'")
        kind = get_kind(resource_type)
        if kind is None or not kind.publishes(attribute):
            raise ReferenceError(
                f"{path}: resource '{target}' ({resource_type}) has no attribute '{attribute}'"
            )
        return GetAtt(target, attribute)

    def _build_sub(self, args: Any, path: str) -> Intrinsic:
        variables: Dict[str, Any] = {}
        if isinstance(args, list):
            if len(args) != 2 or not isinstance(args[0], str) or not isinstance(args[1], dict):
                raise ParseError(f"{path}: Fn::Sub expects a string or [string, variables]")
            text = args[0]
            variables = {
                name: self.build(item, f"{path}.{name}") for name, item in args[1].items()
            }
        elif isinstance(args, str):
            text = args
        else:
            raise ParseError(f"{path}: Fn::Sub expects a string or [string, variables]")

        parts: List[Any] = []
        position = 0
        for match in _SUB_PATTERN.finditer(text):
            parts.append(text[position:match.start()])
            position = match.end()
            expression = match.group(1)
            if expression.startswith('!'):
                # ${!Literal} escapes interpolation
                parts.append('${' + expression[1:] + '}')
            elif expression in variables:
                parts.append(variables[expression])
            elif '.' in expression and expression.split('.', 1)[0] in self.resource_types:
                target, attribute = expression.split('.', 1)
                parts.append(self.attribute_for(target, attribute, path))
            else:
                parts.append(self.reference_for(expression, path))
        parts.append(text[position:])
        return Sub(tuple(part for part in parts if part != ''))

    def _build_join(self, args: Any, path: str) -> Intrinsic:
        if not isinstance(args, list) or len(args) != 2 or not isinstance(args[0], str):
            raise ParseError(f"{path}: Fn::Join expects [delimiter, values]")
        return Join(args[0], self.build(args[1], path))

    def _build_select(self, args: Any, path: str) -> Intrinsic:
        if not isinstance(args, list) or len(args) != 2:
            raise ParseError(f"{path}: Fn::Select expects [index, values]")
        return Select(self.build(args[0], path), self.build(args[1], path))

    def _build_getazs(self, args: Any, path: str) -> Intrinsic:
        return GetAZs(self.build(args if args is not None else '', path))

    def _build_base64(self, args: Any, path: str) -> Intrinsic:
        return Base64(self.build(args, path))
