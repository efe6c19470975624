"""Reference resolution, parameter binding and content hashing."""

import hashlib
import json
import threading
from typing import Any, Callable, Dict, Mapping, Optional, Set, Tuple

from stratus_deploy.template.catalog import ID_ATTRIBUTE
from stratus_deploy.template.intrinsics import Deferred, Intrinsic, Reference
from stratus_deploy.template.models import ParameterSpec
from stratus_deploy.utils.errors import ReferenceError, ValidationError
from stratus_deploy.utils.logging import get_logger

logger = get_logger(__name__)

Lookup = Callable[[str, str], Any]

DEFAULT_PSEUDO_VALUES = {
    'AWS::Partition': 'aws',
    'AWS::URLSuffix': 'amazonaws.com',
}


class _NoValue:
    """Marker for AWS::NoValue; removes the enclosing key or list item."""

    def __repr__(self) -> str:
        return 'NoValue'


NO_VALUE = _NoValue()


class OutputRegistry:
    """Thread-safe view of the outputs computed for each node."""

    def __init__(self, initial: Optional[Mapping[str, Mapping[str, Any]]] = None):
        self._lock = threading.Lock()
        self._outputs: Dict[str, Dict[str, Any]] = {}
        for node_id, outputs in (initial or {}).items():
            self._outputs[node_id] = dict(outputs)

    def set(self, node_id: str, provider_id: str, outputs: Mapping[str, Any]) -> None:
        """Record the outputs of an applied node; ``id`` holds the provider id."""
        values = dict(outputs)
        values[ID_ATTRIBUTE] = provider_id
        with self._lock:
            self._outputs[node_id] = values

    def get(self, node_id: str, attribute: str) -> Any:
        """Raises KeyError if the node or attribute is unknown."""
        with self._lock:
            return self._outputs[node_id][attribute]


class Resolver:
    """Evaluates placeholders against parameters and computed outputs.

    In strict mode an unknown output is an error. Otherwise it evaluates to a
    ``Deferred`` marker and the reference is remembered, which is how a plan
    is computed before dependencies have been created.
    """

    def __init__(
        self,
        parameters: Mapping[str, Any],
        stack_name: str,
        outputs: OutputRegistry,
        lookup: Lookup,
        strict: bool = True
    ):
        self.parameters = dict(parameters)
        self.stack_name = stack_name
        self.outputs = outputs
        self._lookup = lookup
        self.strict = strict
        self.deferred: Set[Reference] = set()
        self._cache: Dict[Tuple[str, str], Any] = {}
        self._cache_lock = threading.Lock()

    def resolve_properties(self, properties: Dict[str, Any]) -> Tuple[Dict[str, Any], Set[Reference]]:
        """Resolve a property bag.

        Returns:
            Tuple of (resolved properties, references that were deferred)
        """
        self.deferred = set()
        resolved = self.resolve(properties)
        return resolved, set(self.deferred)

    def resolve(self, value: Any) -> Any:
        """Recursively replace placeholders with concrete values."""
        if isinstance(value, Intrinsic):
            return value.evaluate(self)
        if isinstance(value, dict):
            result = {}
            for key, item in value.items():
                resolved = self.resolve(item)
                if resolved is not NO_VALUE:
                    result[key] = resolved
            return result
        if isinstance(value, list):
            items = (self.resolve(item) for item in value)
            return [item for item in items if item is not NO_VALUE]
        return value

    def output(self, node_id: str, attribute: str) -> Any:
        try:
            return self.outputs.get(node_id, attribute)
        except KeyError:
            reference = Reference(node_id, attribute)
            if self.strict:
                raise ReferenceError(
                    f"Output '{attribute}' of '{node_id}' is not available"
                )
            self.deferred.add(reference)
            return Deferred(reference)

    def parameter(self, name: str) -> Any:
        if name not in self.parameters:
            raise ReferenceError(f"Parameter '{name}' has no value")
        return self.parameters[name]

    def pseudo_parameter(self, name: str) -> Any:
        if name == 'AWS::NoValue':
            return NO_VALUE
        if name == 'AWS::StackName':
            return self.stack_name
        try:
            return self.lookup('pseudo_parameter', name)
        except NotImplementedError:
            if name in DEFAULT_PSEUDO_VALUES:
                return DEFAULT_PSEUDO_VALUES[name]
            raise

    def lookup(self, kind: str, key: str) -> Any:
        """Environment lookup through the provider, cached for the run."""
        cache_key = (kind, str(key))
        with self._cache_lock:
            if cache_key in self._cache:
                return self._cache[cache_key]
        value = self._lookup(kind, key)
        with self._cache_lock:
            self._cache[cache_key] = value
        return value


def bind_parameters(
    specs: Mapping[str, ParameterSpec],
    supplied: Mapping[str, Any],
    lookup: Optional[Lookup] = None
) -> Dict[str, Any]:
    """Validate supplied values against parameter declarations.

    Args:
        specs: Parameter declarations from the template
        supplied: Values supplied for this run
        lookup: Environment lookup used for SSM-typed parameters

    Returns:
        Mapping of parameter name to bound value

    Raises:
        ValidationError: On unknown names, missing values or constraint violations
    """
    unknown = sorted(set(supplied) - set(specs))
    if unknown:
        raise ValidationError(f"Unknown parameters supplied: {', '.join(unknown)}")

    bound = {}
    for name, spec in specs.items():
        value = supplied.get(name, spec.default)
        if value is None:
            raise ValidationError(f"Parameter '{name}' requires a value")

        value = spec.validate_value(value)
        if spec.is_ssm_lookup:
            if lookup is None:
                raise ValidationError(f"Parameter '{name}' needs an SSM lookup but no provider is configured")
            logger.debug(f"Resolving SSM parameter {value} for '{name}'")
            value = lookup('ssm_parameter', value)
        bound[name] = value
    return bound


def masked_values(specs: Mapping[str, ParameterSpec], values: Mapping[str, Any]) -> Set[str]:
    """String values of NoEcho parameters, for redaction in displays."""
    return {str(values[name]) for name, spec in specs.items() if spec.no_echo and name in values}


def content_hash(resource_type: str, properties: Mapping[str, Any]) -> str:
    """Deterministic digest of a node's type and resolved properties."""
    payload = json.dumps(
        {'type': resource_type, 'properties': properties},
        sort_keys=True,
        separators=(',', ':'),
        default=str,
    )
    return hashlib.sha256(payload.encode('utf-8')).hexdigest()
