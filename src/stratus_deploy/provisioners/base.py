"""Provider adapter contract and base provisioner for AWS resource kinds."""

import hashlib
import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, List, Optional

from botocore.exceptions import ClientError

from stratus_deploy.utils.aws_client import AWSClientManager
from stratus_deploy.utils.errors import ErrorContext, ProviderError

STACK_TAG = 'stratus:stack'
LOGICAL_ID_TAG = 'stratus:logical-id'


@dataclass
class ProviderResult:
    """Outcome of a successful create or update."""
    provider_id: str
    outputs: Dict[str, Any] = field(default_factory=dict)
    replaced_provider_id: Optional[str] = None  # Old resource to remove after the run


class ProviderAdapter(ABC):
    """Boundary between the engine and a concrete cloud backend.

    The engine calls these from worker threads; implementations must be
    safe to call concurrently for different resources.
    """

    @abstractmethod
    def create(self, resource_type: str, properties: Dict[str, Any], logical_id: str) -> ProviderResult:
        """Create a resource.

        Args:
            resource_type: Resource type tag
            properties: Fully resolved properties
            logical_id: Template identifier, used for naming and idempotency

        Returns:
            ProviderResult with the provider-assigned id and outputs
        """
        pass

    @abstractmethod
    def update(
        self,
        resource_type: str,
        provider_id: str,
        properties: Dict[str, Any],
        previous: Dict[str, Any],
        logical_id: Optional[str] = None
    ) -> ProviderResult:
        """Bring an existing resource to the given properties.

        Args:
            resource_type: Resource type tag
            provider_id: Provider-assigned id of the existing resource
            properties: Desired resolved properties
            previous: Properties last applied
            logical_id: Template identifier

        Returns:
            ProviderResult; ``replaced_provider_id`` is set when the update
            created a new resource in place of the old one
        """
        pass

    @abstractmethod
    def delete(self, resource_type: str, provider_id: str) -> None:
        """Delete a resource. A resource that no longer exists counts as deleted."""
        pass

    @abstractmethod
    def describe(self, resource_type: str, provider_id: str) -> Optional[Dict[str, Any]]:
        """Current outputs of a resource, or None if it no longer exists."""
        pass

    def lookup(self, kind: str, key: str) -> Any:
        """Environment lookup (availability zones, SSM parameters, pseudo parameters)."""
        raise NotImplementedError(f"Lookup '{kind}' is not supported by {type(self).__name__}")


class BaseProvisioner(ABC):
    """Base class for the provisioner of one AWS resource kind."""

    resource_type: str = ''

    # Properties that cannot be changed in place; a change replaces the resource
    replacement_properties: FrozenSet[str] = frozenset()

    # Error codes meaning the resource is already gone
    not_found_codes: FrozenSet[str] = frozenset()

    # Polling for APIs without a boto3 waiter
    poll_interval: float = 5.0
    poll_timeout: float = 900.0

    def __init__(self, clients: AWSClientManager, stack_name: str):
        """Initialize provisioner.

        Args:
            clients: Shared AWS client manager
            stack_name: Stack name used for tags and generated names
        """
        self.clients = clients
        self.stack_name = stack_name
        self.sleep = time.sleep

    @abstractmethod
    def create(self, properties: Dict[str, Any], logical_id: str) -> ProviderResult:
        pass

    @abstractmethod
    def update(
        self,
        provider_id: str,
        properties: Dict[str, Any],
        previous: Dict[str, Any],
        logical_id: str
    ) -> ProviderResult:
        pass

    @abstractmethod
    def delete(self, provider_id: str) -> None:
        pass

    @abstractmethod
    def describe(self, provider_id: str) -> Optional[Dict[str, Any]]:
        pass

    def requires_replacement(self, properties: Dict[str, Any], previous: Dict[str, Any]) -> bool:
        """Check whether any immutable property changed."""
        return any(
            properties.get(name) != previous.get(name)
            for name in self.replacement_properties
        )

    def is_not_found(self, error: ClientError) -> bool:
        return error.response.get('Error', {}).get('Code') in self.not_found_codes

    def physical_name(self, logical_id: str, properties: Dict[str, Any], max_length: int = 63) -> str:
        """Deterministic name for resources the template leaves unnamed.

        The suffix hashes the immutable properties, so a replacement gets a
        new name while retries of the same create reuse the old one.
        """
        seed = json.dumps(
            {name: properties.get(name) for name in sorted(self.replacement_properties)},
            sort_keys=True,
            default=str,
        )
        suffix = hashlib.sha256(f"{logical_id}:{seed}".encode('utf-8')).hexdigest()[:8]
        base = f"{self.stack_name}-{logical_id}"[:max_length - len(suffix) - 1]
        return f"{base}-{suffix}"

    def idempotency_token(self, logical_id: str, properties: Dict[str, Any]) -> str:
        """Client token for APIs that deduplicate creates."""
        return self.physical_name(logical_id, properties, max_length=64)

    def build_tags(self, logical_id: str, tags: Optional[List[Dict[str, Any]]] = None) -> List[Dict[str, str]]:
        """Template tags plus the stack and logical id tags."""
        result = [
            {'Key': str(tag['Key']), 'Value': str(tag['Value'])}
            for tag in (tags or [])
        ]
        result.append({'Key': STACK_TAG, 'Value': self.stack_name})
        result.append({'Key': LOGICAL_ID_TAG, 'Value': logical_id})
        return result

    def wait_until(self, check: Callable[[], bool], description: str) -> None:
        """Poll ``check`` until it returns True.

        Raises:
            ProviderError: If the resource does not settle within poll_timeout
        """
        deadline = time.monotonic() + self.poll_timeout
        while not check():
            if time.monotonic() > deadline:
                raise ProviderError(
                    f"Timed out waiting for {description}",
                    context=ErrorContext(resource_type=self.resource_type)
                )
            self.sleep(self.poll_interval)

    @staticmethod
    def error_code(error: ClientError) -> str:
        return error.response.get('Error', {}).get('Code', '')
