"""AWS provider adapter dispatching to one provisioner per resource kind."""

from typing import Any, Callable, Dict, Optional, Type

from stratus_deploy.provisioners.autoscaling import AutoScalingGroupProvisioner
from stratus_deploy.provisioners.base import BaseProvisioner, ProviderAdapter, ProviderResult
from stratus_deploy.provisioners.ec2 import (
    InternetGatewayProvisioner,
    LaunchTemplateProvisioner,
    RouteProvisioner,
    RouteTableProvisioner,
    SecurityGroupProvisioner,
    SubnetProvisioner,
    SubnetRouteTableAssociationProvisioner,
    VPCGatewayAttachmentProvisioner,
    VPCProvisioner,
)
from stratus_deploy.provisioners.efs import FileSystemProvisioner, MountTargetProvisioner
from stratus_deploy.provisioners.elbv2 import (
    ListenerProvisioner,
    LoadBalancerProvisioner,
    TargetGroupProvisioner,
)
from stratus_deploy.provisioners.iam import InstanceProfileProvisioner, RoleProvisioner
from stratus_deploy.provisioners.rds import DBInstanceProvisioner, DBSubnetGroupProvisioner
from stratus_deploy.utils.aws_client import AWSClientManager
from stratus_deploy.utils.errors import ErrorCategory, ErrorContext, ProviderError, error_handler
from stratus_deploy.utils.logging import get_logger
from stratus_deploy.utils.retry import RetryStrategy

logger = get_logger(__name__)

PROVISIONER_CLASSES = (
    VPCProvisioner,
    InternetGatewayProvisioner,
    VPCGatewayAttachmentProvisioner,
    SubnetProvisioner,
    RouteTableProvisioner,
    RouteProvisioner,
    SubnetRouteTableAssociationProvisioner,
    SecurityGroupProvisioner,
    LaunchTemplateProvisioner,
    AutoScalingGroupProvisioner,
    RoleProvisioner,
    InstanceProfileProvisioner,
    FileSystemProvisioner,
    MountTargetProvisioner,
    DBSubnetGroupProvisioner,
    DBInstanceProvisioner,
    LoadBalancerProvisioner,
    TargetGroupProvisioner,
    ListenerProvisioner,
)


class AWSProviderAdapter(ProviderAdapter):
    """Provider adapter backed by boto3.

    Every call is retried with exponential backoff for transient errors;
    anything else is converted to a ProviderError carrying the AWS error
    code's category and suggestions.
    """

    def __init__(
        self,
        clients: AWSClientManager,
        stack_name: str,
        retry_strategy: Optional[RetryStrategy] = None,
        provisioner_classes=PROVISIONER_CLASSES
    ):
        """Initialize the adapter.

        Args:
            clients: Shared AWS client manager
            stack_name: Stack name used for tags and generated names
            retry_strategy: Backoff policy for transient errors
            provisioner_classes: Provisioner classes to register
        """
        self.clients = clients
        self.stack_name = stack_name
        self.retry_strategy = retry_strategy or RetryStrategy()
        self.provisioners: Dict[str, BaseProvisioner] = {}
        for provisioner_class in provisioner_classes:
            self.register(provisioner_class)

    def register(self, provisioner_class: Type[BaseProvisioner]) -> None:
        """Register the provisioner for its resource type."""
        self.provisioners[provisioner_class.resource_type] = provisioner_class(self.clients, self.stack_name)

    def provisioner_for(self, resource_type: str) -> BaseProvisioner:
        provisioner = self.provisioners.get(resource_type)
        if provisioner is None:
            raise ProviderError(
                f"No provisioner registered for resource type '{resource_type}'",
                category=ErrorCategory.CONFIGURATION,
                context=ErrorContext(resource_type=resource_type)
            )
        return provisioner

    def create(self, resource_type: str, properties: Dict[str, Any], logical_id: str) -> ProviderResult:
        provisioner = self.provisioner_for(resource_type)
        return self._call('create', resource_type, logical_id, provisioner.create, properties, logical_id)

    def update(
        self,
        resource_type: str,
        provider_id: str,
        properties: Dict[str, Any],
        previous: Dict[str, Any],
        logical_id: Optional[str] = None
    ) -> ProviderResult:
        provisioner = self.provisioner_for(resource_type)
        logical_id = logical_id or provider_id

        if provisioner.requires_replacement(properties, previous):
            logger.info(
                f"Replacing {logical_id}: immutable properties changed",
                extra={'resource_id': logical_id, 'resource_type': resource_type}
            )
            result = self._call('create', resource_type, logical_id, provisioner.create, properties, logical_id)
            result.replaced_provider_id = provider_id
            return result

        return self._call(
            'update', resource_type, logical_id,
            provisioner.update, provider_id, properties, previous, logical_id
        )

    def delete(self, resource_type: str, provider_id: str) -> None:
        provisioner = self.provisioner_for(resource_type)
        self._call('delete', resource_type, provider_id, provisioner.delete, provider_id)

    def describe(self, resource_type: str, provider_id: str) -> Optional[Dict[str, Any]]:
        provisioner = self.provisioner_for(resource_type)
        return self._call('describe', resource_type, provider_id, provisioner.describe, provider_id)

    def lookup(self, kind: str, key: str) -> Any:
        """Environment lookups backed by EC2, SSM and STS.

        Args:
            kind: 'availability_zones', 'ssm_parameter' or 'pseudo_parameter'
            key: Region, SSM parameter name or pseudo parameter name
        """
        if kind == 'availability_zones':
            return self._call('lookup', kind, key, self._availability_zones, key)
        if kind == 'ssm_parameter':
            return self._call('lookup', kind, key, self._ssm_parameter, key)
        if kind == 'pseudo_parameter':
            return self._call('lookup', kind, key, self._pseudo_parameter, key)
        raise NotImplementedError(f"Unsupported lookup '{kind}'")

    def _availability_zones(self, region: str):
        response = self.clients.get_client('ec2').describe_availability_zones(
            Filters=[
                {'Name': 'region-name', 'Values': [region]},
                {'Name': 'state', 'Values': ['available']},
            ]
        )
        return sorted(zone['ZoneName'] for zone in response['AvailabilityZones'])

    def _ssm_parameter(self, name: str) -> str:
        return self.clients.get_client('ssm').get_parameter(Name=name)['Parameter']['Value']

    def _pseudo_parameter(self, name: str) -> str:
        region = self.clients.get_region()
        if name == 'AWS::Region':
            return region
        if name == 'AWS::AccountId':
            return self.clients.get_account_id()
        if name == 'AWS::Partition':
            if region.startswith('cn-'):
                return 'aws-cn'
            if region.startswith('us-gov-'):
                return 'aws-us-gov'
            return 'aws'
        if name == 'AWS::URLSuffix':
            return 'amazonaws.com.cn' if region.startswith('cn-') else 'amazonaws.com'
        raise NotImplementedError(f"Unsupported pseudo parameter '{name}'")

    def _call(self, operation: str, resource_type: str, resource_id: str, func: Callable, *args):
        try:
            return self.retry_strategy.execute_with_retry(func, *args)
        except NotImplementedError:
            raise
        except Exception as e:
            context = ErrorContext(
                resource_id=resource_id,
                resource_type=resource_type,
                operation=operation
            )
            raise error_handler.handle_exception(e, context) from e
