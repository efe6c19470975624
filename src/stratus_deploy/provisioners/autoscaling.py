"""Auto Scaling group provisioner."""

from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from .base import BaseProvisioner, ProviderResult, STACK_TAG, LOGICAL_ID_TAG

# Template property -> converter for parameters shared by create and update
GROUP_PARAMETERS = {
    'MinSize': int,
    'MaxSize': int,
    'DesiredCapacity': int,
    'HealthCheckType': str,
    'HealthCheckGracePeriod': int,
    'DefaultCooldown': int,
}


class AutoScalingGroupProvisioner(BaseProvisioner):
    """Provisioner for AWS::AutoScaling::AutoScalingGroup. The provider id is the group name."""

    resource_type = 'AWS::AutoScaling::AutoScalingGroup'
    replacement_properties = frozenset({'AutoScalingGroupName'})
    poll_interval = 15.0

    @property
    def autoscaling(self):
        return self.clients.get_client('autoscaling')

    def create(self, properties: Dict[str, Any], logical_id: str) -> ProviderResult:
        name = properties.get('AutoScalingGroupName') or self.physical_name(logical_id, properties, 255)
        params = self._group_params(properties)
        params['AutoScalingGroupName'] = name
        if properties.get('TargetGroupARNs'):
            params['TargetGroupARNs'] = list(properties['TargetGroupARNs'])
        params['Tags'] = self._tags(name, logical_id, properties.get('Tags'))

        try:
            self.autoscaling.create_auto_scaling_group(**params)
        except ClientError as e:
            if self.error_code(e) != 'AlreadyExists':
                raise
            # Created by an earlier attempt whose response was lost
            return self.update(name, properties, {}, logical_id)
        return ProviderResult(name, {})

    def update(self, provider_id, properties, previous, logical_id) -> ProviderResult:
        params = self._group_params(properties)
        self.autoscaling.update_auto_scaling_group(AutoScalingGroupName=provider_id, **params)

        desired = list(properties.get('TargetGroupARNs') or [])
        current = list(previous.get('TargetGroupARNs') or [])
        removed = [arn for arn in current if arn not in desired]
        added = [arn for arn in desired if arn not in current]
        if removed:
            self.autoscaling.detach_load_balancer_target_groups(
                AutoScalingGroupName=provider_id, TargetGroupARNs=removed
            )
        if added:
            self.autoscaling.attach_load_balancer_target_groups(
                AutoScalingGroupName=provider_id, TargetGroupARNs=added
            )

        if properties.get('Tags') != previous.get('Tags'):
            self.autoscaling.create_or_update_tags(
                Tags=self._tags(provider_id, logical_id or provider_id, properties.get('Tags'))
            )
        return ProviderResult(provider_id, {})

    def delete(self, provider_id: str) -> None:
        try:
            self.autoscaling.delete_auto_scaling_group(AutoScalingGroupName=provider_id, ForceDelete=True)
        except ClientError as e:
            # Missing groups are reported as a ValidationError
            if 'not found' in e.response.get('Error', {}).get('Message', ''):
                return
            raise

        # Instances must terminate before subnets and security groups can go
        self.wait_until(
            lambda: self.describe(provider_id) is None,
            f"auto scaling group {provider_id} to be deleted"
        )

    def describe(self, provider_id: str) -> Optional[Dict[str, Any]]:
        groups = self.autoscaling.describe_auto_scaling_groups(
            AutoScalingGroupNames=[provider_id]
        )['AutoScalingGroups']
        return {} if groups else None

    @staticmethod
    def _group_params(properties: Dict[str, Any]) -> Dict[str, Any]:
        params = {
            key: convert(properties[key])
            for key, convert in GROUP_PARAMETERS.items()
            if key in properties
        }
        if properties.get('LaunchTemplate'):
            template = properties['LaunchTemplate']
            spec = {'Version': str(template.get('Version', '$Default'))}
            if 'LaunchTemplateId' in template:
                spec['LaunchTemplateId'] = template['LaunchTemplateId']
            else:
                spec['LaunchTemplateName'] = template['LaunchTemplateName']
            params['LaunchTemplate'] = spec
        zones = properties.get('VPCZoneIdentifier')
        if zones:
            params['VPCZoneIdentifier'] = zones if isinstance(zones, str) else ','.join(zones)
        if properties.get('AvailabilityZones'):
            params['AvailabilityZones'] = list(properties['AvailabilityZones'])
        return params

    def _tags(self, name: str, logical_id: str, tags: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
        result = []
        for tag in tags or []:
            propagate = tag.get('PropagateAtLaunch', False)
            result.append({
                'ResourceId': name,
                'ResourceType': 'auto-scaling-group',
                'Key': str(tag['Key']),
                'Value': str(tag['Value']),
                'PropagateAtLaunch': propagate if isinstance(propagate, bool) else str(propagate).lower() == 'true',
            })
        for key, value in ((STACK_TAG, self.stack_name), (LOGICAL_ID_TAG, logical_id)):
            result.append({
                'ResourceId': name,
                'ResourceType': 'auto-scaling-group',
                'Key': key,
                'Value': value,
                'PropagateAtLaunch': False,
            })
        return result
