"""Elastic Load Balancing v2 provisioners: load balancers, target groups and listeners."""

from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from .base import BaseProvisioner, ProviderResult

# ELBv2 names are limited to 32 characters
NAME_LENGTH = 32

TARGET_GROUP_HEALTH_CHECK = {
    'HealthCheckProtocol': str,
    'HealthCheckPort': str,
    'HealthCheckPath': str,
    'HealthCheckEnabled': bool,
    'HealthCheckIntervalSeconds': int,
    'HealthCheckTimeoutSeconds': int,
    'HealthyThresholdCount': int,
    'UnhealthyThresholdCount': int,
}


def _arn_suffix(arn: str, marker: str) -> str:
    """Part of an ELBv2 ARN after ``marker``, e.g. ``app/name/id``."""
    return arn.split(marker, 1)[1] if marker in arn else arn


class ELBv2Provisioner(BaseProvisioner):

    @property
    def elbv2(self):
        return self.clients.get_client('elbv2')

    def elb_name(self, logical_id: str, properties: Dict[str, Any]) -> str:
        return properties.get('Name') or self.physical_name(logical_id, properties, NAME_LENGTH)


class LoadBalancerProvisioner(ELBv2Provisioner):
    """Provisioner for AWS::ElasticLoadBalancingV2::LoadBalancer. The provider id is the ARN."""

    resource_type = 'AWS::ElasticLoadBalancingV2::LoadBalancer'
    replacement_properties = frozenset({'Name', 'Scheme', 'Type'})
    not_found_codes = frozenset({'LoadBalancerNotFound'})

    def create(self, properties: Dict[str, Any], logical_id: str) -> ProviderResult:
        params: Dict[str, Any] = {
            'Name': self.elb_name(logical_id, properties),
            'Tags': self.build_tags(logical_id, properties.get('Tags')),
        }
        if properties.get('Subnets'):
            params['Subnets'] = list(properties['Subnets'])
        if properties.get('SecurityGroups'):
            params['SecurityGroups'] = list(properties['SecurityGroups'])
        for key in ('Scheme', 'Type', 'IpAddressType'):
            if key in properties:
                params[key] = properties[key]

        # CreateLoadBalancer returns the existing balancer for an identical request
        balancer = self.elbv2.create_load_balancer(**params)['LoadBalancers'][0]
        arn = balancer['LoadBalancerArn']

        self.elbv2.get_waiter('load_balancer_available').wait(LoadBalancerArns=[arn])
        return ProviderResult(arn, self._outputs(balancer))

    def update(self, provider_id, properties, previous, logical_id) -> ProviderResult:
        if properties.get('Subnets') != previous.get('Subnets'):
            self.elbv2.set_subnets(LoadBalancerArn=provider_id, Subnets=list(properties.get('Subnets') or []))
        if properties.get('SecurityGroups') != previous.get('SecurityGroups'):
            self.elbv2.set_security_groups(
                LoadBalancerArn=provider_id,
                SecurityGroups=list(properties.get('SecurityGroups') or [])
            )
        return ProviderResult(provider_id, self.describe(provider_id) or {})

    def delete(self, provider_id: str) -> None:
        try:
            self.elbv2.delete_load_balancer(LoadBalancerArn=provider_id)
        except ClientError as e:
            if self.is_not_found(e):
                return
            raise
        self.elbv2.get_waiter('load_balancers_deleted').wait(LoadBalancerArns=[provider_id])

    def describe(self, provider_id: str) -> Optional[Dict[str, Any]]:
        try:
            balancers = self.elbv2.describe_load_balancers(LoadBalancerArns=[provider_id])['LoadBalancers']
        except ClientError as e:
            if self.is_not_found(e):
                return None
            raise
        return self._outputs(balancers[0]) if balancers else None

    @staticmethod
    def _outputs(balancer: Dict[str, Any]) -> Dict[str, Any]:
        arn = balancer['LoadBalancerArn']
        return {
            'LoadBalancerArn': arn,
            'DNSName': balancer.get('DNSName'),
            'CanonicalHostedZoneID': balancer.get('CanonicalHostedZoneId'),
            'LoadBalancerName': balancer.get('LoadBalancerName'),
            'LoadBalancerFullName': _arn_suffix(arn, ':loadbalancer/'),
        }


class TargetGroupProvisioner(ELBv2Provisioner):
    """Provisioner for AWS::ElasticLoadBalancingV2::TargetGroup. The provider id is the ARN."""

    resource_type = 'AWS::ElasticLoadBalancingV2::TargetGroup'
    replacement_properties = frozenset({'Name', 'Port', 'Protocol', 'VpcId', 'TargetType'})
    not_found_codes = frozenset({'TargetGroupNotFound'})

    def create(self, properties, logical_id) -> ProviderResult:
        params: Dict[str, Any] = {
            'Name': self.elb_name(logical_id, properties),
            'Tags': self.build_tags(logical_id, properties.get('Tags')),
        }
        if 'Protocol' in properties:
            params['Protocol'] = properties['Protocol']
        if 'Port' in properties:
            params['Port'] = int(properties['Port'])
        for key in ('VpcId', 'TargetType'):
            if key in properties:
                params[key] = properties[key]
        params.update(self._health_check(properties))

        group = self.elbv2.create_target_group(**params)['TargetGroups'][0]
        return ProviderResult(group['TargetGroupArn'], self._outputs(group))

    def update(self, provider_id, properties, previous, logical_id) -> ProviderResult:
        health_check = self._health_check(properties)
        if health_check != self._health_check(previous):
            self.elbv2.modify_target_group(TargetGroupArn=provider_id, **health_check)
        return ProviderResult(provider_id, self.describe(provider_id) or {})

    def delete(self, provider_id: str) -> None:
        try:
            self.elbv2.delete_target_group(TargetGroupArn=provider_id)
        except ClientError as e:
            if not self.is_not_found(e):
                raise

    def describe(self, provider_id: str) -> Optional[Dict[str, Any]]:
        try:
            groups = self.elbv2.describe_target_groups(TargetGroupArns=[provider_id])['TargetGroups']
        except ClientError as e:
            if self.is_not_found(e):
                return None
            raise
        return self._outputs(groups[0]) if groups else None

    @staticmethod
    def _health_check(properties: Dict[str, Any]) -> Dict[str, Any]:
        params = {
            key: convert(properties[key])
            for key, convert in TARGET_GROUP_HEALTH_CHECK.items()
            if key in properties
        }
        matcher = properties.get('Matcher')
        if matcher:
            params['Matcher'] = {key: str(value) for key, value in matcher.items()}
        return params

    @staticmethod
    def _outputs(group: Dict[str, Any]) -> Dict[str, Any]:
        arn = group['TargetGroupArn']
        return {
            'TargetGroupArn': arn,
            'TargetGroupName': group.get('TargetGroupName'),
            'TargetGroupFullName': arn.rsplit(':', 1)[-1],
            'LoadBalancerArns': list(group.get('LoadBalancerArns', [])),
        }


class ListenerProvisioner(ELBv2Provisioner):
    """Provisioner for AWS::ElasticLoadBalancingV2::Listener. The provider id is the ARN."""

    resource_type = 'AWS::ElasticLoadBalancingV2::Listener'
    replacement_properties = frozenset({'LoadBalancerArn'})
    not_found_codes = frozenset({'ListenerNotFound'})

    def create(self, properties, logical_id) -> ProviderResult:
        params = self._listener_params(properties)
        params['LoadBalancerArn'] = properties['LoadBalancerArn']
        params['Tags'] = self.build_tags(logical_id, properties.get('Tags'))

        listener = self.elbv2.create_listener(**params)['Listeners'][0]
        return ProviderResult(listener['ListenerArn'], {'ListenerArn': listener['ListenerArn']})

    def update(self, provider_id, properties, previous, logical_id) -> ProviderResult:
        self.elbv2.modify_listener(ListenerArn=provider_id, **self._listener_params(properties))
        return ProviderResult(provider_id, {'ListenerArn': provider_id})

    def delete(self, provider_id: str) -> None:
        try:
            self.elbv2.delete_listener(ListenerArn=provider_id)
        except ClientError as e:
            if not self.is_not_found(e):
                raise

    def describe(self, provider_id: str) -> Optional[Dict[str, Any]]:
        try:
            listeners = self.elbv2.describe_listeners(ListenerArns=[provider_id])['Listeners']
        except ClientError as e:
            if self.is_not_found(e):
                return None
            raise
        return {'ListenerArn': provider_id} if listeners else None

    @staticmethod
    def _listener_params(properties: Dict[str, Any]) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            'DefaultActions': ListenerProvisioner._actions(properties.get('DefaultActions') or []),
        }
        if 'Port' in properties:
            params['Port'] = int(properties['Port'])
        for key in ('Protocol', 'SslPolicy', 'Certificates'):
            if key in properties:
                params[key] = properties[key]
        return params

    @staticmethod
    def _actions(actions: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        converted = []
        for action in actions:
            item = dict(action)
            if 'Order' in item:
                item['Order'] = int(item['Order'])
            converted.append(item)
        return converted
