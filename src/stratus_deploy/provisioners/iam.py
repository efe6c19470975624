"""IAM provisioners for roles and instance profiles."""

import json
from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from .base import BaseProvisioner, ProviderResult


def _policy_json(document: Any) -> str:
    return document if isinstance(document, str) else json.dumps(document)


class IAMProvisioner(BaseProvisioner):
    not_found_codes = frozenset({'NoSuchEntity'})

    @property
    def iam(self):
        return self.clients.get_client('iam')


class RoleProvisioner(IAMProvisioner):
    """Provisioner for AWS::IAM::Role. The provider id is the role name."""

    resource_type = 'AWS::IAM::Role'
    replacement_properties = frozenset({'RoleName', 'Path'})

    def create(self, properties: Dict[str, Any], logical_id: str) -> ProviderResult:
        role_name = properties.get('RoleName') or self.physical_name(logical_id, properties, 64)

        create_params = {
            'RoleName': role_name,
            'AssumeRolePolicyDocument': _policy_json(properties['AssumeRolePolicyDocument']),
            'Tags': self.build_tags(logical_id, properties.get('Tags')),
        }
        if properties.get('Path'):
            create_params['Path'] = properties['Path']
        if properties.get('Description'):
            create_params['Description'] = properties['Description']
        if properties.get('MaxSessionDuration'):
            create_params['MaxSessionDuration'] = int(properties['MaxSessionDuration'])

        try:
            role = self.iam.create_role(**create_params)['Role']
        except ClientError as e:
            if self.error_code(e) != 'EntityAlreadyExists':
                raise
            # Left behind by an earlier attempt; converge it instead
            self.iam.update_assume_role_policy(
                RoleName=role_name,
                PolicyDocument=create_params['AssumeRolePolicyDocument']
            )
            role = self.iam.get_role(RoleName=role_name)['Role']

        self._sync_policies(role_name, properties, {})
        return ProviderResult(role_name, {'Arn': role['Arn'], 'RoleId': role['RoleId']})

    def update(self, provider_id, properties, previous, logical_id) -> ProviderResult:
        if properties.get('AssumeRolePolicyDocument') != previous.get('AssumeRolePolicyDocument'):
            self.iam.update_assume_role_policy(
                RoleName=provider_id,
                PolicyDocument=_policy_json(properties['AssumeRolePolicyDocument'])
            )
        self._sync_policies(provider_id, properties, previous)
        return ProviderResult(provider_id, self.describe(provider_id) or {})

    def delete(self, provider_id: str) -> None:
        try:
            # Managed and inline policies must be removed first
            attached = self.iam.list_attached_role_policies(RoleName=provider_id)['AttachedPolicies']
            for policy in attached:
                self.iam.detach_role_policy(RoleName=provider_id, PolicyArn=policy['PolicyArn'])

            inline = self.iam.list_role_policies(RoleName=provider_id)['PolicyNames']
            for policy_name in inline:
                self.iam.delete_role_policy(RoleName=provider_id, PolicyName=policy_name)

            self.iam.delete_role(RoleName=provider_id)
        except ClientError as e:
            if not self.is_not_found(e):
                raise

    def describe(self, provider_id: str) -> Optional[Dict[str, Any]]:
        try:
            role = self.iam.get_role(RoleName=provider_id)['Role']
        except ClientError as e:
            if self.is_not_found(e):
                return None
            raise
        return {'Arn': role['Arn'], 'RoleId': role['RoleId']}

    def _sync_policies(self, role_name: str, properties: Dict[str, Any], previous: Dict[str, Any]) -> None:
        desired_arns = list(properties.get('ManagedPolicyArns') or [])
        current_arns = list(previous.get('ManagedPolicyArns') or [])
        for arn in current_arns:
            if arn not in desired_arns:
                self.iam.detach_role_policy(RoleName=role_name, PolicyArn=arn)
        for arn in desired_arns:
            if arn not in current_arns:
                self.iam.attach_role_policy(RoleName=role_name, PolicyArn=arn)

        desired_inline = {p['PolicyName']: p['PolicyDocument'] for p in properties.get('Policies') or []}
        current_inline = {p['PolicyName']: p['PolicyDocument'] for p in previous.get('Policies') or []}
        for name in current_inline:
            if name not in desired_inline:
                self.iam.delete_role_policy(RoleName=role_name, PolicyName=name)
        for name, document in desired_inline.items():
            if current_inline.get(name) != document:
                self.iam.put_role_policy(
                    RoleName=role_name,
                    PolicyName=name,
                    PolicyDocument=_policy_json(document)
                )


class InstanceProfileProvisioner(IAMProvisioner):
    """Provisioner for AWS::IAM::InstanceProfile. The provider id is the profile name."""

    resource_type = 'AWS::IAM::InstanceProfile'
    replacement_properties = frozenset({'InstanceProfileName', 'Path'})

    def create(self, properties, logical_id) -> ProviderResult:
        name = properties.get('InstanceProfileName') or self.physical_name(logical_id, properties, 128)
        params = {'InstanceProfileName': name}
        if properties.get('Path'):
            params['Path'] = properties['Path']

        try:
            profile = self.iam.create_instance_profile(**params)['InstanceProfile']
        except ClientError as e:
            if self.error_code(e) != 'EntityAlreadyExists':
                raise
            profile = self.iam.get_instance_profile(InstanceProfileName=name)['InstanceProfile']

        current_roles = [role['RoleName'] for role in profile.get('Roles', [])]
        self._sync_roles(name, list(properties.get('Roles') or []), current_roles)
        return ProviderResult(name, {'Arn': profile['Arn']})

    def update(self, provider_id, properties, previous, logical_id) -> ProviderResult:
        self._sync_roles(
            provider_id,
            list(properties.get('Roles') or []),
            list(previous.get('Roles') or [])
        )
        return ProviderResult(provider_id, self.describe(provider_id) or {})

    def delete(self, provider_id: str) -> None:
        try:
            profile = self.iam.get_instance_profile(InstanceProfileName=provider_id)['InstanceProfile']
            for role in profile.get('Roles', []):
                self.iam.remove_role_from_instance_profile(
                    InstanceProfileName=provider_id,
                    RoleName=role['RoleName']
                )
            self.iam.delete_instance_profile(InstanceProfileName=provider_id)
        except ClientError as e:
            if not self.is_not_found(e):
                raise

    def describe(self, provider_id: str) -> Optional[Dict[str, Any]]:
        try:
            profile = self.iam.get_instance_profile(InstanceProfileName=provider_id)['InstanceProfile']
        except ClientError as e:
            if self.is_not_found(e):
                return None
            raise
        return {'Arn': profile['Arn']}

    def _sync_roles(self, name: str, desired: List[str], current: List[str]) -> None:
        for role_name in current:
            if role_name not in desired:
                self.iam.remove_role_from_instance_profile(InstanceProfileName=name, RoleName=role_name)
        for role_name in desired:
            if role_name not in current:
                self.iam.add_role_to_instance_profile(InstanceProfileName=name, RoleName=role_name)
