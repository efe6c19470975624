"""EFS provisioners for file systems and mount targets."""

from typing import Any, Dict, Optional

from botocore.exceptions import ClientError

from .base import BaseProvisioner, ProviderResult


class EFSProvisioner(BaseProvisioner):

    @property
    def efs(self):
        return self.clients.get_client('efs')


class FileSystemProvisioner(EFSProvisioner):
    """Provisioner for AWS::EFS::FileSystem.

    Creates carry a CreationToken derived from the logical id, so a retried
    create finds the file system made by the lost attempt.
    """

    resource_type = 'AWS::EFS::FileSystem'
    replacement_properties = frozenset({'PerformanceMode', 'Encrypted', 'KmsKeyId', 'AvailabilityZoneName'})
    not_found_codes = frozenset({'FileSystemNotFound'})

    def create(self, properties: Dict[str, Any], logical_id: str) -> ProviderResult:
        token = self.idempotency_token(logical_id, properties)
        params: Dict[str, Any] = {
            'CreationToken': token,
            'Tags': self.build_tags(logical_id, properties.get('FileSystemTags')),
        }
        if 'PerformanceMode' in properties:
            params['PerformanceMode'] = properties['PerformanceMode']
        if 'Encrypted' in properties:
            params['Encrypted'] = bool(properties['Encrypted'])
        for key in ('KmsKeyId', 'ThroughputMode', 'AvailabilityZoneName'):
            if key in properties:
                params[key] = properties[key]
        if 'ProvisionedThroughputInMibps' in properties:
            params['ProvisionedThroughputInMibps'] = float(properties['ProvisionedThroughputInMibps'])

        try:
            file_system = self.efs.create_file_system(**params)
        except ClientError as e:
            if self.error_code(e) != 'FileSystemAlreadyExists':
                raise
            file_system = self.efs.describe_file_systems(CreationToken=token)['FileSystems'][0]

        file_system_id = file_system['FileSystemId']
        self.wait_until(
            lambda: self._life_cycle_state(file_system_id) == 'available',
            f"file system {file_system_id} to become available"
        )
        return ProviderResult(file_system_id, self._outputs(file_system))

    def update(self, provider_id, properties, previous, logical_id) -> ProviderResult:
        throughput = {
            key: properties[key]
            for key in ('ThroughputMode', 'ProvisionedThroughputInMibps')
            if key in properties and properties[key] != previous.get(key)
        }
        if throughput:
            if 'ProvisionedThroughputInMibps' in throughput:
                throughput['ProvisionedThroughputInMibps'] = float(throughput['ProvisionedThroughputInMibps'])
            self.efs.update_file_system(FileSystemId=provider_id, **throughput)

        desired = {str(t['Key']): str(t['Value']) for t in properties.get('FileSystemTags') or []}
        current = {str(t['Key']): str(t['Value']) for t in previous.get('FileSystemTags') or []}
        removed = [key for key in current if key not in desired]
        if removed:
            self.efs.untag_resource(ResourceId=provider_id, TagKeys=removed)
        changed = [{'Key': k, 'Value': v} for k, v in desired.items() if current.get(k) != v]
        if changed:
            self.efs.tag_resource(ResourceId=provider_id, Tags=changed)

        return ProviderResult(provider_id, self.describe(provider_id) or {})

    def delete(self, provider_id: str) -> None:
        try:
            self.efs.delete_file_system(FileSystemId=provider_id)
        except ClientError as e:
            if not self.is_not_found(e):
                raise

    def describe(self, provider_id: str) -> Optional[Dict[str, Any]]:
        try:
            file_systems = self.efs.describe_file_systems(FileSystemId=provider_id)['FileSystems']
        except ClientError as e:
            if self.is_not_found(e):
                return None
            raise
        return self._outputs(file_systems[0]) if file_systems else None

    def _life_cycle_state(self, file_system_id: str) -> Optional[str]:
        file_systems = self.efs.describe_file_systems(FileSystemId=file_system_id)['FileSystems']
        return file_systems[0]['LifeCycleState'] if file_systems else None

    @staticmethod
    def _outputs(file_system: Dict[str, Any]) -> Dict[str, Any]:
        return {
            'FileSystemId': file_system['FileSystemId'],
            'Arn': file_system.get('FileSystemArn'),
        }


class MountTargetProvisioner(EFSProvisioner):
    """Provisioner for AWS::EFS::MountTarget."""

    resource_type = 'AWS::EFS::MountTarget'
    replacement_properties = frozenset({'FileSystemId', 'SubnetId', 'IpAddress'})
    not_found_codes = frozenset({'MountTargetNotFound'})

    def create(self, properties, logical_id) -> ProviderResult:
        params = {
            'FileSystemId': properties['FileSystemId'],
            'SubnetId': properties['SubnetId'],
        }
        if properties.get('SecurityGroups'):
            params['SecurityGroups'] = list(properties['SecurityGroups'])
        if properties.get('IpAddress'):
            params['IpAddress'] = properties['IpAddress']

        try:
            target = self.efs.create_mount_target(**params)
        except ClientError as e:
            if self.error_code(e) != 'MountTargetConflict':
                raise
            target = self._find_by_subnet(params['FileSystemId'], params['SubnetId'])
            if target is None:
                raise

        mount_target_id = target['MountTargetId']
        self.wait_until(
            lambda: self._life_cycle_state(mount_target_id) == 'available',
            f"mount target {mount_target_id} to become available"
        )
        return ProviderResult(mount_target_id, {'IpAddress': target.get('IpAddress')})

    def update(self, provider_id, properties, previous, logical_id) -> ProviderResult:
        if properties.get('SecurityGroups') != previous.get('SecurityGroups'):
            self.efs.modify_mount_target_security_groups(
                MountTargetId=provider_id,
                SecurityGroups=list(properties.get('SecurityGroups') or [])
            )
        return ProviderResult(provider_id, self.describe(provider_id) or {})

    def delete(self, provider_id: str) -> None:
        try:
            self.efs.delete_mount_target(MountTargetId=provider_id)
        except ClientError as e:
            if self.is_not_found(e):
                return
            raise

        # The file system cannot be deleted while mount targets remain
        self.wait_until(
            lambda: self._life_cycle_state(provider_id) is None,
            f"mount target {provider_id} to be deleted"
        )

    def describe(self, provider_id: str) -> Optional[Dict[str, Any]]:
        target = self._describe(provider_id)
        if target is None:
            return None
        return {'IpAddress': target.get('IpAddress')}

    def _describe(self, mount_target_id: str) -> Optional[Dict[str, Any]]:
        try:
            targets = self.efs.describe_mount_targets(MountTargetId=mount_target_id)['MountTargets']
        except ClientError as e:
            if self.is_not_found(e):
                return None
            raise
        return targets[0] if targets else None

    def _life_cycle_state(self, mount_target_id: str) -> Optional[str]:
        target = self._describe(mount_target_id)
        if target is None or target['LifeCycleState'] == 'deleted':
            return None
        return target['LifeCycleState']

    def _find_by_subnet(self, file_system_id: str, subnet_id: str) -> Optional[Dict[str, Any]]:
        targets = self.efs.describe_mount_targets(FileSystemId=file_system_id)['MountTargets']
        for target in targets:
            if target.get('SubnetId') == subnet_id:
                return target
        return None
