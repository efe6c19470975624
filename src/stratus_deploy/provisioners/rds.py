"""RDS provisioners for DB subnet groups and DB instances."""

from typing import Any, Dict, Optional

from botocore.exceptions import ClientError

from .base import BaseProvisioner, ProviderResult

# Template property -> (API parameter, converter)
DB_INSTANCE_PARAMETERS = {
    'DBInstanceClass': ('DBInstanceClass', str),
    'Engine': ('Engine', str),
    'EngineVersion': ('EngineVersion', str),
    'AllocatedStorage': ('AllocatedStorage', int),
    'MasterUsername': ('MasterUsername', str),
    'MasterUserPassword': ('MasterUserPassword', str),
    'DBName': ('DBName', str),
    'VPCSecurityGroups': ('VpcSecurityGroupIds', list),
    'DBSubnetGroupName': ('DBSubnetGroupName', str),
    'MultiAZ': ('MultiAZ', bool),
    'PubliclyAccessible': ('PubliclyAccessible', bool),
    'StorageType': ('StorageType', str),
    'StorageEncrypted': ('StorageEncrypted', bool),
    'Port': ('Port', int),
    'BackupRetentionPeriod': ('BackupRetentionPeriod', int),
    'AvailabilityZone': ('AvailabilityZone', str),
}

# Properties modify_db_instance accepts
MODIFIABLE_PROPERTIES = (
    'DBInstanceClass',
    'EngineVersion',
    'AllocatedStorage',
    'MasterUserPassword',
    'VPCSecurityGroups',
    'MultiAZ',
    'PubliclyAccessible',
    'StorageType',
    'BackupRetentionPeriod',
)


class RDSProvisioner(BaseProvisioner):

    @property
    def rds(self):
        return self.clients.get_client('rds')


class DBSubnetGroupProvisioner(RDSProvisioner):
    """Provisioner for AWS::RDS::DBSubnetGroup. The provider id is the group name."""

    resource_type = 'AWS::RDS::DBSubnetGroup'
    replacement_properties = frozenset({'DBSubnetGroupName'})
    not_found_codes = frozenset({'DBSubnetGroupNotFoundFault'})

    def create(self, properties: Dict[str, Any], logical_id: str) -> ProviderResult:
        name = properties.get('DBSubnetGroupName') or self.physical_name(logical_id, properties, 255).lower()
        try:
            self.rds.create_db_subnet_group(
                DBSubnetGroupName=name,
                DBSubnetGroupDescription=properties['DBSubnetGroupDescription'],
                SubnetIds=list(properties['SubnetIds']),
                Tags=self.build_tags(logical_id, properties.get('Tags'))
            )
        except ClientError as e:
            if self.error_code(e) != 'DBSubnetGroupAlreadyExists':
                raise
            self._modify(name, properties)
        return ProviderResult(name, {})

    def update(self, provider_id, properties, previous, logical_id) -> ProviderResult:
        self._modify(provider_id, properties)
        return ProviderResult(provider_id, {})

    def delete(self, provider_id: str) -> None:
        try:
            self.rds.delete_db_subnet_group(DBSubnetGroupName=provider_id)
        except ClientError as e:
            if not self.is_not_found(e):
                raise

    def describe(self, provider_id: str) -> Optional[Dict[str, Any]]:
        try:
            self.rds.describe_db_subnet_groups(DBSubnetGroupName=provider_id)
        except ClientError as e:
            if self.is_not_found(e):
                return None
            raise
        return {}

    def _modify(self, name: str, properties: Dict[str, Any]) -> None:
        self.rds.modify_db_subnet_group(
            DBSubnetGroupName=name,
            DBSubnetGroupDescription=properties['DBSubnetGroupDescription'],
            SubnetIds=list(properties['SubnetIds'])
        )


class DBInstanceProvisioner(RDSProvisioner):
    """Provisioner for AWS::RDS::DBInstance. The provider id is the instance identifier."""

    resource_type = 'AWS::RDS::DBInstance'
    replacement_properties = frozenset({
        'DBInstanceIdentifier',
        'Engine',
        'DBName',
        'MasterUsername',
        'DBSubnetGroupName',
        'StorageEncrypted',
        'AvailabilityZone',
    })
    not_found_codes = frozenset({'DBInstanceNotFound', 'DBInstanceNotFoundFault'})

    # Instances take minutes to settle
    waiter_config = {'Delay': 30, 'MaxAttempts': 80}

    def create(self, properties, logical_id) -> ProviderResult:
        identifier = (
            properties.get('DBInstanceIdentifier')
            or self.physical_name(logical_id, properties, 63).lower()
        )
        params = self._api_parameters(properties, DB_INSTANCE_PARAMETERS)
        params['DBInstanceIdentifier'] = identifier
        params['Tags'] = self.build_tags(logical_id, properties.get('Tags'))

        try:
            self.rds.create_db_instance(**params)
        except ClientError as e:
            # A lost response leaves the instance behind; adopt it
            if self.error_code(e) != 'DBInstanceAlreadyExists':
                raise

        self.rds.get_waiter('db_instance_available').wait(
            DBInstanceIdentifier=identifier,
            WaiterConfig=self.waiter_config
        )
        return ProviderResult(identifier, self.describe(identifier) or {})

    def update(self, provider_id, properties, previous, logical_id) -> ProviderResult:
        changed = {
            name: DB_INSTANCE_PARAMETERS[name]
            for name in MODIFIABLE_PROPERTIES
            if properties.get(name) != previous.get(name) and name in properties
        }
        if changed:
            params = self._api_parameters(properties, changed)
            self.rds.modify_db_instance(
                DBInstanceIdentifier=provider_id,
                ApplyImmediately=True,
                **params
            )
            self.rds.get_waiter('db_instance_available').wait(
                DBInstanceIdentifier=provider_id,
                WaiterConfig=self.waiter_config
            )
        return ProviderResult(provider_id, self.describe(provider_id) or {})

    def delete(self, provider_id: str) -> None:
        try:
            self.rds.delete_db_instance(
                DBInstanceIdentifier=provider_id,
                SkipFinalSnapshot=True,
                DeleteAutomatedBackups=True
            )
        except ClientError as e:
            if self.is_not_found(e):
                return
            raise

        # The subnet group and security groups stay in use until the instance is gone
        self.rds.get_waiter('db_instance_deleted').wait(
            DBInstanceIdentifier=provider_id,
            WaiterConfig=self.waiter_config
        )

    def describe(self, provider_id: str) -> Optional[Dict[str, Any]]:
        try:
            instances = self.rds.describe_db_instances(DBInstanceIdentifier=provider_id)['DBInstances']
        except ClientError as e:
            if self.is_not_found(e):
                return None
            raise
        if not instances:
            return None

        instance = instances[0]
        endpoint = instance.get('Endpoint') or {}
        return {
            'DBInstanceArn': instance.get('DBInstanceArn'),
            'Endpoint.Address': endpoint.get('Address'),
            'Endpoint.Port': str(endpoint['Port']) if 'Port' in endpoint else None,
        }

    @staticmethod
    def _api_parameters(properties: Dict[str, Any], mapping) -> Dict[str, Any]:
        params = {}
        for name, (api_name, convert) in mapping.items():
            if name in properties:
                params[api_name] = convert(properties[name])
        return params
