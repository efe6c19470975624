"""EC2 provisioners: VPC networking, security groups and launch templates."""

from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from .base import BaseProvisioner, ProviderResult

ROUTE_TARGETS = (
    'GatewayId',
    'NatGatewayId',
    'InstanceId',
    'NetworkInterfaceId',
    'VpcPeeringConnectionId',
    'TransitGatewayId',
)

# Values AWS gives a new VPC
DNS_ATTRIBUTE_DEFAULTS = {
    'EnableDnsSupport': True,
    'EnableDnsHostnames': False,
}


def _tag_map(properties: Dict[str, Any]) -> Dict[str, str]:
    return {str(tag['Key']): str(tag['Value']) for tag in properties.get('Tags') or []}


class EC2Provisioner(BaseProvisioner):
    """Shared helpers for EC2 resource kinds."""

    # ResourceType used in TagSpecifications
    tag_resource_type: str = ''

    @property
    def ec2(self):
        return self.clients.get_client('ec2')

    def tag_specifications(self, logical_id: str, properties: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [{
            'ResourceType': self.tag_resource_type,
            'Tags': self.build_tags(logical_id, properties.get('Tags')),
        }]

    def sync_tags(self, resource_id: str, properties: Dict[str, Any], previous: Dict[str, Any]) -> None:
        """Apply template tag changes to an existing resource."""
        desired = _tag_map(properties)
        current = _tag_map(previous)

        removed = [key for key in current if key not in desired]
        if removed:
            self.ec2.delete_tags(Resources=[resource_id], Tags=[{'Key': key} for key in removed])

        changed = [
            {'Key': key, 'Value': value}
            for key, value in desired.items() if current.get(key) != value
        ]
        if changed:
            self.ec2.create_tags(Resources=[resource_id], Tags=changed)


class VPCProvisioner(EC2Provisioner):
    """Provisioner for AWS::EC2::VPC."""

    resource_type = 'AWS::EC2::VPC'
    tag_resource_type = 'vpc'
    replacement_properties = frozenset({'CidrBlock', 'InstanceTenancy'})
    not_found_codes = frozenset({'InvalidVpcID.NotFound'})

    def create(self, properties: Dict[str, Any], logical_id: str) -> ProviderResult:
        params = {
            'CidrBlock': properties['CidrBlock'],
            'TagSpecifications': self.tag_specifications(logical_id, properties),
        }
        if 'InstanceTenancy' in properties:
            params['InstanceTenancy'] = properties['InstanceTenancy']

        vpc = self.ec2.create_vpc(**params)['Vpc']
        vpc_id = vpc['VpcId']

        # Wait for VPC to be available
        self.ec2.get_waiter('vpc_available').wait(VpcIds=[vpc_id])

        self._apply_dns_attributes(vpc_id, properties)
        return ProviderResult(vpc_id, self._outputs(vpc))

    def update(self, provider_id, properties, previous, logical_id) -> ProviderResult:
        self._apply_dns_attributes(provider_id, properties, previous)
        self.sync_tags(provider_id, properties, previous)
        return ProviderResult(provider_id, self.describe(provider_id) or {})

    def delete(self, provider_id: str) -> None:
        try:
            self.ec2.delete_vpc(VpcId=provider_id)
        except ClientError as e:
            if not self.is_not_found(e):
                raise

    def describe(self, provider_id: str) -> Optional[Dict[str, Any]]:
        try:
            vpcs = self.ec2.describe_vpcs(VpcIds=[provider_id])['Vpcs']
        except ClientError as e:
            if self.is_not_found(e):
                return None
            raise
        return self._outputs(vpcs[0]) if vpcs else None

    def _apply_dns_attributes(
        self,
        vpc_id: str,
        properties: Dict[str, Any],
        previous: Optional[Dict[str, Any]] = None
    ):
        # One attribute per call; on update a dropped attribute reverts to its default
        for attribute, default in DNS_ATTRIBUTE_DEFAULTS.items():
            if previous is None and attribute not in properties:
                continue
            desired = bool(properties.get(attribute, default))
            if previous is not None and desired == bool(previous.get(attribute, default)):
                continue
            self.ec2.modify_vpc_attribute(VpcId=vpc_id, **{attribute: {'Value': desired}})

    def _outputs(self, vpc: Dict[str, Any]) -> Dict[str, Any]:
        vpc_id = vpc['VpcId']
        groups = self.ec2.describe_security_groups(
            Filters=[
                {'Name': 'vpc-id', 'Values': [vpc_id]},
                {'Name': 'group-name', 'Values': ['default']},
            ]
        )['SecurityGroups']
        acls = self.ec2.describe_network_acls(
            Filters=[
                {'Name': 'vpc-id', 'Values': [vpc_id]},
                {'Name': 'default', 'Values': ['true']},
            ]
        )['NetworkAcls']
        return {
            'VpcId': vpc_id,
            'CidrBlock': vpc['CidrBlock'],
            'DefaultSecurityGroup': groups[0]['GroupId'] if groups else None,
            'DefaultNetworkAcl': acls[0]['NetworkAclId'] if acls else None,
        }


class InternetGatewayProvisioner(EC2Provisioner):
    """Provisioner for AWS::EC2::InternetGateway."""

    resource_type = 'AWS::EC2::InternetGateway'
    tag_resource_type = 'internet-gateway'
    not_found_codes = frozenset({'InvalidInternetGatewayID.NotFound'})

    def create(self, properties, logical_id) -> ProviderResult:
        response = self.ec2.create_internet_gateway(
            TagSpecifications=self.tag_specifications(logical_id, properties)
        )
        igw_id = response['InternetGateway']['InternetGatewayId']
        return ProviderResult(igw_id, {'InternetGatewayId': igw_id})

    def update(self, provider_id, properties, previous, logical_id) -> ProviderResult:
        self.sync_tags(provider_id, properties, previous)
        return ProviderResult(provider_id, {'InternetGatewayId': provider_id})

    def delete(self, provider_id: str) -> None:
        try:
            self.ec2.delete_internet_gateway(InternetGatewayId=provider_id)
        except ClientError as e:
            if not self.is_not_found(e):
                raise

    def describe(self, provider_id: str) -> Optional[Dict[str, Any]]:
        try:
            gateways = self.ec2.describe_internet_gateways(
                InternetGatewayIds=[provider_id]
            )['InternetGateways']
        except ClientError as e:
            if self.is_not_found(e):
                return None
            raise
        return {'InternetGatewayId': provider_id} if gateways else None


class VPCGatewayAttachmentProvisioner(EC2Provisioner):
    """Provisioner for AWS::EC2::VPCGatewayAttachment.

    The provider id is ``<gateway id>|<vpc id>``.
    """

    resource_type = 'AWS::EC2::VPCGatewayAttachment'
    replacement_properties = frozenset({'InternetGatewayId', 'VpcId'})
    not_found_codes = frozenset({'Gateway.NotAttached', 'InvalidInternetGatewayID.NotFound'})

    def create(self, properties, logical_id) -> ProviderResult:
        igw_id = properties['InternetGatewayId']
        vpc_id = properties['VpcId']
        try:
            self.ec2.attach_internet_gateway(InternetGatewayId=igw_id, VpcId=vpc_id)
        except ClientError as e:
            # A retried create after a lost response finds the attachment in place
            if e.response.get('Error', {}).get('Code') != 'Resource.AlreadyAssociated':
                raise
        return ProviderResult(f"{igw_id}|{vpc_id}", {})

    def update(self, provider_id, properties, previous, logical_id) -> ProviderResult:
        return ProviderResult(provider_id, {})

    def delete(self, provider_id: str) -> None:
        igw_id, vpc_id = provider_id.split('|', 1)
        try:
            self.ec2.detach_internet_gateway(InternetGatewayId=igw_id, VpcId=vpc_id)
        except ClientError as e:
            if not self.is_not_found(e):
                raise

    def describe(self, provider_id: str) -> Optional[Dict[str, Any]]:
        igw_id, vpc_id = provider_id.split('|', 1)
        try:
            gateways = self.ec2.describe_internet_gateways(
                InternetGatewayIds=[igw_id]
            )['InternetGateways']
        except ClientError as e:
            if self.is_not_found(e):
                return None
            raise
        for gateway in gateways:
            for attachment in gateway.get('Attachments', []):
                if attachment.get('VpcId') == vpc_id:
                    return {}
        return None


class SubnetProvisioner(EC2Provisioner):
    """Provisioner for AWS::EC2::Subnet."""

    resource_type = 'AWS::EC2::Subnet'
    tag_resource_type = 'subnet'
    replacement_properties = frozenset({'VpcId', 'CidrBlock', 'AvailabilityZone'})
    not_found_codes = frozenset({'InvalidSubnetID.NotFound'})

    def create(self, properties, logical_id) -> ProviderResult:
        params = {
            'VpcId': properties['VpcId'],
            'CidrBlock': properties['CidrBlock'],
            'TagSpecifications': self.tag_specifications(logical_id, properties),
        }
        if properties.get('AvailabilityZone'):
            params['AvailabilityZone'] = properties['AvailabilityZone']

        subnet = self.ec2.create_subnet(**params)['Subnet']
        subnet_id = subnet['SubnetId']

        self.ec2.get_waiter('subnet_available').wait(SubnetIds=[subnet_id])

        if properties.get('MapPublicIpOnLaunch'):
            self.ec2.modify_subnet_attribute(
                SubnetId=subnet_id,
                MapPublicIpOnLaunch={'Value': True}
            )
        return ProviderResult(subnet_id, self._outputs(subnet))

    def update(self, provider_id, properties, previous, logical_id) -> ProviderResult:
        desired = bool(properties.get('MapPublicIpOnLaunch', False))
        if desired != bool(previous.get('MapPublicIpOnLaunch', False)):
            self.ec2.modify_subnet_attribute(
                SubnetId=provider_id,
                MapPublicIpOnLaunch={'Value': desired}
            )
        self.sync_tags(provider_id, properties, previous)
        return ProviderResult(provider_id, self.describe(provider_id) or {})

    def delete(self, provider_id: str) -> None:
        try:
            self.ec2.delete_subnet(SubnetId=provider_id)
        except ClientError as e:
            if not self.is_not_found(e):
                raise

    def describe(self, provider_id: str) -> Optional[Dict[str, Any]]:
        try:
            subnets = self.ec2.describe_subnets(SubnetIds=[provider_id])['Subnets']
        except ClientError as e:
            if self.is_not_found(e):
                return None
            raise
        return self._outputs(subnets[0]) if subnets else None

    @staticmethod
    def _outputs(subnet: Dict[str, Any]) -> Dict[str, Any]:
        return {
            'SubnetId': subnet['SubnetId'],
            'AvailabilityZone': subnet.get('AvailabilityZone'),
            'CidrBlock': subnet.get('CidrBlock'),
            'VpcId': subnet.get('VpcId'),
        }


class RouteTableProvisioner(EC2Provisioner):
    """Provisioner for AWS::EC2::RouteTable."""

    resource_type = 'AWS::EC2::RouteTable'
    tag_resource_type = 'route-table'
    replacement_properties = frozenset({'VpcId'})
    not_found_codes = frozenset({'InvalidRouteTableID.NotFound'})

    def create(self, properties, logical_id) -> ProviderResult:
        response = self.ec2.create_route_table(
            VpcId=properties['VpcId'],
            TagSpecifications=self.tag_specifications(logical_id, properties)
        )
        route_table_id = response['RouteTable']['RouteTableId']
        return ProviderResult(route_table_id, {'RouteTableId': route_table_id})

    def update(self, provider_id, properties, previous, logical_id) -> ProviderResult:
        self.sync_tags(provider_id, properties, previous)
        return ProviderResult(provider_id, {'RouteTableId': provider_id})

    def delete(self, provider_id: str) -> None:
        try:
            self.ec2.delete_route_table(RouteTableId=provider_id)
        except ClientError as e:
            if not self.is_not_found(e):
                raise

    def describe(self, provider_id: str) -> Optional[Dict[str, Any]]:
        try:
            tables = self.ec2.describe_route_tables(RouteTableIds=[provider_id])['RouteTables']
        except ClientError as e:
            if self.is_not_found(e):
                return None
            raise
        return {'RouteTableId': provider_id} if tables else None


class RouteProvisioner(EC2Provisioner):
    """Provisioner for AWS::EC2::Route.

    The provider id is ``<route table id>|<destination cidr>``.
    """

    resource_type = 'AWS::EC2::Route'
    replacement_properties = frozenset({'RouteTableId', 'DestinationCidrBlock'})
    not_found_codes = frozenset({'InvalidRoute.NotFound', 'InvalidRouteTableID.NotFound'})

    def create(self, properties, logical_id) -> ProviderResult:
        params = self._route_params(properties)
        try:
            self.ec2.create_route(**params)
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') != 'RouteAlreadyExists':
                raise
            self.ec2.replace_route(**params)
        return ProviderResult(f"{params['RouteTableId']}|{params['DestinationCidrBlock']}", {})

    def update(self, provider_id, properties, previous, logical_id) -> ProviderResult:
        self.ec2.replace_route(**self._route_params(properties))
        return ProviderResult(provider_id, {})

    def delete(self, provider_id: str) -> None:
        route_table_id, destination = provider_id.split('|', 1)
        try:
            self.ec2.delete_route(RouteTableId=route_table_id, DestinationCidrBlock=destination)
        except ClientError as e:
            if not self.is_not_found(e):
                raise

    def describe(self, provider_id: str) -> Optional[Dict[str, Any]]:
        route_table_id, destination = provider_id.split('|', 1)
        try:
            tables = self.ec2.describe_route_tables(RouteTableIds=[route_table_id])['RouteTables']
        except ClientError as e:
            if self.is_not_found(e):
                return None
            raise
        for table in tables:
            for route in table.get('Routes', []):
                if route.get('DestinationCidrBlock') == destination:
                    return {}
        return None

    @staticmethod
    def _route_params(properties: Dict[str, Any]) -> Dict[str, Any]:
        params = {
            'RouteTableId': properties['RouteTableId'],
            'DestinationCidrBlock': properties['DestinationCidrBlock'],
        }
        for target in ROUTE_TARGETS:
            if target in properties:
                params[target] = properties[target]
        return params


class SubnetRouteTableAssociationProvisioner(EC2Provisioner):
    """Provisioner for AWS::EC2::SubnetRouteTableAssociation."""

    resource_type = 'AWS::EC2::SubnetRouteTableAssociation'
    replacement_properties = frozenset({'SubnetId'})
    not_found_codes = frozenset({'InvalidAssociationID.NotFound'})

    def create(self, properties, logical_id) -> ProviderResult:
        association_id = self.ec2.associate_route_table(
            SubnetId=properties['SubnetId'],
            RouteTableId=properties['RouteTableId']
        )['AssociationId']
        return ProviderResult(association_id, {'Id': association_id})

    def update(self, provider_id, properties, previous, logical_id) -> ProviderResult:
        # Replacing the association issues a new association id
        association_id = self.ec2.replace_route_table_association(
            AssociationId=provider_id,
            RouteTableId=properties['RouteTableId']
        )['NewAssociationId']
        return ProviderResult(association_id, {'Id': association_id})

    def delete(self, provider_id: str) -> None:
        try:
            self.ec2.disassociate_route_table(AssociationId=provider_id)
        except ClientError as e:
            if not self.is_not_found(e):
                raise

    def describe(self, provider_id: str) -> Optional[Dict[str, Any]]:
        tables = self.ec2.describe_route_tables(
            Filters=[{'Name': 'association.route-table-association-id', 'Values': [provider_id]}]
        )['RouteTables']
        return {'Id': provider_id} if tables else None


class SecurityGroupProvisioner(EC2Provisioner):
    """Provisioner for AWS::EC2::SecurityGroup with inline rules."""

    resource_type = 'AWS::EC2::SecurityGroup'
    tag_resource_type = 'security-group'
    replacement_properties = frozenset({'GroupName', 'GroupDescription', 'VpcId'})
    not_found_codes = frozenset({'InvalidGroup.NotFound', 'InvalidGroupId.NotFound'})

    def create(self, properties, logical_id) -> ProviderResult:
        params = {
            'GroupName': properties.get('GroupName') or self.physical_name(logical_id, properties, 255),
            'Description': properties['GroupDescription'],
            'TagSpecifications': self.tag_specifications(logical_id, properties),
        }
        if properties.get('VpcId'):
            params['VpcId'] = properties['VpcId']

        group_id = self.ec2.create_security_group(**params)['GroupId']

        ingress = self._permissions(properties.get('SecurityGroupIngress'), 'SourceSecurityGroupId')
        if ingress:
            self.ec2.authorize_security_group_ingress(GroupId=group_id, IpPermissions=ingress)

        egress = self._permissions(properties.get('SecurityGroupEgress'), 'DestinationSecurityGroupId')
        if egress:
            self.ec2.authorize_security_group_egress(GroupId=group_id, IpPermissions=egress)

        return ProviderResult(group_id, {'GroupId': group_id, 'VpcId': properties.get('VpcId')})

    def update(self, provider_id, properties, previous, logical_id) -> ProviderResult:
        self._update_rules(
            provider_id,
            self._permissions(previous.get('SecurityGroupIngress'), 'SourceSecurityGroupId'),
            self._permissions(properties.get('SecurityGroupIngress'), 'SourceSecurityGroupId'),
            self.ec2.revoke_security_group_ingress,
            self.ec2.authorize_security_group_ingress,
        )
        self._update_rules(
            provider_id,
            self._permissions(previous.get('SecurityGroupEgress'), 'DestinationSecurityGroupId'),
            self._permissions(properties.get('SecurityGroupEgress'), 'DestinationSecurityGroupId'),
            self.ec2.revoke_security_group_egress,
            self.ec2.authorize_security_group_egress,
        )
        self.sync_tags(provider_id, properties, previous)
        return ProviderResult(provider_id, {'GroupId': provider_id, 'VpcId': properties.get('VpcId')})

    def delete(self, provider_id: str) -> None:
        try:
            self.ec2.delete_security_group(GroupId=provider_id)
        except ClientError as e:
            if not self.is_not_found(e):
                raise

    def describe(self, provider_id: str) -> Optional[Dict[str, Any]]:
        try:
            groups = self.ec2.describe_security_groups(GroupIds=[provider_id])['SecurityGroups']
        except ClientError as e:
            if self.is_not_found(e):
                return None
            raise
        if not groups:
            return None
        return {'GroupId': provider_id, 'VpcId': groups[0].get('VpcId')}

    @staticmethod
    def _update_rules(group_id, current, desired, revoke, authorize):
        removed = [rule for rule in current if rule not in desired]
        added = [rule for rule in desired if rule not in current]
        if removed:
            revoke(GroupId=group_id, IpPermissions=removed)
        if added:
            authorize(GroupId=group_id, IpPermissions=added)

    @staticmethod
    def _permissions(rules: Optional[List[Dict[str, Any]]], group_key: str) -> List[Dict[str, Any]]:
        """Convert template rules to EC2 IpPermissions."""
        permissions = []
        for rule in rules or []:
            permission: Dict[str, Any] = {'IpProtocol': str(rule['IpProtocol'])}
            if 'FromPort' in rule:
                permission['FromPort'] = int(rule['FromPort'])
            if 'ToPort' in rule:
                permission['ToPort'] = int(rule['ToPort'])

            source: Dict[str, Any] = {}
            if rule.get('CidrIp'):
                source = {'CidrIp': rule['CidrIp']}
                permission['IpRanges'] = [source]
            elif rule.get('CidrIpv6'):
                source = {'CidrIpv6': rule['CidrIpv6']}
                permission['Ipv6Ranges'] = [source]
            elif rule.get(group_key):
                source = {'GroupId': rule[group_key]}
                permission['UserIdGroupPairs'] = [source]
            if rule.get('Description') and source:
                source['Description'] = rule['Description']
            permissions.append(permission)
        return permissions


class LaunchTemplateProvisioner(EC2Provisioner):
    """Provisioner for AWS::EC2::LaunchTemplate.

    Updates add a new template version and make it the default.
    """

    resource_type = 'AWS::EC2::LaunchTemplate'
    tag_resource_type = 'launch-template'
    replacement_properties = frozenset({'LaunchTemplateName'})
    not_found_codes = frozenset({
        'InvalidLaunchTemplateId.NotFound',
        'InvalidLaunchTemplateId.Malformed',
    })

    def create(self, properties, logical_id) -> ProviderResult:
        name = properties.get('LaunchTemplateName') or self.physical_name(logical_id, properties, 128)
        template = self.ec2.create_launch_template(
            LaunchTemplateName=name,
            LaunchTemplateData=properties.get('LaunchTemplateData') or {},
            ClientToken=self.idempotency_token(logical_id, properties),
            TagSpecifications=self.tag_specifications(logical_id, properties)
        )['LaunchTemplate']
        return ProviderResult(template['LaunchTemplateId'], self._outputs(template))

    def update(self, provider_id, properties, previous, logical_id) -> ProviderResult:
        if properties.get('LaunchTemplateData') != previous.get('LaunchTemplateData'):
            version = self.ec2.create_launch_template_version(
                LaunchTemplateId=provider_id,
                LaunchTemplateData=properties.get('LaunchTemplateData') or {}
            )['LaunchTemplateVersion']
            self.ec2.modify_launch_template(
                LaunchTemplateId=provider_id,
                DefaultVersion=str(version['VersionNumber'])
            )
        return ProviderResult(provider_id, self.describe(provider_id) or {})

    def delete(self, provider_id: str) -> None:
        try:
            self.ec2.delete_launch_template(LaunchTemplateId=provider_id)
        except ClientError as e:
            if not self.is_not_found(e):
                raise

    def describe(self, provider_id: str) -> Optional[Dict[str, Any]]:
        try:
            templates = self.ec2.describe_launch_templates(
                LaunchTemplateIds=[provider_id]
            )['LaunchTemplates']
        except ClientError as e:
            if self.is_not_found(e):
                return None
            raise
        return self._outputs(templates[0]) if templates else None

    @staticmethod
    def _outputs(template: Dict[str, Any]) -> Dict[str, Any]:
        return {
            'LaunchTemplateId': template['LaunchTemplateId'],
            'LatestVersionNumber': str(template['LatestVersionNumber']),
            'DefaultVersionNumber': str(template['DefaultVersionNumber']),
        }
