"""Catalog of resource kinds a template may declare.

Each kind lists the attributes it publishes after it has been applied.
``Ref`` always resolves to the provider-assigned identifier, recorded under
the ``id`` attribute; ``Fn::GetAtt`` may only name one of the published
attributes.
"""

from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, Optional

ID_ATTRIBUTE = 'id'


@dataclass(frozen=True)
class ResourceKind:
    """A resource type tag and the output attributes it publishes."""

    type_name: str
    attributes: FrozenSet[str]

    def publishes(self, attribute: str) -> bool:
        """Check whether an attribute can be referenced on this kind."""
        return attribute == ID_ATTRIBUTE or attribute in self.attributes


_KINDS: Dict[str, ResourceKind] = {}


def register_kind(type_name: str, attributes: Iterable[str] = ()) -> ResourceKind:
    """Register a resource kind, replacing any previous registration.

    Args:
        type_name: Resource type tag (e.g. AWS::EC2::VPC)
        attributes: Attribute names available to Fn::GetAtt

    Returns:
        The registered ResourceKind
    """
    kind = ResourceKind(type_name=type_name, attributes=frozenset(attributes))
    _KINDS[type_name] = kind
    return kind


def get_kind(type_name: str) -> Optional[ResourceKind]:
    """Look up a registered resource kind."""
    return _KINDS.get(type_name)


def known_types() -> FrozenSet[str]:
    """All registered resource type tags."""
    return frozenset(_KINDS)


# Networking
register_kind('AWS::EC2::VPC', ['CidrBlock', 'DefaultNetworkAcl', 'DefaultSecurityGroup', 'VpcId'])
register_kind('AWS::EC2::InternetGateway', ['InternetGatewayId'])
register_kind('AWS::EC2::VPCGatewayAttachment', [])
register_kind('AWS::EC2::Subnet', ['AvailabilityZone', 'CidrBlock', 'SubnetId', 'VpcId'])
register_kind('AWS::EC2::RouteTable', ['RouteTableId'])
register_kind('AWS::EC2::Route', [])
register_kind('AWS::EC2::SubnetRouteTableAssociation', ['Id'])
register_kind('AWS::EC2::SecurityGroup', ['GroupId', 'VpcId'])

# Compute
register_kind('AWS::EC2::LaunchTemplate', ['DefaultVersionNumber', 'LatestVersionNumber', 'LaunchTemplateId'])
register_kind('AWS::AutoScaling::AutoScalingGroup', [])
register_kind('AWS::IAM::Role', ['Arn', 'RoleId'])
register_kind('AWS::IAM::InstanceProfile', ['Arn'])

# Storage and database
register_kind('AWS::EFS::FileSystem', ['Arn', 'FileSystemId'])
register_kind('AWS::EFS::MountTarget', ['IpAddress'])
register_kind('AWS::RDS::DBSubnetGroup', [])
register_kind('AWS::RDS::DBInstance', ['DBInstanceArn', 'Endpoint.Address', 'Endpoint.Port'])

# Load balancing
register_kind(
    'AWS::ElasticLoadBalancingV2::LoadBalancer',
    ['CanonicalHostedZoneID', 'DNSName', 'LoadBalancerArn', 'LoadBalancerFullName', 'LoadBalancerName'],
)
register_kind(
    'AWS::ElasticLoadBalancingV2::TargetGroup',
    ['LoadBalancerArns', 'TargetGroupArn', 'TargetGroupFullName', 'TargetGroupName'],
)
register_kind('AWS::ElasticLoadBalancingV2::Listener', ['ListenerArn'])
