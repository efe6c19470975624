"""Provider adapter and AWS resource provisioners."""

from .base import BaseProvisioner, ProviderAdapter, ProviderResult
from .aws import AWSProviderAdapter, PROVISIONER_CLASSES

__all__ = [
    'BaseProvisioner',
    'ProviderAdapter',
    'ProviderResult',
    'AWSProviderAdapter',
    'PROVISIONER_CLASSES',
]
