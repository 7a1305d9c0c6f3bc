"""
Cloud provider clients.
"""

from .base import Provider
from .aws import AwsProvider, make_ec2_client
from .classify import ProviderErrorClassifier, ErrorRule

__all__ = [
    "Provider",
    "AwsProvider",
    "make_ec2_client",
    "ProviderErrorClassifier",
    "ErrorRule",
]
