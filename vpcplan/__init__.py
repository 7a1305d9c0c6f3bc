"""
vpcplan - Dependency-ordered, idempotent VPC provisioning.

This package turns a declarative network configuration into an ordered plan
of VPC resources and applies it against the AWS EC2 API, reconciling each
resource against existing tagged infrastructure so re-runs are safe.
"""

__version__ = "0.1.0"
__author__ = "vpcplan maintainers"
