"""
Error taxonomy for planning and applying network resources.
"""

from typing import List, Optional


class VpcPlanError(Exception):
    """Base class for all vpcplan errors."""


class ConfigurationError(VpcPlanError):
    """Invalid input detected before any provider call is made."""

    def __init__(self, message: str, keys: Optional[List[str]] = None):
        super().__init__(message)
        self.keys = list(keys or [])


class CyclicDependencyError(VpcPlanError):
    """No valid topological order exists for the descriptor set."""

    def __init__(self, message: str, keys: Optional[List[str]] = None):
        super().__init__(message)
        self.keys = list(keys or [])


class AmbiguousResourceError(VpcPlanError):
    """Reconciliation matched more than one existing resource."""

    def __init__(self, key: str, candidates: List[str]):
        super().__init__(
            f"{key} matches {len(candidates)} existing resources "
            f"({', '.join(candidates)}); clean up duplicate tags before re-running"
        )
        self.key = key
        self.candidates = list(candidates)


class ProviderError(VpcPlanError):
    """
    Error returned by the cloud provider.

    Attributes:
        code: Provider error code (e.g. "RequestLimitExceeded")
        hint: Operator-facing remediation hint
        attempts: Number of calls made before the error was surfaced
    """

    def __init__(self, message: str, code: str = "", hint: str = "", attempts: int = 1):
        super().__init__(message)
        self.code = code
        self.hint = hint
        self.attempts = attempts


class TransientProviderError(ProviderError):
    """Throttling, propagation delay or timeout; safe to retry."""


class FatalProviderError(ProviderError):
    """Permission denied, malformed request, or retries exhausted."""


class ApplyCancelled(VpcPlanError):
    """Operator interrupted the run between plan steps."""
