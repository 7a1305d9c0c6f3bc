"""
Provider error classification.

Maps botocore exceptions onto the transient/fatal split the executor's retry
policy relies on.
"""

import re
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
    WaiterError,
)

from ..errors import FatalProviderError, ProviderError, TransientProviderError

logger = logging.getLogger(__name__)


@dataclass
class ErrorRule:
    """A rule mapping provider error codes to a retry decision."""
    id: str
    name: str
    transient: bool
    hint: str
    codes: List[str] = field(default_factory=list)
    regexes: List[str] = field(default_factory=list)


class ProviderErrorClassifier:
    """Classifies provider errors using error-code rules."""

    def __init__(self):
        self.rules = self._load_default_rules()

    def _load_default_rules(self) -> List[ErrorRule]:
        return [
            ErrorRule(
                id="throttled",
                name="Request Throttled",
                transient=True,
                codes=[
                    "RequestLimitExceeded",
                    "Throttling",
                    "ThrottlingException",
                    "RequestThrottled",
                    "TooManyRequestsException",
                ],
                hint="The API is rate limiting this account; the call is retried with backoff",
            ),
            ErrorRule(
                id="service_unavailable",
                name="Service Unavailable",
                transient=True,
                codes=["ServiceUnavailable", "Unavailable", "InternalError", "InternalFailure"],
                hint="Temporary provider-side failure; the call is retried with backoff",
            ),
            ErrorRule(
                id="not_yet_visible",
                name="Resource Not Yet Visible",
                transient=True,
                codes=["NatGatewayNotFound", "InvalidGroup.NotFound"],
                regexes=[r"^Invalid[A-Za-z]+ID\.NotFound$"],
                hint="A just-created resource has not propagated yet (eventual consistency)",
            ),
            ErrorRule(
                id="dependency_violation",
                name="Dependency Still Attached",
                transient=True,
                codes=["DependencyViolation"],
                hint="A dependent resource is still being released; deletion is retried",
            ),
            ErrorRule(
                id="permission_denied",
                name="Permission Denied",
                transient=False,
                codes=["UnauthorizedOperation", "AuthFailure", "AccessDenied",
                       "AccessDeniedException", "OptInRequired", "InvalidClientTokenId"],
                hint="Check the IAM permissions of the credentials in use",
            ),
            ErrorRule(
                id="malformed_request",
                name="Malformed Request",
                transient=False,
                codes=["InvalidParameterValue", "InvalidParameterCombination", "MissingParameter",
                       "InvalidVpcRange", "InvalidSubnet.Range", "InvalidSubnet.Conflict"],
                hint="The request was rejected as invalid; check the configuration values",
            ),
            ErrorRule(
                id="quota_exceeded",
                name="Quota Exceeded",
                transient=False,
                regexes=[r"LimitExceeded$"],
                hint="An account quota is exhausted; delete unused resources or request an increase",
            ),
        ]

    def classify_code(self, code: str) -> Optional[ErrorRule]:
        """Return the first rule matching a provider error code."""
        for rule in self.rules:
            if code in rule.codes:
                return rule
            for pattern in rule.regexes:
                if re.search(pattern, code):
                    return rule
        return None

    def to_provider_error(self, exc: Exception, operation: str = "") -> ProviderError:
        """
        Convert a botocore exception into a vpcplan provider error.

        Args:
            exc: Exception raised by boto3
            operation: API operation name, for the message

        Returns:
            TransientProviderError or FatalProviderError
        """
        prefix = f"{operation}: " if operation else ""

        if isinstance(exc, ClientError):
            error = exc.response.get("Error", {})
            code = error.get("Code", "Unknown")
            message = f"{prefix}{code}: {error.get('Message', str(exc))}"
            rule = self.classify_code(code)
            if rule is None:
                logger.debug(f"Unclassified provider error code {code}, treating as fatal")
                return FatalProviderError(message, code=code, hint="Unrecognised provider error")
            error_cls = TransientProviderError if rule.transient else FatalProviderError
            return error_cls(message, code=code, hint=rule.hint)

        if isinstance(exc, (ReadTimeoutError, ConnectTimeoutError, EndpointConnectionError, ConnectionClosedError)):
            return TransientProviderError(
                f"{prefix}{exc}", code="Timeout",
                hint="The call did not complete within the configured timeout",
            )

        if isinstance(exc, WaiterError):
            return TransientProviderError(
                f"{prefix}{exc}", code="WaiterTimeout",
                hint="The resource did not reach the expected state in time",
            )

        if isinstance(exc, BotoCoreError):
            return FatalProviderError(f"{prefix}{exc}", code=type(exc).__name__,
                                      hint="Check AWS credentials and region configuration")

        return FatalProviderError(f"{prefix}{exc}", code=type(exc).__name__)

    def add_custom_rule(self, rule: ErrorRule):
        """Add a rule ahead of the defaults."""
        self.rules.insert(0, rule)
