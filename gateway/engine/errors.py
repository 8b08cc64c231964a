"""
Error taxonomy for the payment gateway.

Every failure the orchestrator can surface is one of these classes. Each
carries a FailureKind and a retriable flag; only retriable errors are ever
retried (see engine/retry.py), and only for token acquisition and ERP reads.
"""

from typing import TYPE_CHECKING, Optional

from gateway.models.enums import FailureKind, VerificationFailure

if TYPE_CHECKING:
    from gateway.models.charge import ChargeResult, PaymentOutcome


class GatewayError(Exception):
    """Base exception for all classified gateway failures."""

    kind: FailureKind = FailureKind.INVALID_REQUEST
    retriable: bool = False
    # Set by the orchestrator once the failure has been recorded on an attempt
    outcome: Optional["PaymentOutcome"] = None

    def __init__(
        self,
        message: str,
        kind: Optional[FailureKind] = None,
        retriable: Optional[bool] = None,
    ):
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind
        if retriable is not None:
            self.retriable = retriable


class ValidationError(GatewayError):
    """Malformed request. Always rejected before any external call."""


class ConfigurationError(GatewayError):
    """No credentials for the requested company/provider."""

    kind = FailureKind.UNKNOWN_COMPANY


class ProviderError(GatewayError):
    """Base for normalized processor failures."""

    kind = FailureKind.PROVIDER_REJECTED

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        kind: Optional[FailureKind] = None,
        retriable: Optional[bool] = None,
    ):
        super().__init__(message, kind=kind, retriable=retriable)
        self.status_code = status_code


class AuthFailure(ProviderError):
    """Credentials rejected by the processor. Terminal for the request."""

    kind = FailureKind.AUTH_FAILURE


class Declined(ProviderError):
    """The processor declined the charge. Terminal, user-facing."""

    kind = FailureKind.DECLINED

    def __init__(self, message: str, result: Optional["ChargeResult"] = None, status_code: Optional[int] = None):
        super().__init__(message, status_code=status_code)
        self.result = result


class NetworkError(ProviderError):
    """Transport failure or 5xx from the remote side."""

    kind = FailureKind.NETWORK_ERROR
    retriable = True


class RateLimitError(NetworkError):
    """429 Too Many Requests."""

    def __init__(self, message: str = "Rate limited", retry_after: Optional[float] = None):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class GatewayTimeout(ProviderError):
    """The remote call did not finish within the configured timeout."""

    kind = FailureKind.TIMEOUT
    retriable = True


class ProviderRejected(ProviderError):
    """The processor refused the request for a reason other than a decline."""

    kind = FailureKind.PROVIDER_REJECTED

    def __init__(self, message: str, code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message, status_code=status_code)
        self.code = code


class ErpError(GatewayError):
    """The ERP returned an error or could not be reached."""

    kind = FailureKind.ERP_ERROR

    def __init__(self, message: str, code: Optional[str] = None, retriable: Optional[bool] = None):
        super().__init__(message, retriable=retriable)
        self.code = code


class ErpWriteError(GatewayError):
    """
    The customer was charged but the receipt could not be written to the ERP.

    Requires manual reconciliation. Never retried against the processor.
    """

    kind = FailureKind.ERP_WRITE_ERROR

    def __init__(self, message: str, result: "ChargeResult", cause: Optional[Exception] = None):
        super().__init__(message)
        self.result = result
        self.cause = cause


class NotificationError(GatewayError):
    """Email delivery failed. Logged only."""

    kind = FailureKind.NOTIFICATION_ERROR


class VerificationError(GatewayError):
    """A verification code did not validate."""

    kind = FailureKind.VERIFICATION_FAILED

    def __init__(self, reason: VerificationFailure, message: Optional[str] = None):
        super().__init__(message or f"Verification failed: {reason.value}")
        self.reason = reason


class ACHTransitionError(GatewayError):
    """Illegal status change on an ACH proof."""

    kind = FailureKind.INVALID_TRANSITION


class RiskCheckError(GatewayError):
    """The risk assessment rejected the request."""

    kind = FailureKind.RISK_CHECK_FAILED


class CancelledBeforeCharge(GatewayError):
    """The caller went away before the charge was submitted. No money moved."""

    kind = FailureKind.CANCELLED
