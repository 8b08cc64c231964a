"""Enumerations for the payment gateway domain model."""

from enum import Enum


class PaymentMethod(str, Enum):
    """Supported payment processors."""

    COBALT = "cobalt"
    PAYPAL = "paypal"
    YAPPY = "yappy"

    @property
    def pay_mode(self) -> str:
        """Hansa receipt PayMode code for this processor."""
        return _PAY_MODES[self]

    @property
    def label(self) -> str:
        return _LABELS[self]


_PAY_MODES = {
    PaymentMethod.COBALT: "CC",
    PaymentMethod.PAYPAL: "PP",
    PaymentMethod.YAPPY: "YP",
}

_LABELS = {
    PaymentMethod.COBALT: "Tarjeta de crédito",
    PaymentMethod.PAYPAL: "PayPal",
    PaymentMethod.YAPPY: "Yappy",
}


class ChargeStatus(str, Enum):
    """Normalized outcome of a processor charge call."""

    APPROVED = "approved"
    DECLINED = "declined"
    ERROR = "error"
    PENDING = "pending"  # Yappy: order created, waiting for the IPN


class PaymentState(str, Enum):
    """Lifecycle states of an orchestrated payment attempt."""

    RECEIVED = "received"
    VALIDATED = "validated"
    AUTHENTICATED = "authenticated"
    CHARGED = "charged"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    RECONCILED = "reconciled"
    COMPLETED = "completed"
    REJECTED = "rejected"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PaymentState.COMPLETED, PaymentState.REJECTED, PaymentState.FAILED)


class FailureKind(str, Enum):
    """Classified reasons a payment (or a gateway operation) failed."""

    EMPTY_ALLOCATION = "empty_allocation"
    AMOUNT_MISMATCH = "amount_mismatch"
    INVALID_AMOUNT = "invalid_amount"
    INVALID_INVOICE = "invalid_invoice"
    INVALID_REQUEST = "invalid_request"
    UNKNOWN_COMPANY = "unknown_company"
    CANCELLED = "cancelled"
    AUTH_FAILURE = "auth_failure"
    DECLINED = "declined"
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    PROVIDER_REJECTED = "provider_rejected"
    ERP_ERROR = "erp_error"
    ERP_WRITE_ERROR = "erp_write_error"
    NOTIFICATION_ERROR = "notification_error"
    VERIFICATION_FAILED = "verification_failed"
    INVALID_TRANSITION = "invalid_transition"
    RISK_CHECK_FAILED = "risk_check_failed"


class QueryType(str, Enum):
    """Kinds of sensitive ERP queries gated by a verification code."""

    INVOICES = "facturas"
    RECEIPTS = "recibos"


class VerificationFailure(str, Enum):
    EXPIRED = "expired"
    ALREADY_USED = "already_used"
    NOT_FOUND = "not_found"
    MISMATCH = "mismatch"
    EMAIL_NOT_REGISTERED = "email_not_registered"


class ACHProofStatus(str, Enum):
    """Review states of an uploaded ACH proof of payment."""

    PENDING = "pending"
    PROCESSED = "processed"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self is not ACHProofStatus.PENDING
