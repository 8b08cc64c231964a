from gateway.models.charge import (
    CardDetails,
    ChargeRequest,
    ChargeResult,
    CustomerContact,
    InvoiceAllocation,
    PaymentOutcome,
    PayPalOrder,
    ProviderCredentials,
    ProviderToken,
    ReceiptLine,
    ReceiptRecord,
)
from gateway.models.enums import (
    ACHProofStatus,
    ChargeStatus,
    FailureKind,
    PaymentMethod,
    PaymentState,
    QueryType,
    VerificationFailure,
)
from gateway.models.records import (
    ACHProof,
    ActivityLog,
    Base,
    LocalClient,
    OfflineReceipt,
    PaymentAttempt,
    RequestLog,
    VerificationCode,
)

__all__ = [
    "Base",
    "PaymentAttempt",
    "ActivityLog",
    "RequestLog",
    "LocalClient",
    "VerificationCode",
    "ACHProof",
    "OfflineReceipt",
    "InvoiceAllocation",
    "CustomerContact",
    "CardDetails",
    "ChargeRequest",
    "ChargeResult",
    "PayPalOrder",
    "ProviderCredentials",
    "ProviderToken",
    "ReceiptLine",
    "ReceiptRecord",
    "PaymentOutcome",
    "ACHProofStatus",
    "ChargeStatus",
    "FailureKind",
    "PaymentMethod",
    "PaymentState",
    "QueryType",
    "VerificationFailure",
]
