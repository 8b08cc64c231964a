"""
Normalized payment types shared by the orchestrator and the provider adapters.

Everything past the API boundary works with these dataclasses; provider
and ERP wire shapes never leave their adapters.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional

from gateway.models.enums import ChargeStatus, PaymentMethod, PaymentState


# Minor-unit exponent per currency; anything not listed uses cents.
CURRENCY_EXPONENTS = {
    "USD": 2,
    "PAB": 2,
    "EUR": 2,
    "JPY": 0,
}


def minor_unit(currency: str) -> Decimal:
    return Decimal(1).scaleb(-CURRENCY_EXPONENTS.get(currency.upper(), 2))


@dataclass(frozen=True)
class InvoiceAllocation:
    """The portion of a charge applied to one invoice."""

    invoice_number: str
    amount: Decimal


@dataclass
class CustomerContact:
    client_code: str
    email: Optional[str] = None
    name: Optional[str] = None


@dataclass
class CardDetails:
    """Card data for a Cobalt sale. Never persisted."""

    pan: str
    exp_date: str  # MMYY
    card_holder: str = ""
    tax: Optional[str] = None
    tip: Optional[str] = None

    def normalized(self) -> "CardDetails":
        """Return a copy with tax/tip defaulted to "0"."""
        return replace(
            self,
            pan=self.pan.replace(" ", ""),
            tax=self.tax or "0",
            tip=self.tip or "0",
        )

    def masked_pan(self) -> str:
        return f"****{self.pan[-4:]}" if len(self.pan) >= 4 else "****"


@dataclass
class ChargeRequest:
    """A normalized request to charge a customer for one or more invoices."""

    company_code: str
    amount: Decimal
    currency: str
    payment_method: PaymentMethod
    allocations: list[InvoiceAllocation]
    customer: CustomerContact
    card: Optional[CardDetails] = None
    order_id: Optional[str] = None  # PayPal order to capture
    yappy_phone: Optional[str] = None
    description: str = ""

    @property
    def idempotency_key(self) -> Optional[str]:
        if self.payment_method is PaymentMethod.PAYPAL and self.order_id:
            return f"paypal:{self.order_id}"
        return None

    @property
    def amount_minor_units(self) -> int:
        """Amount as an integer count of the currency minor unit (cents for USD)."""
        return int((self.amount / minor_unit(self.currency)).to_integral_value())

    @property
    def invoice_numbers(self) -> list[str]:
        return [a.invoice_number for a in self.allocations]


@dataclass(frozen=True)
class ProviderCredentials:
    """
    Secret pair for one (provider, company).

    For Yappy, client_id is the merchant id and client_secret the IPN signing secret.
    """

    provider: PaymentMethod
    company_code: str
    client_id: str
    client_secret: str

    def __repr__(self) -> str:
        return (
            f"ProviderCredentials(provider={self.provider.value!r}, "
            f"company_code={self.company_code!r}, client_id={self.client_id!r})"
        )


@dataclass(frozen=True)
class ProviderToken:
    access_token: str
    token_type: str
    expires_at: datetime

    def is_usable(self, now: datetime, skew: timedelta) -> bool:
        """False once now is within skew of the nominal expiry."""
        return now < self.expires_at - skew

    @property
    def authorization_header(self) -> str:
        return f"{self.token_type or 'Bearer'} {self.access_token}"


@dataclass
class ChargeResult:
    provider: PaymentMethod
    provider_transaction_id: str
    status: ChargeStatus
    authorization_code: Optional[str] = None
    response_code: Optional[str] = None
    raw_payload: dict[str, Any] = field(default_factory=dict)

    @property
    def approved(self) -> bool:
        return self.status is ChargeStatus.APPROVED


@dataclass
class PayPalOrder:
    order_id: str
    status: str
    approval_url: Optional[str]
    links: list[dict[str, str]] = field(default_factory=list)


@dataclass
class ReceiptLine:
    invoice_number: str
    amount: Decimal
    comment: str = ""
    stp: str = "1"


@dataclass
class ReceiptRecord:
    """A receipt to be written to the ERP (IPVc), one line per allocation."""

    company_code: str
    client_code: Optional[str]
    pay_mode: str
    reference: str
    transaction_date: str  # YYYY-MM-DD
    lines: list[ReceiptLine]
    comment: str = ""
    ok_flag: str = "1"

    @property
    def total(self) -> Decimal:
        return sum((line.amount for line in self.lines), Decimal("0"))


@dataclass
class PaymentOutcome:
    """What the orchestrator reports back for one payment attempt."""

    attempt_id: str
    state: PaymentState
    charge: Optional[ChargeResult] = None
    receipt_number: Optional[str] = None
    notification_sent: bool = False
    failure_kind: Optional[str] = None
    message: str = ""
    replayed: bool = False

    @property
    def requires_reconciliation(self) -> bool:
        return self.charge is not None and self.charge.approved and self.receipt_number is None
