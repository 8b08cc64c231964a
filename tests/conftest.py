"""Shared test fixtures."""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from gateway.audit.logger import AuditSink
from gateway.config import (
    ACHInstructions,
    BankAccount,
    ClientCredentials,
    CobaltSettings,
    CompanyPaymentMethods,
    HansaCompany,
    HansaSettings,
    MethodAvailability,
    PayPalSettings,
    Settings,
    YappyMerchant,
    YappySettings,
)
from gateway.engine.orchestrator import PaymentOrchestrator
from gateway.erp.base import ErpClient
from gateway.models.charge import (
    CardDetails,
    ChargeRequest,
    ChargeResult,
    CustomerContact,
    InvoiceAllocation,
    PayPalOrder,
    ProviderToken,
)
from gateway.models.enums import ChargeStatus, PaymentMethod
from gateway.models.records import Base
from gateway.providers.base import ProviderClient
from gateway.providers.credentials import CredentialResolver
from gateway.providers.token_cache import TokenCache

# base64("yappy-ipn-key.merchant-extra")
YAPPY_SECRET = "eWFwcHktaXBuLWtleS5tZXJjaGFudC1leHRyYQ=="
YAPPY_DOMAIN = "https://selfservice-dev.celero.network"


@pytest_asyncio.fixture
async def session_factory():
    """Fresh in-memory database shared by every session of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        echo=False,
        poolclass=StaticPool,
        pool_reset_on_return=None,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def audit(session_factory):
    return AuditSink(session_factory)


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        cobalt=CobaltSettings(
            base_url="https://cobalt.test",
            companies={"2": ClientCredentials(client_id="cobalt-id", client_secret="cobalt-secret")},
        ),
        paypal=PayPalSettings(
            base_url="https://paypal.test",
            companies={"2": ClientCredentials(client_id="paypal-id", client_secret="paypal-secret")},
        ),
        yappy=YappySettings(
            base_url="https://yappy.test",
            domain=YAPPY_DOMAIN,
            companies={"2": YappyMerchant(merchant_id="merchant-1", secret_key=YAPPY_SECRET)},
        ),
        hansa=HansaSettings(
            company_code="2",
            companies=[
                HansaCompany(
                    comp_code="2",
                    comp_name="Celero Networks, S.A.",
                    short_name="Celero",
                    payment_methods=CompanyPaymentMethods(
                        credit_card=MethodAvailability(enabled=True, display_name="Tarjeta de Crédito"),
                        paypal=MethodAvailability(enabled=True, display_name="PayPal"),
                        ach=MethodAvailability(enabled=True, display_name="ACH"),
                    ),
                ),
                HansaCompany(comp_code="1", comp_name="Celero Holdings", short_name="Holdings"),
                HansaCompany(
                    comp_code="4",
                    comp_name="Celero Legacy",
                    short_name="Legacy",
                    active_status="Inactivo",
                    payment_methods=CompanyPaymentMethods(
                        yappy=MethodAvailability(enabled=True, display_name="Yappy"),
                    ),
                ),
            ],
        ),
        ach_instructions={
            "1": ACHInstructions(
                banks=[BankAccount(beneficiary="CELERO HOLDINGS S.A.", bank="Banistmo", account_number="0112233445")],
            ),
        },
    )


class FakeProvider(ProviderClient):
    """In-process processor with call counters."""

    def __init__(
        self,
        method: PaymentMethod,
        status: ChargeStatus = ChargeStatus.APPROVED,
        auth_delay: float = 0.0,
        caches_tokens: bool = True,
    ):
        super().__init__(http=None)
        self._method = method
        self.status = status
        self.auth_delay = auth_delay
        self.caches_tokens = caches_tokens
        self.auth_error: Optional[Exception] = None
        self.charge_error: Optional[Exception] = None
        self.charge_delay = 0.0
        self.auth_calls = 0
        self.charge_calls = 0
        self.order_calls = 0
        self.references: list[str] = []

    @property
    def method(self) -> PaymentMethod:
        return self._method

    async def authenticate(self, credentials):
        self.auth_calls += 1
        if self.auth_delay:
            await asyncio.sleep(self.auth_delay)
        if self.auth_error is not None:
            raise self.auth_error
        return ProviderToken(
            access_token=f"token-{self.auth_calls}",
            token_type="Bearer",
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        )

    async def charge(self, token, request, credentials, reference):
        self.charge_calls += 1
        self.references.append(reference)
        if self.charge_delay:
            await asyncio.sleep(self.charge_delay)
        if self.charge_error is not None:
            raise self.charge_error
        transaction_id = request.order_id or reference
        if self.status is ChargeStatus.PENDING:
            return ChargeResult(
                provider=self._method,
                provider_transaction_id=reference,
                status=ChargeStatus.PENDING,
                authorization_code="YAPPY-TX-1",
            )
        return ChargeResult(
            provider=self._method,
            provider_transaction_id=f"TX-{transaction_id}",
            status=self.status,
            authorization_code="AUTH01" if self.status is ChargeStatus.APPROVED else None,
            response_code="00" if self.status is ChargeStatus.APPROVED else "05",
            raw_payload={"id": transaction_id, "status": self.status.value},
        )

    async def create_order(self, token, request, return_url, cancel_url):
        self.order_calls += 1
        return PayPalOrder(
            order_id=f"ORDER-{self.order_calls}",
            status="CREATED",
            approval_url=f"https://paypal.test/checkoutnow?token=ORDER-{self.order_calls}",
        )


class FakeErp(ErpClient):
    def __init__(self):
        self.receipts = []
        self.stored = {}
        self.error: Optional[Exception] = None
        self.delay = 0.0

    async def list_clients(self, company_code=None):
        return []

    async def list_invoices(self, client_code, company_code=None):
        return []

    async def list_open_invoices(self, client_code, company_code=None):
        return []

    async def list_installments(self, client_code, company_code=None):
        return []

    async def list_receipts(self, start_date, end_date, client_code=None, company_code=None, pay_mode=None):
        return []

    async def find_receipt(self, invoice_number, transaction_date, company_code):
        return None

    async def get_receipt(self, receipt_number, company_code=None):
        if self.error is not None:
            raise self.error
        return self.stored.get(receipt_number)

    async def create_receipt(self, receipt):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        self.receipts.append(receipt)
        return f"R-{len(self.receipts):04d}"


class FakeEmail:
    def __init__(self):
        self.sent = []
        self.codes = []
        self.receipts = []
        self.error: Optional[Exception] = None

    async def send_payment_confirmation(self, to, customer_name, receipt_number, method, lines, currency="USD",
                                        transaction_id=None, paid_at=None):
        if self.error is not None:
            raise self.error
        self.sent.append({"to": to, "receipt_number": receipt_number, "method": method, "lines": lines})
        return f"msg-{len(self.sent)}"

    async def send_verification_code(self, to, code, query_type, ttl_minutes):
        if self.error is not None:
            raise self.error
        self.codes.append({"to": to, "code": code, "query_type": query_type})
        return f"code-{len(self.codes)}"

    async def send_receipt_notification(self, to, receipt, currency="USD"):
        if self.error is not None:
            raise self.error
        self.receipts.append({"to": to, "receipt": receipt})
        return f"receipt-{len(self.receipts)}"


@pytest.fixture
def providers():
    return {
        PaymentMethod.COBALT: FakeProvider(PaymentMethod.COBALT),
        PaymentMethod.PAYPAL: FakeProvider(PaymentMethod.PAYPAL),
        PaymentMethod.YAPPY: FakeProvider(PaymentMethod.YAPPY, status=ChargeStatus.PENDING, caches_tokens=False),
    }


@pytest.fixture
def erp():
    return FakeErp()


@pytest.fixture
def email():
    return FakeEmail()


@pytest.fixture
def orchestrator(session_factory, providers, settings, erp, email, audit):
    return PaymentOrchestrator(
        session_factory,
        providers=providers,
        credentials=CredentialResolver(settings),
        token_cache=TokenCache(),
        erp=erp,
        audit=audit,
        email=email,
        provider_timeout=1.0,
        erp_timeout=0.2,
        retry_delay=0,
    )


def make_request(
    method: PaymentMethod = PaymentMethod.PAYPAL,
    amount: str = "150.00",
    allocations=(("INV-1", "100.00"), ("INV-2", "50.00")),
    order_id: Optional[str] = "ORDER-1",
    company_code: str = "2",
    email: Optional[str] = "cliente@example.com",
) -> ChargeRequest:
    return ChargeRequest(
        company_code=company_code,
        amount=Decimal(amount),
        currency="USD",
        payment_method=method,
        allocations=[InvoiceAllocation(number, Decimal(value)) for number, value in allocations],
        customer=CustomerContact(client_code="C1", email=email, name="Ana Pérez"),
        card=CardDetails(pan="4111 1111 1111 1111", exp_date="1229") if method is PaymentMethod.COBALT else None,
        order_id=order_id if method is PaymentMethod.PAYPAL else None,
        yappy_phone="60001234" if method is PaymentMethod.YAPPY else None,
    )
