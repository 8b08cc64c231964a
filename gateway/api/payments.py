"""
Payment endpoints.

POST /payments/cobalt/charge          Card sale, reconciled and notified.
POST /payments/paypal/orders          Open a PayPal order (no money moves).
POST /payments/paypal/capture         Capture an approved order. Idempotent per order.
POST /payments/yappy/orders           Create a Yappy order; completes on the IPN.
GET  /payments/yappy/ipn              Yappy payment notification callback.
GET  /payments/unreconciled           Charged payments with no ERP receipt.
POST /payments/unreconciled/{id}/resolve Mark an offline receipt handled.
GET  /payments/{attempt_id}           One attempt.
GET  /payments/{attempt_id}/trace     Attempt plus its audit trail.
"""

import json
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy import select

from gateway.api.deps import GatewayServices, get_services, http_error, status_for
from gateway.engine.errors import GatewayError
from gateway.engine.orchestrator import outcome_of
from gateway.models.charge import (
    CardDetails,
    ChargeRequest,
    CustomerContact,
    InvoiceAllocation,
    PaymentOutcome,
)
from gateway.models.enums import PaymentMethod, PaymentState
from gateway.models.records import ActivityLog, OfflineReceipt, PaymentAttempt

router = APIRouter(prefix="/payments", tags=["payments"])


class AllocationIn(BaseModel):
    invoice_number: str
    amount: Decimal


class CustomerIn(BaseModel):
    client_code: str
    email: Optional[str] = None
    name: Optional[str] = None


class PaymentIn(BaseModel):
    company_code: str
    amount: Decimal
    currency: str = "USD"
    allocations: list[AllocationIn]
    customer: CustomerIn
    description: str = ""


class CardIn(BaseModel):
    pan: str
    exp_date: str = Field(description="MMYY")
    card_holder: str = ""
    tax: Optional[str] = None
    tip: Optional[str] = None


class CobaltChargeIn(PaymentIn):
    card: CardIn


class PayPalOrderIn(PaymentIn):
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None


class PayPalCaptureIn(PaymentIn):
    order_id: str


class YappyOrderIn(PaymentIn):
    phone: str


class PaymentResponse(BaseModel):
    attempt_id: str
    state: str
    provider: Optional[str] = None
    transaction_id: Optional[str] = None
    charge_status: Optional[str] = None
    authorization_code: Optional[str] = None
    receipt_number: Optional[str] = None
    notification_sent: bool = False
    failure_kind: Optional[str] = None
    message: str = ""
    replayed: bool = False
    requires_reconciliation: bool = False


class PayPalOrderResponse(BaseModel):
    order_id: str
    status: str
    approval_url: Optional[str]


class AuditEntry(BaseModel):
    id: int
    event_type: str
    details: Optional[dict] = None
    payment_status: Optional[str]
    error_code: Optional[str]
    timestamp: Optional[str]


class PaymentTrace(BaseModel):
    payment: PaymentResponse
    audit_trail: list[AuditEntry]


class OfflineReceiptOut(BaseModel):
    id: int
    attempt_id: Optional[str]
    company_code: str
    client_code: Optional[str]
    pay_mode: str
    reference: str
    transaction_date: str
    lines: list[dict]
    error: Optional[str]
    pending: bool
    created_at: Optional[str]


def _charge_request(body: PaymentIn, method: PaymentMethod, **extra) -> ChargeRequest:
    return ChargeRequest(
        company_code=body.company_code,
        amount=body.amount,
        currency=body.currency.upper(),
        payment_method=method,
        allocations=[InvoiceAllocation(a.invoice_number, a.amount) for a in body.allocations],
        customer=CustomerContact(
            client_code=body.customer.client_code,
            email=body.customer.email,
            name=body.customer.name,
        ),
        description=body.description,
        **extra,
    )


def _to_response(outcome: PaymentOutcome) -> PaymentResponse:
    charge = outcome.charge
    return PaymentResponse(
        attempt_id=outcome.attempt_id,
        state=outcome.state.value,
        provider=charge.provider.value if charge else None,
        transaction_id=charge.provider_transaction_id if charge else None,
        charge_status=charge.status.value if charge else None,
        authorization_code=charge.authorization_code if charge else None,
        receipt_number=outcome.receipt_number,
        notification_sent=outcome.notification_sent,
        failure_kind=outcome.failure_kind,
        message=outcome.message,
        replayed=outcome.replayed,
        requires_reconciliation=outcome.requires_reconciliation,
    )


def _failure(error: GatewayError) -> JSONResponse:
    """Failed attempts answer with the recorded attempt, not just a message."""
    if error.outcome is None:
        raise http_error(error)
    return JSONResponse(status_code=status_for(error), content=_to_response(error.outcome).model_dump(mode="json"))


def _success(outcome: PaymentOutcome, response: Response) -> PaymentResponse:
    if outcome.state is PaymentState.AWAITING_CONFIRMATION:
        response.status_code = 202
    return _to_response(outcome)


async def _get_attempt(services: GatewayServices, attempt_id: str) -> PaymentAttempt:
    async with services.session_factory() as session:
        attempt = await session.get(PaymentAttempt, attempt_id)
    if not attempt:
        raise HTTPException(status_code=404, detail=f"Payment {attempt_id} not found")
    return attempt


@router.post("/cobalt/charge", response_model=PaymentResponse)
async def charge_card(
    body: CobaltChargeIn,
    request: Request,
    response: Response,
    services: GatewayServices = Depends(get_services),
):
    """Charge a card through Cobalt and write the receipt to the ERP."""
    card = CardDetails(
        pan=body.card.pan,
        exp_date=body.card.exp_date,
        card_holder=body.card.card_holder,
        tax=body.card.tax,
        tip=body.card.tip,
    )
    charge = _charge_request(body, PaymentMethod.COBALT, card=card)
    try:
        outcome = await services.orchestrator.process(charge, is_disconnected=request.is_disconnected)
    except GatewayError as e:
        return _failure(e)
    return _success(outcome, response)


@router.post("/paypal/orders", response_model=PayPalOrderResponse)
async def create_paypal_order(
    body: PayPalOrderIn,
    services: GatewayServices = Depends(get_services),
):
    base = services.settings.app_base_url
    charge = _charge_request(body, PaymentMethod.PAYPAL)
    try:
        order = await services.orchestrator.create_paypal_order(
            charge,
            return_url=body.return_url or f"{base}/pago/paypal/exito",
            cancel_url=body.cancel_url or f"{base}/pago/paypal/cancelado",
        )
    except GatewayError as e:
        raise http_error(e)
    return PayPalOrderResponse(order_id=order.order_id, status=order.status, approval_url=order.approval_url)


@router.post("/paypal/capture", response_model=PaymentResponse)
async def capture_paypal_order(
    body: PayPalCaptureIn,
    request: Request,
    response: Response,
    services: GatewayServices = Depends(get_services),
):
    """Capture an approved order. Repeating the call for the same order replays the result."""
    charge = _charge_request(body, PaymentMethod.PAYPAL, order_id=body.order_id)
    try:
        outcome = await services.orchestrator.process(charge, is_disconnected=request.is_disconnected)
    except GatewayError as e:
        return _failure(e)
    return _success(outcome, response)


@router.post("/yappy/orders", response_model=PaymentResponse)
async def create_yappy_order(
    body: YappyOrderIn,
    request: Request,
    response: Response,
    services: GatewayServices = Depends(get_services),
):
    charge = _charge_request(body, PaymentMethod.YAPPY, yappy_phone=body.phone)
    try:
        outcome = await services.orchestrator.process(charge, is_disconnected=request.is_disconnected)
    except GatewayError as e:
        return _failure(e)
    return _success(outcome, response)


@router.get("/yappy/ipn", response_model=PaymentResponse)
async def yappy_ipn(
    response: Response,
    order_id: str = Query(..., alias="orderId"),
    status: str = Query(...),
    hash_value: str = Query("", alias="hash"),
    domain: str = Query(""),
    confirmation_number: str = Query("", alias="confirmationNumber"),
    services: GatewayServices = Depends(get_services),
):
    try:
        outcome = await services.orchestrator.confirm_yappy_order(
            order_id,
            status,
            confirmation_number=confirmation_number,
            domain=domain,
            hash_value=hash_value,
        )
    except GatewayError as e:
        return _failure(e)
    return _success(outcome, response)


@router.get("/unreconciled", response_model=list[OfflineReceiptOut])
async def list_unreconciled(
    include_resolved: bool = Query(False),
    services: GatewayServices = Depends(get_services),
):
    """Charged payments still waiting for a manual ERP receipt."""
    stmt = select(OfflineReceipt).order_by(OfflineReceipt.created_at.desc())
    if not include_resolved:
        stmt = stmt.where(OfflineReceipt.pending.is_(True))
    async with services.session_factory() as session:
        rows = (await session.execute(stmt)).scalars().all()
    return [
        OfflineReceiptOut(
            id=r.id,
            attempt_id=r.attempt_id,
            company_code=r.company_code,
            client_code=r.client_code,
            pay_mode=r.pay_mode,
            reference=r.reference,
            transaction_date=r.transaction_date,
            lines=json.loads(r.lines),
            error=r.error,
            pending=bool(r.pending),
            created_at=r.created_at.isoformat() if r.created_at else None,
        )
        for r in rows
    ]


@router.post("/unreconciled/{receipt_id}/resolve")
async def resolve_unreconciled(
    receipt_id: int,
    receipt_number: str = Query(..., description="ERP receipt written by hand"),
    services: GatewayServices = Depends(get_services),
):
    async with services.session_factory() as session:
        row = await session.get(OfflineReceipt, receipt_id)
        if not row:
            raise HTTPException(status_code=404, detail=f"Offline receipt {receipt_id} not found")
        if not row.pending:
            raise HTTPException(status_code=409, detail=f"Offline receipt {receipt_id} already resolved")
        row.pending = False
        attempt_id = row.attempt_id
        await session.commit()

    await services.audit.record(
        "receipt_reconciled_manually",
        attempt_id=attempt_id,
        details={"offline_receipt_id": receipt_id, "receipt_number": receipt_number},
    )
    return {"id": receipt_id, "pending": False, "receipt_number": receipt_number}


@router.get("/{attempt_id}", response_model=PaymentResponse)
async def get_payment(attempt_id: str, services: GatewayServices = Depends(get_services)):
    attempt = await _get_attempt(services, attempt_id)
    return _to_response(outcome_of(attempt))


@router.get("/{attempt_id}/trace", response_model=PaymentTrace)
async def get_payment_trace(attempt_id: str, services: GatewayServices = Depends(get_services)):
    """Full audit trail for an attempt."""
    attempt = await _get_attempt(services, attempt_id)
    async with services.session_factory() as session:
        result = await session.execute(
            select(ActivityLog)
            .where(ActivityLog.attempt_id == attempt_id)
            .order_by(ActivityLog.created_at_utc, ActivityLog.id)
        )
        logs = result.scalars().all()

    return PaymentTrace(
        payment=_to_response(outcome_of(attempt)),
        audit_trail=[
            AuditEntry(
                id=log.id,
                event_type=log.event_type,
                details=json.loads(log.additional_data) if log.additional_data else None,
                payment_status=log.payment_status,
                error_code=log.error_code,
                timestamp=log.created_at_utc.isoformat() if log.created_at_utc else None,
            )
            for log in logs
        ],
    )
