"""
ERP receipt lookup and notification endpoints.

GET  /receipts/{receipt_number}  One receipt with its invoice rows.
POST /receipts/notify            Email the customer a confirmation of an ERP receipt.
"""

import logging
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from gateway.api.deps import GatewayServices, get_services, http_error
from gateway.engine.errors import GatewayError, NotificationError
from gateway.erp.base import ErpReceiptRecord
from gateway.notifications.email import pay_mode_label

logger = logging.getLogger("payment_gateway.api.receipts")

router = APIRouter(prefix="/receipts", tags=["receipts"])


class NotifyRequest(BaseModel):
    receipt_number: str
    company_code: str
    customer_email: str


class NotifyResult(BaseModel):
    sent: bool
    receipt_number: str
    customer_email: str
    customer_name: str
    total: str
    payment_method: str
    lines: int
    message_id: str


async def _load(services: GatewayServices, receipt_number: str, company_code: Optional[str]) -> ErpReceiptRecord:
    try:
        receipt = await services.erp.get_receipt(receipt_number, company_code)
    except GatewayError as e:
        raise http_error(e)
    if receipt is None:
        raise HTTPException(status_code=404, detail=f"Receipt {receipt_number} not found")
    return receipt


@router.get("/{receipt_number}")
async def get_receipt(
    receipt_number: str,
    company_code: Optional[str] = Query(None),
    services: GatewayServices = Depends(get_services),
):
    return asdict(await _load(services, receipt_number, company_code))


@router.post("/notify", response_model=NotifyResult)
async def notify_receipt(body: NotifyRequest, services: GatewayServices = Depends(get_services)):
    if not body.receipt_number.strip() or not body.company_code.strip() or not body.customer_email.strip():
        raise HTTPException(status_code=400, detail="Receipt number, company code and email are required")

    receipt = await _load(services, body.receipt_number, body.company_code)
    if not receipt.rows:
        raise HTTPException(status_code=400, detail=f"Receipt {body.receipt_number} has no invoice rows")

    try:
        message_id = await services.email.send_receipt_notification(body.customer_email, receipt)
    except NotificationError as e:
        logger.warning("Receipt %s notification to %s failed: %s", receipt.ser_nr, body.customer_email, e)
        await services.audit.record(
            "notification_failed",
            details={"receipt_number": receipt.ser_nr, "to": body.customer_email, "error": str(e)},
            company_code=body.company_code,
        )
        raise HTTPException(status_code=502, detail="The receipt notification could not be sent")

    await services.audit.record(
        "receipt_notification_sent",
        details={"receipt_number": receipt.ser_nr, "to": body.customer_email, "lines": len(receipt.rows)},
        company_code=body.company_code,
        client_id=receipt.cust_code or None,
    )
    return NotifyResult(
        sent=True,
        receipt_number=receipt.ser_nr,
        customer_email=body.customer_email,
        customer_name=receipt.customer_name,
        total=str(receipt.total),
        payment_method=pay_mode_label(receipt.pay_mode),
        lines=len(receipt.rows),
        message_id=message_id,
    )
