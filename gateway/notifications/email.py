"""
Outbound email over the Resend HTTP API.

Delivery is best-effort from the payment flow's point of view: callers get
a NotificationError on failure and decide whether it matters. For payment
confirmations it never does.
"""

import base64
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

import httpx

from gateway.config import EmailSettings
from gateway.engine.errors import NotificationError
from gateway.erp.base import ErpReceiptRecord
from gateway.models.charge import ReceiptLine
from gateway.models.enums import PaymentMethod, QueryType
from gateway.notifications.templates import render

logger = logging.getLogger("payment_gateway.email")

QUERY_LABELS = {
    QueryType.INVOICES: "sus facturas",
    QueryType.RECEIPTS: "sus recibos",
}

PAY_MODE_LABELS = {
    "CC": "TARJETA DE CRÉDITO",
    "TARJETA": "TARJETA DE CRÉDITO",
    "CREDIT": "TARJETA DE CRÉDITO",
    "CARD": "TARJETA DE CRÉDITO",
    "PP": "PAYPAL",
    "YP": "YAPPY",
}

SPANISH_MONTHS = (
    "enero", "febrero", "marzo", "abril", "mayo", "junio",
    "julio", "agosto", "septiembre", "octubre", "noviembre", "diciembre",
)


def pay_mode_label(pay_mode: str) -> str:
    code = (pay_mode or "").strip().upper()
    return PAY_MODE_LABELS.get(code, code or "PAGO")


def spanish_date(value: str) -> str:
    """Hansa YYYY-MM-DD as "19 de octubre, 2026"; other input is returned unchanged."""
    try:
        parsed = datetime.strptime((value or "")[:10], "%Y-%m-%d")
    except ValueError:
        return value
    return f"{parsed.day} de {SPANISH_MONTHS[parsed.month - 1]}, {parsed.year}"


@dataclass
class Attachment:
    filename: str
    content: bytes
    content_type: str = "application/pdf"


class EmailSender:
    def __init__(self, http: httpx.AsyncClient, config: EmailSettings):
        self._http = http
        self._config = config

    @property
    def _sender(self) -> str:
        return f"{self._config.default_from_name} <{self._config.default_from}>"

    async def send(
        self,
        to: str,
        subject: str,
        html: str,
        text: Optional[str] = None,
        attachments: Optional[list[Attachment]] = None,
    ) -> str:
        """
        Send one message.

        Returns:
            The provider message id.

        Raises:
            NotificationError: Not configured, rejected, or unreachable.
        """
        if not self._config.api_key:
            raise NotificationError("Email API key is not configured")
        if not to:
            raise NotificationError("No recipient address")

        body: dict[str, Any] = {
            "from": self._sender,
            "to": [to],
            "subject": subject,
            "html": html,
        }
        if text:
            body["text"] = text
        if attachments:
            body["attachments"] = [
                {
                    "filename": a.filename,
                    "content": base64.b64encode(a.content).decode("ascii"),
                    "content_type": a.content_type,
                }
                for a in attachments
            ]

        try:
            response = await self._http.post(
                self._config.api_url,
                json=body,
                headers={"Authorization": f"Bearer {self._config.api_key}"},
            )
        except httpx.HTTPError as e:
            raise NotificationError(f"Email delivery to {to} failed: {e}") from e

        if response.status_code >= 400:
            raise NotificationError(
                f"Email provider rejected message to {to} ({response.status_code}): {response.text[:200]}"
            )

        try:
            message_id = str(response.json().get("id") or "")
        except ValueError:
            message_id = ""
        logger.info("Email '%s' sent to %s (id=%s)", subject, to, message_id or "-")
        return message_id

    async def send_payment_confirmation(
        self,
        to: str,
        customer_name: str,
        receipt_number: str,
        method: PaymentMethod,
        lines: list[ReceiptLine],
        currency: str = "USD",
        transaction_id: Optional[str] = None,
        paid_at: Optional[datetime] = None,
    ) -> str:
        total = sum((line.amount for line in lines), Decimal("0"))
        html, text = render(
            "payment_confirmation",
            company_name=self._config.default_from_name,
            customer_name=customer_name or "cliente",
            receipt_number=receipt_number,
            payment_method=method.label,
            payment_date=(paid_at or datetime.now(timezone.utc)).strftime("%d/%m/%Y"),
            transaction_id=transaction_id,
            lines=lines,
            currency=currency,
            total=total,
        )
        return await self.send(to, f"Confirmación de pago - Recibo {receipt_number}", html, text)

    async def send_verification_code(self, to: str, code: str, query_type: QueryType, ttl_minutes: int) -> str:
        html, text = render(
            "verification_code",
            company_name=self._config.default_from_name,
            query_label=QUERY_LABELS[query_type],
            code=code,
            ttl_minutes=ttl_minutes,
        )
        return await self.send(to, "Su código de verificación", html, text)

    async def send_receipt_notification(self, to: str, receipt: ErpReceiptRecord, currency: str = "USD") -> str:
        """Receipt confirmation built from the ERP's own copy of the receipt."""
        html, text = render(
            "receipt_notification",
            company_name=self._config.default_from_name,
            customer_name=receipt.customer_name or "cliente",
            receipt_number=receipt.ser_nr,
            payment_method=pay_mode_label(receipt.pay_mode),
            transaction_date=spanish_date(receipt.trans_date),
            rows=receipt.rows,
            currency=currency,
            total=receipt.total,
        )
        return await self.send(to, f"Confirmación de Pago - Recibo #{receipt.ser_nr}", html, text)
