"""
PayPal Orders v2 adapter.

Two phases: create_order returns the approval link the customer follows;
charge() captures the approved order. Capture is idempotent per order id:
the PayPal-Request-Id header makes PayPal replay its own earlier response,
and an ORDER_ALREADY_CAPTURED reply is resolved by reading the order back.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx

from gateway.config import PayPalSettings
from gateway.engine.errors import AuthFailure, ProviderRejected, ValidationError
from gateway.models.charge import (
    ChargeRequest,
    ChargeResult,
    PayPalOrder,
    ProviderCredentials,
    ProviderToken,
)
from gateway.models.enums import ChargeStatus, PaymentMethod
from gateway.providers.base import ProviderClient, check_response, provider_error_name

logger = logging.getLogger("payment_gateway.providers.paypal")

ALREADY_CAPTURED = "ORDER_ALREADY_CAPTURED"


class PayPalClient(ProviderClient):
    def __init__(self, http: httpx.AsyncClient, config: PayPalSettings):
        super().__init__(http)
        self._config = config

    @property
    def method(self) -> PaymentMethod:
        return PaymentMethod.PAYPAL

    async def authenticate(self, credentials: ProviderCredentials) -> ProviderToken:
        body = await self._send_json(
            "POST",
            self._config.token_url,
            auth=(credentials.client_id, credentials.client_secret),
            data={"grant_type": "client_credentials"},
            headers={"Accept": "application/json"},
        )
        access_token = body.get("access_token")
        if not access_token:
            raise AuthFailure("PayPal token response carried no access_token")
        return ProviderToken(
            access_token=access_token,
            token_type=body.get("token_type") or "Bearer",
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=int(body.get("expires_in") or 0)),
        )

    def _headers(self, token: ProviderToken, request_id: Optional[str] = None) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {token.access_token}",
            "Content-Type": "application/json",
        }
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        return headers

    def build_order(self, request: ChargeRequest, return_url: str, cancel_url: str) -> dict[str, Any]:
        description = request.description or "Pago de facturas: " + ", ".join(request.invoice_numbers)
        return {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": request.allocations[0].invoice_number,
                    "description": description[:127],
                    "amount": {
                        "currency_code": request.currency,
                        "value": f"{request.amount:.2f}",
                    },
                }
            ],
            "application_context": {
                "return_url": return_url,
                "cancel_url": cancel_url,
                "brand_name": self._config.brand_name,
                "landing_page": "LOGIN",
                "user_action": "PAY_NOW",
            },
        }

    async def create_order(
        self,
        token: ProviderToken,
        request: ChargeRequest,
        return_url: str,
        cancel_url: str,
    ) -> PayPalOrder:
        body = await self._send_json(
            "POST",
            self._config.orders_url,
            json=self.build_order(request, return_url, cancel_url),
            headers=self._headers(token),
        )
        links = [
            {"href": link.get("href", ""), "rel": link.get("rel", ""), "method": link.get("method", "")}
            for link in body.get("links") or []
            if isinstance(link, dict)
        ]
        approval = next((link["href"] for link in links if link["rel"] in ("approve", "payer-action")), None)
        order_id = body.get("id")
        if not order_id:
            raise ProviderRejected("PayPal order response carried no id", code="invalid_response")
        logger.info("PayPal order %s created for company %s", order_id, request.company_code)
        return PayPalOrder(order_id=order_id, status=body.get("status", ""), approval_url=approval, links=links)

    async def charge(
        self,
        token: ProviderToken,
        request: ChargeRequest,
        credentials: ProviderCredentials,
        reference: str,
    ) -> ChargeResult:
        if not request.order_id:
            raise ValidationError("A PayPal order id is required to capture")

        response = await self._send(
            "POST",
            self._config.capture_url(request.order_id),
            json={},
            headers=self._headers(token, request_id=request.order_id),
        )
        if response.status_code == 422 and provider_error_name(response) == ALREADY_CAPTURED:
            logger.info("PayPal order %s already captured; reading it back", request.order_id)
            body = await self._send_json(
                "GET",
                self._config.order_url(request.order_id),
                headers=self._headers(token),
            )
        else:
            check_response(response, self.name)
            body = self._json(response)
        return self.parse_capture(body)

    def parse_capture(self, body: dict[str, Any]) -> ChargeResult:
        capture = _first_capture(body)
        order_status = str(body.get("status") or "").upper()
        capture_status = str(capture.get("status") or "").upper()

        if order_status == "COMPLETED" and capture_status in ("", "COMPLETED", "PENDING"):
            status = ChargeStatus.APPROVED
        elif order_status == "DECLINED" or capture_status in ("DECLINED", "FAILED"):
            status = ChargeStatus.DECLINED
        else:
            status = ChargeStatus.ERROR

        processor = capture.get("processor_response") or {}
        return ChargeResult(
            provider=PaymentMethod.PAYPAL,
            provider_transaction_id=str(capture.get("id") or body.get("id") or ""),
            status=status,
            authorization_code=processor.get("avs_code"),
            response_code=processor.get("response_code") or order_status or None,
            raw_payload=body,
        )


def _first_capture(body: dict[str, Any]) -> dict[str, Any]:
    units = body.get("purchase_units") or []
    if not units or not isinstance(units[0], dict):
        return {}
    captures = (units[0].get("payments") or {}).get("captures") or []
    if captures and isinstance(captures[0], dict):
        return captures[0]
    return {}


def payer_name(body: dict[str, Any]) -> Optional[str]:
    name = (body.get("payer") or {}).get("name") or {}
    full = " ".join(part for part in (name.get("given_name"), name.get("surname")) if part)
    return full or None
