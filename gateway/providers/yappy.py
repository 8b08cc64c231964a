"""
Yappy (Banco General) mobile payment adapter.

Yappy has no OAuth: a merchant/domain validation call returns a session token
that is only good for the next order, so it never enters the token cache.
Order creation only registers the payment request on the customer's phone;
the outcome arrives later through the IPN callback, verified by verify_ipn().
"""

import base64
import binascii
import hashlib
import hmac
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx

from gateway.config import YappySettings
from gateway.engine.errors import AuthFailure, ProviderRejected, ValidationError
from gateway.models.charge import ChargeRequest, ChargeResult, ProviderCredentials, ProviderToken
from gateway.models.enums import ChargeStatus, PaymentMethod
from gateway.providers.base import ProviderClient

logger = logging.getLogger("payment_gateway.providers.yappy")

# Session tokens are single-use in practice; this only bounds how long we hold one.
SESSION_TOKEN_TTL = timedelta(minutes=5)

IPN_EXECUTED = "E"
IPN_REJECTED = "R"
IPN_CANCELLED = "C"
IPN_EXPIRED = "X"

IPN_STATUSES = {
    IPN_EXECUTED: "executed",
    IPN_REJECTED: "rejected",
    IPN_CANCELLED: "cancelled",
    IPN_EXPIRED: "expired",
}


def ipn_signature(data: str, secret_key: str) -> str:
    """HMAC-SHA256 of data keyed with the first segment of the decoded secret, hex lowercase."""
    decoded = base64.b64decode(secret_key).decode("utf-8")
    key = decoded.split(".")[0]
    return hmac.new(key.encode("utf-8"), data.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_ipn(order_id: str, status: str, domain: str, hash_value: str, secret_key: str) -> bool:
    if not (order_id and status and domain and hash_value and secret_key):
        return False
    try:
        expected = ipn_signature(order_id + status + domain, secret_key)
    except (binascii.Error, UnicodeDecodeError, ValueError):
        logger.warning("Yappy secret key for IPN verification is not valid base64")
        return False
    return hmac.compare_digest(expected, hash_value.lower())


def _money(value) -> str:
    return f"{value:.2f}"


class YappyClient(ProviderClient):
    caches_tokens = False

    def __init__(self, http: httpx.AsyncClient, config: YappySettings, ipn_url: str):
        super().__init__(http)
        self._config = config
        self._ipn_url = ipn_url

    @property
    def method(self) -> PaymentMethod:
        return PaymentMethod.YAPPY

    async def authenticate(self, credentials: ProviderCredentials) -> ProviderToken:
        body = await self._send_json(
            "POST",
            self._config.validate_merchant_url,
            json={"merchantId": credentials.client_id, "urlDomain": self._config.domain},
        )
        token = (body.get("body") or {}).get("token")
        if not token:
            status = body.get("status") or {}
            raise AuthFailure(
                f"Yappy merchant validation returned no token: "
                f"{status.get('code', '')} {status.get('description', '')}".strip()
            )
        return ProviderToken(
            access_token=token,
            token_type="",
            expires_at=datetime.now(timezone.utc) + SESSION_TOKEN_TTL,
        )

    def build_order(
        self,
        request: ChargeRequest,
        credentials: ProviderCredentials,
        reference: str,
        payment_date: Optional[int] = None,
    ) -> dict[str, Any]:
        if not request.yappy_phone:
            raise ValidationError("A Yappy phone number is required")
        return {
            "merchantId": credentials.client_id,
            "orderId": reference,
            "domain": self._config.domain,
            "paymentDate": payment_date if payment_date is not None else int(time.time()),
            "aliasYappy": request.yappy_phone,
            "ipnUrl": self._ipn_url,
            "discount": "0.00",
            "taxes": "0.00",
            "subtotal": _money(request.amount),
            "total": _money(request.amount),
        }

    async def charge(
        self,
        token: ProviderToken,
        request: ChargeRequest,
        credentials: ProviderCredentials,
        reference: str,
    ) -> ChargeResult:
        order = self.build_order(request, credentials, reference)
        body = await self._send_json(
            "POST",
            self._config.create_order_url,
            json=order,
            headers={"Authorization": token.access_token},
        )
        status = body.get("status") or {}
        if not body.get("body"):
            raise ProviderRejected(
                f"Yappy order rejected: {status.get('description') or 'no body'}",
                code=status.get("code") or "invalid_response",
            )
        logger.info("Yappy order %s created for company %s", reference, request.company_code)
        return ChargeResult(
            provider=PaymentMethod.YAPPY,
            provider_transaction_id=reference,
            status=ChargeStatus.PENDING,
            authorization_code=(body.get("body") or {}).get("transactionId"),
            response_code=status.get("code"),
            raw_payload=body,
        )
