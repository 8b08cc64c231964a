"""
Cobalt card processing adapter.

OAuth2 client-credentials token, then a single sale call carrying the card
data. Amounts go over the wire in cents, as strings.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx

from gateway.config import CobaltSettings
from gateway.engine.errors import AuthFailure, ProviderRejected, ValidationError
from gateway.models.charge import ChargeRequest, ChargeResult, ProviderCredentials, ProviderToken
from gateway.models.enums import ChargeStatus, PaymentMethod
from gateway.providers.base import ProviderClient

logger = logging.getLogger("payment_gateway.providers.cobalt")

DECLINED_STATUSES = {"declined", "rejected", "denied"}
DEFAULT_TOKEN_TTL = 3600


def _str_or_none(value: Any) -> Optional[str]:
    return None if value is None else str(value)


class CobaltClient(ProviderClient):
    def __init__(self, http: httpx.AsyncClient, config: CobaltSettings):
        super().__init__(http)
        self._config = config

    @property
    def method(self) -> PaymentMethod:
        return PaymentMethod.COBALT

    async def authenticate(self, credentials: ProviderCredentials) -> ProviderToken:
        body = await self._send_json(
            "POST",
            self._config.token_url,
            json={
                "grant_type": "client_credentials",
                "client_id": credentials.client_id,
                "client_secret": credentials.client_secret,
            },
        )
        access_token = body.get("access_token")
        if not access_token:
            raise AuthFailure("Cobalt token response carried no access_token")

        expires_in = int(body.get("expires_in") or DEFAULT_TOKEN_TTL)
        return ProviderToken(
            access_token=access_token,
            token_type=body.get("token_type") or "Bearer",
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        )

    def build_sale(self, request: ChargeRequest) -> dict[str, str]:
        """Map a ChargeRequest onto Cobalt's sale body, field for field."""
        if request.card is None:
            raise ValidationError("Card details are required for a Cobalt charge")
        card = request.card.normalized()
        return {
            "currency_code": request.currency,
            "amount": str(request.amount_minor_units),
            "tax": card.tax,
            "tip": card.tip,
            "pan": card.pan,
            "exp_date": card.exp_date,
            "card_holder": card.card_holder,
        }

    async def charge(
        self,
        token: ProviderToken,
        request: ChargeRequest,
        credentials: ProviderCredentials,
        reference: str,
    ) -> ChargeResult:
        sale = self.build_sale(request)
        logger.info(
            "Cobalt sale ref=%s company=%s amount=%s card=%s",
            reference,
            request.company_code,
            sale["amount"],
            request.card.masked_pan(),
        )
        body = await self._send_json(
            "POST",
            self._config.sale_url,
            json=sale,
            headers={"Authorization": f"Bearer {token.access_token}"},
        )
        return self.parse_sale(body)

    def parse_sale(self, body: dict[str, Any]) -> ChargeResult:
        data = body.get("data")
        if not isinstance(data, dict):
            raise ProviderRejected(
                f"Cobalt sale response has no data: {body.get('message') or body.get('status')}",
                code=str(body.get("status") or "invalid_response"),
            )

        data_status = str(data.get("status") or "").lower()
        if body.get("status") == "ok" and data_status == "authorized":
            status = ChargeStatus.APPROVED
        elif data_status in DECLINED_STATUSES:
            status = ChargeStatus.DECLINED
        else:
            status = ChargeStatus.ERROR

        return ChargeResult(
            provider=PaymentMethod.COBALT,
            provider_transaction_id=str(data.get("id") or ""),
            status=status,
            authorization_code=_str_or_none(data.get("authorization_number")),
            response_code=_str_or_none(data.get("response_code")),
            raw_payload=body,
        )
