"""
Abstract payment processor interface.

All processors (Cobalt, PayPal, Yappy) implement this interface. Adapters
translate a ChargeRequest into the processor's wire format, call it over
httpx, and normalize the reply into a ChargeResult. Transport and HTTP
failures are mapped onto the gateway error taxonomy here, so no httpx
exception ever leaves an adapter.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx

from gateway.engine.errors import (
    AuthFailure,
    GatewayTimeout,
    NetworkError,
    ProviderRejected,
    RateLimitError,
)
from gateway.models.charge import ChargeRequest, ChargeResult, ProviderCredentials, ProviderToken
from gateway.models.enums import PaymentMethod

logger = logging.getLogger("payment_gateway.providers")


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def provider_error_name(response: httpx.Response) -> Optional[str]:
    """Best-effort provider error name from a JSON error body."""
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    details = body.get("details")
    if isinstance(details, list) and details and isinstance(details[0], dict) and details[0].get("issue"):
        return str(details[0]["issue"])
    for key in ("name", "error", "code", "status"):
        if isinstance(body.get(key), str):
            return body[key]
    return None


def check_response(response: httpx.Response, provider: str) -> None:
    """
    Raise the normalized error for a non-2xx processor response.

    401/403 -> AuthFailure, 429 -> RateLimitError, 5xx -> NetworkError,
    any other 4xx -> ProviderRejected carrying the provider's error name.
    """
    status = response.status_code
    if status < 400:
        return
    text = response.text[:300]
    logger.warning("%s answered %d: %s", provider, status, text[:120])
    if status in (401, 403):
        raise AuthFailure(f"{provider} rejected credentials ({status}): {text}", status_code=status)
    if status == 429:
        raise RateLimitError(f"{provider} rate limited the request", retry_after=_retry_after(response))
    if status >= 500:
        raise NetworkError(f"{provider} unavailable ({status}): {text}", status_code=status)
    code = provider_error_name(response) or str(status)
    raise ProviderRejected(f"{provider} rejected the request ({status}): {text}", code=code, status_code=status)


class ProviderClient(ABC):
    """Abstract base class for payment processor adapters."""

    caches_tokens: bool = True

    def __init__(self, http: httpx.AsyncClient):
        self._http = http

    @property
    @abstractmethod
    def method(self) -> PaymentMethod:
        ...

    @property
    def name(self) -> str:
        return self.method.value

    @abstractmethod
    async def authenticate(self, credentials: ProviderCredentials) -> ProviderToken:
        """
        Obtain an access token for the given credentials.

        Raises:
            AuthFailure: Credentials were rejected.
            NetworkError / GatewayTimeout: Transient failure, safe to retry.
        """
        ...

    @abstractmethod
    async def charge(
        self,
        token: ProviderToken,
        request: ChargeRequest,
        credentials: ProviderCredentials,
        reference: str,
    ) -> ChargeResult:
        """
        Submit the charge.

        `reference` is a fresh per-attempt identifier generated by the caller.
        A declined charge is returned as a ChargeResult with status declined,
        not raised.
        """
        ...

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._http.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise GatewayTimeout(f"{self.name} request timed out: {url}") from e
        except httpx.HTTPError as e:
            raise NetworkError(f"{self.name} request failed: {e}") from e
        return response

    async def _send_json(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        response = await self._send(method, url, **kwargs)
        check_response(response, self.name)
        return self._json(response)

    def _json(self, response: httpx.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError as e:
            raise ProviderRejected(
                f"{self.name} returned a non-JSON body ({response.status_code})",
                code="invalid_response",
                status_code=response.status_code,
            ) from e
        if not isinstance(body, dict):
            raise ProviderRejected(f"{self.name} returned an unexpected body", code="invalid_response")
        return body
