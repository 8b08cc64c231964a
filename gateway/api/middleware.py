"""Request logging middleware: one RequestLog row per HTTP request."""

import logging
import time
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from gateway.models.records import RequestLog

logger = logging.getLogger("payment_gateway.requests")

_IP_HEADERS = ("x-real-ip", "x-forwarded-for", "cf-connecting-ip", "x-original-for")


def client_ip(request: Request) -> str:
    """First proxy header that carries an address, else the socket peer."""
    for header in _IP_HEADERS:
        value = request.headers.get(header)
        if value:
            # X-Forwarded-For: client, proxy1, proxy2
            return value.split(",")[0].strip()[:45]
    if request.client:
        return request.client.host[:45]
    return "unknown"


class RequestLogMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, session_factory):
        super().__init__(app)
        self._session_factory = session_factory

    async def dispatch(self, request: Request, call_next):
        started = time.perf_counter()
        received_at = datetime.now(timezone.utc)
        response = await call_next(request)
        elapsed_ms = int((time.perf_counter() - started) * 1000)

        entry = RequestLog(
            ip_address=client_ip(request),
            user_agent=(request.headers.get("user-agent") or "")[:500] or None,
            method=request.method,
            path=request.url.path[:500],
            query_string=str(request.url.query)[:1000] or None,
            status_code=response.status_code,
            response_time_ms=elapsed_ms,
            request_time_utc=received_at,
            client_id=request.headers.get("x-client-id"),
        )
        try:
            async with self._session_factory() as session:
                session.add(entry)
                await session.commit()
        except SQLAlchemyError:
            logger.exception("Request log write failed for %s %s", request.method, request.url.path)
        return response
