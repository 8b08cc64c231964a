"""
Payment Gateway: Cobalt, PayPal and Yappy charges reconciled into Hansa.

Every payment is validated against its invoice allocation, charged through
the selected processor, written to the ERP as a single receipt with one
line per invoice, and confirmed to the customer by email.

Start the server:
    uvicorn gateway.main:app --reload
"""

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from gateway.api.ach import router as ach_router
from gateway.api.activity import router as activity_router
from gateway.api.clients import router as clients_router
from gateway.api.companies import router as companies_router
from gateway.api.deps import build_services
from gateway.api.health import router as health_router
from gateway.api.middleware import RequestLogMiddleware
from gateway.api.payments import router as payments_router
from gateway.api.receipts import router as receipts_router
from gateway.api.risk import router as risk_router
from gateway.api.verification import router as verification_router
from gateway.config import settings
from gateway.database import async_session, init_db

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, open the shared HTTP client and wire the services."""
    await init_db()
    timeout = httpx.Timeout(max(settings.provider_timeout_seconds, settings.erp_timeout_seconds))
    async with httpx.AsyncClient(timeout=timeout) as http:
        app.state.services = build_services(http, async_session, settings)
        yield


app = FastAPI(
    title="Payment Gateway",
    description=(
        "Payment aggregation API over the Hansa ERP. Charges customers through Cobalt, "
        "PayPal or Yappy, reconciles each payment into a single ERP receipt, and keeps "
        "an append-only audit trail of every attempt."
    ),
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLogMiddleware, session_factory=async_session)

app.include_router(health_router)
app.include_router(payments_router, prefix="/api")
app.include_router(verification_router, prefix="/api")
app.include_router(clients_router, prefix="/api")
app.include_router(companies_router, prefix="/api")
app.include_router(receipts_router, prefix="/api")
app.include_router(ach_router, prefix="/api")
app.include_router(activity_router, prefix="/api")
app.include_router(risk_router, prefix="/api")
