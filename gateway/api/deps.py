"""Service container shared by the routers."""

from dataclasses import dataclass
from datetime import timedelta

import httpx
from fastapi import HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gateway.audit.logger import AuditSink
from gateway.config import Settings
from gateway.engine.ach import ACHProofRegistry
from gateway.engine.errors import GatewayError
from gateway.engine.orchestrator import PaymentOrchestrator
from gateway.engine.verification import VerificationCodeService
from gateway.erp.base import ErpClient
from gateway.erp.clients import ClientDirectory
from gateway.erp.hansa import HansaClient
from gateway.models.enums import FailureKind, PaymentMethod
from gateway.notifications.email import EmailSender
from gateway.providers.cobalt import CobaltClient
from gateway.providers.credentials import CredentialResolver
from gateway.providers.paypal import PayPalClient
from gateway.providers.token_cache import TokenCache
from gateway.providers.yappy import YappyClient
from gateway.risk.recaptcha import RecaptchaVerifier


@dataclass
class GatewayServices:
    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    audit: AuditSink
    erp: ErpClient
    clients: ClientDirectory
    email: EmailSender
    recaptcha: RecaptchaVerifier
    verification: VerificationCodeService
    ach: ACHProofRegistry
    orchestrator: PaymentOrchestrator


def build_services(
    http: httpx.AsyncClient,
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
) -> GatewayServices:
    audit = AuditSink(session_factory)
    erp = HansaClient(http, settings.hansa)
    clients = ClientDirectory(session_factory, erp)
    email = EmailSender(http, settings.email)
    providers = {
        PaymentMethod.COBALT: CobaltClient(http, settings.cobalt),
        PaymentMethod.PAYPAL: PayPalClient(http, settings.paypal),
        PaymentMethod.YAPPY: YappyClient(http, settings.yappy, settings.yappy_ipn_url),
    }
    orchestrator = PaymentOrchestrator(
        session_factory,
        providers=providers,
        credentials=CredentialResolver(settings),
        token_cache=TokenCache(skew=timedelta(seconds=settings.token_expiry_skew_seconds)),
        erp=erp,
        audit=audit,
        email=email,
        clients=clients,
        provider_timeout=settings.provider_timeout_seconds,
        erp_timeout=settings.erp_timeout_seconds,
    )
    return GatewayServices(
        settings=settings,
        session_factory=session_factory,
        audit=audit,
        erp=erp,
        clients=clients,
        email=email,
        recaptcha=RecaptchaVerifier(http, settings.recaptcha),
        verification=VerificationCodeService(
            session_factory,
            ttl=timedelta(minutes=settings.verification_code_ttl_minutes),
            code_length=settings.verification_code_length,
            retention=timedelta(hours=settings.verification_retention_hours),
            grant_window=timedelta(minutes=settings.verification_grant_minutes),
            clients=clients,
        ),
        ach=ACHProofRegistry(session_factory, audit, erp=erp, max_bytes=settings.ach_max_upload_bytes),
        orchestrator=orchestrator,
    )


def get_services(request: Request) -> GatewayServices:
    return request.app.state.services


_STATUS_BY_KIND = {
    FailureKind.EMPTY_ALLOCATION: 400,
    FailureKind.AMOUNT_MISMATCH: 400,
    FailureKind.INVALID_AMOUNT: 400,
    FailureKind.INVALID_INVOICE: 400,
    FailureKind.INVALID_REQUEST: 400,
    FailureKind.UNKNOWN_COMPANY: 422,
    FailureKind.CANCELLED: 499,
    FailureKind.AUTH_FAILURE: 502,
    FailureKind.DECLINED: 402,
    FailureKind.NETWORK_ERROR: 503,
    FailureKind.TIMEOUT: 504,
    FailureKind.PROVIDER_REJECTED: 502,
    FailureKind.ERP_ERROR: 502,
    FailureKind.ERP_WRITE_ERROR: 502,
    FailureKind.NOTIFICATION_ERROR: 502,
    FailureKind.VERIFICATION_FAILED: 400,
    FailureKind.INVALID_TRANSITION: 409,
    FailureKind.RISK_CHECK_FAILED: 403,
}


def status_for(error: GatewayError) -> int:
    return _STATUS_BY_KIND.get(error.kind, 500)


def http_error(error: GatewayError) -> HTTPException:
    return HTTPException(status_code=status_for(error), detail=str(error))
