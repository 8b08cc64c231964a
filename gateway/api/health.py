"""Liveness and configuration overview."""

from fastapi import APIRouter, Depends

from gateway.api.deps import GatewayServices, get_services
from gateway.models.enums import PaymentMethod
from gateway.providers.credentials import CredentialResolver

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(services: GatewayServices = Depends(get_services)):
    credentials = CredentialResolver(services.settings)
    last_sync = await services.clients.last_synced_at()
    return {
        "status": "ok",
        "providers": {m.value: credentials.companies(m) for m in PaymentMethod},
        "recaptcha_enabled": services.recaptcha.enabled,
        "clients_synced_at": last_sync.isoformat() if last_sync else None,
    }
