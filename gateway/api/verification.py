"""
Verification code endpoints.

POST /verification/codes  Email a one-time code (optionally reCAPTCHA-gated).
POST /verification/verify Consume a code; opens the query grant window.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from gateway.api.deps import GatewayServices, get_services, http_error
from gateway.engine.errors import GatewayError, NotificationError, VerificationError
from gateway.models.enums import QueryType

logger = logging.getLogger("payment_gateway.api.verification")

RECAPTCHA_ACTION = "verification_code"

router = APIRouter(prefix="/verification", tags=["verification"])


class CodeRequest(BaseModel):
    email: str
    client_code: str
    query_type: QueryType
    recaptcha_token: Optional[str] = None


class CodeIssued(BaseModel):
    sent: bool
    expires_at: str
    expires_in_minutes: int


class VerifyRequest(BaseModel):
    email: str
    code: str
    client_code: str
    query_type: QueryType


class VerifyResult(BaseModel):
    verified: bool
    grant_minutes: int


@router.post("/codes", response_model=CodeIssued)
async def request_code(body: CodeRequest, services: GatewayServices = Depends(get_services)):
    try:
        await services.recaptcha.check(body.recaptcha_token, RECAPTCHA_ACTION)
        record = await services.verification.issue(body.email, body.client_code, body.query_type)
    except VerificationError as e:
        await services.audit.record(
            "verification_refused",
            details={"email": body.email, "reason": e.reason.value},
            client_id=body.client_code,
            error_code=e.reason.value,
        )
        raise HTTPException(status_code=403, detail=e.reason.value)
    except GatewayError as e:
        raise http_error(e)

    try:
        await services.email.send_verification_code(
            record.email,
            record.code,
            body.query_type,
            services.verification.ttl_minutes,
        )
    except NotificationError as e:
        logger.warning("Verification code for %s not delivered: %s", record.email, e)
        raise HTTPException(status_code=502, detail="The verification code could not be sent")

    await services.audit.record(
        "verification_code_sent",
        details={"email": record.email, "query_type": body.query_type.value},
        client_id=body.client_code,
    )
    return CodeIssued(
        sent=True,
        expires_at=record.expires_at.isoformat(),
        expires_in_minutes=services.verification.ttl_minutes,
    )


@router.post("/verify", response_model=VerifyResult)
async def verify_code(body: VerifyRequest, services: GatewayServices = Depends(get_services)):
    try:
        await services.verification.verify(body.email, body.code, body.client_code, body.query_type)
    except VerificationError as e:
        await services.audit.record(
            "verification_failed",
            details={"email": body.email, "reason": e.reason.value},
            client_id=body.client_code,
            error_code=e.reason.value,
        )
        raise HTTPException(status_code=400, detail=e.reason.value)

    await services.audit.record(
        "verification_succeeded",
        details={"email": body.email, "query_type": body.query_type.value},
        client_id=body.client_code,
    )
    return VerifyResult(verified=True, grant_minutes=services.settings.verification_grant_minutes)
