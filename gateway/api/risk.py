"""
reCAPTCHA endpoint.

POST /recaptcha/assess Score a client token (used by the frontend before payment).
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from gateway.api.deps import GatewayServices, get_services, http_error
from gateway.engine.errors import GatewayError

router = APIRouter(prefix="/recaptcha", tags=["recaptcha"])


class AssessIn(BaseModel):
    token: str
    action: Optional[str] = None


class AssessOut(BaseModel):
    valid: bool
    passed: bool
    score: float
    action: Optional[str]
    reasons: list[str]
    invalid_reason: Optional[str]


@router.post("/assess", response_model=AssessOut)
async def assess(body: AssessIn, services: GatewayServices = Depends(get_services)):
    if not services.recaptcha.enabled:
        raise HTTPException(status_code=404, detail="reCAPTCHA is not enabled")
    try:
        assessment = await services.recaptcha.assess(body.token, body.action)
    except GatewayError as e:
        raise http_error(e)

    passed = assessment.passes(services.settings.recaptcha.min_score, body.action)
    await services.audit.record(
        "recaptcha_assessed",
        details={"action": assessment.action, "score": assessment.score, "reasons": assessment.reasons},
        payment_status="passed" if passed else "failed",
    )
    return AssessOut(
        valid=assessment.valid,
        passed=passed,
        score=assessment.score,
        action=assessment.action,
        reasons=assessment.reasons,
        invalid_reason=assessment.invalid_reason,
    )
