"""reCAPTCHA Enterprise assessments."""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from gateway.config import RecaptchaSettings
from gateway.engine.errors import RiskCheckError

logger = logging.getLogger("payment_gateway.risk")


@dataclass
class RiskAssessment:
    valid: bool
    score: float = 0.0
    action: Optional[str] = None
    reasons: list[str] = field(default_factory=list)
    invalid_reason: Optional[str] = None

    def passes(self, min_score: float, expected_action: Optional[str] = None) -> bool:
        if not self.valid or self.score < min_score:
            return False
        if expected_action and self.action != expected_action:
            return False
        return True

    @classmethod
    def from_wire(cls, body: dict[str, Any]) -> "RiskAssessment":
        token = body.get("tokenProperties") or {}
        risk = body.get("riskAnalysis") or {}
        return cls(
            valid=bool(token.get("valid")),
            score=float(risk.get("score") or 0.0),
            action=token.get("action"),
            reasons=[str(r) for r in risk.get("reasons") or []],
            invalid_reason=token.get("invalidReason"),
        )


class RecaptchaVerifier:
    def __init__(self, http: httpx.AsyncClient, config: RecaptchaSettings):
        self._http = http
        self._config = config

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    async def assess(self, token: str, expected_action: Optional[str] = None) -> RiskAssessment:
        """
        Ask reCAPTCHA Enterprise to score a client token.

        Raises:
            RiskCheckError: The assessment call itself failed.
        """
        event = {"token": token, "siteKey": self._config.site_key}
        if expected_action:
            event["expectedAction"] = expected_action

        try:
            response = await self._http.post(
                self._config.assessment_url,
                params={"key": self._config.api_key},
                json={"event": event},
            )
        except httpx.HTTPError as e:
            raise RiskCheckError(f"reCAPTCHA assessment failed: {e}", retriable=True) from e

        if response.status_code >= 400:
            raise RiskCheckError(f"reCAPTCHA assessment rejected ({response.status_code}): {response.text[:200]}")
        try:
            body = response.json()
        except ValueError as e:
            raise RiskCheckError("reCAPTCHA returned a non-JSON body") from e

        assessment = RiskAssessment.from_wire(body)
        logger.info(
            "reCAPTCHA action=%s valid=%s score=%.2f reasons=%s",
            assessment.action,
            assessment.valid,
            assessment.score,
            ",".join(assessment.reasons) or "-",
        )
        return assessment

    async def check(self, token: Optional[str], expected_action: Optional[str] = None) -> Optional[RiskAssessment]:
        """
        Gate a sensitive operation. No-op when disabled.

        Raises:
            RiskCheckError: Missing token, or the assessment did not pass.
        """
        if not self.enabled:
            return None
        if not token:
            raise RiskCheckError("reCAPTCHA token is required")
        assessment = await self.assess(token, expected_action)
        if not assessment.passes(self._config.min_score, expected_action):
            raise RiskCheckError(
                f"reCAPTCHA check failed (valid={assessment.valid}, score={assessment.score:.2f})"
            )
        return assessment
