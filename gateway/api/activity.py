"""
Frontend activity tracking.

POST /activity/track      Store one browser-side event.
GET  /activity/suspicious IPs with repeated failed payments in a window.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy import func, select

from gateway.api.deps import GatewayServices, get_services
from gateway.api.middleware import client_ip
from gateway.models.records import ActivityLog

router = APIRouter(prefix="/activity", tags=["activity"])

FAILED_EVENTS = ("payment_failed", "payment_declined", "payment_rejected")
FAILED_STATUSES = ("failed", "declined", "rejected", "error")


class TrackIn(BaseModel):
    event_type: str
    fingerprint: Optional[str] = None
    time_zone: Optional[str] = None
    screen_resolution: Optional[str] = None
    browser_language: Optional[str] = None
    client_id: Optional[str] = None
    session_id: Optional[str] = None
    payment_method: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    payment_status: Optional[str] = None
    error_code: Optional[str] = None
    additional_data: Optional[dict[str, Any]] = None


class SuspiciousIp(BaseModel):
    ip_address: str
    failures: int
    last_seen: Optional[str]


@router.post("/track")
async def track(body: TrackIn, request: Request, services: GatewayServices = Depends(get_services)):
    fields = body.model_dump(exclude={"event_type", "additional_data"}, exclude_none=True)
    event_id = await services.audit.record(
        body.event_type,
        details=body.additional_data,
        ip_address=client_ip(request),
        user_agent=(request.headers.get("user-agent") or "")[:500] or None,
        **fields,
    )
    return {"recorded": event_id is not None, "id": event_id}


@router.get("/suspicious", response_model=list[SuspiciousIp])
async def suspicious(
    hours: int = Query(24, ge=1, le=24 * 30),
    min_failures: int = Query(3, ge=1),
    services: GatewayServices = Depends(get_services),
):
    """IPs with at least min_failures failed or declined payment events in the last `hours`."""
    since = datetime.now(timezone.utc) - timedelta(hours=hours)
    failures = func.count(ActivityLog.id)
    stmt = (
        select(ActivityLog.ip_address, failures, func.max(ActivityLog.created_at_utc))
        .where(
            ActivityLog.ip_address.is_not(None),
            ActivityLog.created_at_utc >= since,
            ActivityLog.event_type.in_(FAILED_EVENTS) | ActivityLog.payment_status.in_(FAILED_STATUSES),
        )
        .group_by(ActivityLog.ip_address)
        .having(failures >= min_failures)
        .order_by(failures.desc())
    )
    async with services.session_factory() as session:
        rows = (await session.execute(stmt)).all()
    return [
        SuspiciousIp(ip_address=ip, failures=count, last_seen=last.isoformat() if last else None)
        for ip, count, last in rows
    ]
