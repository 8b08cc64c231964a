"""
Append-only audit trail for payment operations.

Every state change of a payment attempt, every verification code issued or
consumed and every tracked frontend event gets one ActivityLog row:
  - Event type (what happened)
  - Attempt ID (which payment attempt, if any)
  - Payment method, amount, status, error code
  - Additional data (JSON context)
  - Timestamp (UTC)

Rows are never modified or deleted. The sink writes in its own session so
that a failing audit write can never roll back or abort a payment; when the
store is unavailable the event is kept in the application log instead.
"""

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gateway.models.records import ActivityLog

logger = logging.getLogger("payment_gateway.audit")

_COLUMNS = {
    "fingerprint",
    "ip_address",
    "user_agent",
    "time_zone",
    "screen_resolution",
    "browser_language",
    "client_id",
    "session_id",
    "payment_method",
    "amount",
    "currency",
    "payment_status",
    "error_code",
}


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    return str(value)


def dumps(details: Optional[dict[str, Any]]) -> Optional[str]:
    if not details:
        return None
    return json.dumps(details, default=_json_default, ensure_ascii=False)


class AuditSink:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def record(
        self,
        event_type: str,
        attempt_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        **fields: Any,
    ) -> Optional[int]:
        """
        Append one audit event.

        Known ActivityLog columns may be passed as keyword arguments; anything
        else belongs in details. Never raises: on a storage failure the event
        is logged locally and None is returned.

        Returns:
            The new row id, or None if the event could not be stored.
        """
        unknown = set(fields) - _COLUMNS
        if unknown:
            details = {**(details or {}), **{k: fields.pop(k) for k in unknown}}

        payload = dumps(details)
        logger.info(
            "AUDIT | attempt=%s event=%s | %s",
            attempt_id or "-",
            event_type,
            payload[:500] if payload else "",
        )

        entry = ActivityLog(
            event_type=event_type,
            attempt_id=attempt_id,
            additional_data=payload,
            created_at_utc=datetime.now(timezone.utc),
            **{k: _column_value(v) for k, v in fields.items()},
        )
        try:
            async with self._session_factory() as session:
                session.add(entry)
                await session.commit()
                return entry.id
        except SQLAlchemyError:
            logger.exception(
                "AUDIT FALLBACK | attempt=%s event=%s | %s",
                attempt_id or "-",
                event_type,
                payload or "",
            )
            return None


def _column_value(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, Decimal)):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    if hasattr(value, "value"):
        return value.value
    return str(value)


def append_note(existing_notes: Optional[str], message: str) -> str:
    """
    Append a timestamped note to a payment attempt's notes field.

    Builds a running log of significant events on each attempt so support
    can read its history without querying the audit table.
    """
    prefix = f"[{datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M UTC')}] "
    new_note = prefix + message
    if not existing_notes:
        return new_note
    return f"{existing_notes}\n{new_note}"
