"""
One-time verification codes gating invoice and receipt queries.

Lifecycle of a code:
  1. issue(): only for an email the ERP register holds for the client;
     random numeric code, short expiry; older unused codes for the same
     (email, client_code, query_type) are superseded, not deleted
  2. verify(): single use, enforced by a conditional UPDATE on used = false
  3. A consumed code grants query access for a limited window (has_grant)

Codes that expired longer ago than the retention window are purged on
every issue, so the table stays bounded.
"""

import logging
import secrets
import string
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gateway.engine.errors import ValidationError, VerificationError
from gateway.erp.clients import ClientDirectory
from gateway.models.enums import QueryType, VerificationFailure
from gateway.models.records import VerificationCode

logger = logging.getLogger("payment_gateway.verification")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands datetimes back naive; they are stored as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class VerificationCodeService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ttl: timedelta = timedelta(minutes=2),
        code_length: int = 4,
        retention: timedelta = timedelta(hours=24),
        grant_window: timedelta = timedelta(minutes=30),
        clock: Callable[[], datetime] = _utcnow,
        clients: Optional[ClientDirectory] = None,
    ):
        self._session_factory = session_factory
        self._clients = clients
        self._ttl = ttl
        self._code_length = code_length
        self._retention = retention
        self._grant_window = grant_window
        self._clock = clock

    @property
    def ttl_minutes(self) -> int:
        return int(self._ttl.total_seconds() // 60)

    def _generate(self) -> str:
        return "".join(secrets.choice(string.digits) for _ in range(self._code_length))

    async def issue(self, email: str, client_code: str, query_type: QueryType) -> VerificationCode:
        """
        Create a code for (email, client_code, query_type).

        Raises:
            ValidationError: Email or client code missing.
            VerificationError: reason email_not_registered when the client
                register does not hold this email.
        """
        email = _normalize_email(email)
        if not email or not client_code:
            raise ValidationError("Email and client code are required")
        if self._clients is not None and not await self._clients.is_registered_email(client_code, email):
            logger.warning("Verification code refused: %s is not registered for client %s", email, client_code)
            raise VerificationError(VerificationFailure.EMAIL_NOT_REGISTERED)

        now = self._clock()
        async with self._session_factory() as session:
            await self._purge(session, now)

            superseded = await session.execute(
                update(VerificationCode)
                .where(
                    VerificationCode.email == email,
                    VerificationCode.client_code == client_code,
                    VerificationCode.query_type == query_type.value,
                    VerificationCode.used.is_(False),
                    VerificationCode.superseded_at.is_(None),
                    VerificationCode.expires_at > now,
                )
                .values(superseded_at=now)
            )

            record = VerificationCode(
                email=email,
                code=self._generate(),
                client_code=client_code,
                query_type=query_type.value,
                created_at=now,
                expires_at=now + self._ttl,
                used=False,
            )
            session.add(record)
            await session.commit()

        logger.info(
            "Verification code issued for %s client=%s type=%s (superseded %d)",
            email,
            client_code,
            query_type.value,
            superseded.rowcount or 0,
        )
        return record

    async def verify(self, email: str, code: str, client_code: str, query_type: QueryType) -> VerificationCode:
        """
        Consume a code.

        Raises:
            VerificationError: reason is not_found, mismatch, already_used or expired.
        """
        email = _normalize_email(email)
        code = (code or "").strip()
        now = self._clock()

        async with self._session_factory() as session:
            record = await session.scalar(
                select(VerificationCode)
                .where(
                    VerificationCode.email == email,
                    VerificationCode.code == code,
                    VerificationCode.client_code == client_code,
                    VerificationCode.query_type == query_type.value,
                )
                .order_by(VerificationCode.created_at.desc(), VerificationCode.id.desc())
                .limit(1)
            )
            if record is None:
                issued_elsewhere = await session.scalar(
                    select(VerificationCode.id)
                    .where(VerificationCode.email == email, VerificationCode.code == code)
                    .limit(1)
                )
                if issued_elsewhere is not None:
                    raise VerificationError(VerificationFailure.MISMATCH)
                raise VerificationError(VerificationFailure.NOT_FOUND)
            if record.used:
                raise VerificationError(VerificationFailure.ALREADY_USED)
            if record.superseded_at is not None or _aware(record.expires_at) <= now:
                raise VerificationError(VerificationFailure.EXPIRED)

            consumed = await session.execute(
                update(VerificationCode)
                .where(VerificationCode.id == record.id, VerificationCode.used.is_(False))
                .values(used=True, used_at=now)
            )
            if consumed.rowcount != 1:
                await session.rollback()
                raise VerificationError(VerificationFailure.ALREADY_USED)
            await session.commit()

        record.used = True
        record.used_at = now
        logger.info("Verification code consumed for %s client=%s type=%s", email, client_code, query_type.value)
        return record

    async def has_grant(self, email: str, client_code: str, query_type: QueryType) -> bool:
        """True if a code for this tuple was consumed within the grant window."""
        since = self._clock() - self._grant_window
        async with self._session_factory() as session:
            found = await session.scalar(
                select(VerificationCode.id)
                .where(
                    VerificationCode.email == _normalize_email(email),
                    VerificationCode.client_code == client_code,
                    VerificationCode.query_type == query_type.value,
                    VerificationCode.used.is_(True),
                    VerificationCode.used_at >= since,
                )
                .limit(1)
            )
        return found is not None

    async def purge_expired(self) -> int:
        async with self._session_factory() as session:
            removed = await self._purge(session, self._clock())
            await session.commit()
        return removed

    async def _purge(self, session: AsyncSession, now: datetime) -> int:
        result = await session.execute(
            delete(VerificationCode).where(VerificationCode.expires_at < now - self._retention)
        )
        if result.rowcount:
            logger.info("Purged %d expired verification codes", result.rowcount)
        return result.rowcount or 0
