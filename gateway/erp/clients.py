"""
Local cache of the ERP client register.

Client lookups (by name, VAT number or mobile) and the customer-email
fallback used by the orchestrator read from this table instead of hitting
Hansa on every request. sync_clients() refreshes it from CUVc.
"""

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gateway.erp.base import ErpClient
from gateway.models.records import LocalClient

logger = logging.getLogger("payment_gateway.clients")

PANAMA_PREFIX = "507"
SYNC_INTERVAL = timedelta(hours=1)


def normalize_phone(phone: Optional[str]) -> str:
    """Digits only, without the Panama country prefix."""
    digits = re.sub(r"\D", "", phone or "")
    if digits.startswith(PANAMA_PREFIX) and len(digits) > 8:
        digits = digits[len(PANAMA_PREFIX):]
    return digits


class ClientDirectory:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], erp: ErpClient):
        self._session_factory = session_factory
        self._erp = erp

    async def last_synced_at(self) -> Optional[datetime]:
        async with self._session_factory() as session:
            return await session.scalar(select(func.max(LocalClient.updated_at)))

    async def sync_clients(self, force: bool = False) -> int:
        """
        Upsert the ERP client register into local_clients.

        Skipped when the last sync was less than an hour ago, unless forced.

        Returns:
            Number of clients written, or 0 when skipped.
        """
        if not force:
            last = await self.last_synced_at()
            if last is not None:
                if last.tzinfo is None:
                    last = last.replace(tzinfo=timezone.utc)
                if datetime.now(timezone.utc) - last < SYNC_INTERVAL:
                    logger.info("Client sync skipped; last sync at %s", last.isoformat())
                    return 0

        records = await self._erp.list_clients()
        now = datetime.now(timezone.utc)

        async with self._session_factory() as session:
            existing = {c.code: c for c in (await session.execute(select(LocalClient))).scalars().all()}
            written = 0
            for record in records:
                if not record.code:
                    continue
                row = existing.get(record.code)
                if row is None:
                    row = LocalClient(code=record.code)
                    session.add(row)
                    existing[record.code] = row
                row.name = record.name
                row.vat_nr = record.vat_nr
                row.email = record.email
                row.mobile = normalize_phone(record.mobile)
                row.closed = record.closed
                row.updated_at = now
                written += 1
            await session.commit()

        logger.info("Synced %d clients from the ERP", written)
        return written

    async def search_clients(
        self,
        query: Optional[str] = None,
        vat_nr: Optional[str] = None,
        mobile: Optional[str] = None,
        include_closed: bool = False,
        limit: int = 50,
    ) -> list[LocalClient]:
        stmt = select(LocalClient)
        if query:
            like = f"%{query.strip()}%"
            stmt = stmt.where(or_(LocalClient.name.ilike(like), LocalClient.code.ilike(like)))
        if vat_nr:
            stmt = stmt.where(LocalClient.vat_nr == vat_nr.strip())
        if mobile:
            stmt = stmt.where(LocalClient.mobile == normalize_phone(mobile))
        if not include_closed:
            stmt = stmt.where(LocalClient.closed != "1")
        stmt = stmt.order_by(LocalClient.name).limit(limit)

        async with self._session_factory() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def get_client(self, code: str) -> Optional[LocalClient]:
        async with self._session_factory() as session:
            return await session.scalar(select(LocalClient).where(LocalClient.code == code))

    async def client_emails(self, code: str) -> list[str]:
        client = await self.get_client(code)
        if client is None or not client.email:
            return []
        # The register sometimes holds several addresses separated by ; or ,
        return [address.strip() for address in re.split(r"[;,]", client.email) if address.strip()]

    async def client_email(self, code: str) -> Optional[str]:
        emails = await self.client_emails(code)
        return emails[0] if emails else None

    async def is_registered_email(self, code: str, email: str) -> bool:
        """
        True if email is one of the addresses the register holds for code.

        A client missing from the local cache triggers a sync first, so new
        clients are found once the hourly refresh allows it.
        """
        if await self.get_client(code) is None:
            await self.sync_clients()
        wanted = (email or "").strip().lower()
        return bool(wanted) and wanted in (address.lower() for address in await self.client_emails(code))
