"""
ACH proof-of-payment registry.

Customers who pay by bank transfer upload a scan of the transfer. An
operator later marks each proof processed or rejected; both are terminal.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gateway.audit.logger import AuditSink
from gateway.engine.allocation import to_decimal
from gateway.engine.errors import ACHTransitionError, ErpError, ValidationError
from gateway.erp.base import ErpClient
from gateway.models.charge import ReceiptLine, ReceiptRecord
from gateway.models.enums import ACHProofStatus, FailureKind
from gateway.models.records import ACHProof

logger = logging.getLogger("payment_gateway.ach")

ALLOWED_CONTENT_TYPES = {"image/jpeg", "image/jpg", "image/png", "image/gif", "application/pdf"}
DEFAULT_MAX_BYTES = 5 * 1024 * 1024
ACH_PAY_MODE = "ACH"


class ACHProofRegistry:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        audit: AuditSink,
        erp: Optional[ErpClient] = None,
        max_bytes: int = DEFAULT_MAX_BYTES,
    ):
        self._session_factory = session_factory
        self._audit = audit
        self._erp = erp
        self._max_bytes = max_bytes

    async def register(
        self,
        client_code: str,
        invoice_number: str,
        company_code: str,
        transaction_number: str,
        amount: Decimal,
        transaction_date: datetime,
        file_name: str,
        content_type: str,
        content: bytes,
        notes: Optional[str] = None,
        registered_by: Optional[str] = None,
    ) -> ACHProof:
        content_type = (content_type or "").lower()
        if not content:
            raise ValidationError("The proof of payment file is required")
        if content_type not in ALLOWED_CONTENT_TYPES:
            raise ValidationError(
                f"File type {content_type or '?'} not allowed. Allowed: JPG, PNG, GIF, PDF"
            )
        if len(content) > self._max_bytes:
            raise ValidationError(f"File too large ({len(content)} bytes, max {self._max_bytes})")
        amount = to_decimal(amount)
        if amount <= 0:
            raise ValidationError("Transaction amount must be positive", kind=FailureKind.INVALID_AMOUNT)
        for label, value in (
            ("client code", client_code),
            ("invoice number", invoice_number),
            ("company code", company_code),
            ("transaction number", transaction_number),
        ):
            if not value or not value.strip():
                raise ValidationError(f"The {label} is required")

        proof = ACHProof(
            client_code=client_code.strip(),
            invoice_number=invoice_number.strip(),
            company_code=company_code.strip(),
            transaction_number=transaction_number.strip(),
            proof=content,
            file_name=(file_name or "comprobante")[:100],
            content_type=content_type,
            file_size=len(content),
            amount=amount,
            transaction_date=transaction_date,
            notes=notes,
            registered_by=registered_by,
            status=ACHProofStatus.PENDING.value,
            registered_at=datetime.now(timezone.utc),
        )
        async with self._session_factory() as session:
            session.add(proof)
            await session.commit()

        logger.info(
            "ACH proof %d registered: client=%s invoice=%s amount=%s",
            proof.id,
            proof.client_code,
            proof.invoice_number,
            amount,
        )
        await self._audit.record(
            "ach_proof_registered",
            details={"proof_id": proof.id, "client_code": proof.client_code, "invoice": proof.invoice_number},
            payment_method="ach",
            amount=amount,
            payment_status=proof.status,
        )
        return proof

    async def list_proofs(
        self,
        client_code: Optional[str] = None,
        company_code: Optional[str] = None,
        status: Optional[ACHProofStatus] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[ACHProof]:
        stmt = select(ACHProof)
        if client_code:
            stmt = stmt.where(ACHProof.client_code == client_code)
        if company_code:
            stmt = stmt.where(ACHProof.company_code == company_code)
        if status is not None:
            stmt = stmt.where(ACHProof.status == status.value)
        if date_from is not None:
            stmt = stmt.where(ACHProof.registered_at >= date_from)
        if date_to is not None:
            stmt = stmt.where(ACHProof.registered_at <= date_to)
        stmt = stmt.order_by(ACHProof.registered_at.desc(), ACHProof.id.desc()).limit(limit)

        async with self._session_factory() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def get(self, proof_id: int) -> Optional[ACHProof]:
        async with self._session_factory() as session:
            return await session.get(ACHProof, proof_id)

    async def transition(
        self,
        proof_id: int,
        new_status: ACHProofStatus,
        rejection_reason: Optional[str] = None,
    ) -> Optional[ACHProof]:
        """
        Move a pending proof to processed or rejected.

        Returns:
            The updated proof, or None if it does not exist.

        Raises:
            ACHTransitionError: The proof is already terminal, or the target is pending.
        """
        if not new_status.is_terminal:
            raise ACHTransitionError(f"Cannot move a proof to {new_status.value}")

        async with self._session_factory() as session:
            proof = await session.get(ACHProof, proof_id)
            if proof is None:
                return None
            current = ACHProofStatus(proof.status)
            if current.is_terminal:
                raise ACHTransitionError(
                    f"ACH proof {proof_id} is already {current.value} and cannot change"
                )
            values = {"status": new_status.value, "processed_at": datetime.now(timezone.utc)}
            if new_status is ACHProofStatus.REJECTED and rejection_reason:
                values["rejection_reason"] = rejection_reason[:500]
            result = await session.execute(
                update(ACHProof)
                .where(ACHProof.id == proof_id, ACHProof.status == ACHProofStatus.PENDING.value)
                .values(**values)
            )
            if result.rowcount != 1:
                await session.rollback()
                raise ACHTransitionError(f"ACH proof {proof_id} changed concurrently")
            await session.commit()
            await session.refresh(proof)

        logger.info("ACH proof %d moved %s -> %s", proof_id, current.value, new_status.value)
        await self._audit.record(
            f"ach_proof_{new_status.value}",
            details={"proof_id": proof_id, "reason": rejection_reason},
            payment_method="ach",
            amount=proof.amount,
            payment_status=new_status.value,
        )
        return proof

    async def post_receipt(self, proof: ACHProof) -> Optional[str]:
        """
        Write the proof to the ERP as an unapproved (OKFlag 0) receipt.

        The operator approves it in Hansa once the transfer shows up in the
        bank. An ERP failure is audited and leaves the proof pending.

        Returns:
            The ERP receipt number, or None if it could not be written.
        """
        if self._erp is None:
            return None
        receipt = ReceiptRecord(
            company_code=proof.company_code,
            client_code=proof.client_code,
            pay_mode=ACH_PAY_MODE,
            reference=proof.transaction_number,
            transaction_date=proof.transaction_date.strftime("%Y-%m-%d"),
            lines=[ReceiptLine(invoice_number=proof.invoice_number, amount=Decimal(proof.amount))],
            ok_flag="0",
        )
        try:
            receipt_number = await self._erp.create_receipt(receipt)
        except ErpError as e:
            logger.warning("ERP receipt for ACH proof %d failed: %s", proof.id, e)
            await self._audit.record(
                "ach_receipt_failed",
                details={"proof_id": proof.id, "error": str(e), "code": e.code},
                payment_method="ach",
                amount=proof.amount,
                error_code=e.kind.value,
            )
            return None

        await self._audit.record(
            "ach_receipt_created",
            details={"proof_id": proof.id, "receipt_number": receipt_number},
            payment_method="ach",
            amount=proof.amount,
            payment_status=proof.status,
        )
        return receipt_number
