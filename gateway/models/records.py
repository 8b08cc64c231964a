"""SQLAlchemy models for the payment gateway's local store."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    LargeBinary,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


class PaymentAttempt(Base):
    """
    One orchestrated charge against a processor.

    Tracks the full lifecycle: validation → authentication → charge →
    ERP reconciliation → notification. The idempotency_key (PayPal order id)
    prevents a second capture or a second receipt for the same order.
    """

    __tablename__ = "payment_attempts"

    id = Column(String(12), primary_key=True, default=_new_id)
    idempotency_key = Column(String(120), nullable=True, unique=True)
    provider = Column(String(20), nullable=False)
    company_code = Column(String(10), nullable=False)
    client_code = Column(String(50), nullable=True, index=True)
    customer_email = Column(String(200), nullable=True)
    customer_name = Column(String(200), nullable=True)
    amount = Column(Numeric(14, 2), nullable=False)
    currency = Column(String(3), default="USD")
    allocations = Column(Text, nullable=False)  # JSON: [{"invoice_number": ..., "amount": "..."}]

    state = Column(String(30), nullable=False, default="received")
    reference = Column(String(64), nullable=True, index=True)  # Our per-attempt provider reference
    provider_transaction_id = Column(String(100), nullable=True, index=True)
    charge_status = Column(String(20), nullable=True)
    authorization_code = Column(String(50), nullable=True)
    response_code = Column(String(50), nullable=True)
    raw_payload = Column(Text, nullable=True)  # JSON, kept for audit
    receipt_number = Column(String(50), nullable=True)
    failure_kind = Column(String(40), nullable=True)
    failure_message = Column(Text, nullable=True)
    notification_sent = Column(Boolean, default=False)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class ActivityLog(Base):
    """
    Append-only activity/audit event.

    Written by the orchestrator for every state change and by the frontend
    tracking endpoint. Never modified or deleted.
    """

    __tablename__ = "activity_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(String(50), nullable=False, index=True)
    attempt_id = Column(String(12), ForeignKey("payment_attempts.id"), nullable=True, index=True)
    fingerprint = Column(String(100), nullable=True)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(String(500), nullable=True)
    time_zone = Column(String(50), nullable=True)
    screen_resolution = Column(String(20), nullable=True)
    browser_language = Column(String(10), nullable=True)
    client_id = Column(String(100), nullable=True)
    session_id = Column(String(100), nullable=True)
    additional_data = Column(Text, nullable=True)  # JSON
    payment_method = Column(String(50), nullable=True)
    amount = Column(Numeric(14, 2), nullable=True)
    currency = Column(String(10), nullable=True)
    payment_status = Column(String(50), nullable=True)
    error_code = Column(String(100), nullable=True)
    created_at_utc = Column(DateTime(timezone=True), default=_utcnow, index=True)


class RequestLog(Base):
    """One row per HTTP request served."""

    __tablename__ = "request_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ip_address = Column(String(45), nullable=False)
    user_agent = Column(String(500), nullable=True)
    method = Column(String(10), nullable=False)
    path = Column(String(500), nullable=False)
    query_string = Column(String(1000), nullable=True)
    status_code = Column(Integer, nullable=True)
    response_time_ms = Column(Integer, nullable=True)
    request_time_utc = Column(DateTime(timezone=True), default=_utcnow)
    client_id = Column(String(100), nullable=True)


class LocalClient(Base):
    """Local cache of the ERP client register (CUVc)."""

    __tablename__ = "local_clients"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(50), nullable=False, unique=True)
    name = Column(String(200), nullable=False, default="")
    vat_nr = Column(String(50), nullable=False, default="", index=True)
    email = Column(String(200), nullable=False, default="")
    mobile = Column(String(30), nullable=False, default="", index=True)
    closed = Column(String(5), nullable=False, default="0")
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class VerificationCode(Base):
    """
    One-time code gating invoice/receipt queries.

    Consumed exactly once. Issuing a new code for the same
    (email, client_code, query_type) supersedes older unused codes instead
    of deleting them.
    """

    __tablename__ = "verification_codes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(200), nullable=False, index=True)
    code = Column(String(10), nullable=False)
    client_code = Column(String(50), nullable=False)
    query_type = Column(String(20), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    used = Column(Boolean, nullable=False, default=False)
    used_at = Column(DateTime(timezone=True), nullable=True)
    superseded_at = Column(DateTime(timezone=True), nullable=True)


class ACHProof(Base):
    """Scanned proof of an ACH transfer, reviewed by an operator."""

    __tablename__ = "ach_proofs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    client_code = Column(String(50), nullable=False, index=True)
    invoice_number = Column(String(100), nullable=False)
    company_code = Column(String(10), nullable=False, index=True)
    transaction_number = Column(String(50), nullable=False)
    proof = Column(LargeBinary, nullable=False)
    file_name = Column(String(100), nullable=False)
    content_type = Column(String(50), nullable=False)
    file_size = Column(Integer, nullable=False)
    amount = Column(Numeric(14, 2), nullable=False)
    transaction_date = Column(DateTime(timezone=True), nullable=False)
    registered_at = Column(DateTime(timezone=True), default=_utcnow, index=True)
    notes = Column(String(500), nullable=True)
    status = Column(String(20), nullable=False, default="pending", index=True)
    registered_by = Column(String(100), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    rejection_reason = Column(String(500), nullable=True)


class OfflineReceipt(Base):
    """
    A receipt that could not be written to the ERP after the customer was charged.

    Stays pending until an operator reconciles it by hand.
    """

    __tablename__ = "offline_receipts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    attempt_id = Column(String(12), ForeignKey("payment_attempts.id"), nullable=True, index=True)
    company_code = Column(String(10), nullable=False)
    client_code = Column(String(50), nullable=True)
    pay_mode = Column(String(10), nullable=False)
    reference = Column(String(100), nullable=False)
    transaction_date = Column(String(10), nullable=False)  # YYYY-MM-DD
    lines = Column(Text, nullable=False)  # JSON
    error = Column(Text, nullable=True)
    pending = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
