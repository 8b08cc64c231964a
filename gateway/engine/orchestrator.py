"""
Payment orchestrator: the core execution engine.

Drives one customer payment from request to receipt. The flow for each
attempt:

  1. Validate the invoice allocation and request fields   -> validated
  2. Resolve processor credentials, acquire a token       -> authenticated
  3. Submit the charge (never retried)                    -> charged
  4. Write one receipt to the ERP, one line per invoice   -> reconciled
  5. Send the confirmation email (best-effort)            -> completed

Failures before the charge end in rejected/failed with no money moved.
A charge that succeeds but cannot be written to the ERP ends in failed
with kind erp_write_error: the processor transaction id stays in the audit
trail and an offline receipt is queued for manual reconciliation. No
refund is ever issued automatically.

Idempotency guarantees:
  - PayPal captures are keyed by order id; a second request for an order
    that was already charged replays the stored outcome
  - Cobalt and Yappy attempts use a fresh processor reference every time
  - Once a charge has been submitted, caller cancellation does not stop
    the attempt from reaching a terminal state
"""

import asyncio
import copy
import json
import logging
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gateway.audit.logger import AuditSink, append_note
from gateway.engine.allocation import validate_allocation
from gateway.engine.errors import (
    AuthFailure,
    CancelledBeforeCharge,
    ConfigurationError,
    Declined,
    ErpWriteError,
    GatewayError,
    GatewayTimeout,
    ProviderError,
    ProviderRejected,
    ValidationError,
)
from gateway.engine.locks import KeyedLocks
from gateway.engine.retry import BASE_DELAY, MAX_RETRIES, with_retry
from gateway.erp.base import ErpClient
from gateway.erp.clients import ClientDirectory
from gateway.models.charge import (
    ChargeRequest,
    ChargeResult,
    PaymentOutcome,
    PayPalOrder,
    ProviderCredentials,
    ProviderToken,
    ReceiptLine,
    ReceiptRecord,
)
from gateway.models.enums import ChargeStatus, FailureKind, PaymentMethod, PaymentState
from gateway.models.records import OfflineReceipt, PaymentAttempt
from gateway.notifications.email import EmailSender
from gateway.providers.base import ProviderClient
from gateway.providers.credentials import CredentialResolver
from gateway.providers.paypal import payer_name
from gateway.providers.token_cache import TokenCache
from gateway.providers.yappy import IPN_EXECUTED, IPN_STATUSES, verify_ipn

logger = logging.getLogger("payment_gateway.orchestrator")

# Hansa dates receipts in Panama local time (UTC-5, no DST)
ERP_TZ = timezone(timedelta(hours=-5))

RECEIPT_COMMENTS = {
    PaymentMethod.COBALT: "TARJETA DE CREDITO/DEBITO POR COBALT",
    PaymentMethod.PAYPAL: "Pago PayPal: {reference}",
    PaymentMethod.YAPPY: "Pago Yappy: {reference}",
}

DisconnectCheck = Callable[[], Awaitable[bool]]


def new_reference() -> str:
    """Fresh processor-side reference: 15 uppercase alphanumerics."""
    return uuid.uuid4().hex[:15].upper()


def _serialize_allocations(request: ChargeRequest) -> str:
    return json.dumps(
        [{"invoice_number": a.invoice_number, "amount": str(a.amount)} for a in request.allocations]
    )


def _receipt_lines(attempt: PaymentAttempt) -> list[ReceiptLine]:
    return [
        ReceiptLine(invoice_number=row["invoice_number"], amount=Decimal(row["amount"]))
        for row in json.loads(attempt.allocations)
    ]


def build_receipt(
    method: PaymentMethod,
    company_code: str,
    client_code: Optional[str],
    reference: str,
    lines: list[ReceiptLine],
) -> ReceiptRecord:
    return ReceiptRecord(
        company_code=company_code,
        client_code=client_code,
        pay_mode=method.pay_mode,
        reference=reference,
        transaction_date=datetime.now(ERP_TZ).strftime("%Y-%m-%d"),
        lines=lines,
        comment=RECEIPT_COMMENTS[method].format(reference=reference),
    )


def charge_error(method: PaymentMethod, result: ChargeResult) -> Optional[ProviderError]:
    """The error a declined or failed charge result maps to, or None."""
    if result.status is ChargeStatus.DECLINED:
        return Declined(f"{method.label} declined the charge", result=result)
    if result.status is ChargeStatus.ERROR:
        return ProviderRejected(f"{method.label} returned an error for the charge", code=result.response_code)
    return None


def _charge_from_attempt(attempt: PaymentAttempt) -> Optional[ChargeResult]:
    if not attempt.charge_status:
        return None
    return ChargeResult(
        provider=PaymentMethod(attempt.provider),
        provider_transaction_id=attempt.provider_transaction_id or "",
        status=ChargeStatus(attempt.charge_status),
        authorization_code=attempt.authorization_code,
        response_code=attempt.response_code,
        raw_payload=json.loads(attempt.raw_payload) if attempt.raw_payload else {},
    )


def outcome_of(attempt: PaymentAttempt, replayed: bool = False) -> PaymentOutcome:
    return PaymentOutcome(
        attempt_id=attempt.id,
        state=PaymentState(attempt.state),
        charge=_charge_from_attempt(attempt),
        receipt_number=attempt.receipt_number,
        notification_sent=bool(attempt.notification_sent),
        failure_kind=attempt.failure_kind,
        message=attempt.failure_message or "",
        replayed=replayed,
    )


def error_for(outcome: PaymentOutcome) -> GatewayError:
    """Rebuild the typed error a failed attempt originally raised."""
    message = outcome.message or f"Payment {outcome.attempt_id} failed"
    kind = FailureKind(outcome.failure_kind) if outcome.failure_kind else FailureKind.PROVIDER_REJECTED
    if kind is FailureKind.DECLINED:
        error: GatewayError = Declined(message, result=outcome.charge)
    elif kind is FailureKind.ERP_WRITE_ERROR and outcome.charge is not None:
        error = ErpWriteError(message, result=outcome.charge)
    elif kind is FailureKind.PROVIDER_REJECTED:
        error = ProviderRejected(message, code=outcome.charge.response_code if outcome.charge else None)
    else:
        error = GatewayError(message, kind=kind)
    error.outcome = outcome
    return error


class PaymentOrchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        providers: dict[PaymentMethod, ProviderClient],
        credentials: CredentialResolver,
        token_cache: TokenCache,
        erp: ErpClient,
        audit: AuditSink,
        email: Optional[EmailSender] = None,
        clients: Optional[ClientDirectory] = None,
        provider_timeout: float = 30.0,
        erp_timeout: float = 30.0,
        auth_retries: int = MAX_RETRIES,
        retry_delay: float = BASE_DELAY,
    ):
        self._session_factory = session_factory
        self._providers = providers
        self._credentials = credentials
        self._tokens = token_cache
        self._erp = erp
        self._audit = audit
        self._email = email
        self._clients = clients
        self._provider_timeout = provider_timeout
        self._erp_timeout = erp_timeout
        self._auth_retries = auth_retries
        self._retry_delay = retry_delay
        self._keys = KeyedLocks()

    # ------------------------------------------------------------------ #
    # Entry points
    # ------------------------------------------------------------------ #

    async def process(
        self,
        request: ChargeRequest,
        is_disconnected: Optional[DisconnectCheck] = None,
    ) -> PaymentOutcome:
        """
        Run one payment attempt to a terminal (or awaiting) state.

        Returns:
            The outcome for completed, charged-and-replayed or awaiting
            confirmation attempts.

        Raises:
            GatewayError: Classified failure; `outcome` carries the recorded attempt.
        """
        key = request.idempotency_key
        if key is None:
            return await self._process(request, is_disconnected)
        async with self._keys.hold(key):
            return await self._process(request, is_disconnected)

    async def create_paypal_order(
        self,
        request: ChargeRequest,
        return_url: str,
        cancel_url: str,
    ) -> PayPalOrder:
        """Validate and open a PayPal order. No money moves until capture."""
        if request.payment_method is not PaymentMethod.PAYPAL:
            raise ValidationError("Only PayPal requests can open an order")
        validate_allocation(request.amount, request.allocations, request.currency)
        credentials = self._credentials.resolve(PaymentMethod.PAYPAL, request.company_code)
        provider = self._provider(PaymentMethod.PAYPAL)
        create_order = getattr(provider, "create_order", None)
        if create_order is None:
            raise ConfigurationError("The PayPal provider cannot open orders")

        token = await self._acquire_token(provider, credentials)
        try:
            order = await self._timed(self._provider_timeout, create_order, token, request, return_url, cancel_url)
        except AuthFailure:
            self._tokens.invalidate((PaymentMethod.PAYPAL, request.company_code))
            raise

        await self._audit.record(
            "paypal_order_created",
            details={
                "order_id": order.order_id,
                "company_code": request.company_code,
                "client_code": request.customer.client_code,
                "invoices": request.invoice_numbers,
            },
            payment_method=PaymentMethod.PAYPAL.value,
            amount=request.amount,
            currency=request.currency,
            payment_status=order.status,
        )
        return order

    async def confirm_yappy_order(
        self,
        order_id: str,
        status: str,
        confirmation_number: str = "",
        domain: str = "",
        hash_value: str = "",
    ) -> PaymentOutcome:
        """
        Continue a Yappy attempt from its IPN callback.

        E (executed) reconciles and notifies; R, C and X fail the attempt as
        declined. A repeated IPN replays the stored outcome.

        Raises:
            ValidationError: Unknown order, unknown status or bad signature.
            Declined: The customer did not complete the payment.
            ErpWriteError: Paid but the receipt could not be written.
        """
        if status not in IPN_STATUSES:
            raise ValidationError(f"Unknown Yappy status {status!r}")

        async with self._keys.hold(f"yappy:{order_id}"):
            async with self._session_factory() as session:
                attempt = await session.scalar(
                    select(PaymentAttempt).where(
                        PaymentAttempt.provider == PaymentMethod.YAPPY.value,
                        PaymentAttempt.reference == order_id,
                    )
                )
                if attempt is None:
                    raise ValidationError(f"No Yappy order {order_id}")

                credentials = self._credentials.lookup(PaymentMethod.YAPPY, attempt.company_code)
                if credentials is None or not verify_ipn(
                    order_id, status, domain, hash_value, credentials.client_secret
                ):
                    await self._audit.record(
                        "yappy_ipn_rejected",
                        attempt_id=attempt.id,
                        details={"order_id": order_id, "status": status},
                    )
                    raise ValidationError(f"Invalid IPN signature for Yappy order {order_id}")

                if attempt.state != PaymentState.AWAITING_CONFIRMATION.value:
                    return await self._replay(attempt)

                attempt.notes = append_note(
                    attempt.notes, f"Yappy IPN {IPN_STATUSES[status]} (confirmation {confirmation_number or '-'})"
                )
                if status != IPN_EXECUTED:
                    attempt.charge_status = ChargeStatus.DECLINED.value
                    attempt.response_code = status
                    error = Declined(f"Yappy payment {IPN_STATUSES[status]}", result=_charge_from_attempt(attempt))
                    await self._fail(session, attempt, error, "payment_declined")
                    raise error

                attempt.charge_status = ChargeStatus.APPROVED.value
                attempt.authorization_code = confirmation_number or None
                attempt.response_code = status
                await self._transition(session, attempt, PaymentState.CHARGED, "payment_charged", {
                    "transaction_id": attempt.provider_transaction_id,
                    "confirmation_number": confirmation_number,
                })
                attempt_id = attempt.id

            return await self._run_to_completion(self._reconcile_attempt(attempt_id))

    # ------------------------------------------------------------------ #
    # Flow
    # ------------------------------------------------------------------ #

    async def _process(
        self,
        request: ChargeRequest,
        is_disconnected: Optional[DisconnectCheck],
    ) -> PaymentOutcome:
        async with self._session_factory() as session:
            attempt = await self._start_attempt(session, request)
            if attempt.charge_status:
                return await self._replay(attempt)

            # Step 1: Validation
            try:
                validate_allocation(request.amount, request.allocations, request.currency)
                self._check_request_fields(request)
            except ValidationError as e:
                await self._fail(session, attempt, e, "payment_rejected", PaymentState.REJECTED)
                raise
            await self._transition(session, attempt, PaymentState.VALIDATED, None)

            # Step 2: Credentials
            try:
                credentials = self._credentials.resolve(request.payment_method, request.company_code)
                provider = self._provider(request.payment_method)
            except ConfigurationError as e:
                await self._fail(session, attempt, e, "payment_rejected", PaymentState.REJECTED)
                raise

            await self._abort_if_disconnected(session, attempt, is_disconnected)

            # Step 3: Token
            try:
                token = await self._acquire_token(provider, credentials)
            except GatewayError as e:
                # concurrent attempts share one token fetch and its error
                error = copy.copy(e)
                await self._fail(session, attempt, error, "payment_failed")
                raise error from e
            await self._transition(session, attempt, PaymentState.AUTHENTICATED, "payment_authenticated")

            await self._abort_if_disconnected(session, attempt, is_disconnected)

            if request.payment_method is PaymentMethod.PAYPAL:
                attempt.reference = request.order_id
            else:
                attempt.reference = new_reference()
            await session.commit()
            attempt_id = attempt.id
            reference = attempt.reference

        # Steps 4-6 run to a terminal state regardless of the caller
        return await self._run_to_completion(
            self._charge_attempt(attempt_id, provider, token, request, credentials, reference)
        )

    async def _charge_attempt(
        self,
        attempt_id: str,
        provider: ProviderClient,
        token: ProviderToken,
        request: ChargeRequest,
        credentials: ProviderCredentials,
        reference: str,
    ) -> PaymentOutcome:
        async with self._session_factory() as session:
            attempt = await session.get(PaymentAttempt, attempt_id)

            # Step 4: Charge
            try:
                result = await self._timed(
                    self._provider_timeout, provider.charge, token, request, credentials, reference
                )
            except AuthFailure as e:
                self._tokens.invalidate((request.payment_method, request.company_code))
                await self._fail(session, attempt, e, "payment_failed")
                raise
            except GatewayError as e:
                if isinstance(e, GatewayTimeout):
                    attempt.notes = append_note(attempt.notes, "Charge timed out; processor outcome unknown")
                await self._fail(session, attempt, e, "payment_failed")
                raise
            except Exception as e:
                error = ProviderRejected(f"Unexpected error submitting charge: {e}", code="unexpected")
                await self._fail(session, attempt, error, "payment_failed")
                raise error from e

        # Money may have moved: the result goes to the log before any database write
        logger.warning(
            "Charge returned for attempt %s: %s %s via %s, status=%s transaction=%s payload=%s",
            attempt_id,
            request.amount,
            request.currency,
            provider.method.value,
            result.status.value,
            result.provider_transaction_id,
            json.dumps(result.raw_payload, default=str),
        )

        db_error: Optional[SQLAlchemyError] = None
        for _ in range(2):
            try:
                pending = await self._record_charge(attempt_id, provider, request, result)
            except SQLAlchemyError as e:
                db_error = e
                logger.critical(
                    "CHARGE NOT RECORDED | attempt=%s provider=%s transaction=%s status=%s | %s",
                    attempt_id,
                    provider.method.value,
                    result.provider_transaction_id,
                    result.status.value,
                    e,
                )
                continue
            if pending is not None:
                return pending
            return await self._reconcile_attempt(attempt_id)

        return await self._settle_unrecorded(attempt_id, provider, request, result, reference, db_error)

    async def _record_charge(
        self,
        attempt_id: str,
        provider: ProviderClient,
        request: ChargeRequest,
        result: ChargeResult,
    ) -> Optional[PaymentOutcome]:
        """
        Store the charge result on the attempt in its own session.

        Returns None when the attempt is charged and ready for the ERP, or
        the awaiting-confirmation outcome for a pending order. Declines and
        processor errors are raised after being recorded.
        """
        async with self._session_factory() as session:
            attempt = await session.get(PaymentAttempt, attempt_id)
            attempt.provider_transaction_id = result.provider_transaction_id or None
            attempt.charge_status = result.status.value
            attempt.authorization_code = result.authorization_code
            attempt.response_code = result.response_code
            attempt.raw_payload = json.dumps(result.raw_payload, default=str)
            if not attempt.customer_name and request.payment_method is PaymentMethod.PAYPAL:
                attempt.customer_name = payer_name(result.raw_payload)

            error = charge_error(provider.method, result)
            if error is not None:
                event = "payment_declined" if isinstance(error, Declined) else "payment_failed"
                await self._fail(session, attempt, error, event)
                raise error
            if result.status is ChargeStatus.PENDING:
                await self._transition(session, attempt, PaymentState.AWAITING_CONFIRMATION, "payment_pending", {
                    "order_id": result.provider_transaction_id,
                })
                return outcome_of(attempt)

            await self._transition(session, attempt, PaymentState.CHARGED, "payment_charged", {
                "transaction_id": result.provider_transaction_id,
                "authorization_code": result.authorization_code,
            })
            return None

    async def _settle_unrecorded(
        self,
        attempt_id: str,
        provider: ProviderClient,
        request: ChargeRequest,
        result: ChargeResult,
        reference: str,
        db_error: SQLAlchemyError,
    ) -> PaymentOutcome:
        """
        Finish a charge the database refused to store.

        An approved charge is still written to the ERP and reported as
        reconciled. Anything else is raised with an outcome built from the
        charge result, since the attempt row is stale.
        """
        error = charge_error(provider.method, result)
        if error is None and result.status is ChargeStatus.PENDING:
            error = ErpWriteError(
                f"{provider.method.label} order {result.provider_transaction_id} is pending "
                f"but could not be recorded: {db_error}",
                result=result,
                cause=db_error,
            )
        if error is not None:
            error.outcome = PaymentOutcome(
                attempt_id=attempt_id,
                state=PaymentState.FAILED,
                charge=result,
                failure_kind=error.kind.value,
                message=str(error),
            )
            raise error

        receipt = build_receipt(
            provider.method,
            request.company_code,
            request.customer.client_code,
            result.provider_transaction_id or reference,
            [ReceiptLine(a.invoice_number, a.amount) for a in request.allocations],
        )
        try:
            receipt_number = await self._timed(self._erp_timeout, self._erp.create_receipt, receipt)
        except Exception as e:
            logger.critical(
                "CHARGED BUT UNRECONCILED | attempt=%s provider=%s transaction=%s amount=%s %s invoices=%s "
                "| no offline receipt stored (%s) | %s",
                attempt_id,
                provider.method.value,
                result.provider_transaction_id,
                request.amount,
                request.currency,
                ",".join(request.invoice_numbers),
                db_error,
                e,
            )
            await self._audit.record(
                "payment_unreconciled",
                attempt_id=attempt_id,
                details={
                    "transaction_id": result.provider_transaction_id,
                    "raw_payload": result.raw_payload,
                    "receipt_reference": receipt.reference,
                    "error": str(e),
                },
                payment_method=provider.method.value,
                amount=request.amount,
                currency=request.currency,
            )
            error = ErpWriteError(
                f"Charged {request.amount} {request.currency} via {provider.method.label} "
                f"(transaction {result.provider_transaction_id}) but neither the database nor the ERP "
                f"recorded it: {e}",
                result=result,
                cause=e,
            )
            error.outcome = PaymentOutcome(
                attempt_id=attempt_id,
                state=PaymentState.FAILED,
                charge=result,
                failure_kind=error.kind.value,
                message=str(error),
            )
            raise error from e

        logger.critical(
            "RECEIPT WRITTEN, ATTEMPT NOT RECORDED | attempt=%s transaction=%s receipt=%s | %s",
            attempt_id,
            result.provider_transaction_id,
            receipt_number,
            db_error,
        )
        await self._audit.record(
            "receipt_created",
            attempt_id=attempt_id,
            details={
                "receipt_number": receipt_number,
                "lines": len(receipt.lines),
                "transaction_id": result.provider_transaction_id,
                "attempt_recorded": False,
            },
            payment_method=provider.method.value,
            amount=request.amount,
            currency=request.currency,
        )
        return PaymentOutcome(
            attempt_id=attempt_id,
            state=PaymentState.RECONCILED,
            charge=result,
            receipt_number=receipt_number,
            message=f"Attempt record not updated: {db_error}",
        )

    async def _reconcile_attempt(self, attempt_id: str) -> PaymentOutcome:
        async with self._session_factory() as session:
            attempt = await session.get(PaymentAttempt, attempt_id)
            return await self._reconcile_and_notify(session, attempt)

    async def _reconcile_and_notify(self, session: AsyncSession, attempt: PaymentAttempt) -> PaymentOutcome:
        method = PaymentMethod(attempt.provider)
        result = _charge_from_attempt(attempt)
        reference = attempt.provider_transaction_id or attempt.reference or attempt.id
        receipt = build_receipt(method, attempt.company_code, attempt.client_code, reference, _receipt_lines(attempt))

        # Step 5: ERP receipt
        try:
            receipt_number = await self._timed(self._erp_timeout, self._erp.create_receipt, receipt)
        except Exception as e:
            error = ErpWriteError(
                f"Charged {attempt.amount} {attempt.currency} via {method.label} "
                f"(transaction {attempt.provider_transaction_id}) but the ERP receipt failed: {e}",
                result=result,
                cause=e,
            )
            await self._record_unreconciled(session, attempt, receipt, error)
            raise error from e

        attempt.receipt_number = receipt_number
        await self._transition(session, attempt, PaymentState.RECONCILED, "receipt_created", {
            "receipt_number": receipt_number,
            "lines": len(receipt.lines),
            "transaction_id": attempt.provider_transaction_id,
        })

        # Step 6: Confirmation email, best-effort
        await self._notify(session, attempt, receipt)
        await self._transition(session, attempt, PaymentState.COMPLETED, "payment_completed", {
            "receipt_number": receipt_number,
            "notification_sent": bool(attempt.notification_sent),
        })
        logger.info(
            "Attempt %s completed: %s %s via %s, receipt %s",
            attempt.id,
            attempt.amount,
            attempt.currency,
            method.value,
            receipt_number,
        )
        return outcome_of(attempt)

    async def _notify(self, session: AsyncSession, attempt: PaymentAttempt, receipt: ReceiptRecord) -> None:
        email = attempt.customer_email
        if not email and self._clients is not None and attempt.client_code:
            email = await self._clients.client_email(attempt.client_code)

        if self._email is None or not email:
            await self._event(attempt, "notification_failed", {"reason": "no recipient" if not email else "no sender"})
            return

        try:
            await self._timed(
                self._provider_timeout,
                self._email.send_payment_confirmation,
                email,
                attempt.customer_name or attempt.client_code or "",
                attempt.receipt_number,
                PaymentMethod(attempt.provider),
                receipt.lines,
                attempt.currency,
                attempt.provider_transaction_id,
            )
        except Exception as e:
            logger.warning("Confirmation email for attempt %s failed: %s", attempt.id, e)
            attempt.notes = append_note(attempt.notes, f"Confirmation email failed: {e}")
            await session.commit()
            await self._event(attempt, "notification_failed", {"to": email, "error": str(e)})
            return

        attempt.notification_sent = True
        attempt.notes = append_note(attempt.notes, f"Confirmation email sent to {email}")
        await session.commit()

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    async def _start_attempt(self, session: AsyncSession, request: ChargeRequest) -> PaymentAttempt:
        attempt = None
        key = request.idempotency_key
        if key is not None:
            attempt = await session.scalar(select(PaymentAttempt).where(PaymentAttempt.idempotency_key == key))
            if attempt is not None and attempt.charge_status:
                return attempt

        if attempt is None:
            attempt = PaymentAttempt(idempotency_key=key)
            session.add(attempt)
        else:
            attempt.notes = append_note(attempt.notes, f"Retried after {attempt.state}")

        attempt.provider = request.payment_method.value
        attempt.company_code = request.company_code
        attempt.client_code = request.customer.client_code
        attempt.customer_email = request.customer.email
        attempt.customer_name = request.customer.name
        attempt.amount = request.amount
        attempt.currency = request.currency
        attempt.allocations = _serialize_allocations(request)
        attempt.state = PaymentState.RECEIVED.value
        attempt.reference = None
        attempt.failure_kind = None
        attempt.failure_message = None
        await session.commit()

        await self._event(attempt, "payment_received", {
            "company_code": request.company_code,
            "client_code": request.customer.client_code,
            "invoices": request.invoice_numbers,
            "idempotency_key": key,
        })
        return attempt

    async def _replay(self, attempt: PaymentAttempt) -> PaymentOutcome:
        outcome = outcome_of(attempt, replayed=True)
        await self._event(attempt, "payment_replayed", {"state": attempt.state})
        logger.info("Attempt %s replayed in state %s", attempt.id, attempt.state)
        if outcome.state in (PaymentState.FAILED, PaymentState.REJECTED):
            raise error_for(outcome)
        return outcome

    def _check_request_fields(self, request: ChargeRequest) -> None:
        if request.payment_method is PaymentMethod.COBALT and request.card is None:
            raise ValidationError("Card details are required for card payments")
        if request.payment_method is PaymentMethod.PAYPAL and not request.order_id:
            raise ValidationError("A PayPal order id is required to capture")
        if request.payment_method is PaymentMethod.YAPPY and not request.yappy_phone:
            raise ValidationError("A Yappy phone number is required")
        if not request.customer.client_code:
            raise ValidationError("A client code is required")

    def _provider(self, method: PaymentMethod) -> ProviderClient:
        provider = self._providers.get(method)
        if provider is None:
            raise ConfigurationError(f"No {method.label} provider configured")
        return provider

    async def _acquire_token(self, provider: ProviderClient, credentials: ProviderCredentials) -> ProviderToken:
        async def fetch() -> ProviderToken:
            return await with_retry(
                self._timed,
                self._provider_timeout,
                provider.authenticate,
                credentials,
                max_retries=self._auth_retries,
                base_delay=self._retry_delay,
            )

        if not provider.caches_tokens:
            return await fetch()
        return await self._tokens.get_or_fetch((provider.method, credentials.company_code), fetch)

    async def _timed(self, timeout: float, func: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        try:
            return await asyncio.wait_for(func(*args), timeout)
        except asyncio.TimeoutError as e:
            name = getattr(func, "__qualname__", repr(func))
            raise GatewayTimeout(f"{name} did not finish within {timeout:.0f}s") from e

    async def _run_to_completion(self, coro: Awaitable[PaymentOutcome]) -> PaymentOutcome:
        task = asyncio.ensure_future(coro)
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.done():
                logger.warning("Caller went away after charge submission; finishing the attempt")
                await asyncio.wait({task})
            if not task.cancelled() and task.exception() is not None:
                logger.error("Attempt finished with %r after the caller went away", task.exception())
            raise

    async def _abort_if_disconnected(
        self,
        session: AsyncSession,
        attempt: PaymentAttempt,
        is_disconnected: Optional[DisconnectCheck],
    ) -> None:
        if is_disconnected is not None and await is_disconnected():
            error = CancelledBeforeCharge("Caller disconnected before the charge was submitted")
            await self._fail(session, attempt, error, "payment_rejected", PaymentState.REJECTED)
            raise error

    async def _transition(
        self,
        session: AsyncSession,
        attempt: PaymentAttempt,
        state: PaymentState,
        event_type: Optional[str],
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        previous = attempt.state
        attempt.state = state.value
        attempt.notes = append_note(attempt.notes, f"{previous} -> {state.value}")
        await session.commit()
        if event_type:
            await self._event(attempt, event_type, details)

    async def _fail(
        self,
        session: AsyncSession,
        attempt: PaymentAttempt,
        error: GatewayError,
        event_type: str,
        state: PaymentState = PaymentState.FAILED,
    ) -> None:
        attempt.state = state.value
        attempt.failure_kind = error.kind.value
        attempt.failure_message = str(error)
        attempt.notes = append_note(attempt.notes, f"{state.value}: {error}")
        await session.commit()

        details: dict[str, Any] = {"kind": error.kind.value, "error": str(error), "retriable": error.retriable}
        code = getattr(error, "code", None)
        if code:
            details["code"] = code
        if attempt.provider_transaction_id:
            details["transaction_id"] = attempt.provider_transaction_id
        await self._event(attempt, event_type, details)
        logger.warning("Attempt %s %s: %s", attempt.id, state.value, error)
        error.outcome = outcome_of(attempt)

    async def _record_unreconciled(
        self,
        session: AsyncSession,
        attempt: PaymentAttempt,
        receipt: ReceiptRecord,
        error: ErpWriteError,
    ) -> None:
        session.add(
            OfflineReceipt(
                attempt_id=attempt.id,
                company_code=receipt.company_code,
                client_code=receipt.client_code,
                pay_mode=receipt.pay_mode,
                reference=receipt.reference,
                transaction_date=receipt.transaction_date,
                lines=json.dumps(
                    [{"invoice_number": line.invoice_number, "amount": str(line.amount)} for line in receipt.lines]
                ),
                error=str(error.cause or error),
                pending=True,
            )
        )
        attempt.state = PaymentState.FAILED.value
        attempt.failure_kind = error.kind.value
        attempt.failure_message = str(error)
        attempt.notes = append_note(attempt.notes, "Charged but not reconciled; offline receipt queued")
        await session.commit()

        logger.critical(
            "CHARGED BUT UNRECONCILED | attempt=%s provider=%s transaction=%s amount=%s %s invoices=%s | %s",
            attempt.id,
            attempt.provider,
            attempt.provider_transaction_id,
            attempt.amount,
            attempt.currency,
            ",".join(line.invoice_number for line in receipt.lines),
            error.cause or error,
        )
        await self._event(attempt, "payment_unreconciled", {
            "transaction_id": attempt.provider_transaction_id,
            "authorization_code": attempt.authorization_code,
            "charge_status": attempt.charge_status,
            "raw_payload": json.loads(attempt.raw_payload) if attempt.raw_payload else None,
            "receipt_reference": receipt.reference,
            "error": str(error.cause or error),
        })
        error.outcome = outcome_of(attempt)

    async def _event(
        self,
        attempt: PaymentAttempt,
        event_type: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        await self._audit.record(
            event_type,
            attempt_id=attempt.id,
            details=details,
            payment_method=attempt.provider,
            amount=attempt.amount,
            currency=attempt.currency,
            payment_status=attempt.state,
            error_code=attempt.failure_kind,
        )
