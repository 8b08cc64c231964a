"""Integration tests for the payment orchestrator."""

import asyncio
import json

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from conftest import YAPPY_DOMAIN, YAPPY_SECRET, make_request
from gateway.engine.errors import (
    AuthFailure,
    CancelledBeforeCharge,
    ConfigurationError,
    Declined,
    ErpError,
    ErpWriteError,
    GatewayTimeout,
    NetworkError,
    NotificationError,
    ValidationError,
)
from gateway.engine.orchestrator import PaymentOrchestrator
from gateway.models.enums import ChargeStatus, FailureKind, PaymentMethod, PaymentState
from gateway.models.records import ActivityLog, OfflineReceipt, PaymentAttempt
from gateway.providers.credentials import CredentialResolver
from gateway.providers.token_cache import TokenCache
from gateway.providers.yappy import ipn_signature


async def _events(session_factory, attempt_id=None):
    async with session_factory() as session:
        stmt = select(ActivityLog).order_by(ActivityLog.id)
        if attempt_id:
            stmt = stmt.where(ActivityLog.attempt_id == attempt_id)
        return (await session.execute(stmt)).scalars().all()


async def _attempt(session_factory, attempt_id):
    async with session_factory() as session:
        return await session.get(PaymentAttempt, attempt_id)


@pytest.mark.asyncio
async def test_paypal_payment_completes_with_one_receipt(orchestrator, providers, erp, email, session_factory):
    """150.00 split 100 + 50 reaches completed with one receipt and one email."""
    outcome = await orchestrator.process(make_request())

    assert outcome.state is PaymentState.COMPLETED
    assert outcome.receipt_number == "R-0001"
    assert outcome.notification_sent is True
    assert outcome.charge.status is ChargeStatus.APPROVED

    assert len(erp.receipts) == 1
    receipt = erp.receipts[0]
    assert receipt.pay_mode == "PP"
    assert [(line.invoice_number, str(line.amount)) for line in receipt.lines] == [
        ("INV-1", "100.00"),
        ("INV-2", "50.00"),
    ]
    assert receipt.reference == outcome.charge.provider_transaction_id
    assert receipt.comment == f"Pago PayPal: {outcome.charge.provider_transaction_id}"

    assert len(email.sent) == 1
    assert email.sent[0]["to"] == "cliente@example.com"
    assert email.sent[0]["receipt_number"] == "R-0001"

    events = [e.event_type for e in await _events(session_factory, outcome.attempt_id)]
    assert events == [
        "payment_received",
        "payment_authenticated",
        "payment_charged",
        "receipt_created",
        "payment_completed",
    ]
    assert providers[PaymentMethod.PAYPAL].auth_calls == 1


@pytest.mark.asyncio
async def test_declined_charge_writes_nothing_to_erp(orchestrator, providers, erp, email, session_factory):
    providers[PaymentMethod.COBALT].status = ChargeStatus.DECLINED

    with pytest.raises(Declined) as exc:
        await orchestrator.process(make_request(PaymentMethod.COBALT))

    outcome = exc.value.outcome
    assert outcome.state is PaymentState.FAILED
    assert outcome.failure_kind == FailureKind.DECLINED.value
    assert exc.value.result.status is ChargeStatus.DECLINED
    assert erp.receipts == []
    assert email.sent == []

    events = await _events(session_factory, outcome.attempt_id)
    assert [e.event_type for e in events].count("payment_declined") == 1


@pytest.mark.asyncio
async def test_erp_timeout_after_charge_keeps_transaction_for_reconciliation(
    orchestrator, providers, erp, email, session_factory
):
    erp.delay = 5.0  # erp_timeout is 0.2s

    with pytest.raises(ErpWriteError) as exc:
        await orchestrator.process(make_request())

    error = exc.value
    assert isinstance(error.cause, GatewayTimeout)
    assert error.result.approved
    assert error.outcome.state is PaymentState.FAILED
    assert error.outcome.failure_kind == FailureKind.ERP_WRITE_ERROR.value
    assert error.outcome.requires_reconciliation
    # charged once, never reversed
    assert providers[PaymentMethod.PAYPAL].charge_calls == 1
    assert email.sent == []

    events = await _events(session_factory, error.outcome.attempt_id)
    unreconciled = [e for e in events if e.event_type == "payment_unreconciled"]
    assert len(unreconciled) == 1
    details = json.loads(unreconciled[0].additional_data)
    assert details["transaction_id"] == error.result.provider_transaction_id

    async with session_factory() as session:
        offline = (await session.execute(select(OfflineReceipt))).scalars().all()
    assert len(offline) == 1
    assert offline[0].pending is True
    assert offline[0].reference == error.result.provider_transaction_id


@pytest.mark.asyncio
async def test_erp_error_after_charge_is_also_unreconciled(orchestrator, erp):
    erp.error = ErpError("Hansa did not accept receipt", code="1234")

    with pytest.raises(ErpWriteError) as exc:
        await orchestrator.process(make_request(PaymentMethod.COBALT))
    assert exc.value.cause is erp.error


@pytest.mark.asyncio
async def test_capture_twice_replays_the_first_result(orchestrator, providers, erp, email):
    first = await orchestrator.process(make_request(order_id="ORDER-9"))
    second = await orchestrator.process(make_request(order_id="ORDER-9"))

    assert second.replayed is True
    assert second.attempt_id == first.attempt_id
    assert second.state is PaymentState.COMPLETED
    assert second.charge.provider_transaction_id == first.charge.provider_transaction_id
    assert second.receipt_number == first.receipt_number
    assert providers[PaymentMethod.PAYPAL].charge_calls == 1
    assert len(erp.receipts) == 1
    assert len(email.sent) == 1


@pytest.mark.asyncio
async def test_concurrent_captures_of_one_order_charge_once(orchestrator, providers, erp):
    providers[PaymentMethod.PAYPAL].charge_delay = 0.05

    outcomes = await asyncio.gather(
        orchestrator.process(make_request(order_id="ORDER-7")),
        orchestrator.process(make_request(order_id="ORDER-7")),
    )

    assert providers[PaymentMethod.PAYPAL].charge_calls == 1
    assert len(erp.receipts) == 1
    assert sorted(o.replayed for o in outcomes) == [False, True]


@pytest.mark.asyncio
async def test_replayed_failure_raises_the_same_error(orchestrator, providers):
    providers[PaymentMethod.PAYPAL].status = ChargeStatus.DECLINED

    with pytest.raises(Declined):
        await orchestrator.process(make_request(order_id="ORDER-3"))
    with pytest.raises(Declined) as exc:
        await orchestrator.process(make_request(order_id="ORDER-3"))

    assert exc.value.outcome.replayed is True
    assert providers[PaymentMethod.PAYPAL].charge_calls == 1


@pytest.mark.asyncio
async def test_one_cent_mismatch_is_rejected_before_any_provider_call(orchestrator, providers, session_factory):
    request = make_request(
        PaymentMethod.COBALT,
        amount="150.00",
        allocations=(("INV-1", "100.00"), ("INV-2", "49.99")),
    )

    with pytest.raises(ValidationError) as exc:
        await orchestrator.process(request)

    assert exc.value.kind is FailureKind.AMOUNT_MISMATCH
    assert exc.value.outcome.state is PaymentState.REJECTED
    cobalt = providers[PaymentMethod.COBALT]
    assert cobalt.auth_calls == 0
    assert cobalt.charge_calls == 0

    events = [e.event_type for e in await _events(session_factory, exc.value.outcome.attempt_id)]
    assert events == ["payment_received", "payment_rejected"]


@pytest.mark.asyncio
async def test_unknown_company_is_rejected(orchestrator, providers):
    with pytest.raises(ConfigurationError) as exc:
        await orchestrator.process(make_request(PaymentMethod.COBALT, company_code="99"))

    assert exc.value.outcome.state is PaymentState.REJECTED
    assert providers[PaymentMethod.COBALT].auth_calls == 0


@pytest.mark.asyncio
async def test_missing_card_is_rejected(orchestrator, providers):
    request = make_request(PaymentMethod.COBALT)
    request.card = None

    with pytest.raises(ValidationError):
        await orchestrator.process(request)
    assert providers[PaymentMethod.COBALT].auth_calls == 0


@pytest.mark.asyncio
async def test_disconnect_before_auth_moves_no_money(orchestrator, providers):
    async def gone():
        return True

    with pytest.raises(CancelledBeforeCharge) as exc:
        await orchestrator.process(make_request(PaymentMethod.COBALT), is_disconnected=gone)

    assert exc.value.outcome.state is PaymentState.REJECTED
    assert exc.value.outcome.failure_kind == FailureKind.CANCELLED.value
    assert providers[PaymentMethod.COBALT].auth_calls == 0
    assert providers[PaymentMethod.COBALT].charge_calls == 0


@pytest.mark.asyncio
async def test_disconnect_after_auth_still_skips_the_charge(orchestrator, providers):
    checks = []

    async def gone_on_second_check():
        checks.append(1)
        return len(checks) > 1

    with pytest.raises(CancelledBeforeCharge):
        await orchestrator.process(make_request(PaymentMethod.COBALT), is_disconnected=gone_on_second_check)

    assert providers[PaymentMethod.COBALT].auth_calls == 1
    assert providers[PaymentMethod.COBALT].charge_calls == 0


@pytest.mark.asyncio
async def test_caller_cancelled_after_charge_still_reconciles(orchestrator, providers, erp, session_factory):
    providers[PaymentMethod.COBALT].charge_delay = 0.1

    task = asyncio.create_task(orchestrator.process(make_request(PaymentMethod.COBALT)))
    while providers[PaymentMethod.COBALT].charge_calls == 0:
        await asyncio.sleep(0.01)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    assert len(erp.receipts) == 1
    async with session_factory() as session:
        attempt = await session.scalar(select(PaymentAttempt))
    assert attempt.state == PaymentState.COMPLETED.value


@pytest.mark.asyncio
async def test_auth_failure_fails_the_attempt_without_charging(orchestrator, providers):
    providers[PaymentMethod.COBALT].auth_error = AuthFailure("bad credentials", status_code=401)

    with pytest.raises(AuthFailure) as exc:
        await orchestrator.process(make_request(PaymentMethod.COBALT))

    assert exc.value.outcome.state is PaymentState.FAILED
    assert exc.value.outcome.failure_kind == FailureKind.AUTH_FAILURE.value
    # not retriable: one attempt only
    assert providers[PaymentMethod.COBALT].auth_calls == 1
    assert providers[PaymentMethod.COBALT].charge_calls == 0


@pytest.mark.asyncio
async def test_charge_is_never_retried(orchestrator, providers, erp):
    providers[PaymentMethod.COBALT].charge_error = GatewayTimeout("cobalt request timed out")

    with pytest.raises(GatewayTimeout) as exc:
        await orchestrator.process(make_request(PaymentMethod.COBALT))

    assert exc.value.outcome.state is PaymentState.FAILED
    assert providers[PaymentMethod.COBALT].charge_calls == 1
    assert erp.receipts == []


@pytest.mark.asyncio
async def test_auth_failure_on_charge_drops_the_cached_token(orchestrator, providers):
    cobalt = providers[PaymentMethod.COBALT]
    await orchestrator.process(make_request(PaymentMethod.COBALT))

    cobalt.charge_error = AuthFailure("token revoked", status_code=401)
    with pytest.raises(AuthFailure):
        await orchestrator.process(make_request(PaymentMethod.COBALT))

    cobalt.charge_error = None
    await orchestrator.process(make_request(PaymentMethod.COBALT))
    assert cobalt.auth_calls == 2


@pytest.mark.asyncio
async def test_cobalt_references_are_fresh_per_attempt(orchestrator, providers):
    await orchestrator.process(make_request(PaymentMethod.COBALT))
    await orchestrator.process(make_request(PaymentMethod.COBALT))

    refs = providers[PaymentMethod.COBALT].references
    assert len(refs) == 2
    assert refs[0] != refs[1]
    assert all(len(r) == 15 for r in refs)


@pytest.mark.asyncio
async def test_fifty_concurrent_charges_authenticate_once(orchestrator, providers, erp):
    cobalt = providers[PaymentMethod.COBALT]
    cobalt.auth_delay = 0.05

    outcomes = await asyncio.gather(*(orchestrator.process(make_request(PaymentMethod.COBALT)) for _ in range(50)))

    assert cobalt.auth_calls == 1
    assert cobalt.charge_calls == 50
    assert all(o.state is PaymentState.COMPLETED for o in outcomes)
    assert len(erp.receipts) == 50


@pytest.mark.asyncio
async def test_email_failure_does_not_fail_the_payment(orchestrator, email, session_factory):
    email.error = NotificationError("resend unavailable")

    outcome = await orchestrator.process(make_request())

    assert outcome.state is PaymentState.COMPLETED
    assert outcome.notification_sent is False
    events = [e.event_type for e in await _events(session_factory, outcome.attempt_id)]
    assert "notification_failed" in events
    assert events[-1] == "payment_completed"


@pytest.mark.asyncio
async def test_missing_email_is_recorded_not_raised(orchestrator, email, session_factory):
    outcome = await orchestrator.process(make_request(email=None))

    assert outcome.state is PaymentState.COMPLETED
    assert email.sent == []
    events = [e.event_type for e in await _events(session_factory, outcome.attempt_id)]
    assert "notification_failed" in events


@pytest.mark.asyncio
async def test_create_paypal_order_moves_no_money(orchestrator, providers, session_factory):
    order = await orchestrator.create_paypal_order(
        make_request(order_id=None),
        return_url="https://app.test/ok",
        cancel_url="https://app.test/cancel",
    )

    assert order.order_id == "ORDER-1"
    assert order.approval_url.endswith("ORDER-1")
    assert providers[PaymentMethod.PAYPAL].charge_calls == 0
    events = [e.event_type for e in await _events(session_factory)]
    assert events == ["paypal_order_created"]


@pytest.mark.asyncio
async def test_create_paypal_order_validates_the_allocation(orchestrator, providers):
    with pytest.raises(ValidationError):
        await orchestrator.create_paypal_order(
            make_request(order_id=None, allocations=(("INV-1", "100.00"),)),
            return_url="https://app.test/ok",
            cancel_url="https://app.test/cancel",
        )
    assert providers[PaymentMethod.PAYPAL].order_calls == 0


async def _yappy_order(orchestrator):
    outcome = await orchestrator.process(make_request(PaymentMethod.YAPPY))
    assert outcome.state is PaymentState.AWAITING_CONFIRMATION
    return outcome, outcome.charge.provider_transaction_id


def _signed(order_id, status):
    return ipn_signature(order_id + status + YAPPY_DOMAIN, YAPPY_SECRET)


@pytest.mark.asyncio
async def test_yappy_executed_ipn_completes_the_payment(orchestrator, erp, email):
    pending, order_id = await _yappy_order(orchestrator)
    assert pending.charge.status is ChargeStatus.PENDING
    assert erp.receipts == []

    outcome = await orchestrator.confirm_yappy_order(
        order_id, "E", "CONF-1", domain=YAPPY_DOMAIN, hash_value=_signed(order_id, "E")
    )

    assert outcome.state is PaymentState.COMPLETED
    assert outcome.attempt_id == pending.attempt_id
    assert outcome.charge.authorization_code == "CONF-1"
    assert len(erp.receipts) == 1
    assert erp.receipts[0].pay_mode == "YP"
    assert erp.receipts[0].comment == f"Pago Yappy: {order_id}"
    assert len(email.sent) == 1

    again = await orchestrator.confirm_yappy_order(
        order_id, "E", "CONF-1", domain=YAPPY_DOMAIN, hash_value=_signed(order_id, "E")
    )
    assert again.replayed is True
    assert len(erp.receipts) == 1


@pytest.mark.asyncio
async def test_yappy_rejected_ipn_fails_as_declined(orchestrator, erp):
    pending, order_id = await _yappy_order(orchestrator)

    with pytest.raises(Declined) as exc:
        await orchestrator.confirm_yappy_order(
            order_id, "R", domain=YAPPY_DOMAIN, hash_value=_signed(order_id, "R")
        )

    assert exc.value.outcome.state is PaymentState.FAILED
    assert exc.value.outcome.failure_kind == FailureKind.DECLINED.value
    assert erp.receipts == []


@pytest.mark.asyncio
async def test_yappy_ipn_with_bad_signature_is_refused(orchestrator, session_factory):
    pending, order_id = await _yappy_order(orchestrator)

    with pytest.raises(ValidationError):
        await orchestrator.confirm_yappy_order(order_id, "E", domain=YAPPY_DOMAIN, hash_value="0" * 64)

    attempt = await _attempt(session_factory, pending.attempt_id)
    assert attempt.state == PaymentState.AWAITING_CONFIRMATION.value


@pytest.mark.asyncio
async def test_yappy_ipn_for_unknown_order_is_refused(orchestrator):
    with pytest.raises(ValidationError):
        await orchestrator.confirm_yappy_order("NOPE", "E", domain=YAPPY_DOMAIN, hash_value=_signed("NOPE", "E"))


class LockingSessions:
    """Session factory whose commits fail while `failures` is above zero."""

    def __init__(self, factory):
        self._factory = factory
        self.failures = 0

    def __call__(self):
        session = self._factory()
        commit = session.commit

        async def locked_commit():
            if self.failures:
                self.failures -= 1
                raise OperationalError("UPDATE payment_attempts", {}, Exception("database is locked"))
            await commit()

        session.commit = locked_commit
        return session


@pytest.fixture
def sessions(session_factory):
    return LockingSessions(session_factory)


@pytest.fixture
def locking_orchestrator(sessions, providers, settings, erp, email, audit):
    return PaymentOrchestrator(
        sessions,
        providers=providers,
        credentials=CredentialResolver(settings),
        token_cache=TokenCache(),
        erp=erp,
        audit=audit,
        email=email,
        provider_timeout=1.0,
        erp_timeout=0.2,
        retry_delay=0,
    )


def _lock_after_charge(provider, sessions, failures):
    charge = provider.charge

    async def charge_then_lock(*args):
        result = await charge(*args)
        sessions.failures = failures
        return result

    provider.charge = charge_then_lock


@pytest.mark.asyncio
async def test_locked_database_after_charge_is_written_again(locking_orchestrator, providers, sessions, erp,
                                                             session_factory, caplog):
    _lock_after_charge(providers[PaymentMethod.COBALT], sessions, failures=1)

    with caplog.at_level("WARNING", logger="payment_gateway.orchestrator"):
        outcome = await locking_orchestrator.process(make_request(PaymentMethod.COBALT))

    assert outcome.state is PaymentState.COMPLETED
    assert providers[PaymentMethod.COBALT].charge_calls == 1
    assert len(erp.receipts) == 1
    attempt = await _attempt(session_factory, outcome.attempt_id)
    assert attempt.provider_transaction_id == outcome.charge.provider_transaction_id
    assert "Charge returned for attempt" in caplog.text
    assert "CHARGE NOT RECORDED" in caplog.text


@pytest.mark.asyncio
async def test_charge_reaches_the_erp_when_the_database_stays_locked(locking_orchestrator, providers, sessions, erp,
                                                                     caplog):
    _lock_after_charge(providers[PaymentMethod.COBALT], sessions, failures=100)

    with caplog.at_level("WARNING", logger="payment_gateway.orchestrator"):
        outcome = await locking_orchestrator.process(make_request(PaymentMethod.COBALT))

    assert outcome.state is PaymentState.RECONCILED
    assert outcome.receipt_number == "R-0001"
    assert outcome.charge.approved
    assert [line.invoice_number for line in erp.receipts[0].lines] == ["INV-1", "INV-2"]
    assert "RECEIPT WRITTEN, ATTEMPT NOT RECORDED" in caplog.text


@pytest.mark.asyncio
async def test_locked_database_and_erp_failure_raise_with_the_charge(locking_orchestrator, providers, sessions, erp,
                                                                     caplog):
    _lock_after_charge(providers[PaymentMethod.COBALT], sessions, failures=100)
    erp.error = ErpError("Hansa unavailable (503)", code="503", retriable=True)

    with caplog.at_level("WARNING", logger="payment_gateway.orchestrator"):
        with pytest.raises(ErpWriteError) as exc:
            await locking_orchestrator.process(make_request(PaymentMethod.COBALT))

    error = exc.value
    assert error.result.approved
    assert error.outcome.requires_reconciliation
    assert error.outcome.charge.provider_transaction_id == error.result.provider_transaction_id
    assert providers[PaymentMethod.COBALT].charge_calls == 1
    assert "CHARGED BUT UNRECONCILED" in caplog.text
    assert error.result.provider_transaction_id in caplog.text


@pytest.mark.asyncio
async def test_auth_outage_is_fetched_once_for_concurrent_charges(orchestrator, providers):
    cobalt = providers[PaymentMethod.COBALT]
    cobalt.auth_delay = 0.1
    cobalt.auth_error = NetworkError("Cobalt unavailable (503)", status_code=503)

    results = await asyncio.gather(
        *(orchestrator.process(make_request(PaymentMethod.COBALT)) for _ in range(20)),
        return_exceptions=True,
    )

    # one shared fetch: the first call plus three retries
    assert cobalt.auth_calls == 4
    assert cobalt.charge_calls == 0
    assert all(isinstance(r, NetworkError) for r in results)
    assert len({r.outcome.attempt_id for r in results}) == 20
