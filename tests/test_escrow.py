"""Tests for the escrow manager, transaction ledger and sandbox gateway."""

from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import CONSUMER

from job_orchestrator.errors import (
    AuthorizationError,
    GatewayError,
    GatewayUnavailableError,
    TransactionStateError,
)
from job_orchestrator.escrow import SandboxGateway
from job_orchestrator.models.execution import JobState
from job_orchestrator.models.transaction import EventStatus, TransactionStatus, TransactionType
from job_orchestrator.money import from_minor_units, quantize_money, to_minor_units

WORKER = "WRK-ESCROW"


@pytest.fixture
def escrow(orchestrator):
    return orchestrator.escrow


@pytest.fixture
def job(orchestrator):
    job = orchestrator.submit_job(CONSUMER, "Assemble desk", 4, payment_source="tok_visa")
    orchestrator.jobs.update(job.id, worker_id=WORKER)
    return job


@pytest.fixture
def authorized(escrow, job):
    return escrow.authorize(job.id, Decimal("100.00"), "tok_visa", actor_id=CONSUMER)


# ── Money helpers ─────────────────────────────────────────────────────────

class TestMoney:
    def test_minor_units(self):
        assert to_minor_units(Decimal("100.00")) == 10000
        assert to_minor_units("19.99") == 1999
        assert from_minor_units(8730) == Decimal("87.30")

    def test_half_even_rounding(self):
        assert quantize_money("0.125") == Decimal("0.12")
        assert quantize_money("0.135") == Decimal("0.14")

    def test_float_input_is_exact(self):
        assert quantize_money(0.1 + 0.2) == Decimal("0.30")


# ── Authorize ─────────────────────────────────────────────────────────────

class TestAuthorize:
    def test_authorization_holds_funds(self, authorized, clock):
        assert authorized.transaction_type == TransactionType.AUTHORIZATION
        assert authorized.status == TransactionStatus.COMPLETED
        assert authorized.amount == Decimal("100.00")
        assert authorized.gateway_charge_id.startswith("ch_")
        assert authorized.card_brand == "VISA"
        assert authorized.last_four == "4242"
        assert authorized.escrow_held_at == clock.now()
        assert authorized.authorization_expires_at == clock.now() + timedelta(days=7)
        assert not authorized.is_captured

    def test_amount_sent_in_minor_units(self, escrow, authorized):
        succeeded = [
            e for e in escrow.events_for_transaction(authorized.id)
            if e.event_status == EventStatus.SUCCEEDED
        ]
        assert succeeded[0].gateway_response["amount"] == 10000
        assert succeeded[0].gateway_response["currency"] == "usd"

    def test_intent_recorded_before_outcome(self, escrow, authorized):
        statuses = [e.event_status for e in escrow.events_for_transaction(authorized.id)]
        assert statuses == [EventStatus.STARTED, EventStatus.SUCCEEDED]

    def test_only_consumer_may_authorize(self, escrow, job):
        with pytest.raises(AuthorizationError):
            escrow.authorize(job.id, Decimal("100"), "tok_visa", actor_id="USR-STRANGER")

    def test_non_positive_amount(self, escrow, job):
        with pytest.raises(TransactionStateError):
            escrow.authorize(job.id, Decimal("0"), "tok_visa", actor_id=CONSUMER)

    def test_missing_source(self, escrow, job):
        with pytest.raises(GatewayError) as exc_info:
            escrow.authorize(job.id, Decimal("10"), None, actor_id=CONSUMER)
        assert exc_info.value.code == "missing_source"

    def test_declined_card_marks_failed(self, escrow, job):
        with pytest.raises(GatewayError) as exc_info:
            escrow.authorize(job.id, Decimal("100"), "tok_declined", actor_id=CONSUMER)
        assert exc_info.value.code == "card_declined"

        [record] = escrow.transactions_for_job(job.id)
        assert record.status == TransactionStatus.FAILED
        events = escrow.events_for_transaction(record.id)
        assert events[-1].event_status == EventStatus.FAILED
        assert events[-1].error_code == "card_declined"

    def test_idempotency_key_returns_first_authorization(self, escrow, job, gateway):
        first = escrow.authorize(job.id, Decimal("100"), "tok_visa", actor_id=CONSUMER, idempotency_key="authorize:k1")
        second = escrow.authorize(job.id, Decimal("100"), "tok_visa", actor_id=CONSUMER, idempotency_key="authorize:k1")

        assert second.id == first.id
        assert len(escrow.transactions_for_job(job.id)) == 1
        assert gateway.calls == [("authorize", "authorize:k1")]


# ── Capture ───────────────────────────────────────────────────────────────

class TestCapture:
    def test_full_capture_releases_escrow(self, escrow, authorized, orchestrator, clock):
        record = escrow.capture(authorized.id)

        assert record.capture_amount == Decimal("100.00")
        assert record.captured_at == clock.now()
        assert record.escrow_released_at == clock.now()
        assert record.gateway_payment_id.startswith("py_")
        assert record.platform_fee == Decimal("10.00")
        assert record.processing_fee == Decimal("2.70")
        assert record.net_amount == Decimal("87.30")
        assert orchestrator.jobs.get(record.job_id).status == JobState.PAID

    def test_partial_capture_recomputes_fees(self, escrow, authorized):
        record = escrow.capture(authorized.id, Decimal("60"))

        assert record.amount == Decimal("100.00")
        assert record.capture_amount == Decimal("60.00")
        assert record.platform_fee == Decimal("6.00")
        assert record.processing_fee == Decimal("1.66")
        assert record.net_amount == Decimal("52.34")

    def test_repeat_capture_returns_stored_record(self, escrow, authorized, gateway):
        first = escrow.capture(authorized.id)
        again = escrow.capture(authorized.id)
        same_amount = escrow.capture(authorized.id, Decimal("100.00"))

        assert again.captured_at == first.captured_at
        assert same_amount.capture_amount == first.capture_amount
        assert [c for c in gateway.calls if c[0] == "capture"] == [("capture", f"capture:{authorized.id}")]

    def test_repeat_capture_with_other_amount(self, escrow, authorized):
        escrow.capture(authorized.id)
        with pytest.raises(TransactionStateError):
            escrow.capture(authorized.id, Decimal("50"))

    def test_over_capture_rejected(self, escrow, authorized):
        with pytest.raises(TransactionStateError):
            escrow.capture(authorized.id, Decimal("100.01"))

    def test_worker_may_capture(self, escrow, authorized):
        record = escrow.capture(authorized.id, actor_id=WORKER)
        assert record.is_captured

    def test_stranger_may_not_capture(self, escrow, authorized):
        with pytest.raises(AuthorizationError):
            escrow.capture(authorized.id, actor_id="USR-STRANGER")

    def test_expired_authorization(self, escrow, authorized, clock):
        clock.advance(timedelta(days=7, seconds=1))
        with pytest.raises(TransactionStateError, match="expired"):
            escrow.capture(authorized.id)

    def test_gateway_failure_leaves_record_capturable(self, escrow, authorized, gateway):
        gateway.fail_next("capture", GatewayUnavailableError("gateway returned 502", status_code=502))

        with pytest.raises(GatewayUnavailableError):
            escrow.capture(authorized.id)

        unchanged = escrow.ledger.get(authorized.id)
        assert unchanged.status == TransactionStatus.COMPLETED
        assert not unchanged.is_captured
        failed = escrow.events_for_transaction(authorized.id)[-1]
        assert failed.event_status == EventStatus.FAILED
        assert failed.error_code == "502"

        assert escrow.capture(authorized.id).is_captured

    def test_refund_cannot_be_captured(self, escrow, authorized):
        refund = escrow.refund(authorized.id)
        with pytest.raises(TransactionStateError):
            escrow.capture(refund.id)


# ── Refund ────────────────────────────────────────────────────────────────

class TestRefund:
    def test_partial_refund_after_capture(self, escrow, authorized, orchestrator):
        escrow.capture(authorized.id)

        refund = escrow.refund(authorized.id, Decimal("40"), reason="partial refund")

        assert refund.transaction_type == TransactionType.REFUND
        assert refund.status == TransactionStatus.COMPLETED
        assert refund.amount == Decimal("40.00")
        assert refund.parent_transaction_id == authorized.id
        assert refund.gateway_refund_id.startswith("re_")
        assert refund.refund_reason == "partial refund"

        original = escrow.ledger.get(authorized.id)
        assert original.status == TransactionStatus.REFUNDED
        assert original.refund_amount == Decimal("40.00")
        assert orchestrator.jobs.get(original.job_id).status == JobState.CANCELLED

    def test_refund_releases_uncaptured_hold(self, escrow, authorized):
        refund = escrow.refund(authorized.id)
        assert refund.amount == Decimal("100.00")
        assert escrow.ledger.get(authorized.id).escrow_released_at is not None

    def test_repeat_refund_returns_existing(self, escrow, authorized, gateway):
        first = escrow.refund(authorized.id, Decimal("40"))
        assert escrow.refund(authorized.id).id == first.id
        assert escrow.refund(authorized.id, Decimal("40")).id == first.id
        assert len([c for c in gateway.calls if c[0] == "refund"]) == 1

    def test_second_refund_of_other_amount(self, escrow, authorized):
        escrow.refund(authorized.id, Decimal("40"))
        with pytest.raises(TransactionStateError):
            escrow.refund(authorized.id, Decimal("20"))

    def test_transient_failure_resumes_same_refund(self, escrow, authorized, gateway):
        gateway.fail_next("refund", GatewayUnavailableError("read timeout", status_code=504), after_commit=True)
        with pytest.raises(GatewayUnavailableError):
            escrow.refund(authorized.id, Decimal("40"))
        [pending] = escrow.ledger.refunds_of(authorized.id)
        assert pending.status == TransactionStatus.PENDING

        refund = escrow.refund(authorized.id, Decimal("40"))

        assert refund.id == pending.id
        assert refund.status == TransactionStatus.COMPLETED
        keys = [key for op, key in gateway.calls if op == "refund"]
        assert keys == [f"refund:{pending.id}", f"refund:{pending.id}"]

    def test_pending_refund_blocks_other_amount(self, escrow, authorized, gateway):
        gateway.fail_next("refund", GatewayUnavailableError("gateway returned 503", status_code=503))
        with pytest.raises(GatewayUnavailableError):
            escrow.refund(authorized.id, Decimal("40"))

        with pytest.raises(TransactionStateError, match="still pending"):
            escrow.refund(authorized.id, Decimal("20"))

    def test_rejected_refund_retried_under_new_key(self, escrow, authorized, gateway):
        gateway.fail_next("refund", GatewayError("refund declined", code="refund_failed"))
        with pytest.raises(GatewayError):
            escrow.refund(authorized.id, Decimal("40"))
        [failed] = escrow.ledger.refunds_of(authorized.id)
        assert failed.status == TransactionStatus.FAILED

        refund = escrow.refund(authorized.id, Decimal("30"))

        assert refund.id != failed.id
        assert refund.amount == Decimal("30.00")
        keys = [key for op, key in gateway.calls if op == "refund"]
        assert keys == [f"refund:{failed.id}", f"refund:{refund.id}"]

    def test_refund_exceeding_captured_amount(self, escrow, authorized):
        escrow.capture(authorized.id, Decimal("60"))
        with pytest.raises(TransactionStateError):
            escrow.refund(authorized.id, Decimal("60.01"))

    def test_worker_may_not_refund(self, escrow, authorized):
        with pytest.raises(AuthorizationError):
            escrow.refund(authorized.id, actor_id=WORKER)

    def test_consumer_may_refund(self, escrow, authorized):
        assert escrow.refund(authorized.id, actor_id=CONSUMER).status == TransactionStatus.COMPLETED

    def test_failed_authorization_cannot_be_refunded(self, escrow, job):
        with pytest.raises(GatewayError):
            escrow.authorize(job.id, Decimal("100"), "tok_declined", actor_id=CONSUMER)
        [failed] = escrow.transactions_for_job(job.id)
        with pytest.raises(TransactionStateError):
            escrow.refund(failed.id)


# ── Reconciliation ────────────────────────────────────────────────────────

class TestReconcile:
    def test_nothing_to_reconcile(self, escrow, authorized):
        assert escrow.reconcile() == []

    def test_lost_authorize_response_is_applied(self, escrow, job, gateway):
        gateway.fail_next("authorize", RuntimeError("connection reset"), after_commit=True)
        with pytest.raises(RuntimeError):
            escrow.authorize(job.id, Decimal("100"), "tok_visa", actor_id=CONSUMER)

        [pending] = escrow.transactions_for_job(job.id)
        assert pending.status == TransactionStatus.PENDING

        [item] = escrow.reconcile()
        assert item.action == "applied"
        assert item.operation == "authorize"
        record = escrow.ledger.get(pending.id)
        assert record.status == TransactionStatus.COMPLETED
        assert record.gateway_charge_id is not None

    def test_call_that_never_reached_gateway_fails(self, escrow, job, gateway):
        gateway.fail_next("authorize", RuntimeError("connection refused"))
        with pytest.raises(RuntimeError):
            escrow.authorize(job.id, Decimal("100"), "tok_visa", actor_id=CONSUMER)

        [item] = escrow.reconcile()
        assert item.action == "failed"
        assert escrow.ledger.get(item.transaction_id).status == TransactionStatus.FAILED
        assert escrow.reconcile() == []

    def test_lost_capture_response_is_applied(self, escrow, authorized, gateway, orchestrator):
        gateway.fail_next("capture", RuntimeError("read timeout"), after_commit=True)
        with pytest.raises(RuntimeError):
            escrow.capture(authorized.id)
        assert not escrow.ledger.get(authorized.id).is_captured

        [item] = escrow.reconcile()
        assert item.to_dict()["action"] == "applied"
        record = escrow.ledger.get(authorized.id)
        assert record.capture_amount == Decimal("100.00")
        assert orchestrator.jobs.get(record.job_id).status == JobState.PAID

        # Already captured, so no second gateway call
        assert escrow.capture(authorized.id).capture_amount == Decimal("100.00")


# ── Queries ───────────────────────────────────────────────────────────────

class TestQueries:
    def test_summary_while_held(self, escrow, authorized):
        summary = escrow.payment_summary(authorized.job_id)
        assert summary.total_authorized == Decimal("100.00")
        assert summary.total_captured == Decimal("0.00")
        assert summary.escrow_status == "held"

    def test_summary_after_capture(self, escrow, authorized):
        escrow.capture(authorized.id)
        summary = escrow.payment_summary(authorized.job_id).to_dict()
        assert summary == {
            "job_id": authorized.job_id,
            "total_authorized": "100.00",
            "total_captured": "100.00",
            "total_refunded": "0.00",
            "platform_fees": "10.00",
            "worker_payment": "87.30",
            "escrow_status": "released",
        }

    def test_summary_after_refund(self, escrow, authorized):
        escrow.capture(authorized.id)
        escrow.refund(authorized.id, Decimal("40"))
        summary = escrow.payment_summary(authorized.job_id)
        assert summary.total_refunded == Decimal("40.00")
        assert summary.worker_payment == Decimal("0.00")
        assert summary.escrow_status == "refunded"

    def test_summary_without_transactions(self, escrow, job):
        assert escrow.payment_summary(job.id).escrow_status == "none"

    def test_find_by_gateway_reference(self, escrow, authorized):
        captured = escrow.capture(authorized.id)
        assert escrow.find_by_gateway_reference(captured.gateway_charge_id).id == authorized.id
        assert escrow.find_by_gateway_reference(captured.gateway_payment_id).id == authorized.id
        assert escrow.find_by_gateway_reference("ch_unknown") is None

    def test_duplicate_event_rejected(self, escrow, authorized):
        event = escrow.events_for_transaction(authorized.id)[0]
        with pytest.raises(ValueError):
            with escrow.ledger.unit() as unit:
                unit.append(event)
        assert len(escrow.events_for_transaction(authorized.id)) == 2


# ── Sandbox gateway ───────────────────────────────────────────────────────

class TestSandboxGateway:
    def test_file_backed_state_is_shared(self, tmp_path):
        path = tmp_path / "sandbox.json"
        first = SandboxGateway(path)
        charge = first.authorize("tok_visa", 2500, "usd", {}, "authorize:shared")

        second = SandboxGateway(path)
        found = second.lookup("authorize:shared")
        assert found.operation == "authorize"
        assert found.response["id"] == charge.id
        assert second.capture(charge.id, None, "capture:shared").amount == 2500

    def test_key_reuse_across_operations(self, gateway):
        charge = gateway.authorize("tok_visa", 1000, "usd", {}, "key-1")
        with pytest.raises(GatewayError) as exc_info:
            gateway.capture(charge.id, None, "key-1")
        assert exc_info.value.code == "idempotency_key_reused"

    def test_key_reuse_with_different_amount(self, gateway):
        charge = gateway.authorize("tok_visa", 1000, "usd", {}, "a")
        first = gateway.refund(charge.id, 300, "", "r1")
        assert gateway.refund(charge.id, 300, "", "r1").id == first.id

        with pytest.raises(GatewayError) as exc_info:
            gateway.refund(charge.id, 500, "", "r1")
        assert exc_info.value.code == "idempotency_key_reused"

    def test_refund_limited_to_balance(self, gateway):
        charge = gateway.authorize("tok_visa", 1000, "usd", {}, "a")
        gateway.refund(charge.id, 600, "", "r1")
        with pytest.raises(GatewayError):
            gateway.refund(charge.id, 500, "", "r2")

    def test_lookup_unknown_key(self, gateway):
        assert gateway.lookup("nope") is None
