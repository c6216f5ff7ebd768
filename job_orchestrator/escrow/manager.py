"""Payment escrow: authorize, capture and refund against the card gateway.

Every gateway call is bracketed by two ledger writes. The first records
the intent (a ``pending`` transaction and/or a ``started`` event carrying
the idempotency key); the second records the outcome together with the
transaction update. If the process dies between the gateway call and the
second write, the ``started`` event is left without an outcome and
``reconcile()`` resolves it by asking the gateway what happened.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from ..clock import Clock, SystemClock
from ..config import OrchestratorConfig
from ..errors import (
    AuthorizationError,
    GatewayError,
    GatewayUnavailableError,
    TransactionStateError,
    is_retryable,
)
from ..models.execution import JobState
from ..models.gateway import CaptureResponse, ChargeResponse, RefundResponse
from ..models.transaction import (
    EventStatus,
    JobPaymentSummary,
    PaymentEvent,
    TransactionRecord,
    TransactionStatus,
    TransactionType,
)
from ..money import Number, from_minor_units, quantize_money, to_minor_units
from ..repositories import JobRepository
from .gateway import AUTHORIZE, CAPTURE, REFUND, PaymentGateway, parse_response
from .ledger import TransactionLedger

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"
RECONCILER_ACTOR = "reconciler"

_GATEWAY_ERRORS = (GatewayError, GatewayUnavailableError)


@dataclass
class ReconciliationItem:
    """Outcome of resolving one open intent."""

    idempotency_key: str
    transaction_id: str
    operation: str
    action: str          # applied / failed

    def to_dict(self) -> dict:
        return {
            "idempotency_key": self.idempotency_key,
            "transaction_id": self.transaction_id,
            "operation": self.operation,
            "action": self.action,
        }


def _error_code(error: Exception) -> Optional[str]:
    if isinstance(error, GatewayError):
        return error.code
    if isinstance(error, GatewayUnavailableError) and error.status_code:
        return str(error.status_code)
    return None


class EscrowManager:
    """Owns TransactionRecords and PaymentEvents for every job."""

    def __init__(
        self,
        config: OrchestratorConfig,
        ledger: TransactionLedger,
        gateway: PaymentGateway,
        jobs: JobRepository,
        clock: Optional[Clock] = None,
    ):
        self.config = config
        self.ledger = ledger
        self.gateway = gateway
        self.jobs = jobs
        self.clock = clock or SystemClock()

    # -------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------

    def _event(
        self,
        transaction_id: str,
        operation: str,
        status: EventStatus,
        key: str,
        actor_id: Optional[str],
        response: Optional[dict] = None,
        error: Optional[Exception] = None,
    ) -> PaymentEvent:
        return PaymentEvent.create(
            transaction_id=transaction_id,
            event_type=operation,
            event_status=status,
            idempotency_key=key,
            actor_id=actor_id,
            gateway_response=response,
            error_message=str(error) if error else None,
            error_code=_error_code(error) if error else None,
            now=self.clock.now(),
        )

    def _record_failure(
        self,
        transaction_id: str,
        operation: str,
        key: str,
        actor_id: Optional[str],
        error: Exception,
        fail_record: bool,
    ) -> None:
        now = self.clock.now()
        with self.ledger.unit() as unit:
            if fail_record:
                record = unit.get(transaction_id)
                record.transition_to(TransactionStatus.FAILED)
                record.failure_reason = str(error)
                record.updated_at = now
                unit.put(record)
            response = error.response if isinstance(error, GatewayError) else None
            unit.append(self._event(transaction_id, operation, EventStatus.FAILED, key, actor_id, response, error))
        logger.warning("Gateway %s failed for %s: %s", operation, transaction_id, error)

    def _start(self, record: TransactionRecord, operation: str, key: str, actor_id: Optional[str], write_record: bool) -> None:
        with self.ledger.unit() as unit:
            if write_record:
                unit.put(record)
            unit.append(self._event(record.id, operation, EventStatus.STARTED, key, actor_id))

    def _authorization_for_key(self, key: str) -> Optional[TransactionRecord]:
        events = self.ledger.events_for_key(key)
        if not events:
            return None
        return self.ledger.get(events[-1].transaction_id)

    # -------------------------------------------------------------------
    # Authorize
    # -------------------------------------------------------------------

    def authorize(
        self,
        job_id: str,
        amount: Number,
        source: Optional[str],
        actor_id: str,
        idempotency_key: Optional[str] = None,
    ) -> TransactionRecord:
        """Place a hold for ``amount`` on the consumer's card.

        With an ``idempotency_key`` a repeated call returns the completed
        authorization from the first call instead of placing a second hold.
        """
        job = self.jobs.get(job_id)
        if actor_id != job.consumer_id:
            raise AuthorizationError(f"User {actor_id} is not the consumer for job {job_id}")

        amount = quantize_money(amount)
        if amount <= 0:
            raise TransactionStateError(f"Authorization amount must be positive, got {amount}")
        if not source:
            raise GatewayError(f"Job {job_id} has no payment source", code="missing_source")

        record = self._authorization_for_key(idempotency_key) if idempotency_key else None
        if record is not None and record.status == TransactionStatus.COMPLETED:
            logger.info("Authorization %s already completed for key %s", record.id, idempotency_key)
            return record
        if record is not None and record.status != TransactionStatus.PENDING:
            record = None

        now = self.clock.now()
        if record is None:
            net, platform, processing = self.config.fees.net_amount(amount)
            record = TransactionRecord(
                job_id=job.id,
                consumer_id=job.consumer_id,
                worker_id=job.worker_id,
                transaction_type=TransactionType.AUTHORIZATION,
                amount=amount,
                currency=self.config.pricing.currency,
                platform_fee=platform,
                processing_fee=processing,
                net_amount=net,
                created_at=now,
                updated_at=now,
            )
        key = idempotency_key or f"{AUTHORIZE}:{record.id}"
        self._start(record, AUTHORIZE, key, actor_id, write_record=True)

        try:
            response = self.gateway.authorize(
                source,
                to_minor_units(record.amount),
                record.currency.lower(),
                {"job_id": job.id, "transaction_id": record.id},
                key,
            )
        except _GATEWAY_ERRORS as e:
            self._record_failure(record.id, AUTHORIZE, key, actor_id, e, fail_record=True)
            raise

        record = self._apply_authorization(record.id, response, key, actor_id)
        logger.info("Authorized $%s for job %s (%s)", record.amount, job.id, record.id)
        return record

    def _apply_authorization(self, transaction_id: str, response: ChargeResponse, key: str, actor_id: str) -> TransactionRecord:
        now = self.clock.now()
        with self.ledger.unit() as unit:
            record = unit.get(transaction_id)
            record.transition_to(TransactionStatus.COMPLETED)
            record.amount = from_minor_units(response.amount)
            record.gateway_charge_id = response.id
            record.gateway_source_id = response.source.id
            record.card_brand = response.source.brand or None
            record.last_four = response.source.last4 or None
            record.authorized_at = now
            record.authorization_expires_at = now + self.config.timeouts.authorization_expiry
            record.escrow_held_at = now
            record.updated_at = now
            unit.put(record)
            unit.append(self._event(record.id, AUTHORIZE, EventStatus.SUCCEEDED, key, actor_id, response.raw()))
        return record

    # -------------------------------------------------------------------
    # Capture
    # -------------------------------------------------------------------

    def capture(
        self,
        transaction_id: str,
        amount: Optional[Number] = None,
        actor_id: str = SYSTEM_ACTOR,
    ) -> TransactionRecord:
        """Capture a held authorization and release escrow to the worker.

        Capturing an already-captured authorization with no amount (or the
        same amount) returns the stored record. A gateway failure leaves
        the transaction untouched so the capture can be retried.
        """
        record = self.ledger.get(transaction_id)
        if record.transaction_type != TransactionType.AUTHORIZATION:
            raise TransactionStateError(
                f"Transaction {transaction_id} is a {record.transaction_type.value}, not an authorization"
            )
        if actor_id not in (SYSTEM_ACTOR, record.consumer_id, record.worker_id):
            raise AuthorizationError(f"User {actor_id} cannot capture payment for job {record.job_id}")

        requested = quantize_money(amount) if amount is not None else None
        if record.is_captured:
            if requested is None or requested == record.capture_amount:
                logger.info("Transaction %s already captured; returning stored state", transaction_id)
                return record
            raise TransactionStateError(
                f"Transaction {transaction_id} already captured for {record.capture_amount}"
            )
        if record.status != TransactionStatus.COMPLETED:
            raise TransactionStateError(f"Transaction {transaction_id} is {record.status.value}; cannot capture")

        capture_amount = requested if requested is not None else record.amount
        if capture_amount <= 0 or capture_amount > record.amount:
            raise TransactionStateError(
                f"Capture amount {capture_amount} must be positive and at most the authorized {record.amount}"
            )
        if record.authorization_expires_at and self.clock.now() > record.authorization_expires_at:
            raise TransactionStateError(f"Authorization {transaction_id} expired")

        key = f"{CAPTURE}:{record.id}"
        self._start(record, CAPTURE, key, actor_id, write_record=False)
        try:
            response = self.gateway.capture(record.gateway_charge_id, to_minor_units(capture_amount), key)
        except _GATEWAY_ERRORS as e:
            self._record_failure(record.id, CAPTURE, key, actor_id, e, fail_record=False)
            raise

        record = self._apply_capture(record.id, response, key, actor_id)
        logger.info("Captured $%s for job %s (%s)", record.capture_amount, record.job_id, record.id)
        return record

    def _apply_capture(self, transaction_id: str, response: CaptureResponse, key: str, actor_id: str) -> TransactionRecord:
        now = self.clock.now()
        with self.ledger.unit() as unit:
            record = unit.get(transaction_id)
            captured = from_minor_units(response.amount)
            net, platform, processing = self.config.fees.net_amount(captured)
            record.capture_amount = captured
            record.platform_fee = platform
            record.processing_fee = processing
            record.net_amount = net
            record.gateway_payment_id = response.payment_id
            record.captured_at = now
            record.escrow_released_at = now
            record.updated_at = now
            unit.put(record)
            unit.append(self._event(record.id, CAPTURE, EventStatus.SUCCEEDED, key, actor_id, response.raw()))
        self.jobs.set_status(record.job_id, JobState.PAID)
        return record

    # -------------------------------------------------------------------
    # Refund
    # -------------------------------------------------------------------

    def refund(
        self,
        transaction_id: str,
        amount: Optional[Number] = None,
        reason: str = "",
        actor_id: str = SYSTEM_ACTOR,
    ) -> TransactionRecord:
        """Refund (part of) a charge or authorization.

        Creates a new ``refund`` transaction linked to the original and
        returns it. The original becomes ``refunded`` and the job
        ``cancelled``. Omitting ``amount`` refunds everything refundable.

        Each refund record carries its own idempotency key. A transient
        gateway failure leaves the record pending, and the next call
        resumes it under the same key and amount. A rejected refund is
        marked failed, so a later call starts a new record and key.
        """
        original = self.ledger.get(transaction_id)
        if original.transaction_type not in (TransactionType.AUTHORIZATION, TransactionType.CHARGE):
            raise TransactionStateError(
                f"Transaction {transaction_id} is a {original.transaction_type.value}; only charges can be refunded"
            )
        if actor_id not in (SYSTEM_ACTOR, original.consumer_id):
            raise AuthorizationError(f"User {actor_id} cannot refund payment for job {original.job_id}")

        requested = quantize_money(amount) if amount is not None else None
        refunds = self.ledger.refunds_of(original.id)

        if original.status == TransactionStatus.REFUNDED:
            completed = [r for r in refunds if r.status == TransactionStatus.COMPLETED]
            if completed and (requested is None or requested == completed[-1].amount):
                logger.info("Transaction %s already refunded by %s", transaction_id, completed[-1].id)
                return completed[-1]
            raise TransactionStateError(f"Transaction {transaction_id} has already been refunded")
        if original.status != TransactionStatus.COMPLETED:
            raise TransactionStateError(f"Transaction {transaction_id} is {original.status.value}; cannot refund")

        refundable = original.refundable_amount
        refund_amount = requested if requested is not None else refundable
        if refund_amount <= 0 or refund_amount > refundable:
            raise TransactionStateError(
                f"Refund amount {refund_amount} must be positive and at most {refundable}"
            )

        now = self.clock.now()
        pending = [r for r in refunds if r.status == TransactionStatus.PENDING]
        if pending:
            record = pending[-1]
            if requested is not None and requested != record.amount:
                raise TransactionStateError(
                    f"Refund {record.id} of {record.amount} is still pending for transaction {transaction_id}"
                )
        else:
            record = TransactionRecord(
                job_id=original.job_id,
                consumer_id=original.consumer_id,
                worker_id=original.worker_id,
                transaction_type=TransactionType.REFUND,
                amount=refund_amount,
                currency=original.currency,
                refund_amount=refund_amount,
                refund_reason=reason or None,
                parent_transaction_id=original.id,
                created_at=now,
                updated_at=now,
            )

        key = f"{REFUND}:{record.id}"
        self._start(record, REFUND, key, actor_id, write_record=True)
        try:
            response = self.gateway.refund(original.gateway_charge_id, to_minor_units(record.amount), reason, key)
        except _GATEWAY_ERRORS as e:
            self._record_failure(record.id, REFUND, key, actor_id, e, fail_record=not is_retryable(e))
            raise

        record = self._apply_refund(record.id, response, key, actor_id)
        logger.info("Refunded $%s of %s for job %s (%s)", record.amount, original.id, record.job_id, record.id)
        return record

    def _apply_refund(self, transaction_id: str, response: RefundResponse, key: str, actor_id: str) -> TransactionRecord:
        now = self.clock.now()
        with self.ledger.unit() as unit:
            record = unit.get(transaction_id)
            refunded = from_minor_units(response.amount)
            record.transition_to(TransactionStatus.COMPLETED)
            record.amount = refunded
            record.refund_amount = refunded
            record.gateway_refund_id = response.id
            record.refunded_at = now
            record.updated_at = now

            original = unit.get(record.parent_transaction_id)
            original.transition_to(TransactionStatus.REFUNDED)
            original.refund_amount = refunded
            original.refunded_at = now
            if original.escrow_released_at is None:
                original.escrow_released_at = now
            original.updated_at = now

            unit.put(record)
            unit.put(original)
            unit.append(self._event(record.id, REFUND, EventStatus.SUCCEEDED, key, actor_id, response.raw()))
        self.jobs.set_status(record.job_id, JobState.CANCELLED)
        return record

    # -------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------

    def reconcile(self) -> list[ReconciliationItem]:
        """Resolve gateway calls whose outcome never reached the ledger."""
        appliers = {
            AUTHORIZE: self._apply_authorization,
            CAPTURE: self._apply_capture,
            REFUND: self._apply_refund,
        }
        items = []
        for intent in self.ledger.open_intents():
            result = self.gateway.lookup(intent.idempotency_key)
            if result is not None:
                response = parse_response(result.operation, result.response)
                appliers[intent.event_type](intent.transaction_id, response, intent.idempotency_key, RECONCILER_ACTOR)
                action = "applied"
                logger.warning(
                    "Reconciled %s: gateway completed %s but the ledger had no outcome",
                    intent.idempotency_key, intent.event_type,
                )
            else:
                error = GatewayError("No gateway record for idempotency key", code="not_found")
                self._record_failure(
                    intent.transaction_id, intent.event_type, intent.idempotency_key,
                    RECONCILER_ACTOR, error, fail_record=intent.event_type != CAPTURE,
                )
                action = "failed"
            items.append(ReconciliationItem(
                idempotency_key=intent.idempotency_key,
                transaction_id=intent.transaction_id,
                operation=intent.event_type,
                action=action,
            ))

        if not items:
            logger.info("Ledger reconciled: no open intents")
        return items

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------

    def transactions_for_job(self, job_id: str) -> list[TransactionRecord]:
        return self.ledger.transactions_for_job(job_id)

    def find_by_gateway_reference(self, reference: str) -> Optional[TransactionRecord]:
        return self.ledger.find_by_gateway_reference(reference)

    def events_for_transaction(self, transaction_id: str) -> list[PaymentEvent]:
        return self.ledger.events_for_transaction(transaction_id)

    def latest_authorization(self, job_id: str) -> Optional[TransactionRecord]:
        """Most recent successful authorization for a job, refunded or not."""
        authorizations = [
            t for t in self.transactions_for_job(job_id)
            if t.transaction_type == TransactionType.AUTHORIZATION
            and t.status in (TransactionStatus.COMPLETED, TransactionStatus.REFUNDED)
        ]
        return authorizations[-1] if authorizations else None

    def payment_summary(self, job_id: str) -> JobPaymentSummary:
        summary = JobPaymentSummary(job_id=job_id)
        held = released = refunded = False

        for record in self.transactions_for_job(job_id):
            if record.transaction_type == TransactionType.AUTHORIZATION:
                if record.status not in (TransactionStatus.COMPLETED, TransactionStatus.REFUNDED):
                    continue
                summary.total_authorized += record.amount
                if record.is_captured:
                    summary.total_captured += record.capture_amount
                    summary.platform_fees += record.platform_fee
                    if record.status == TransactionStatus.COMPLETED:
                        summary.worker_payment += record.net_amount
                    released = True
                else:
                    held = held or record.status == TransactionStatus.COMPLETED
            elif record.transaction_type == TransactionType.REFUND and record.status == TransactionStatus.COMPLETED:
                summary.total_refunded += record.amount
                refunded = True

        if refunded:
            summary.escrow_status = "refunded"
        elif released:
            summary.escrow_status = "released"
        elif held:
            summary.escrow_status = "held"
        return summary


