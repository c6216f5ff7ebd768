"""Transaction ledger records for escrow payments."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
import uuid

from ..errors import TransactionStateError
from ..money import money_str, to_decimal


class TransactionType(Enum):
    """Kind of financial operation."""

    AUTHORIZATION = "authorization"
    CHARGE = "charge"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"


class TransactionStatus(Enum):
    """Status of a transaction. Moves forward only."""

    PENDING = "pending"          # Intent recorded, gateway outcome unknown
    COMPLETED = "completed"      # Gateway accepted
    FAILED = "failed"            # Gateway rejected or reconciliation found nothing
    REFUNDED = "refunded"        # Reversed by a refund transaction


_STATUS_TRANSITIONS = {
    TransactionStatus.PENDING: {TransactionStatus.COMPLETED, TransactionStatus.FAILED},
    TransactionStatus.COMPLETED: {TransactionStatus.REFUNDED},
    TransactionStatus.FAILED: set(),
    TransactionStatus.REFUNDED: set(),
}


class EventStatus(Enum):
    """Outcome recorded on a payment event."""

    STARTED = "started"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class TransactionRecord:
    """One financial operation against the gateway."""

    # Identity
    id: str = field(default_factory=lambda: f"TXN-{uuid.uuid4().hex[:12].upper()}")
    job_id: str = ""
    consumer_id: str = ""
    worker_id: Optional[str] = None

    # Classification
    transaction_type: TransactionType = TransactionType.AUTHORIZATION
    status: TransactionStatus = TransactionStatus.PENDING

    # Amounts
    amount: Decimal = Decimal("0.00")
    currency: str = "USD"
    platform_fee: Decimal = Decimal("0.00")
    processing_fee: Decimal = Decimal("0.00")
    net_amount: Decimal = Decimal("0.00")
    capture_amount: Optional[Decimal] = None
    refund_amount: Optional[Decimal] = None
    refund_reason: Optional[str] = None

    # Gateway references
    gateway_charge_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    gateway_refund_id: Optional[str] = None
    gateway_source_id: Optional[str] = None
    card_brand: Optional[str] = None
    last_four: Optional[str] = None

    # Links
    parent_transaction_id: Optional[str] = None

    # Dates
    authorized_at: Optional[datetime] = None
    authorization_expires_at: Optional[datetime] = None
    captured_at: Optional[datetime] = None
    escrow_held_at: Optional[datetime] = None
    escrow_released_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    failure_reason: Optional[str] = None

    @property
    def is_captured(self) -> bool:
        return self.captured_at is not None

    @property
    def refundable_amount(self) -> Decimal:
        """Captured amount, or the held amount for an uncaptured authorization."""
        if self.capture_amount is not None:
            return self.capture_amount
        return self.amount

    def transition_to(self, target: TransactionStatus) -> None:
        if target not in _STATUS_TRANSITIONS[self.status]:
            raise TransactionStateError(
                f"Transaction {self.id}: cannot move from {self.status.value} to {target.value}"
            )
        self.status = target

    def to_dict(self) -> dict:
        """Serialize transaction to dictionary."""

        def _ts(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        def _money(value: Optional[Decimal]) -> Optional[str]:
            return money_str(value) if value is not None else None

        return {
            "id": self.id,
            "job_id": self.job_id,
            "consumer_id": self.consumer_id,
            "worker_id": self.worker_id,
            "transaction_type": self.transaction_type.value,
            "status": self.status.value,
            "amount": money_str(self.amount),
            "currency": self.currency,
            "platform_fee": money_str(self.platform_fee),
            "processing_fee": money_str(self.processing_fee),
            "net_amount": money_str(self.net_amount),
            "capture_amount": _money(self.capture_amount),
            "refund_amount": _money(self.refund_amount),
            "refund_reason": self.refund_reason,
            "gateway_charge_id": self.gateway_charge_id,
            "gateway_payment_id": self.gateway_payment_id,
            "gateway_refund_id": self.gateway_refund_id,
            "gateway_source_id": self.gateway_source_id,
            "card_brand": self.card_brand,
            "last_four": self.last_four,
            "parent_transaction_id": self.parent_transaction_id,
            "authorized_at": _ts(self.authorized_at),
            "authorization_expires_at": _ts(self.authorization_expires_at),
            "captured_at": _ts(self.captured_at),
            "escrow_held_at": _ts(self.escrow_held_at),
            "escrow_released_at": _ts(self.escrow_released_at),
            "refunded_at": _ts(self.refunded_at),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "failure_reason": self.failure_reason,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TransactionRecord":
        """Deserialize transaction from dictionary."""
        record = cls(
            id=data["id"],
            job_id=data.get("job_id", ""),
            consumer_id=data.get("consumer_id", ""),
            worker_id=data.get("worker_id"),
            transaction_type=TransactionType(data.get("transaction_type", "authorization")),
            status=TransactionStatus(data.get("status", "pending")),
            amount=to_decimal(data.get("amount", "0.00")),
            currency=data.get("currency", "USD"),
            platform_fee=to_decimal(data.get("platform_fee", "0.00")),
            processing_fee=to_decimal(data.get("processing_fee", "0.00")),
            net_amount=to_decimal(data.get("net_amount", "0.00")),
            refund_reason=data.get("refund_reason"),
            gateway_charge_id=data.get("gateway_charge_id"),
            gateway_payment_id=data.get("gateway_payment_id"),
            gateway_refund_id=data.get("gateway_refund_id"),
            gateway_source_id=data.get("gateway_source_id"),
            card_brand=data.get("card_brand"),
            last_four=data.get("last_four"),
            parent_transaction_id=data.get("parent_transaction_id"),
            failure_reason=data.get("failure_reason"),
        )

        for field_name in ["capture_amount", "refund_amount"]:
            if data.get(field_name) is not None:
                setattr(record, field_name, to_decimal(data[field_name]))

        for field_name in [
            "authorized_at", "authorization_expires_at", "captured_at", "escrow_held_at",
            "escrow_released_at", "refunded_at", "created_at", "updated_at",
        ]:
            if data.get(field_name):
                setattr(record, field_name, datetime.fromisoformat(data[field_name]))

        return record


@dataclass(frozen=True)
class PaymentEvent:
    """Append-only audit record of one gateway call attempt."""

    id: str
    transaction_id: str
    event_type: str                      # authorize / capture / refund
    event_status: EventStatus
    idempotency_key: str
    actor_id: Optional[str] = None
    gateway_response: Optional[dict[str, Any]] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    created_at: str = ""

    @staticmethod
    def create(
        transaction_id: str,
        event_type: str,
        event_status: EventStatus,
        idempotency_key: str,
        actor_id: Optional[str] = None,
        gateway_response: Optional[dict[str, Any]] = None,
        error_message: Optional[str] = None,
        error_code: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "PaymentEvent":
        ts = now or datetime.now(timezone.utc)
        return PaymentEvent(
            id=f"EVT-{uuid.uuid4().hex[:12].upper()}",
            transaction_id=transaction_id,
            event_type=event_type,
            event_status=event_status,
            idempotency_key=idempotency_key,
            actor_id=actor_id,
            gateway_response=gateway_response,
            error_message=error_message,
            error_code=error_code,
            created_at=ts.isoformat(),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "event_type": self.event_type,
            "event_status": self.event_status.value,
            "idempotency_key": self.idempotency_key,
            "actor_id": self.actor_id,
            "gateway_response": self.gateway_response,
            "error_message": self.error_message,
            "error_code": self.error_code,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PaymentEvent":
        return cls(
            id=data["id"],
            transaction_id=data["transaction_id"],
            event_type=data["event_type"],
            event_status=EventStatus(data["event_status"]),
            idempotency_key=data["idempotency_key"],
            actor_id=data.get("actor_id"),
            gateway_response=data.get("gateway_response"),
            error_message=data.get("error_message"),
            error_code=data.get("error_code"),
            created_at=data.get("created_at", ""),
        )


@dataclass
class JobPaymentSummary:
    """Money movement for one job, aggregated from the ledger."""

    job_id: str
    total_authorized: Decimal = Decimal("0.00")
    total_captured: Decimal = Decimal("0.00")
    total_refunded: Decimal = Decimal("0.00")
    platform_fees: Decimal = Decimal("0.00")
    worker_payment: Decimal = Decimal("0.00")
    escrow_status: str = "none"          # none / held / released / refunded

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "total_authorized": money_str(self.total_authorized),
            "total_captured": money_str(self.total_captured),
            "total_refunded": money_str(self.total_refunded),
            "platform_fees": money_str(self.platform_fees),
            "worker_payment": money_str(self.worker_payment),
            "escrow_status": self.escrow_status,
        }
