"""Transaction ledger and append-only payment event log.

Transactions and events share ``ledger.json`` so that a record update and
the event describing it are written together or not at all.
"""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from ..errors import NotFoundError
from ..models.transaction import EventStatus, PaymentEvent, TransactionRecord
from ..storage import JsonDocument

logger = logging.getLogger(__name__)


class LedgerUnit:
    """Changes staged inside one atomic ledger write."""

    def __init__(self, data: dict):
        self._data = data

    def get(self, transaction_id: str) -> TransactionRecord:
        record = self._data["transactions"].get(transaction_id)
        if record is None:
            raise NotFoundError(f"Transaction not found: {transaction_id}")
        return TransactionRecord.from_dict(record)

    def put(self, record: TransactionRecord) -> None:
        self._data["transactions"][record.id] = record.to_dict()

    def append(self, event: PaymentEvent) -> None:
        # Replay protection: reject duplicate IDs
        if any(e["id"] == event.id for e in self._data["events"]):
            raise ValueError(f"Duplicate payment event id: {event.id}")
        self._data["events"].append(event.to_dict())


class TransactionLedger:
    """File-backed store for TransactionRecords and PaymentEvents."""

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)
        self._doc = JsonDocument(
            self.data_dir / "ledger.json",
            default=lambda: {"transactions": {}, "events": []},
        )

    @contextmanager
    def unit(self) -> Iterator[LedgerUnit]:
        """All-or-nothing write of records and events."""
        with self._doc.mutate() as data:
            yield LedgerUnit(data)

    # -------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------

    def get(self, transaction_id: str) -> TransactionRecord:
        return LedgerUnit(self._doc.load()).get(transaction_id)

    def all_transactions(self) -> list[TransactionRecord]:
        records = [TransactionRecord.from_dict(t) for t in self._doc.load()["transactions"].values()]
        return sorted(records, key=lambda t: t.created_at)

    def transactions_for_job(self, job_id: str) -> list[TransactionRecord]:
        return [t for t in self.all_transactions() if t.job_id == job_id]

    def find_by_gateway_reference(self, reference: str) -> Optional[TransactionRecord]:
        """Match a charge, payment or refund id returned by the gateway."""
        for record in self.all_transactions():
            if reference in (record.gateway_charge_id, record.gateway_payment_id, record.gateway_refund_id):
                return record
        return None

    def refunds_of(self, transaction_id: str) -> list[TransactionRecord]:
        return [t for t in self.all_transactions() if t.parent_transaction_id == transaction_id]

    # -------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------

    def events(self) -> list[PaymentEvent]:
        return [PaymentEvent.from_dict(e) for e in self._doc.load()["events"]]

    def events_for_transaction(self, transaction_id: str) -> list[PaymentEvent]:
        return [e for e in self.events() if e.transaction_id == transaction_id]

    def events_for_key(self, idempotency_key: str) -> list[PaymentEvent]:
        return [e for e in self.events() if e.idempotency_key == idempotency_key]

    def open_intents(self) -> list[PaymentEvent]:
        """Started events whose key has no later outcome.

        These are gateway calls whose result never reached the ledger.
        """
        latest: dict[str, PaymentEvent] = {}
        for event in self.events():
            latest[event.idempotency_key] = event
        return [e for e in latest.values() if e.event_status == EventStatus.STARTED]
