"""Card gateway interface and the sandbox implementation.

Amounts cross this boundary as integer minor units. Every mutating call
takes an idempotency key: repeating a call with a key that already
succeeded returns the stored response instead of moving money twice.
"""

import logging
import threading
import time
import uuid
from collections import defaultdict, deque
from pathlib import Path
from typing import Any, Optional, Protocol

from ..errors import GatewayError
from ..models.gateway import (
    CaptureResponse,
    CardSource,
    ChargeOutcome,
    ChargeResponse,
    GatewayResponse,
    LookupResult,
    RefundResponse,
)
from ..storage import JsonDocument

logger = logging.getLogger(__name__)

AUTHORIZE = "authorize"
CAPTURE = "capture"
REFUND = "refund"

RESPONSE_TYPES: dict[str, type[GatewayResponse]] = {
    AUTHORIZE: ChargeResponse,
    CAPTURE: CaptureResponse,
    REFUND: RefundResponse,
}

DECLINED_TOKEN = "tok_declined"


def parse_response(operation: str, raw: dict[str, Any]) -> GatewayResponse:
    """Rebuild a typed response from its stored JSON."""
    return RESPONSE_TYPES[operation].model_validate(raw)


class PaymentGateway(Protocol):
    """What the escrow manager needs from a card processor."""

    def authorize(
        self,
        source: str,
        amount_minor: int,
        currency: str,
        metadata: dict[str, Any],
        idempotency_key: str,
    ) -> ChargeResponse: ...

    def capture(self, payment_id: str, amount_minor: Optional[int], idempotency_key: str) -> CaptureResponse: ...

    def refund(
        self,
        charge_id: str,
        amount_minor: Optional[int],
        reason: str,
        idempotency_key: str,
    ) -> RefundResponse: ...

    def lookup(self, idempotency_key: str) -> Optional[LookupResult]: ...


class SandboxGateway:
    """In-process gateway for development and tests.

    State (charges and idempotency records) is kept in memory, or in a
    JSON file when ``path`` is given so separate CLI invocations see the
    same charges. Scripted failures are in-memory only.
    """

    def __init__(self, path: Optional[Path] = None):
        self._doc = JsonDocument(path, default=self._empty) if path else None
        self._state = self._empty()
        self._lock = threading.RLock()
        self._failures: dict[str, deque] = defaultdict(deque)
        self.calls: list[tuple[str, str]] = []

    @staticmethod
    def _empty() -> dict:
        return {"charges": {}, "idempotency": {}}

    # -------------------------------------------------------------------
    # Test hooks
    # -------------------------------------------------------------------

    def fail_next(self, operation: str, error: Exception, times: int = 1, after_commit: bool = False) -> None:
        """Make the next ``times`` calls of ``operation`` raise ``error``.

        With ``after_commit`` the gateway performs the operation first and
        then raises, which is how a lost response looks to the caller.
        """
        with self._lock:
            for _ in range(times):
                self._failures[operation].append((error, after_commit))

    def _scripted_failure(self, operation: str) -> Optional[tuple[Exception, bool]]:
        queue = self._failures.get(operation)
        if queue:
            return queue.popleft()
        return None

    # -------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------

    def _load(self) -> dict:
        if self._doc is not None:
            return self._doc.load()
        return self._state

    def _save(self, state: dict) -> None:
        if self._doc is not None:
            self._doc.save(state)
        else:
            self._state = state

    def _call(self, operation: str, idempotency_key: str, params: dict, perform) -> GatewayResponse:
        with self._lock:
            self.calls.append((operation, idempotency_key))
            failure = self._scripted_failure(operation)
            if failure and not failure[1]:
                logger.debug("Sandbox %s failing before commit: %s", operation, failure[0])
                raise failure[0]

            state = self._load()
            stored = state["idempotency"].get(idempotency_key)
            if stored is not None:
                if stored["operation"] != operation:
                    raise GatewayError(
                        f"Idempotency key {idempotency_key} was used for {stored['operation']}",
                        code="idempotency_key_reused",
                    )
                if stored.get("params", params) != params:
                    raise GatewayError(
                        f"Idempotency key {idempotency_key} was used with different parameters",
                        code="idempotency_key_reused",
                    )
                logger.debug("Sandbox replaying %s for key %s", operation, idempotency_key)
                response = parse_response(operation, stored["response"])
            else:
                response = perform(state)
                state["idempotency"][idempotency_key] = {
                    "operation": operation,
                    "params": params,
                    "response": response.raw(),
                }
                self._save(state)

            if failure:
                logger.debug("Sandbox %s failing after commit: %s", operation, failure[0])
                raise failure[0]
            return response

    # -------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------

    def authorize(self, source, amount_minor, currency, metadata, idempotency_key) -> ChargeResponse:
        def perform(state: dict) -> ChargeResponse:
            if source == DECLINED_TOKEN:
                raise GatewayError(
                    "Your card was declined.",
                    code="card_declined",
                    response={"error": {"code": "card_declined", "type": "card_error"}},
                )
            if amount_minor <= 0:
                raise GatewayError("Amount must be positive", code="invalid_amount")

            charge = ChargeResponse(
                id=f"ch_{uuid.uuid4().hex[:24]}",
                amount=amount_minor,
                currency=currency.lower(),
                created=int(time.time()),
                status="succeeded",
                captured=False,
                source=CardSource(id=source, brand="VISA", last4="4242", exp_month="12", exp_year="2030"),
                outcome=ChargeOutcome(),
                metadata=metadata,
            )
            state["charges"][charge.id] = {
                "amount": amount_minor,
                "captured_amount": None,
                "refunded": 0,
            }
            return charge

        return self._call(AUTHORIZE, idempotency_key, {"source": source, "amount": amount_minor}, perform)

    def capture(self, payment_id, amount_minor, idempotency_key) -> CaptureResponse:
        def perform(state: dict) -> CaptureResponse:
            charge = state["charges"].get(payment_id)
            if charge is None:
                raise GatewayError(f"No such charge: {payment_id}", code="resource_missing")
            if charge["captured_amount"] is not None:
                raise GatewayError(f"Charge {payment_id} has already been captured", code="charge_already_captured")
            amount = charge["amount"] if amount_minor is None else amount_minor
            if amount > charge["amount"]:
                raise GatewayError("Capture amount exceeds authorized amount", code="amount_too_large")
            charge["captured_amount"] = amount
            return CaptureResponse(
                id=payment_id,
                payment_id=f"py_{uuid.uuid4().hex[:24]}",
                amount=amount,
                created=int(time.time()),
            )

        return self._call(CAPTURE, idempotency_key, {"payment_id": payment_id, "amount": amount_minor}, perform)

    def refund(self, charge_id, amount_minor, reason, idempotency_key) -> RefundResponse:
        def perform(state: dict) -> RefundResponse:
            charge = state["charges"].get(charge_id)
            if charge is None:
                raise GatewayError(f"No such charge: {charge_id}", code="resource_missing")
            base = charge["captured_amount"] if charge["captured_amount"] is not None else charge["amount"]
            available = base - charge["refunded"]
            amount = available if amount_minor is None else amount_minor
            if amount > available:
                raise GatewayError("Refund amount exceeds available balance", code="amount_too_large")
            charge["refunded"] += amount
            return RefundResponse(
                id=f"re_{uuid.uuid4().hex[:24]}",
                charge=charge_id,
                amount=amount,
                created=int(time.time()),
                reason=reason or None,
            )

        return self._call(REFUND, idempotency_key, {"charge": charge_id, "amount": amount_minor}, perform)

    def lookup(self, idempotency_key: str) -> Optional[LookupResult]:
        with self._lock:
            stored = self._load()["idempotency"].get(idempotency_key)
        if stored is None:
            return None
        return LookupResult(
            idempotency_key=idempotency_key,
            operation=stored["operation"],
            response=stored["response"],
        )
