"""Pydantic schemas for card-gateway responses.

The gateway returns JSON; these models give the escrow manager typed
access to the fields it relies on while keeping the raw payload for the
payment event log.
"""
from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field


# -------------------------------------------------------------------
# Components
# -------------------------------------------------------------------

class CardSource(BaseModel):
    """Card used for a charge."""

    id: str
    brand: str = ""
    last4: str = ""
    exp_month: str = ""
    exp_year: str = ""


class ChargeOutcome(BaseModel):
    """Network decision attached to a charge."""

    network_status: str = "approved_by_network"
    type: str = "authorized"
    reason: Optional[str] = None
    risk_level: Optional[str] = None


# -------------------------------------------------------------------
# Responses
# -------------------------------------------------------------------

class GatewayResponse(BaseModel):
    """Fields common to every gateway response."""

    id: str
    amount: int = Field(ge=0, description="Amount in minor units")
    currency: str = "usd"
    created: int = 0
    status: str = "succeeded"

    def raw(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class ChargeResponse(GatewayResponse):
    """Authorization (capture=false) or direct charge."""

    captured: bool = False
    source: CardSource
    outcome: Optional[ChargeOutcome] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    amount_refunded: int = 0
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None


class CaptureResponse(GatewayResponse):
    """Capture of a previously authorized payment."""

    payment_id: str


class RefundResponse(GatewayResponse):
    """Refund of a charge or authorization."""

    charge: str
    reason: Optional[str] = None


class LookupResult(BaseModel):
    """What the gateway remembers about an idempotency key."""

    idempotency_key: str
    operation: str
    response: dict[str, Any]
