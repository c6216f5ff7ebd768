"""Pydantic schemas for signals delivered into a running execution.

Each payload knows its default delivery id. Redelivery of the same
signal (at-least-once transport) produces the same id and is dropped by
the coordinator.
"""
from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field

OFFER_RESPONSE = "offer-response"
JOB_STARTED = "job-started"
JOB_COMPLETED = "job-completed"
REVIEW_SUBMITTED = "review-submitted"
CANCEL = "cancel"


class SignalPayload(BaseModel):
    """Base for signal payloads."""

    signal_name: str = ""

    def delivery_id(self) -> str:
        return self.signal_name


class OfferResponse(SignalPayload):
    signal_name: str = OFFER_RESPONSE
    accepted: bool


class JobStarted(SignalPayload):
    signal_name: str = JOB_STARTED


class JobCompleted(SignalPayload):
    signal_name: str = JOB_COMPLETED


class ReviewSubmission(SignalPayload):
    """A review left by the consumer or the worker."""

    signal_name: str = REVIEW_SUBMITTED
    job_id: Optional[str] = None
    reviewer_id: str
    rating: int = Field(ge=1, le=5)
    comment: str = ""

    def delivery_id(self) -> str:
        return f"{self.signal_name}:{self.reviewer_id}"


class CancelRequest(SignalPayload):
    """Administrative cancellation."""

    signal_name: str = CANCEL
    reason: str = "cancelled by administrator"
    requested_by: str = "system"


SIGNAL_TYPES: dict[str, type[SignalPayload]] = {
    OFFER_RESPONSE: OfferResponse,
    JOB_STARTED: JobStarted,
    JOB_COMPLETED: JobCompleted,
    REVIEW_SUBMITTED: ReviewSubmission,
    CANCEL: CancelRequest,
}


def parse_signal(name: str, payload: Optional[dict[str, Any]] = None) -> SignalPayload:
    """Validate a raw signal payload. Raises KeyError for unknown names."""
    model = SIGNAL_TYPES[name]
    return model.model_validate(dict(payload or {}, signal_name=name))
