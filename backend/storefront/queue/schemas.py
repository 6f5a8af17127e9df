"""Fulfillment queue schemas and retry policy constants."""

import uuid
from datetime import datetime
from enum import Enum

from pydantic import BaseModel

# Retry policy: 5 deliveries, exponential backoff starting at 2 seconds
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BACKOFF_BASE_SECONDS = 2.0

# Lease held by a worker on a dequeued job before it is redelivered
DEFAULT_LEASE_SECONDS = 300


class JobState(str, Enum):
    """Where a job currently lives in Redis."""

    PENDING = "pending"
    ACTIVE = "active"
    DEAD = "dead"


class FailureAction(str, Enum):
    """What the queue did with a failed delivery."""

    RETRY = "retry"
    DEAD_LETTER = "dead_letter"
    LEASE_LOST = "lease_lost"  # lease expired and the job was redelivered elsewhere


class QueueJob(BaseModel):
    """A unit of fulfillment work: process one stored Stripe event."""

    dedup_key: str  # Stripe event id
    event_id: uuid.UUID  # internal PaymentEvent id
    attempts: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    state: JobState = JobState.PENDING
    enqueued_at: datetime
    last_error: str | None = None
    lease_token: str | None = None  # set while a worker holds the job


def backoff_delay(attempts: int, base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS) -> float:
    """Seconds to wait before redelivering a job that has failed `attempts` times.

    Exponential: base, 2*base, 4*base, ... (2s, 4s, 8s, 16s with the default base).
    """
    return base_seconds * (2 ** max(attempts - 1, 0))
