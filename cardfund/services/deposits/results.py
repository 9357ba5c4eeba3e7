"""Explicit result values for reconciliation steps.

The queue integration layer maps a `ReconcileStatus` to a `JobOutcome`; no
step raises to request a retry.
"""

from dataclasses import dataclass
from enum import Enum

from cardfund.common.jobqueue import JobOutcome


class ReconcileStatus(str, Enum):
    RECORDED = "RECORDED"
    ALREADY_RECORDED = "ALREADY_RECORDED"
    TOPUP_FAILED = "TOPUP_FAILED"
    NO_MATCH = "NO_MATCH"
    CONFLICT = "CONFLICT"
    TRANSIENT = "TRANSIENT"
    INVALID = "INVALID"


RETRYABLE = {
    ReconcileStatus.TOPUP_FAILED,
    ReconcileStatus.NO_MATCH,
    ReconcileStatus.CONFLICT,
    ReconcileStatus.TRANSIENT,
    # Malformed responses share the retry cap.
    ReconcileStatus.INVALID,
}


@dataclass(frozen=True)
class ReconcileResult:
    status: ReconcileStatus
    message: str = ""
    transaction_id: str | None = None
    application_id: str | None = None
    topup_done: bool = False

    @property
    def retryable(self) -> bool:
        return self.status in RETRYABLE

    def to_outcome(self) -> JobOutcome:
        if self.retryable:
            return JobOutcome.retry(f"{self.status.value}: {self.message}")
        return JobOutcome.complete(self.status.value)


@dataclass(frozen=True)
class BatchResult:
    batch_index: int
    processed: int = 0
    errors: int = 0
    enqueued: int = 0
