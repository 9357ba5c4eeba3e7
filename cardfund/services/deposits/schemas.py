"""Value types and job payload schemas for the deposit pipeline."""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field


@dataclass(frozen=True)
class AccountRecord:
    account_id: str
    address: str
    issuer_user_id: str


@dataclass(frozen=True)
class TransactionRecord:
    transaction_id: str
    account_id: str
    external_transfer_id: str
    application_id: str | None
    status: str
    amount: Decimal
    credited_amount: Decimal
    created_at: datetime | None


class Transfer(BaseModel):
    """One inbound stablecoin transfer as reported by the indexer."""

    transfer_id: str
    amount: Decimal
    raw_amount: str
    from_address: str
    to_address: str
    timestamp: datetime
    confirmed: bool
    reverted: bool
    result: str


class MonitorBatchPayload(BaseModel):
    batch_index: int = Field(ge=0)
    batch_size: int = Field(gt=0)
    offset: int = Field(ge=0)
    lane: int = 0


class ReconcilePayload(BaseModel):
    """Durable `reconcile` job payload; checkpoint fields are written as steps succeed."""

    account_id: str
    issuer_user_id: str
    address: str
    amount: Decimal
    credited_amount: Decimal
    external_transfer_id: str
    timestamp: datetime
    topup_completed_at: str | None = None


class AcceptApplicationPayload(BaseModel):
    """`accept-application` job payload, staged with the deposit row."""

    application_id: str
    transaction_id: str
    external_transfer_id: str


class FailedJobResponse(BaseModel):
    job_id: str
    job_type: str
    job_key: str | None
    attempts_made: int
    max_attempts: int
    last_error: str | None
    payload: dict
    updated_at: datetime | None


class MaintenanceRequest(BaseModel):
    enabled: bool
