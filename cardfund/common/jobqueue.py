"""Durable, retryable job queue on top of a `jobs` table.

Claiming reuses the outbox pattern: a `FOR UPDATE SKIP LOCKED` CTE feeding an
`UPDATE ... RETURNING`, so any number of workers (in one process or many) can
pull from the same table. Handlers return a `JobOutcome`; the queue decides
between completion, a delayed retry with exponential backoff, and terminal
failure.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from time import perf_counter
from typing import Any, Awaitable, Callable

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError

from cardfund.common.logging import job_id_ctx, logger
from cardfund.common.metrics import job_duration_seconds, jobs_failed_total, jobs_processed_total, retries_total
from cardfund.common.state_machine import validate_transition
from cardfund.common.tracing import job_span


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobOutcomeKind(str, Enum):
    COMPLETE = "COMPLETE"
    RETRY = "RETRY"
    FAIL = "FAIL"


@dataclass(frozen=True)
class JobOutcome:
    """What a handler wants the queue to do with the job it just ran."""

    kind: JobOutcomeKind
    reason: str = ""

    @classmethod
    def complete(cls, reason: str = "") -> "JobOutcome":
        return cls(JobOutcomeKind.COMPLETE, reason)

    @classmethod
    def retry(cls, reason: str) -> "JobOutcome":
        return cls(JobOutcomeKind.RETRY, reason)

    @classmethod
    def fail(cls, reason: str) -> "JobOutcome":
        return cls(JobOutcomeKind.FAIL, reason)


@dataclass(frozen=True)
class JobOptions:
    attempts: int = 3
    backoff_ms: int = 2_000
    delay_ms: int = 0
    job_key: str | None = None


@dataclass(frozen=True)
class ClaimedJob:
    id: str
    job_type: str
    payload: dict[str, Any] = field(default_factory=dict)
    attempts_made: int = 1
    max_attempts: int = 1
    backoff_base_ms: int = 0


JobHandler = Callable[[ClaimedJob], Awaitable[JobOutcome | None]]
FailureHook = Callable[[Any, ClaimedJob, str], None]


def backoff_delay_ms(base_ms: int, attempt: int) -> int:
    """Exponential backoff: base, 2*base, 4*base, ... for attempts 1, 2, 3, ..."""

    return base_ms * (2 ** max(0, attempt - 1))


def claimed_from_row(row) -> ClaimedJob:
    return ClaimedJob(
        id=row.id,
        job_type=row.job_type,
        payload=dict(row.payload or {}),
        attempts_made=row.attempts_made,
        max_attempts=row.max_attempts,
        backoff_base_ms=row.backoff_base_ms,
    )


class JobQueue:
    """Enqueue/claim/settle operations plus asyncio worker pools."""

    def __init__(
        self,
        session_factory,
        job_model,
        service_name: str = "deposits",
        visibility_timeout_seconds: int = 300,
        on_failed: FailureHook | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.job_model = job_model
        self.service_name = service_name
        self.visibility_timeout_seconds = visibility_timeout_seconds
        self.on_failed = on_failed

    def _new_job(self, job_type: str, payload: dict[str, Any], options: JobOptions):
        now = utcnow()
        return self.job_model(
            job_type=job_type,
            job_key=options.job_key,
            payload=payload,
            status="PENDING",
            attempts_made=0,
            max_attempts=max(1, options.attempts),
            backoff_base_ms=options.backoff_ms,
            run_at=now + timedelta(milliseconds=options.delay_ms),
            created_at=now,
            updated_at=now,
        )

    def enqueue(self, job_type: str, payload: dict[str, Any], options: JobOptions = JobOptions()) -> str | None:
        """Persist one job; returns its id, or None when `job_key` already exists."""

        job = self._new_job(job_type, payload, options)
        with self.session_factory() as db:
            db.add(job)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.info("job already queued job_type=%s job_key=%s", job_type, options.job_key)
                return None
            return job.id

    def stage(self, db, job_type: str, payload: dict[str, Any], options: JobOptions = JobOptions()) -> str:
        """Add a job to the caller's transaction; it becomes visible on their commit."""

        job = self._new_job(job_type, payload, options)
        db.add(job)
        db.flush()
        return job.id

    def checkpoint(self, job_id: str, values: dict[str, Any]) -> bool:
        """Merge `values` into a job's payload in a commit of its own.

        Used right after a side effect that must not repeat, so the record
        survives a timeout or crash later in the same attempt.
        """

        with self.session_factory() as db:
            row = db.get(self.job_model, job_id)
            if row is None:
                return False
            row.payload = {**(row.payload or {}), **values}
            row.updated_at = utcnow()
            db.commit()
        logger.info("job checkpoint saved job_id=%s keys=%s", job_id, sorted(values))
        return True

    def complete_pending(self, job_id: str, reason: str) -> bool:
        """Mark a not-yet-claimed job done because its work happened elsewhere."""

        now = utcnow()
        with self.session_factory() as db:
            result = db.execute(
                update(self.job_model)
                .where(self.job_model.id == job_id, self.job_model.status == "PENDING")
                .values(status="COMPLETED", last_error=reason, updated_at=now)
            )
            db.commit()
            return result.rowcount == 1

    def _fail_abandoned(self, db, job_type: str, stale_before: datetime, now: datetime) -> int:
        # A worker died during the final attempt; nothing will reclaim the row.
        rows = db.execute(
            select(self.job_model)
            .where(
                self.job_model.job_type == job_type,
                self.job_model.status == "PROCESSING",
                self.job_model.locked_at < stale_before,
                self.job_model.attempts_made >= self.job_model.max_attempts,
            )
            .with_for_update(skip_locked=True)
        ).scalars().all()
        reason = "abandoned: worker lost during final attempt"
        for row in rows:
            validate_transition(row.status, "FAILED")
            row.status = "FAILED"
            row.last_error = reason
            row.locked_at = None
            row.updated_at = now
            jobs_failed_total.labels(service=self.service_name, job_type=job_type, reason="abandoned").inc()
            logger.error("abandoned job failed job_id=%s job_type=%s attempts=%s", row.id, job_type, row.attempts_made)
            if self.on_failed is not None:
                self.on_failed(db, claimed_from_row(row), reason)
        return len(rows)

    def claim(self, job_type: str, limit: int = 1, now: datetime | None = None) -> list[ClaimedJob]:
        """Atomically claim due jobs (and stale PROCESSING ones) of one type."""

        now = now or utcnow()
        table = self.job_model.__table__
        stale_before = now - timedelta(seconds=self.visibility_timeout_seconds)
        claim_ids = (
            select(table.c.id)
            .where(
                table.c.job_type == job_type,
                or_(
                    and_(table.c.status == "PENDING", table.c.run_at <= now),
                    and_(
                        table.c.status == "PROCESSING",
                        table.c.locked_at < stale_before,
                        table.c.attempts_made < table.c.max_attempts,
                    ),
                ),
            )
            .order_by(table.c.run_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
            .cte("claim_ids")
        )
        with self.session_factory() as db:
            self._fail_abandoned(db, job_type, stale_before, now)
            rows = db.execute(
                update(table)
                .where(table.c.id.in_(select(claim_ids.c.id)))
                .values(
                    status="PROCESSING",
                    locked_at=now,
                    attempts_made=table.c.attempts_made + 1,
                    updated_at=now,
                )
                .returning(
                    table.c.id,
                    table.c.job_type,
                    table.c.payload,
                    table.c.attempts_made,
                    table.c.max_attempts,
                    table.c.backoff_base_ms,
                )
            ).all()
            db.commit()
        return [claimed_from_row(row) for row in rows]

    def settle(self, job: ClaimedJob, outcome: JobOutcome, now: datetime | None = None) -> str:
        """Apply a handler outcome to the job row and return the new status."""

        now = now or utcnow()
        with self.session_factory() as db:
            row = db.get(self.job_model, job.id)
            if row is None:
                return "MISSING"
            if row.status != "PROCESSING":
                # Expired or retried by an operator while in flight.
                logger.warning("job settled out of band job_id=%s status=%s", job.id, row.status)
                return row.status

            if outcome.kind == JobOutcomeKind.COMPLETE:
                new_status = "COMPLETED"
            elif outcome.kind == JobOutcomeKind.RETRY and job.attempts_made < job.max_attempts:
                new_status = "PENDING"
                delay_ms = backoff_delay_ms(job.backoff_base_ms, job.attempts_made)
                row.run_at = now + timedelta(milliseconds=delay_ms)
                retries_total.labels(service=self.service_name, job_type=job.job_type).inc()
                logger.warning(
                    "job retry scheduled job_id=%s job_type=%s attempt=%s/%s backoff_ms=%s reason=%s",
                    job.id,
                    job.job_type,
                    job.attempts_made,
                    job.max_attempts,
                    delay_ms,
                    outcome.reason,
                )
            else:
                new_status = "FAILED"

            validate_transition(row.status, new_status)
            row.status = new_status
            row.last_error = outcome.reason or None
            row.locked_at = None
            row.updated_at = now
            if new_status == "FAILED":
                failed = ClaimedJob(
                    id=job.id,
                    job_type=job.job_type,
                    payload=dict(row.payload or {}),
                    attempts_made=job.attempts_made,
                    max_attempts=job.max_attempts,
                    backoff_base_ms=job.backoff_base_ms,
                )
                reason = "retry_exhausted" if outcome.kind == JobOutcomeKind.RETRY else "non_retryable"
                jobs_failed_total.labels(service=self.service_name, job_type=job.job_type, reason=reason).inc()
                logger.error(
                    "job failed job_id=%s job_type=%s attempts=%s reason=%s",
                    job.id,
                    job.job_type,
                    job.attempts_made,
                    outcome.reason,
                )
                if self.on_failed is not None:
                    self.on_failed(db, failed, outcome.reason)
            db.commit()
            return new_status

    def expire_stale(self, job_type: str, max_age: timedelta, reason: str, now: datetime | None = None) -> int:
        """Fail unresolved jobs of one type created before `now - max_age`."""

        now = now or utcnow()
        cutoff = now - max_age
        expired = 0
        with self.session_factory() as db:
            rows = db.execute(
                select(self.job_model)
                .where(
                    self.job_model.job_type == job_type,
                    self.job_model.status.in_(("PENDING", "PROCESSING")),
                    self.job_model.created_at < cutoff,
                )
                .with_for_update(skip_locked=True)
            ).scalars().all()
            for row in rows:
                validate_transition(row.status, "FAILED")
                row.status = "FAILED"
                row.last_error = reason
                row.locked_at = None
                row.updated_at = now
                jobs_failed_total.labels(service=self.service_name, job_type=job_type, reason="expired").inc()
                if self.on_failed is not None:
                    self.on_failed(db, claimed_from_row(row), reason)
                expired += 1
            db.commit()
        return expired

    def prune(self, job_type: str, statuses: tuple[str, ...], keep: int = 100) -> int:
        """Delete settled jobs of one type beyond the newest `keep` per status."""

        removed = 0
        with self.session_factory() as db:
            for status in statuses:
                ids = db.execute(
                    select(self.job_model.id)
                    .where(self.job_model.job_type == job_type, self.job_model.status == status)
                    .order_by(self.job_model.updated_at.desc(), self.job_model.id)
                    .offset(keep)
                ).scalars().all()
                if ids:
                    db.execute(delete(self.job_model).where(self.job_model.id.in_(ids)))
                    removed += len(ids)
            db.commit()
        if removed:
            logger.info("pruned settled jobs job_type=%s count=%s", job_type, removed)
        return removed

    def list_failed(self, limit: int = 50, job_type: str | None = None) -> list:
        with self.session_factory() as db:
            query = select(self.job_model).where(self.job_model.status == "FAILED")
            if job_type:
                query = query.where(self.job_model.job_type == job_type)
            return db.execute(query.order_by(self.job_model.updated_at.desc()).limit(limit)).scalars().all()

    def retry_failed(self, job_id: str) -> bool:
        """Operator action: give a FAILED job a fresh attempt budget."""

        now = utcnow()
        with self.session_factory() as db:
            result = db.execute(
                update(self.job_model)
                .where(self.job_model.id == job_id, self.job_model.status == "FAILED")
                .values(status="PENDING", attempts_made=0, run_at=now, last_error=None, updated_at=now)
            )
            db.commit()
            return result.rowcount == 1

    async def execute(self, job: ClaimedJob, handler: JobHandler, timeout: float | None = None) -> JobOutcome:
        """Run one handler at the worker boundary; never raises for handler errors."""

        token = job_id_ctx.set(job.id)
        start = perf_counter()
        try:
            with job_span(job.job_type, job.id, job.attempts_made):
                outcome = await asyncio.wait_for(handler(job), timeout=timeout)
            if outcome is None:
                outcome = JobOutcome.complete()
        except asyncio.TimeoutError:
            logger.error("job timed out job_id=%s job_type=%s timeout_s=%s", job.id, job.job_type, timeout)
            outcome = JobOutcome.retry("timeout")
        except Exception as exc:
            logger.exception("job handler error job_id=%s job_type=%s error=%s", job.id, job.job_type, exc)
            outcome = JobOutcome.retry(f"{type(exc).__name__}: {exc}")
        finally:
            job_duration_seconds.labels(service=self.service_name, job_type=job.job_type).observe(
                max(0.0, perf_counter() - start)
            )
            job_id_ctx.reset(token)
        jobs_processed_total.labels(
            service=self.service_name,
            job_type=job.job_type,
            outcome=outcome.kind.value,
        ).inc()
        return outcome

    async def process_next(self, job_type: str, handler: JobHandler, timeout: float | None = None) -> bool:
        """Claim, run and settle at most one job. Returns False when idle."""

        jobs = self.claim(job_type, limit=1)
        if not jobs:
            return False
        job = jobs[0]
        outcome = await self.execute(job, handler, timeout)
        self.settle(job, outcome)
        return True

    async def run_worker(
        self,
        job_type: str,
        handler: JobHandler,
        timeout: float | None = None,
        poll_interval: float = 0.5,
    ) -> None:
        while True:
            try:
                worked = await self.process_next(job_type, handler, timeout)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("job worker loop error job_type=%s error=%s", job_type, exc)
                await asyncio.sleep(2)
                continue
            if not worked:
                await asyncio.sleep(poll_interval)

    async def run_pool(
        self,
        job_type: str,
        handler: JobHandler,
        concurrency: int,
        timeout: float | None = None,
        poll_interval: float = 0.5,
    ) -> None:
        """Fixed-size worker pool for one job type."""

        await asyncio.gather(
            *(self.run_worker(job_type, handler, timeout, poll_interval) for _ in range(max(1, concurrency)))
        )
