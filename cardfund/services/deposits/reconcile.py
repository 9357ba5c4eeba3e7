"""`reconcile` handler: turn one observed transfer into one durable record.

Steps: issuer top-up (checkpointed on the job row as soon as it succeeds),
fetch pending applications, pick the first unclaimed application with an
equal amount, then insert the deposit row in a short SERIALIZABLE
transaction that also stages the outbox event and an `accept-application`
job. The issuer accept runs after commit; when it fails, the staged job
retries it. Each step yields a `ReconcileResult`; the unique
`external_transfer_id` constraint is the final idempotence backstop.
"""

from dataclasses import replace
from datetime import datetime, timezone

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from cardfund.common.db import is_serialization_failure, serializable
from cardfund.common.events import TOPIC_DEPOSIT_RECORDED
from cardfund.common.jobqueue import ClaimedJob, JobOptions, JobOutcome, JobQueue
from cardfund.common.logging import account_id_ctx, logger, transfer_id_ctx
from cardfund.common.metrics import deposits_recorded_total, duplicate_transfers_skipped_total, reconcile_results_total
from cardfund.common.outbox import add_outbox_event
from cardfund.services.deposits.errors import (
    DepositError,
    DuplicateTransaction,
    ReconciliationMismatch,
    ResponseValidationError,
    TransientExternalError,
)
from cardfund.services.deposits.models import DepositTransaction, OutboxEvent
from cardfund.services.deposits.repository import TransactionRepository
from cardfund.services.deposits.results import ReconcileResult, ReconcileStatus
from cardfund.services.deposits.schemas import AcceptApplicationPayload, ReconcilePayload
from cardfund.services.issuer.client import APPLICATION_PENDING, IssuerClient, TopupApplication


ACCEPT_APPLICATION = "accept-application"


def select_application(
    applications: list[TopupApplication],
    amount,
    claimed_ids: set[str] = frozenset(),
) -> TopupApplication | None:
    """First pending application, in issuer order, whose amount equals `amount` exactly."""

    for application in applications:
        if application.status != APPLICATION_PENDING:
            continue
        if application.id in claimed_ids:
            continue
        if application.amount == amount:
            return application
    return None


class Reconciler:
    def __init__(
        self,
        session_factory,
        transactions: TransactionRepository,
        issuer: IssuerClient,
        queue: JobQueue,
        application_page_limit: int = 5,
        accept_options: JobOptions = JobOptions(attempts=5, backoff_ms=5_000, delay_ms=30_000),
        service_name: str = "deposits",
    ) -> None:
        self.session_factory = session_factory
        self.transactions = transactions
        self.issuer = issuer
        self.queue = queue
        self.application_page_limit = application_page_limit
        self.accept_options = accept_options
        self.service_name = service_name

    async def handle_job(self, job: ClaimedJob) -> JobOutcome:
        """Queue entrypoint; maps the result kind to complete/retry."""

        try:
            payload = ReconcilePayload.model_validate(job.payload)
        except ValidationError as exc:
            return JobOutcome.fail(f"invalid reconcile payload: {exc.error_count()} error(s)")

        account_token = account_id_ctx.set(payload.account_id)
        transfer_token = transfer_id_ctx.set(payload.external_transfer_id)
        try:
            result = await self.reconcile(payload, job_id=job.id)
        finally:
            account_id_ctx.reset(account_token)
            transfer_id_ctx.reset(transfer_token)

        reconcile_results_total.labels(service=self.service_name, status=result.status.value).inc()
        if result.retryable:
            logger.warning(
                "reconcile not settled account_id=%s transfer_id=%s status=%s message=%s",
                payload.account_id,
                payload.external_transfer_id,
                result.status.value,
                result.message,
            )
        return result.to_outcome()

    async def reconcile(self, payload: ReconcilePayload, job_id: str | None = None) -> ReconcileResult:
        existing = self.transactions.find_by_transfer_id(payload.external_transfer_id)
        if existing is not None:
            duplicate_transfers_skipped_total.labels(service=self.service_name, stage="precheck").inc()
            return ReconcileResult(
                ReconcileStatus.ALREADY_RECORDED,
                "transfer already recorded",
                transaction_id=existing.transaction_id,
                application_id=existing.application_id,
            )

        if payload.topup_completed_at is None:
            failed = await self._topup(payload)
            if failed is not None:
                return failed
            if job_id is not None:
                self.queue.checkpoint(job_id, {"topup_completed_at": datetime.now(timezone.utc).isoformat()})
        else:
            logger.info("topup already done on a previous attempt transfer_id=%s", payload.external_transfer_id)

        application, failed = await self._match(payload)
        if failed is not None:
            return replace(failed, topup_done=True)
        if application is None:
            return ReconcileResult(
                ReconcileStatus.NO_MATCH,
                f"no pending application of {payload.credited_amount} for account {payload.account_id}",
                topup_done=True,
            )
        result, accept_job_id = self._record(payload, application)
        if accept_job_id is not None:
            await self._accept_now(application.id, accept_job_id)
        return replace(result, topup_done=True)

    async def _topup(self, payload: ReconcilePayload) -> ReconcileResult | None:
        try:
            result = await self.issuer.topup_wallet(
                payload.issuer_user_id,
                payload.credited_amount,
                idempotency_key=payload.external_transfer_id,
            )
        except TransientExternalError as exc:
            return ReconcileResult(ReconcileStatus.TRANSIENT, str(exc))
        except ResponseValidationError as exc:
            return ReconcileResult(ReconcileStatus.INVALID, str(exc))
        if not result.ok:
            return ReconcileResult(ReconcileStatus.TOPUP_FAILED, f"issuer topup failed: {result.message}")
        return None

    async def _match(self, payload: ReconcilePayload) -> tuple[TopupApplication | None, ReconcileResult | None]:
        try:
            applications = await self.issuer.get_topup_applications(
                payload.issuer_user_id,
                page=1,
                limit=self.application_page_limit,
                status=APPLICATION_PENDING,
            )
        except TransientExternalError as exc:
            return None, ReconcileResult(ReconcileStatus.TRANSIENT, str(exc))
        except ResponseValidationError as exc:
            return None, ReconcileResult(ReconcileStatus.INVALID, str(exc))

        logger.debug(
            "topup applications fetched account_id=%s count=%s",
            payload.account_id,
            len(applications),
        )
        candidates = [a for a in applications if a.amount == payload.credited_amount]
        try:
            claimed = self.transactions.claimed_application_ids([a.id for a in candidates])
        except SQLAlchemyError as exc:
            return None, ReconcileResult(ReconcileStatus.TRANSIENT, f"store error: {type(exc).__name__}")
        return select_application(applications, payload.credited_amount, claimed), None

    def _record(
        self, payload: ReconcilePayload, application: TopupApplication
    ) -> tuple[ReconcileResult, str | None]:
        # No awaits between BEGIN and COMMIT: the session is synchronous and
        # must never hold locks while the event loop runs other jobs.
        row = DepositTransaction(
            account_id=payload.account_id,
            external_transfer_id=payload.external_transfer_id,
            application_id=application.id,
            status="SUCCESS",
            amount=payload.amount,
            credited_amount=payload.credited_amount,
        )
        try:
            with self.session_factory() as db:
                serializable(db)
                try:
                    record = self.transactions.insert_unique(db, row)
                except DuplicateTransaction:
                    db.rollback()
                    duplicate_transfers_skipped_total.labels(service=self.service_name, stage="commit").inc()
                    logger.info("transfer recorded concurrently transfer_id=%s", payload.external_transfer_id)
                    return ReconcileResult(ReconcileStatus.ALREADY_RECORDED, "unique constraint hit"), None
                except ReconciliationMismatch as exc:
                    db.rollback()
                    return ReconcileResult(ReconcileStatus.CONFLICT, str(exc)), None

                add_outbox_event(
                    db,
                    OutboxEvent,
                    TOPIC_DEPOSIT_RECORDED,
                    aggregate_type="deposit",
                    aggregate_id=record.transaction_id,
                    payload={
                        "transaction_id": record.transaction_id,
                        "account_id": payload.account_id,
                        "external_transfer_id": payload.external_transfer_id,
                        "application_id": application.id,
                        "amount": str(payload.amount),
                        "credited_amount": str(payload.credited_amount),
                    },
                )
                accept_job_id = self.queue.stage(
                    db,
                    ACCEPT_APPLICATION,
                    AcceptApplicationPayload(
                        application_id=application.id,
                        transaction_id=record.transaction_id,
                        external_transfer_id=payload.external_transfer_id,
                    ).model_dump(),
                    replace(self.accept_options, job_key=f"accept-{application.id}"),
                )
                db.commit()
        except SQLAlchemyError as exc:
            if is_serialization_failure(exc):
                return ReconcileResult(ReconcileStatus.CONFLICT, "serialization failure"), None
            logger.exception("deposit insert failed transfer_id=%s", payload.external_transfer_id)
            return ReconcileResult(ReconcileStatus.TRANSIENT, f"store error: {type(exc).__name__}"), None

        deposits_recorded_total.labels(service=self.service_name).inc()
        logger.info(
            "deposit recorded transaction_id=%s transfer_id=%s application_id=%s amount=%s",
            record.transaction_id,
            payload.external_transfer_id,
            application.id,
            payload.credited_amount,
        )
        result = ReconcileResult(
            ReconcileStatus.RECORDED,
            transaction_id=record.transaction_id,
            application_id=application.id,
        )
        return result, accept_job_id

    async def _accept_now(self, application_id: str, accept_job_id: str) -> None:
        """Best-effort inline accept; the staged job is the durable fallback."""

        try:
            accepted = await self.issuer.accept_topup_application(application_id)
        except DepositError as exc:
            logger.warning("accept deferred to queue application_id=%s error=%s", application_id, exc)
            return
        if not accepted.ok:
            logger.warning("accept deferred to queue application_id=%s message=%s", application_id, accepted.message)
            return
        self.queue.complete_pending(accept_job_id, "accepted inline")

    async def handle_accept_job(self, job: ClaimedJob) -> JobOutcome:
        """Queue entrypoint for `accept-application` jobs."""

        try:
            payload = AcceptApplicationPayload.model_validate(job.payload)
        except ValidationError as exc:
            return JobOutcome.fail(f"invalid accept payload: {exc.error_count()} error(s)")

        transfer_token = transfer_id_ctx.set(payload.external_transfer_id)
        try:
            accepted = await self.issuer.accept_topup_application(payload.application_id)
        except DepositError as exc:
            return JobOutcome.retry(f"accept failed: {exc}")
        finally:
            transfer_id_ctx.reset(transfer_token)
        if not accepted.ok:
            return JobOutcome.retry(f"accept refused: {accepted.message}")
        logger.info(
            "application accepted application_id=%s transaction_id=%s",
            payload.application_id,
            payload.transaction_id,
        )
        return JobOutcome.complete()
