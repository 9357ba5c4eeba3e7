"""`monitor-batch` handler: poll each account of a batch and enqueue new transfers.

Accounts are polled in small chunks with a pause between chunks. Inside a
chunk every account runs concurrently and independently; a failing account is
logged and counted without affecting its siblings.
"""

import asyncio
from dataclasses import dataclass

from pydantic import ValidationError

from cardfund.common.jobqueue import ClaimedJob, JobOptions, JobOutcome, JobQueue
from cardfund.common.logging import account_id_ctx, logger, transfer_id_ctx
from cardfund.common.metrics import accounts_polled_total, duplicate_transfers_skipped_total, transfers_enqueued_total
from cardfund.services.deposits.errors import RateLimitedError
from cardfund.services.deposits.fees import DepositFee
from cardfund.services.deposits.poller import LedgerPoller, RateLimitCooldown
from cardfund.services.deposits.repository import AccountRepository, TransactionRepository
from cardfund.services.deposits.results import BatchResult
from cardfund.services.deposits.schemas import AccountRecord, MonitorBatchPayload, ReconcilePayload, Transfer


RECONCILE = "reconcile"


@dataclass(frozen=True)
class ReconcileJobDefaults:
    attempts: int = 5
    backoff_ms: int = 2_000
    delay_ms: int = 1_000


class AccountMonitor:
    def __init__(
        self,
        accounts: AccountRepository,
        transactions: TransactionRepository,
        queue: JobQueue,
        poller: LedgerPoller,
        cooldown: RateLimitCooldown | None = None,
        fee: DepositFee = DepositFee(),
        chunk_size: int = 5,
        chunk_delay_ms: int = 2_000,
        reconcile_defaults: ReconcileJobDefaults = ReconcileJobDefaults(),
        service_name: str = "deposits",
        sleep=asyncio.sleep,
    ) -> None:
        self.accounts = accounts
        self.transactions = transactions
        self.queue = queue
        self.poller = poller
        self.cooldown = cooldown
        self.fee = fee
        self.chunk_size = max(1, chunk_size)
        self.chunk_delay_ms = chunk_delay_ms
        self.reconcile_defaults = reconcile_defaults
        self.service_name = service_name
        self._sleep = sleep

    async def handle_batch(self, job: ClaimedJob) -> JobOutcome:
        """Queue entrypoint for `monitor-batch` jobs."""

        try:
            payload = MonitorBatchPayload.model_validate(job.payload)
        except ValidationError as exc:
            return JobOutcome.fail(f"invalid monitor-batch payload: {exc.error_count()} error(s)")

        accounts = self.accounts.list_monitored(offset=payload.offset, limit=payload.batch_size)
        if not accounts:
            logger.debug("no accounts in batch batch_index=%s", payload.batch_index)
            return JobOutcome.complete("empty")

        logger.info(
            "processing batch batch_index=%s offset=%s size=%s",
            payload.batch_index,
            payload.offset,
            len(accounts),
        )
        result = await self.process_accounts(payload.batch_index, accounts)
        logger.info(
            "batch completed batch_index=%s processed=%s errors=%s enqueued=%s",
            result.batch_index,
            result.processed,
            result.errors,
            result.enqueued,
        )
        return JobOutcome.complete(f"processed={result.processed} errors={result.errors}")

    async def process_accounts(self, batch_index: int, accounts: list[AccountRecord]) -> BatchResult:
        processed = errors = enqueued = 0
        for start in range(0, len(accounts), self.chunk_size):
            if self.cooldown is not None:
                wait_seconds = self.cooldown.remaining_seconds()
                if wait_seconds > 0:
                    logger.warning("waiting out indexer rate limit seconds=%.2f", wait_seconds)
                    await self._sleep(wait_seconds)

            chunk = accounts[start : start + self.chunk_size]
            results = await asyncio.gather(
                *(self.process_account(account) for account in chunk),
                return_exceptions=True,
            )
            for account, result in zip(chunk, results):
                if isinstance(result, Exception):
                    errors += 1
                    accounts_polled_total.labels(service=self.service_name, result="error").inc()
                    if isinstance(result, RateLimitedError) and self.cooldown is not None:
                        self.cooldown.trip()
                    logger.error(
                        "account processing failed account_id=%s error=%s: %s",
                        account.account_id,
                        type(result).__name__,
                        result,
                    )
                elif isinstance(result, BaseException):
                    raise result
                else:
                    processed += 1
                    enqueued += result
                    accounts_polled_total.labels(service=self.service_name, result="ok").inc()

            if start + self.chunk_size < len(accounts):
                await self._sleep(self.chunk_delay_ms / 1000)
        return BatchResult(batch_index=batch_index, processed=processed, errors=errors, enqueued=enqueued)

    async def process_account(self, account: AccountRecord) -> int:
        """Poll one address and pass each final transfer through the dedup gate."""

        token = account_id_ctx.set(account.account_id)
        try:
            transfers = await self.poller.recent_transfers(account.address)
            enqueued = 0
            for transfer in transfers:
                try:
                    if self.admit(account, transfer):
                        enqueued += 1
                except Exception as exc:
                    logger.error(
                        "transfer check/enqueue failed account_id=%s transfer_id=%s error=%s",
                        account.account_id,
                        transfer.transfer_id,
                        exc,
                    )
            return enqueued
        finally:
            account_id_ctx.reset(token)

    def admit(self, account: AccountRecord, transfer: Transfer) -> bool:
        """Dedup gate: enqueue `reconcile` for transfers not yet recorded."""

        token = transfer_id_ctx.set(transfer.transfer_id)
        try:
            if self.transactions.find_by_transfer_id(transfer.transfer_id) is not None:
                duplicate_transfers_skipped_total.labels(service=self.service_name, stage="gate").inc()
                return False
            if self.fee.consumes(transfer.amount):
                logger.warning(
                    "transfer does not cover deposit fee transfer_id=%s amount=%s fee=%s",
                    transfer.transfer_id,
                    transfer.amount,
                    self.fee.rate,
                )
                return False

            payload = ReconcilePayload(
                account_id=account.account_id,
                issuer_user_id=account.issuer_user_id,
                address=account.address,
                amount=transfer.amount,
                credited_amount=self.fee.net(transfer.amount),
                external_transfer_id=transfer.transfer_id,
                timestamp=transfer.timestamp,
            )
            job_id = self.queue.enqueue(
                RECONCILE,
                payload.model_dump(mode="json"),
                JobOptions(
                    attempts=self.reconcile_defaults.attempts,
                    backoff_ms=self.reconcile_defaults.backoff_ms,
                    delay_ms=self.reconcile_defaults.delay_ms,
                    job_key=f"tx-{transfer.transfer_id}",
                ),
            )
            if job_id is None:
                return False
            transfers_enqueued_total.labels(service=self.service_name).inc()
            logger.info(
                "new transfer queued transfer_id=%s amount=%s account_id=%s",
                transfer.transfer_id,
                transfer.amount,
                account.account_id,
            )
            return True
        finally:
            transfer_id_ctx.reset(token)
