"""Expiry sweeps: fail stale reconcile work, reject stale issuer applications and
prune settled bookkeeping jobs."""

import asyncio
from datetime import datetime, timedelta, timezone

from cardfund.common.jobqueue import JobQueue
from cardfund.common.logging import logger
from cardfund.common.metrics import applications_rejected_total
from cardfund.services.deposits.errors import DepositError
from cardfund.services.deposits.monitor import RECONCILE
from cardfund.services.deposits.planner import MONITOR_BATCH
from cardfund.services.deposits.reconcile import ACCEPT_APPLICATION
from cardfund.services.deposits.repository import AccountRepository
from cardfund.services.deposits.schemas import AccountRecord
from cardfund.services.issuer.client import APPLICATION_PENDING, IssuerClient, TopupApplication


class ExpirySweeper:
    def __init__(
        self,
        queue: JobQueue,
        accounts: AccountRepository,
        issuer: IssuerClient,
        max_age: timedelta = timedelta(hours=24),
        chunk_size: int = 5,
        chunk_delay_ms: int = 2_000,
        application_page_limit: int = 50,
        retention_count: int = 100,
        service_name: str = "deposits",
        sleep=asyncio.sleep,
    ) -> None:
        self.queue = queue
        self.accounts = accounts
        self.issuer = issuer
        self.max_age = max_age
        self.chunk_size = max(1, chunk_size)
        self.chunk_delay_ms = chunk_delay_ms
        self.application_page_limit = application_page_limit
        self.retention_count = retention_count
        self.service_name = service_name
        self._sleep = sleep

    def expire_jobs(self, now: datetime | None = None) -> int:
        hours = self.max_age.total_seconds() / 3600
        expired = self.queue.expire_stale(
            RECONCILE,
            self.max_age,
            reason=f"expired: unresolved after {hours:g}h",
            now=now,
        )
        if expired:
            logger.warning("expired stale reconcile jobs count=%s", expired)
        return expired

    def prune_jobs(self) -> int:
        # Failed reconcile jobs stay for operators; their job_key also dedups.
        removed = self.queue.prune(MONITOR_BATCH, ("COMPLETED", "FAILED"), keep=self.retention_count)
        removed += self.queue.prune(ACCEPT_APPLICATION, ("COMPLETED",), keep=self.retention_count)
        return removed

    async def reject_stale_applications(self, now: datetime | None = None) -> int:
        """Reject each pending application older than the max age once per sweep."""

        cutoff = (now or datetime.now(timezone.utc)) - self.max_age
        accounts = self.accounts.list_monitored()
        seen: set[str] = set()
        rejected = 0
        for start in range(0, len(accounts), self.chunk_size):
            chunk = accounts[start : start + self.chunk_size]
            results = await asyncio.gather(
                *(self._stale_applications(account, cutoff) for account in chunk),
                return_exceptions=True,
            )
            for account, result in zip(chunk, results):
                if isinstance(result, Exception):
                    logger.error(
                        "listing applications failed account_id=%s error=%s",
                        account.account_id,
                        result,
                    )
                    continue
                if isinstance(result, BaseException):
                    raise result
                for application in result:
                    if application.id in seen:
                        continue
                    seen.add(application.id)
                    if await self._reject(application):
                        rejected += 1
            if start + self.chunk_size < len(accounts):
                await self._sleep(self.chunk_delay_ms / 1000)
        return rejected

    async def _stale_applications(self, account: AccountRecord, cutoff: datetime) -> list[TopupApplication]:
        applications = await self.issuer.get_topup_applications(
            account.issuer_user_id,
            page=1,
            limit=self.application_page_limit,
            status=APPLICATION_PENDING,
        )
        return [a for a in applications if a.status == APPLICATION_PENDING and a.create_time < cutoff]

    async def _reject(self, application: TopupApplication) -> bool:
        try:
            result = await self.issuer.reject_topup_application(application.id)
        except DepositError as exc:
            applications_rejected_total.labels(service=self.service_name, result="error").inc()
            logger.warning("reject application failed application_id=%s error=%s", application.id, exc)
            return False
        if not result.ok:
            applications_rejected_total.labels(service=self.service_name, result="refused").inc()
            logger.warning("issuer refused rejection application_id=%s message=%s", application.id, result.message)
            return False
        applications_rejected_total.labels(service=self.service_name, result="ok").inc()
        logger.info("stale application rejected application_id=%s created=%s", application.id, application.create_time)
        return True

    async def sweep(self, now: datetime | None = None) -> dict[str, int]:
        """Run every sweep; a failure in one does not skip the others."""

        summary = {"expired_jobs": 0, "rejected_applications": 0, "pruned_jobs": 0}
        try:
            summary["expired_jobs"] = self.expire_jobs(now)
        except Exception as exc:
            logger.error("job expiry sweep failed error=%s", exc)
        try:
            summary["rejected_applications"] = await self.reject_stale_applications(now)
        except Exception as exc:
            logger.error("application expiry sweep failed error=%s", exc)
        try:
            summary["pruned_jobs"] = self.prune_jobs()
        except Exception as exc:
            logger.error("job pruning failed error=%s", exc)
        logger.info("expiry sweep done summary=%s", summary)
        return summary
