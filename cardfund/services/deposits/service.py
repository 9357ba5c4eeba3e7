"""Deposit service wiring: queue, handlers, scheduler and outbox publisher."""

import asyncio
from datetime import timedelta

from cardfund.common.config import settings
from cardfund.common.events import TOPIC_DEPOSIT_DLQ, TOPIC_ISSUER_EVENTS, EventEnvelope, KafkaBus
from cardfund.common.jobqueue import ClaimedJob, JobOptions, JobQueue
from cardfund.common.logging import logger
from cardfund.common.maintenance import MaintenanceState
from cardfund.common.outbox import (
    add_outbox_event,
    claim_outbox_batch,
    mark_outbox_sent,
    requeue_outbox_event,
    update_outbox_backlog_metrics,
)
from cardfund.services.deposits.fees import DepositFee
from cardfund.services.deposits.models import Job, OutboxEvent
from cardfund.services.deposits.monitor import RECONCILE, AccountMonitor, ReconcileJobDefaults
from cardfund.services.deposits.planner import MONITOR_BATCH, BatchPlanner
from cardfund.services.deposits.poller import LedgerPoller, RateLimitCooldown
from cardfund.services.deposits.reconcile import ACCEPT_APPLICATION, Reconciler
from cardfund.services.deposits.repository import AccountRepository, TransactionRepository
from cardfund.services.deposits.scheduler import build_scheduler
from cardfund.services.deposits.sweeper import ExpirySweeper
from cardfund.services.issuer.client import IssuerClient
from cardfund.services.issuer.webhooks import parse_issuer_event


class DepositService:
    """Owns the pipeline components and their background loops."""

    def __init__(
        self,
        session_factory,
        issuer: IssuerClient | None = None,
        poller: LedgerPoller | None = None,
        cooldown: RateLimitCooldown | None = None,
        maintenance: MaintenanceState | None = None,
        service_name: str = settings.service_name,
    ) -> None:
        self.session_factory = session_factory
        self.service_name = service_name
        self.kafka = KafkaBus()
        self.maintenance = maintenance or MaintenanceState()
        self.issuer = issuer or IssuerClient.from_settings()
        self.poller = poller or LedgerPoller.from_settings()
        self.cooldown = cooldown or RateLimitCooldown.from_settings()
        self.accounts = AccountRepository(session_factory)
        self.transactions = TransactionRepository(session_factory)
        self.queue = JobQueue(
            session_factory,
            Job,
            service_name=service_name,
            visibility_timeout_seconds=settings.job_visibility_timeout_seconds,
            on_failed=self._on_job_failed,
        )
        self.planner = BatchPlanner(
            self.accounts,
            self.queue,
            batch_size=settings.monitor_batch_size,
            lanes=settings.monitor_lanes,
            lane_delay_ms=settings.monitor_lane_delay_ms,
            attempts=settings.monitor_batch_attempts,
            backoff_ms=settings.monitor_batch_backoff_ms,
            service_name=service_name,
        )
        self.monitor = AccountMonitor(
            self.accounts,
            self.transactions,
            self.queue,
            self.poller,
            cooldown=self.cooldown,
            fee=DepositFee.from_settings(),
            chunk_size=settings.account_chunk_size,
            chunk_delay_ms=settings.account_chunk_delay_ms,
            reconcile_defaults=ReconcileJobDefaults(
                attempts=settings.reconcile_attempts,
                backoff_ms=settings.reconcile_backoff_ms,
                delay_ms=settings.reconcile_delay_ms,
            ),
            service_name=service_name,
        )
        self.reconciler = Reconciler(
            session_factory,
            self.transactions,
            self.issuer,
            self.queue,
            application_page_limit=settings.issuer_application_page_limit,
            accept_options=JobOptions(
                attempts=settings.accept_attempts,
                backoff_ms=settings.accept_backoff_ms,
                delay_ms=settings.accept_delay_ms,
            ),
            service_name=service_name,
        )
        self.sweeper = ExpirySweeper(
            self.queue,
            self.accounts,
            self.issuer,
            max_age=timedelta(hours=settings.pending_max_age_hours),
            chunk_size=settings.account_chunk_size,
            chunk_delay_ms=settings.account_chunk_delay_ms,
            retention_count=settings.job_retention_count,
            service_name=service_name,
        )
        self.scheduler = None

    def _on_job_failed(self, db, job: ClaimedJob, reason: str) -> None:
        """Surface a terminally failed job on the DLQ topic in the same transaction."""

        add_outbox_event(
            db,
            OutboxEvent,
            TOPIC_DEPOSIT_DLQ,
            aggregate_type="job",
            aggregate_id=job.id,
            payload={
                "job_type": job.job_type,
                "reason": reason,
                "attempts_made": job.attempts_made,
                "manual_reconciliation": job.job_type in (RECONCILE, ACCEPT_APPLICATION),
                "job_payload": job.payload,
            },
        )

    def handle_issuer_webhook(self, body: dict):
        """Parse one webhook into its variant and stage it for `issuer.events`."""

        event = parse_issuer_event(body)
        aggregate_id = getattr(event, "bill_no", None) or str(body.get("billNo") or "unknown")
        with self.session_factory() as db:
            add_outbox_event(
                db,
                OutboxEvent,
                TOPIC_ISSUER_EVENTS,
                aggregate_type="issuer_event",
                aggregate_id=aggregate_id,
                payload={"kind": event.kind, "txn_type": event.txn_type, "body": body},
            )
            db.commit()
        logger.info("issuer webhook accepted kind=%s txn_type=%s bill_no=%s", event.kind, event.txn_type, aggregate_id)
        return event

    def start_scheduler(self):
        self.scheduler = build_scheduler(
            self.planner,
            self.sweeper,
            monitor_interval_seconds=settings.monitor_interval_seconds,
            sweep_interval_seconds=settings.sweep_interval_seconds,
        )
        self.scheduler.start()
        return self.scheduler

    async def start_workers(self) -> None:
        """Run one fixed-size worker pool per job type."""

        await asyncio.gather(
            self.queue.run_pool(
                MONITOR_BATCH,
                self.monitor.handle_batch,
                concurrency=settings.monitor_batch_concurrency,
                timeout=settings.job_timeout_seconds,
                poll_interval=settings.job_poll_interval_seconds,
            ),
            self.queue.run_pool(
                RECONCILE,
                self.reconciler.handle_job,
                concurrency=settings.reconcile_concurrency,
                timeout=settings.job_timeout_seconds,
                poll_interval=settings.job_poll_interval_seconds,
            ),
            self.queue.run_pool(
                ACCEPT_APPLICATION,
                self.reconciler.handle_accept_job,
                concurrency=settings.accept_concurrency,
                timeout=settings.job_timeout_seconds,
                poll_interval=settings.job_poll_interval_seconds,
            ),
        )

    async def outbox_publisher(self) -> None:
        """Continuously publish and ack pending outbox events."""

        while True:
            with self.session_factory() as db:
                rows = claim_outbox_batch(db, OutboxEvent, limit=100)
                update_outbox_backlog_metrics(db, OutboxEvent, self.service_name)
                db.commit()
            for row in rows:
                try:
                    await self.kafka.publish(row["topic"], EventEnvelope(**row["payload"]))
                    with self.session_factory() as db:
                        mark_outbox_sent(db, OutboxEvent, row["id"])
                        update_outbox_backlog_metrics(db, OutboxEvent, self.service_name)
                        db.commit()
                except Exception as exc:
                    logger.exception("outbox publish failed: %s", exc)
                    with self.session_factory() as db:
                        requeue_outbox_event(db, OutboxEvent, row["id"])
                        update_outbox_backlog_metrics(db, OutboxEvent, self.service_name)
                        db.commit()
            await asyncio.sleep(0.5)

    async def close(self) -> None:
        if self.scheduler is not None:
            self.scheduler.shutdown(wait=False)
        await self.issuer.aclose()
        await self.poller.aclose()
        await self.kafka.close()
