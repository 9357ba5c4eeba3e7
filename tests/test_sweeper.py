"""Expiry sweeps for stale reconcile jobs and stale issuer applications."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from cardfund.common.jobqueue import JobOptions, JobOutcome, utcnow
from cardfund.services.deposits.models import Job, OutboxEvent
from cardfund.services.deposits.monitor import RECONCILE
from cardfund.services.deposits.planner import MONITOR_BATCH
from cardfund.services.deposits.poller import RateLimitCooldown
from cardfund.services.deposits.service import DepositService


@pytest.fixture
def service(session_factory, issuer_client, poller, fake_redis, instant_sleep):
    svc = DepositService(
        session_factory,
        issuer=issuer_client,
        poller=poller,
        cooldown=RateLimitCooldown(fake_redis),
        service_name="test",
    )
    svc.sweeper._sleep = instant_sleep
    return svc


def ms_ago(hours: float) -> int:
    return int((datetime.now(timezone.utc) - timedelta(hours=hours)).timestamp() * 1000)


def test_stale_reconcile_job_is_failed_and_sent_to_dlq(service, session_factory):
    job_id = service.queue.enqueue(RECONCILE, {"external_transfer_id": "t1"}, JobOptions(job_key="tx-t1"))

    expired = service.sweeper.expire_jobs(now=utcnow() + timedelta(hours=25))

    assert expired == 1
    with session_factory() as db:
        job = db.get(Job, job_id)
        events = db.execute(select(OutboxEvent)).scalars().all()
    assert job.status == "FAILED"
    assert job.last_error.startswith("expired")
    (event,) = events
    assert event.topic == "deposits.dlq"
    assert event.aggregate_id == job_id
    assert event.payload["payload"]["manual_reconciliation"] is True
    assert event.payload["payload"]["job_payload"] == {"external_transfer_id": "t1"}


def test_recent_reconcile_job_is_left_alone(service, session_factory):
    job_id = service.queue.enqueue(RECONCILE, {"external_transfer_id": "t1"})

    assert service.sweeper.expire_jobs() == 0
    with session_factory() as db:
        assert db.get(Job, job_id).status == "PENDING"


@pytest.mark.asyncio
async def test_stale_application_is_rejected_exactly_once(service, add_account, fake_issuer):
    # Two accounts backed by the same issuer user see the same applications.
    add_account("acc-1", "TAddr1", issuer_user_id="user-1")
    add_account("acc-2", "TAddr2", issuer_user_id="user-1")
    fake_issuer.add_application("old", 20.0, create_time=ms_ago(30))
    fake_issuer.add_application("fresh", 20.0, create_time=ms_ago(1))

    assert await service.sweeper.reject_stale_applications() == 1
    assert fake_issuer.rejected == ["old"]

    assert await service.sweeper.reject_stale_applications() == 0
    assert fake_issuer.rejected == ["old"]


@pytest.mark.asyncio
async def test_one_failed_rejection_does_not_block_others(service, add_account, fake_issuer):
    add_account("acc-1", "TAddr1", issuer_user_id="user-1")
    add_account("acc-2", "TAddr2", issuer_user_id="user-2")
    fake_issuer.add_application("stuck", 5.0, user_id="user-1", create_time=ms_ago(48))
    fake_issuer.add_application("old-2", 7.0, user_id="user-2", create_time=ms_ago(48))
    fake_issuer.failing_rejects.add("stuck")

    assert await service.sweeper.reject_stale_applications() == 1
    assert fake_issuer.rejected == ["old-2"]


@pytest.mark.asyncio
async def test_sweep_runs_both_halves_independently(service, add_account, fake_issuer):
    add_account("acc-1", "TAddr1", issuer_user_id="user-1")
    fake_issuer.add_application("old", 20.0, create_time=ms_ago(30))
    fake_issuer.list_status = 503
    service.queue.enqueue(RECONCILE, {"external_transfer_id": "t1"})

    summary = await service.sweeper.sweep(now=utcnow() + timedelta(hours=25))

    assert summary == {"expired_jobs": 1, "rejected_applications": 0, "pruned_jobs": 0}


def test_settled_monitor_batches_are_pruned_but_failed_reconciles_kept(service, session_factory):
    service.sweeper.retention_count = 2
    for n in range(4):
        service.queue.enqueue(MONITOR_BATCH, {"batch_index": n, "batch_size": 4, "offset": 0})
    for job in service.queue.claim(MONITOR_BATCH, limit=4):
        service.queue.settle(job, JobOutcome.complete())
    service.queue.enqueue(RECONCILE, {"external_transfer_id": "t1"}, JobOptions(attempts=1))
    (reconcile,) = service.queue.claim(RECONCILE)
    service.queue.settle(reconcile, JobOutcome.retry("NO_MATCH"))

    assert service.sweeper.prune_jobs() == 2

    with session_factory() as db:
        remaining = sorted((j.job_type, j.status) for j in db.execute(select(Job)).scalars())
    assert remaining == [
        (MONITOR_BATCH, "COMPLETED"),
        (MONITOR_BATCH, "COMPLETED"),
        (RECONCILE, "FAILED"),
    ]
