"""End to end: indexer sighting through monitor-batch and reconcile to a stored deposit."""

from decimal import Decimal

import pytest
from sqlalchemy import select

from cardfund.services.deposits.models import DepositTransaction, Job, OutboxEvent
from cardfund.services.deposits.monitor import RECONCILE, ReconcileJobDefaults
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
    svc.monitor._sleep = instant_sleep
    svc.monitor.reconcile_defaults = ReconcileJobDefaults(attempts=5, backoff_ms=0, delay_ms=0)
    return svc


async def run_cycle(service):
    service.planner.run_cycle()
    while await service.queue.process_next(MONITOR_BATCH, service.monitor.handle_batch):
        pass
    while await service.queue.process_next(RECONCILE, service.reconciler.handle_job):
        pass


@pytest.mark.asyncio
async def test_observed_transfer_is_credited_and_recorded_once(
    service, session_factory, add_account, fake_indexer, fake_issuer, transfer_item
):
    add_account("acc-A", "TAddrX", issuer_user_id="user-1")
    fake_indexer.transfers["TAddrX"] = [transfer_item("t1", "TAddrX", quant="50000000")]
    fake_issuer.add_application("a1", 50.0)

    await run_cycle(service)
    await run_cycle(service)

    with session_factory() as db:
        rows = db.execute(select(DepositTransaction)).scalars().all()
        reconcile_jobs = db.execute(select(Job).where(Job.job_type == RECONCILE)).scalars().all()
        topics = [e.topic for e in db.execute(select(OutboxEvent)).scalars()]
    (row,) = rows
    assert (row.account_id, row.external_transfer_id, row.application_id, row.status) == (
        "acc-A",
        "t1",
        "a1",
        "SUCCESS",
    )
    assert row.credited_amount == Decimal("50.00")
    assert [(j.job_key, j.status) for j in reconcile_jobs] == [("tx-t1", "COMPLETED")]
    assert fake_issuer.topup_calls == [{"userId": "user-1", "amount": 50.0}]
    assert fake_issuer.accepted == ["a1"]
    assert topics == ["deposits.recorded"]


@pytest.mark.asyncio
async def test_unconfirmed_transfer_is_not_credited(
    service, session_factory, add_account, fake_indexer, fake_issuer, transfer_item
):
    add_account("acc-A", "TAddrX", issuer_user_id="user-1")
    fake_indexer.transfers["TAddrX"] = [transfer_item("t1", "TAddrX", confirmed=False)]
    fake_issuer.add_application("a1", 50.0)

    await run_cycle(service)

    with session_factory() as db:
        assert db.execute(select(DepositTransaction)).scalars().all() == []
    assert fake_issuer.topup_calls == []
