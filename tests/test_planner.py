"""Batch planning and cycle enqueueing."""

import pytest
from sqlalchemy import select

from cardfund.services.deposits.models import Job
from cardfund.services.deposits.planner import MONITOR_BATCH, BatchPlanner, plan_batches
from cardfund.services.deposits.repository import AccountRepository


def test_plan_splits_accounts_into_ceil_batches():
    plans = plan_batches(23, 5)

    assert len(plans) == 5
    assert [p.offset for p in plans] == [0, 5, 10, 15, 20]
    assert [p.size for p in plans] == [5, 5, 5, 5, 3]
    assert all(p.delay_ms == 0 for p in plans)


def test_plan_staggers_lanes():
    plans = plan_batches(10, 2, lanes=2, lane_delay_ms=12_000)

    assert [p.lane for p in plans] == [0, 1, 0, 1, 0]
    assert [p.delay_ms for p in plans] == [0, 12_000, 0, 12_000, 0]


def test_plan_with_no_accounts_is_empty():
    assert plan_batches(0, 4) == []


def test_plan_rejects_non_positive_batch_size():
    with pytest.raises(ValueError):
        plan_batches(10, 0)


def test_run_cycle_enqueues_one_job_per_batch(session_factory, queue, add_account):
    for i in range(10):
        add_account(f"acc-{i:02d}", f"TAddr{i}", issuer_user_id=f"user-{i}")
    # Not monitored: no address yet.
    add_account("acc-nowallet", None)

    planner = BatchPlanner(AccountRepository(session_factory), queue, batch_size=4, lanes=1, lane_delay_ms=0)

    assert planner.run_cycle() == 3
    with session_factory() as db:
        jobs = db.execute(select(Job).order_by(Job.run_at)).scalars().all()
    assert {j.job_type for j in jobs} == {MONITOR_BATCH}
    assert sorted(j.payload["offset"] for j in jobs) == [0, 4, 8]
    assert all(j.max_attempts == 3 and j.backoff_base_ms == 5_000 for j in jobs)


def test_run_cycle_skips_failed_enqueue(session_factory, add_account):
    for i in range(5):
        add_account(f"acc-{i}", f"TAddr{i}")

    class FlakyQueue:
        def __init__(self):
            self.calls = 0

        def enqueue(self, job_type, payload, options):
            self.calls += 1
            if self.calls == 1:
                raise RuntimeError("db unavailable")
            return f"job-{self.calls}"

    flaky = FlakyQueue()
    planner = BatchPlanner(AccountRepository(session_factory), flaky, batch_size=2, lanes=1, lane_delay_ms=0)

    assert planner.run_cycle() == 2
    assert flaky.calls == 3
