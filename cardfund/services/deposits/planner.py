"""Batch planning: partition monitored accounts into staggered queue jobs."""

import math
from dataclasses import dataclass

from cardfund.common.jobqueue import JobOptions, JobQueue
from cardfund.common.logging import logger
from cardfund.common.metrics import monitor_batches_enqueued_total, monitor_cycles_total
from cardfund.services.deposits.repository import AccountRepository
from cardfund.services.deposits.schemas import MonitorBatchPayload


MONITOR_BATCH = "monitor-batch"


@dataclass(frozen=True)
class BatchPlan:
    batch_index: int
    offset: int
    size: int
    lane: int
    delay_ms: int


def plan_batches(total: int, batch_size: int, lanes: int = 1, lane_delay_ms: int = 0) -> list[BatchPlan]:
    """`ceil(total / batch_size)` batches; batch i runs in lane `i % lanes` after `lane * lane_delay_ms`."""

    if batch_size <= 0:
        raise ValueError("batch_size must be positive")
    lanes = max(1, lanes)
    plans = []
    for batch_index in range(math.ceil(max(0, total) / batch_size)):
        offset = batch_index * batch_size
        lane = batch_index % lanes
        plans.append(
            BatchPlan(
                batch_index=batch_index,
                offset=offset,
                size=min(batch_size, total - offset),
                lane=lane,
                delay_ms=lane * lane_delay_ms,
            )
        )
    return plans


class BatchPlanner:
    def __init__(
        self,
        accounts: AccountRepository,
        queue: JobQueue,
        batch_size: int,
        lanes: int,
        lane_delay_ms: int,
        attempts: int = 3,
        backoff_ms: int = 5_000,
        service_name: str = "deposits",
    ) -> None:
        self.accounts = accounts
        self.queue = queue
        self.batch_size = batch_size
        self.lanes = lanes
        self.lane_delay_ms = lane_delay_ms
        self.attempts = attempts
        self.backoff_ms = backoff_ms
        self.service_name = service_name

    def run_cycle(self) -> int:
        """Enqueue every batch of this cycle up front; returns how many were queued.

        A failed enqueue is logged and dropped; the next cycle replans from scratch.
        """

        monitor_cycles_total.labels(service=self.service_name).inc()
        total = self.accounts.count_monitored()
        plans = plan_batches(total, self.batch_size, self.lanes, self.lane_delay_ms)
        logger.info("monitor cycle accounts=%s batches=%s lanes=%s", total, len(plans), self.lanes)
        enqueued = 0
        for plan in plans:
            payload = MonitorBatchPayload(
                batch_index=plan.batch_index,
                batch_size=self.batch_size,
                offset=plan.offset,
                lane=plan.lane,
            )
            try:
                self.queue.enqueue(
                    MONITOR_BATCH,
                    payload.model_dump(),
                    JobOptions(attempts=self.attempts, backoff_ms=self.backoff_ms, delay_ms=plan.delay_ms),
                )
            except Exception as exc:
                logger.error("monitor batch enqueue failed batch_index=%s error=%s", plan.batch_index, exc)
                continue
            enqueued += 1
        monitor_batches_enqueued_total.labels(service=self.service_name).inc(enqueued)
        return enqueued
