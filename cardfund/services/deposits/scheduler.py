"""Wall-clock cadences for batch planning and expiry sweeps."""

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from cardfund.common.logging import logger
from cardfund.services.deposits.planner import BatchPlanner
from cardfund.services.deposits.sweeper import ExpirySweeper


MONITOR_JOB_ID = "monitor-cycle"
SWEEP_JOB_ID = "expiry-sweep"


async def run_monitor_cycle(planner: BatchPlanner) -> None:
    try:
        planner.run_cycle()
    except Exception as exc:
        logger.error("monitor cycle failed error=%s", exc)


async def run_expiry_sweep(sweeper: ExpirySweeper) -> None:
    try:
        await sweeper.sweep()
    except Exception as exc:
        logger.error("expiry sweep failed error=%s", exc)


def build_scheduler(
    planner: BatchPlanner,
    sweeper: ExpirySweeper,
    monitor_interval_seconds: int,
    sweep_interval_seconds: int,
) -> AsyncIOScheduler:
    """Two independent interval jobs.

    Monitoring fires on every tick and may overlap a still-running previous
    cycle. Missed sweep fires collapse into one.
    """

    scheduler = AsyncIOScheduler(
        timezone="UTC",
        job_defaults={"coalesce": True, "misfire_grace_time": 30},
    )
    scheduler.add_job(
        run_monitor_cycle,
        IntervalTrigger(seconds=monitor_interval_seconds),
        args=[planner],
        id=MONITOR_JOB_ID,
        name="Plan monitor-batch jobs",
        max_instances=3,
        coalesce=False,
        replace_existing=True,
    )
    scheduler.add_job(
        run_expiry_sweep,
        IntervalTrigger(seconds=sweep_interval_seconds),
        args=[sweeper],
        id=SWEEP_JOB_ID,
        name="Expire stale work",
        max_instances=1,
        replace_existing=True,
    )
    return scheduler
