"""Background scheduling for flush and retention ticks."""

import logging

from apscheduler.schedulers.background import BackgroundScheduler

from eventscope.config import Config

logger = logging.getLogger(__name__)

FLUSH_JOB_ID = "eventscope-flush"
SWEEP_JOB_ID = "eventscope-sweep"


def build_scheduler(components, config: Config) -> BackgroundScheduler:
    """Create (but do not start) a scheduler with one job per periodic task.

    ``max_instances=1`` keeps a single flush worker per queue; missed ticks
    coalesce into one run.
    """
    scheduler = BackgroundScheduler()
    if components.flush is not None:
        scheduler.add_job(
            components.flush.run_safely, "interval",
            seconds=config.flush_interval, id=FLUSH_JOB_ID,
            max_instances=1, coalesce=True,
        )
    scheduler.add_job(
        components.sweeper.run_safely, "interval",
        seconds=config.sweep_interval, id=SWEEP_JOB_ID,
        max_instances=1, coalesce=True,
    )
    logger.info("Scheduled jobs: %s", ", ".join(job.id for job in scheduler.get_jobs()))
    return scheduler
