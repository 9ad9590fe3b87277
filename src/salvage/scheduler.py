from __future__ import annotations

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

RECONCILE_JOB_ID = "hold_reconciliation"


def build_reconciliation_scheduler(cron_expr: str, job_fn) -> BackgroundScheduler:
    """Run ``job_fn`` (hold sweep plus store/cache sync) on a 5-field cron schedule."""
    fields = cron_expr.split()
    if len(fields) != 5:
        raise ValueError("Cron must have 5 fields: min hour day month day_of_week")
    minute, hour, day, month, day_of_week = fields
    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_job(
        job_fn,
        trigger=CronTrigger(
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=day_of_week,
            timezone="UTC",
        ),
        id=RECONCILE_JOB_ID,
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    return scheduler
