import pytest

from salvage.scheduler import RECONCILE_JOB_ID, build_reconciliation_scheduler


def test_scheduler_builds_job():
    scheduler = build_reconciliation_scheduler("0 * * * *", lambda: None)
    jobs = scheduler.get_jobs()
    assert len(jobs) == 1
    assert jobs[0].id == RECONCILE_JOB_ID == "hold_reconciliation"


def test_scheduler_rejects_short_cron():
    with pytest.raises(ValueError):
        build_reconciliation_scheduler("0 *", lambda: None)
