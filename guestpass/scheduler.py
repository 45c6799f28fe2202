"""APScheduler integration for the retention sweep.

Only started when ``enable_scheduler`` is switched on; otherwise purges run
when an operator calls ``guestpass purge``.
"""

from __future__ import annotations

from apscheduler.schedulers.background import BackgroundScheduler

from .config import settings
from .ratelimit import Limiters
from .retention import run_retention_cycle

_scheduler: BackgroundScheduler | None = None


def start_scheduler(limiters: Limiters | None = None) -> BackgroundScheduler:
    global _scheduler
    if _scheduler and _scheduler.running:
        return _scheduler
    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_job(
        run_retention_cycle,
        "interval",
        hours=settings.purge_interval_hours,
        id="retention-cycle",
        max_instances=1,
        replace_existing=True,
    )
    if limiters is not None:
        scheduler.add_job(
            limiters.prune,
            "interval",
            minutes=15,
            id="rate-limit-prune",
            max_instances=1,
            replace_existing=True,
        )
    scheduler.start()
    _scheduler = scheduler
    return scheduler


def stop_scheduler() -> None:
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
        _scheduler = None
