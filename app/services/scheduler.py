"""
APScheduler setup for the monthly forecast job.

Schedule:  day MONTHLY_FORECAST_DAY, MONTHLY_FORECAST_HOUR:00 UTC
Enabled:   MONTHLY_FORECAST_ENABLED=True

The scheduler runs inside the FastAPI process — no separate worker needed.
"""
import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from config import get_settings

logger = logging.getLogger(__name__)

JOB_ID = "monthly_forecast_batch"

_scheduler: Optional[AsyncIOScheduler] = None


async def _run_batch_wrapper():
    """Wrapper called by APScheduler — runs the full monthly batch."""
    from app.services.batch_job import run_monthly_forecasts
    logger.info("[Scheduler] Monthly cron triggered — starting forecast batch")
    try:
        summary = await run_monthly_forecasts()
        logger.info(
            f"[Scheduler] Batch complete: {summary['success']} ok, "
            f"{summary['errors']} errors, {summary['duration_seconds']}s"
        )
    except Exception as e:
        logger.error(f"[Scheduler] Batch job failed: {e}", exc_info=True)


def build_trigger() -> CronTrigger:
    settings = get_settings()
    return CronTrigger(
        day=settings.MONTHLY_FORECAST_DAY,
        hour=settings.MONTHLY_FORECAST_HOUR,
        minute=0,
        timezone="UTC",
    )


def start_scheduler() -> AsyncIOScheduler:
    """Create and start the APScheduler with the monthly cron job."""
    global _scheduler

    _scheduler = AsyncIOScheduler(timezone="UTC")
    _scheduler.add_job(
        _run_batch_wrapper,
        trigger=build_trigger(),
        id=JOB_ID,
        name="Monthly Forecast Batch",
        replace_existing=True,
        misfire_grace_time=6 * 3600,  # If server was down, run up to 6 hours late
    )

    _scheduler.start()
    next_run = _scheduler.get_job(JOB_ID).next_run_time
    logger.info(f"[Scheduler] Started. Next batch run: {next_run.strftime('%Y-%m-%d %H:%M UTC')}")
    return _scheduler


def stop_scheduler() -> None:
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info("[Scheduler] Stopped")
