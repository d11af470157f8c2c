"""
APScheduler setup for the batch deal finder.

Jobs receive the DealRuntime built at startup and open their own database
session for each run.
"""

import logging
import os
from typing import Optional

from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from dealfinder.runtime import DealRuntime
from dealfinder.services.deal_evaluator import SearchMode

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler: Optional[AsyncIOScheduler] = None


def get_scheduler(runtime: DealRuntime) -> AsyncIOScheduler:
    """Get or create the global scheduler instance."""
    global scheduler
    if scheduler is None:
        tz = os.environ.get('TZ', 'UTC')
        logger.info(f"Scheduler using timezone: {tz}")

        scheduler = AsyncIOScheduler(
            jobstores={'default': MemoryJobStore()},
            timezone=tz
        )
        _setup_scheduled_jobs(scheduler, runtime)

    return scheduler


def _setup_scheduled_jobs(instance: AsyncIOScheduler, runtime: DealRuntime):
    settings = runtime.settings

    instance.add_job(
        full_deal_run,
        trigger=CronTrigger(hour=settings.full_run_cron_hour, minute=0),
        args=[runtime],
        id='full_deal_run',
        name='Full Deal Finder Run',
        replace_existing=True,
        max_instances=1,
    )

    instance.add_job(
        last_minute_deal_run,
        trigger=CronTrigger(hour=settings.last_minute_run_cron_hour, minute=0),
        args=[runtime],
        id='last_minute_deal_run',
        name='Last-Minute Deal Finder Run',
        replace_existing=True,
        max_instances=1,
    )

    instance.add_job(
        process_alerts_job,
        trigger=IntervalTrigger(hours=settings.alert_check_interval_hours),
        args=[runtime],
        id='deal_alerts',
        name='Process Deal Alerts',
        replace_existing=True,
        max_instances=1,
    )

    instance.add_job(
        cleanup_job,
        trigger=IntervalTrigger(minutes=settings.cleanup_interval_minutes),
        args=[runtime],
        id='deal_cleanup',
        name='Expired Deal Cleanup',
        replace_existing=True,
        max_instances=1,
    )

    logger.info("Scheduled jobs configured:")
    logger.info(f"  - Full run: {settings.full_run_cron_hour:02d}:00 daily")
    logger.info(f"  - Last-minute run: {settings.last_minute_run_cron_hour:02d}:00 daily")
    logger.info(f"  - Deal alerts: every {settings.alert_check_interval_hours} hours")
    logger.info(f"  - Cleanup: every {settings.cleanup_interval_minutes} minutes")


async def _run_deal_finder(runtime: DealRuntime, mode: SearchMode):
    db = runtime.session_factory()
    try:
        summary = await runtime.deal_service(db).run_deal_finder(mode)
        if summary.origins_failed:
            logger.warning(f"Origins with errors in {mode.value} run: {', '.join(summary.origins_failed)}")
        return summary
    except Exception as e:
        logger.error(f"Deal finder ({mode.value}) failed: {e}")
    finally:
        db.close()


async def full_deal_run(runtime: DealRuntime):
    """Rotating full run over the day's origin group (2:00 by default)."""
    return await _run_deal_finder(runtime, SearchMode.FULL)


async def last_minute_deal_run(runtime: DealRuntime):
    return await _run_deal_finder(runtime, SearchMode.LAST_MINUTE)


async def process_alerts_job(runtime: DealRuntime):
    logger.info("Starting scheduled deal alert check")
    db = runtime.session_factory()
    try:
        matched = await runtime.deal_service(db).process_alerts()
        total = sum(len(deals) for deals in matched.values())
        logger.info(f"Alert check complete: {len(matched)} alerts checked, {total} matching deals")
    except Exception as e:
        logger.error(f"Deal alert check failed: {e}")
    finally:
        db.close()


async def cleanup_job(runtime: DealRuntime):
    db = runtime.session_factory()
    try:
        runtime.deal_service(db).cleanup_expired_deals()
    except Exception as e:
        logger.error(f"Expired deal cleanup failed: {e}")
    finally:
        db.close()


def start_scheduler(runtime: DealRuntime):
    """Start the scheduler (call this from FastAPI startup)."""
    scheduler_instance = get_scheduler(runtime)

    if not scheduler_instance.running:
        scheduler_instance.start()
        logger.info("APScheduler started successfully")

        for job in scheduler_instance.get_jobs():
            logger.info(f"Next '{job.name}': {job.next_run_time}")
    else:
        logger.warning("Scheduler already running")


def stop_scheduler():
    """Stop the scheduler (call this from FastAPI shutdown)."""
    global scheduler
    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")
    scheduler = None


def get_scheduler_status() -> dict:
    if scheduler is None or not scheduler.running:
        return {"running": False, "jobs": []}

    return {
        "running": True,
        "jobs": [
            {
                "id": job.id,
                "name": job.name,
                "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
            }
            for job in scheduler.get_jobs()
        ],
    }
