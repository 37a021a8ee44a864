from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
import logging
import pytz

# Configure logging
logger = logging.getLogger(__name__)

TICK_JOB_ID = 'party_crisis_tick'


# ========= Scheduled Tasks =========

async def run_game_tick(runtime):
    """Advance the active game by one second"""
    try:
        await runtime.tick()
    except Exception:
        # A failed tick must not kill the job; the next tick retries from the same state
        logger.exception("Game tick failed")


def create_scheduler():
    """Create a scheduler bound to the running event loop"""
    return AsyncIOScheduler(timezone=pytz.utc)


def start_scheduler(scheduler, runtime):
    """Register the heartbeat job and start the scheduler"""
    if scheduler.running:
        logger.warning("Scheduler is already running")
        return scheduler

    scheduler.add_job(
        run_game_tick,
        IntervalTrigger(seconds=1),
        args=[runtime],
        id=TICK_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=1,
    )
    scheduler.start()
    logger.info("Scheduler started successfully")
    return scheduler


def shutdown_scheduler(scheduler):
    if scheduler is not None and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
