"""
Scheduled Tasks Module
Background jobs: the due-schedule sweep and the daypart checks
"""
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
import logging

from utils.daypart import DAYPART_START_HOURS

logger = logging.getLogger(__name__)
scheduler = None


def schedule_sweep_task(app):
    """
    Fire due schedules for every connected owner
    Runs every SCHEDULE_SWEEP_SECONDS (default 10s), never overlapping itself
    """
    with app.app_context():
        from app import get_core

        try:
            summary = get_core(app).dispatch.run_sweep()
            logger.debug(f"Schedule sweep completed: {summary}")

        except Exception as e:
            logger.error(f"Unexpected error in schedule sweep: {e}")


def daypart_check_task(app):
    """
    Apply the current daypart content to enabled devices
    Runs every DAYPART_CHECK_MINUTES and at each daypart boundary
    """
    with app.app_context():
        from app import get_core

        try:
            result = get_core(app).daypart.check_and_apply()
            logger.info(f"[Daypart] Check completed: {result['applied']} applied, {result['skipped']} skipped")

        except Exception as e:
            logger.error(f"[Daypart] Error in daypart check: {e}")


def restore_current_display(app):
    """Reload the durable now-showing snapshot before the first sweep"""
    with app.app_context():
        from app import get_core

        try:
            get_core(app).dispatch.load_snapshot()
        except Exception as e:
            logger.error(f"Error restoring current display: {e}")


def init_scheduler(app):
    """
    Initialize and start the background scheduler

    Args:
        app: Flask application instance
    """
    global scheduler

    if scheduler is not None:
        logger.warning("Scheduler already initialized")
        return

    restore_current_display(app)

    try:
        scheduler = BackgroundScheduler()

        sweep_seconds = app.config.get('SCHEDULE_SWEEP_SECONDS', 10)
        scheduler.add_job(
            func=schedule_sweep_task,
            trigger=IntervalTrigger(seconds=sweep_seconds),
            args=[app],
            id='schedule_sweep',
            name='Due schedule sweep',
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        logger.info(f"Schedule sweep started - every {sweep_seconds} seconds")

        check_minutes = app.config.get('DAYPART_CHECK_MINUTES', 10)
        scheduler.add_job(
            func=daypart_check_task,
            trigger=IntervalTrigger(minutes=check_minutes),
            args=[app],
            id='daypart_check',
            name='Daypart content check',
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )

        # Catch window boundaries without waiting for the next interval tick
        scheduler.add_job(
            func=daypart_check_task,
            trigger=CronTrigger(hour=','.join(str(h) for h in DAYPART_START_HOURS), minute=0),
            args=[app],
            id='daypart_transition',
            name='Daypart transition',
            max_instances=1,
            replace_existing=True
        )
        logger.info(f"[Daypart] Scheduler started - every {check_minutes} minutes and at transitions")

        scheduler.start()
        logger.info("Scheduler started successfully")

    except Exception as e:
        logger.error(f"Failed to initialize scheduler: {e}")


def shutdown_scheduler():
    """Shutdown the scheduler gracefully"""
    global scheduler

    if scheduler is not None:
        try:
            scheduler.shutdown(wait=False)
            logger.info("Scheduler shut down")
        except Exception as e:
            logger.error(f"Error shutting down scheduler: {e}")
        scheduler = None
