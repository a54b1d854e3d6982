import logging

from apscheduler.schedulers.background import BackgroundScheduler

logger = logging.getLogger(__name__)


def start_fine_scheduler(fine_engine, minutes):
    """
    Recompute every member's cached fine on an interval. Returns the running
    scheduler, or None when `minutes` disables the job.
    """
    if not minutes or minutes <= 0:
        logger.info("Periodic fine recomputation disabled")
        return None

    def recompute_fines():
        try:
            fine_engine.recompute_all()
        except Exception:
            # keep the job alive for the next tick
            logger.exception("Scheduled fine recomputation failed")

    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_job(
        recompute_fines,
        "interval",
        minutes=minutes,
        id="recompute_fines",
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info("Fine recomputation scheduled every %d minutes", minutes)
    return scheduler
