from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.exc import OperationalError

from cloudbox.config import CLEANER_INTERVAL_MINUTES, ORPHAN_GRACE_MINUTES
from cloudbox.db import ensure_connection
from cloudbox.storage import delete_orphaned_blobs


def run_orphan_sweep(engine, store, metrics, logger, grace_minutes=ORPHAN_GRACE_MINUTES) -> int:
    if not ensure_connection(engine):
        logger.warning("event=orphan_sweep_skipped reason=database_unreachable")
        return 0
    deleted = delete_orphaned_blobs(engine, store, grace_minutes)
    if deleted:
        metrics.increment("orphans_swept", deleted)
        logger.info("event=orphan_sweep_deleted count=%s", deleted)
    return deleted


def start_cleaner(engine, store, metrics, logger, interval_minutes=CLEANER_INTERVAL_MINUTES):
    scheduler = BackgroundScheduler()

    def _job():
        try:
            run_orphan_sweep(engine, store, metrics, logger)
        except OperationalError as e:
            logger.error("event=orphan_sweep_failed reason=database error=%s", e)
        except Exception as e:
            # Keep the scheduler alive; the next run retries.
            logger.error("event=orphan_sweep_failed error=%s", e)

    scheduler.add_job(_job, "interval", minutes=interval_minutes)
    scheduler.start()
    return scheduler
