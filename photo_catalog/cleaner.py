from datetime import timedelta

from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.exc import OperationalError

from photo_catalog import config
from photo_catalog.catalog import CatalogStore
from photo_catalog.db import ensure_connection
from photo_catalog.domain import utc_now

STALE_UPLOAD_REASON = "upload expired"


def sweep_stale_uploads(store: CatalogStore, metrics, logger, now=None) -> int:
    """Fail uploads that never reported completion within STALE_UPLOAD_HOURS."""
    cutoff = (now or utc_now()) - timedelta(hours=config.STALE_UPLOAD_HOURS)
    expired = store.fail_stale_uploads(cutoff, STALE_UPLOAD_REASON)
    if expired:
        metrics.record_failed(expired)
        logger.info("event=stale_uploads_failed count=%s cutoff=%s", expired, cutoff.isoformat())
    return expired


def start_cleaner(store: CatalogStore, metrics, logger):
    scheduler = BackgroundScheduler()

    def _job():
        if not ensure_connection():
            logger.warning("event=cleaner_skipped reason=database_unreachable")
            return
        try:
            sweep_stale_uploads(store, metrics, logger)
        except OperationalError as e:
            logger.error("event=cleaner_database_error error=%s", str(e))
        except Exception as e:
            logger.error("event=cleaner_unexpected_error error=%s", str(e))

    scheduler.add_job(_job, "interval", hours=1)
    scheduler.start()
    return scheduler
