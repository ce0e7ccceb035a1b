"""
Scheduled maintenance operations.

Each sweep narrows to the rows that need work and re-derives state from the
database, so running one twice, or two at once, is harmless. Scheduling is
left to whatever calls POST /api/v1/sweeps/{name}. Every sweep touches at most
batch_size rows per run (config.SWEEP_BATCH_SIZE when not given).
"""
import logging

from . import config
from .locks import lock_manager
from .notifications import archive_terminal, reclaim_stuck
from .payments import reconcile_payments

logger = logging.getLogger(__name__)


def sweep_locks(db, batch_size=None):
    return {"released": lock_manager.sweep_expired(db, limit=batch_size or config.SWEEP_BATCH_SIZE)}


def sweep_payments(db, batch_size=None):
    return reconcile_payments(db, batch_size or config.SWEEP_BATCH_SIZE).to_dict()


def sweep_notifications(db, batch_size=None):
    reclaimed = reclaim_stuck(db, config.PROCESSING_TIMEOUT_SECONDS, config.NOTIFICATION_MAX_RETRIES,
                              limit=batch_size or config.SWEEP_BATCH_SIZE)
    return {"reclaimed": reclaimed}


def sweep_archive(db, batch_size=None):
    return {"archived": archive_terminal(db, config.ARCHIVE_AFTER_DAYS, limit=batch_size or config.SWEEP_BATCH_SIZE)}


SWEEPS = {
    "locks": sweep_locks,
    "payments": sweep_payments,
    "notifications": sweep_notifications,
    "archive": sweep_archive,
}


def run_sweep(name, db, batch_size=None):
    try:
        sweep = SWEEPS[name]
    except KeyError:
        raise ValueError(f"Unknown sweep '{name}'") from None
    report = sweep(db, batch_size)
    logger.info("Sweep %s finished: %s", name, report)
    return report
