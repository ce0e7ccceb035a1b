import logging

from .models import AuditLog

logger = logging.getLogger(__name__)


def record(db, action, category, message, entity_id=None, user_id=None, **values):
    """Add an audit row to the session. Flushed with the caller's transaction."""
    entry = AuditLog(
        action=action,
        category=category,
        message=message,
        entity_id=entity_id,
        user_id=user_id,
        new_values=_jsonable(values),
    )
    db.add(entry)
    return entry


def record_safely(db, action, category, message, entity_id=None, user_id=None, **values):
    """Write an audit row in its own savepoint; a failure here is logged and dropped."""
    try:
        with db.begin_nested():
            record(db, action, category, message, entity_id=entity_id, user_id=user_id, **values)
    except Exception:
        logger.exception("Could not write audit entry %s for %s", action, entity_id)


def _jsonable(values):
    out = {}
    for key, value in values.items():
        if value is None or isinstance(value, (bool, int, float, str, list, dict)):
            out[key] = value
        else:
            out[key] = str(value)
    return out
