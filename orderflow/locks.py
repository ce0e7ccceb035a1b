"""
Table-backed advisory locks on orders.

Keeps two admins from editing the same order at once without holding a
database connection open for the duration of the edit. A lock is a row in
order_update_locks; a partial unique index allows at most one unreleased row
per order, so acquisition is a single conditional INSERT, never a
read-then-write.

Locks expire after a short TTL so a crashed editor heals itself. Expired rows
are marked released (never deleted) either just before the next acquisition
attempt or by sweep_expired(). Successful acquire, renew and release calls
each leave an audit_logs row.

Payment reconciliation does not take these locks.
"""
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import select, update

from . import audit, config
from .database import insert, utcnow
from .errors import AlreadyLocked, LockExpired, NotHolder
from .models import OrderLock

logger = logging.getLogger(__name__)


@dataclass
class LockInfo:
    order_id: str
    holder_id: str
    acquired_at: datetime
    expires_at: datetime
    renewal_count: int = 0
    renewed: bool = False

    def seconds_remaining(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        return max(0, int((self.expires_at - now).total_seconds()))

    def to_dict(self, now: Optional[datetime] = None):
        return {
            "order_id": self.order_id,
            "holder_id": self.holder_id,
            "acquired_at": self.acquired_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "seconds_remaining": self.seconds_remaining(now),
            "renewal_count": self.renewal_count,
            "renewed": self.renewed,
        }

    @classmethod
    def from_row(cls, row, renewed=False):
        return cls(
            order_id=row.order_id,
            holder_id=row.holder_id,
            acquired_at=row.acquired_at,
            expires_at=row.expires_at,
            renewal_count=row.renewal_count or 0,
            renewed=renewed,
        )


class LockManager:
    """
    Non-blocking acquire/renew/release of per-order edit locks.

    Every public method runs as its own short transaction on the given
    session and commits before returning, so other sessions see the lock
    immediately.

    Example:
        locks = LockManager()
        locks.acquire(db, order_id, "admin-7")
        try:
            ...
        finally:
            locks.release(db, order_id, "admin-7")

        # Or:
        with locks.held(db, order_id, "admin-7"):
            ...
    """

    def __init__(self, ttl_seconds: int = config.LOCK_TTL_SECONDS, clock: Callable[[], datetime] = utcnow):
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    def acquire(self, db, order_id: str, holder_id: str, ttl_seconds: Optional[int] = None) -> LockInfo:
        ttl = timedelta(seconds=ttl_seconds or self.ttl_seconds)

        # Two rounds: the live lock seen on conflict may be released before we read it.
        for _ in range(2):
            now = self.clock()
            self._release_expired(db, now, order_id)

            stmt = (
                insert(db, OrderLock)
                .values(
                    order_id=order_id,
                    holder_id=holder_id,
                    acquired_at=now,
                    expires_at=now + ttl,
                    renewal_count=0,
                )
                .on_conflict_do_nothing(
                    index_elements=["order_id"],
                    index_where=OrderLock.released_at.is_(None),
                )
                .returning(OrderLock.id)
            )
            lock_id = db.execute(stmt).scalar()
            if lock_id is not None:
                info = LockInfo(order_id, holder_id, now, now + ttl)
                self._audit(db, "order_lock_acquired", f"Lock acquired by {holder_id}", info)
                db.commit()
                logger.info("Lock on order %s acquired by %s for %ss", order_id, holder_id, ttl.seconds)
                return info

            current = self._active(db, order_id, now)
            if current is None:
                db.commit()
                continue

            if current.holder_id == holder_id:
                renewed = self._extend(db, order_id, holder_id, now, ttl)
                if renewed is not None:
                    info = LockInfo.from_row(renewed, renewed=True)
                    self._audit(db, "order_lock_renewed", f"Lock renewed by {holder_id}", info)
                    db.commit()
                    return info
                db.commit()
                continue

            info = LockInfo.from_row(current)
            db.commit()
            logger.info("Order %s is locked by %s (%ss left), %s rejected",
                        order_id, info.holder_id, info.seconds_remaining(now), holder_id)
            raise AlreadyLocked(order_id, info.holder_id, info.seconds_remaining(now))

        raise AlreadyLocked(order_id, "unknown", 0)

    def renew(self, db, order_id: str, holder_id: str, ttl_seconds: Optional[int] = None) -> LockInfo:
        ttl = timedelta(seconds=ttl_seconds or self.ttl_seconds)
        now = self.clock()

        row = self._extend(db, order_id, holder_id, now, ttl)
        if row is not None:
            info = LockInfo.from_row(row, renewed=True)
            self._audit(db, "order_lock_renewed", f"Lock renewed by {holder_id}", info)
            db.commit()
            return info

        mine = (
            db.query(OrderLock)
            .filter(OrderLock.order_id == order_id, OrderLock.holder_id == holder_id)
            .order_by(OrderLock.acquired_at.desc(), OrderLock.id.desc())
            .first()
        )
        current = self._active(db, order_id, now)
        db.commit()

        lapsed = (
            mine is not None
            and mine.expires_at <= now
            and (mine.released_at is None or mine.released_at >= mine.expires_at)
        )
        if lapsed:
            raise LockExpired(order_id, holder_id)
        raise NotHolder(order_id, holder_id, current.holder_id if current else None)

    def release(self, db, order_id: str, holder_id: str) -> bool:
        """Release the caller's lock. Returns False when there was nothing to release."""
        now = self.clock()
        result = db.execute(
            update(OrderLock)
            .where(
                OrderLock.order_id == order_id,
                OrderLock.holder_id == holder_id,
                OrderLock.released_at.is_(None),
            )
            .values(released_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            audit.record(
                db,
                "order_lock_released",
                "Order Management",
                f"Lock released by {holder_id}",
                entity_id=order_id,
                user_id=holder_id,
                released_at=now,
            )
            db.commit()
            logger.info("Lock on order %s released by %s", order_id, holder_id)
            return True

        current = self._active(db, order_id, now)
        db.commit()
        if current is not None:
            raise NotHolder(order_id, holder_id, current.holder_id)
        return False

    def current_lock(self, db, order_id: str) -> Optional[LockInfo]:
        row = self._active(db, order_id, self.clock())
        return LockInfo.from_row(row) if row is not None else None

    @contextmanager
    def held(self, db, order_id: str, holder_id: str, ttl_seconds: Optional[int] = None):
        """Hold the lock for a block; a lock that was already held is kept afterwards."""
        info = self.acquire(db, order_id, holder_id, ttl_seconds)
        try:
            yield info
        except Exception:
            db.rollback()
            raise
        finally:
            if not info.renewed:
                self.release(db, order_id, holder_id)

    def sweep_expired(self, db, limit: Optional[int] = None) -> int:
        """Release expired locks, at most `limit` of them (oldest expiry first) when given."""
        released = self._release_expired(db, self.clock(), limit=limit)
        db.commit()
        if released:
            logger.info("Lock sweep released %d expired locks", released)
        return released

    def _release_expired(self, db, now, order_id=None, limit=None) -> int:
        expired = (
            OrderLock.released_at.is_(None),
            OrderLock.expires_at <= now,
        )
        stmt = update(OrderLock).where(*expired)
        if order_id is not None:
            stmt = stmt.where(OrderLock.order_id == order_id)
        if limit is not None:
            batch = select(OrderLock.id).where(*expired).order_by(OrderLock.expires_at, OrderLock.id).limit(limit)
            stmt = stmt.where(OrderLock.id.in_(batch.scalar_subquery()))
        result = db.execute(stmt.values(released_at=now).execution_options(synchronize_session=False))
        return result.rowcount or 0

    def _audit(self, db, action, message, info):
        audit.record(
            db,
            action,
            "Order Management",
            message,
            entity_id=info.order_id,
            user_id=info.holder_id,
            expires_at=info.expires_at,
            renewal_count=info.renewal_count,
        )

    def _extend(self, db, order_id, holder_id, now, ttl):
        result = db.execute(
            update(OrderLock)
            .where(
                OrderLock.order_id == order_id,
                OrderLock.holder_id == holder_id,
                OrderLock.released_at.is_(None),
                OrderLock.expires_at > now,
            )
            .values(
                expires_at=now + ttl,
                renewed_at=now,
                renewal_count=OrderLock.renewal_count + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            return None
        return self._active(db, order_id, now)

    def _active(self, db, order_id, now):
        return (
            db.query(OrderLock)
            .filter(
                OrderLock.order_id == order_id,
                OrderLock.released_at.is_(None),
                OrderLock.expires_at > now,
            )
            .populate_existing()
            .first()
        )


lock_manager = LockManager()
