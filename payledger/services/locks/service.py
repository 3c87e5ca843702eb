"""Named, leased mutual exclusion with database and Redis drivers.

Acquisition never blocks past `wait_seconds`; callers that cannot take a lock
report "already in progress" instead of queueing behind the holder. Leases
expire on their own so a crashed holder cannot wedge a key.
"""

import time
from contextlib import contextmanager
from datetime import timedelta
from uuid import uuid4

import redis
from sqlalchemy import delete, or_, update
from sqlalchemy.exc import IntegrityError

from payledger.common.errors import LockUnavailable
from payledger.common.logging import logger
from payledger.common.metrics import lock_acquire_failures_total
from payledger.services.locks.models import LockLease


class DatabaseLockBackend:
    """Lease rows claimed by conditional update or insert."""

    driver = "database"

    def __init__(self, session_factory, clock) -> None:
        self.session_factory = session_factory
        self.clock = clock

    def try_acquire(self, key: str, owner: str, ttl_seconds: int) -> bool:
        now = self.clock.now()
        expires_at = now + timedelta(seconds=ttl_seconds)
        with self.session_factory() as db:
            # Take over an expired lease in place.
            result = db.execute(
                update(LockLease)
                .where(LockLease.key == key, or_(LockLease.expires_at <= now, LockLease.owner == owner))
                .values(owner=owner, acquired_at=now, expires_at=expires_at)
            )
            if result.rowcount == 1:
                db.commit()
                return True
            db.add(LockLease(key=key, owner=owner, acquired_at=now, expires_at=expires_at))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return False
            return True

    def release(self, key: str, owner: str) -> bool:
        with self.session_factory() as db:
            result = db.execute(delete(LockLease).where(LockLease.key == key, LockLease.owner == owner))
            db.commit()
            return result.rowcount == 1

    def refresh(self, key: str, owner: str, ttl_seconds: int) -> bool:
        now = self.clock.now()
        with self.session_factory() as db:
            result = db.execute(
                update(LockLease)
                .where(LockLease.key == key, LockLease.owner == owner, LockLease.expires_at > now)
                .values(expires_at=now + timedelta(seconds=ttl_seconds))
            )
            db.commit()
            return result.rowcount == 1


class RedisLockBackend:
    """`SET NX EX` leases with owner-checked release."""

    driver = "redis"

    RELEASE_SCRIPT = """
    if redis.call('get', KEYS[1]) == ARGV[1] then
        return redis.call('del', KEYS[1])
    end
    return 0
    """
    REFRESH_SCRIPT = """
    if redis.call('get', KEYS[1]) == ARGV[1] then
        return redis.call('expire', KEYS[1], ARGV[2])
    end
    return 0
    """

    def __init__(self, client) -> None:
        self.client = client

    @staticmethod
    def _name(key: str) -> str:
        return f"lock:{key}"

    def try_acquire(self, key: str, owner: str, ttl_seconds: int) -> bool:
        return bool(self.client.set(self._name(key), owner, nx=True, ex=ttl_seconds))

    def release(self, key: str, owner: str) -> bool:
        return bool(self.client.eval(self.RELEASE_SCRIPT, 1, self._name(key), owner))

    def refresh(self, key: str, owner: str, ttl_seconds: int) -> bool:
        return bool(self.client.eval(self.REFRESH_SCRIPT, 1, self._name(key), owner, ttl_seconds))


class LockService:
    """Acquire/release named locks; each successful acquire returns its own owner token."""

    def __init__(self, backend, settings, clock, poll_interval: float = 0.1) -> None:
        self.backend = backend
        self.settings = settings
        self.clock = clock
        self.poll_interval = poll_interval

    def acquire(self, key: str, ttl_seconds: int | None = None, wait_seconds: float | None = None) -> str | None:
        """Try to take `key`, polling for at most `wait_seconds`.

        Returns the owner token for `release`/`refresh`, or None when the key is held.
        """

        ttl = ttl_seconds or self.settings.lock_ttl_seconds
        wait = self.settings.lock_wait_seconds if wait_seconds is None else wait_seconds
        owner = str(uuid4())
        deadline = time.monotonic() + wait
        while True:
            if self.backend.try_acquire(key, owner, ttl):
                logger.debug("lock_acquired key=%s ttl=%s", key, ttl)
                return owner
            if time.monotonic() >= deadline:
                lock_acquire_failures_total.labels(driver=self.backend.driver).inc()
                logger.info("lock_unavailable key=%s waited=%s", key, wait)
                return None
            time.sleep(self.poll_interval)

    def release(self, key: str, owner: str | None) -> bool:
        if owner is None:
            return False
        released = self.backend.release(key, owner)
        if not released:
            logger.warning("lock_release_lost key=%s", key)
        return released

    def refresh(self, key: str, owner: str | None, ttl_seconds: int | None = None) -> bool:
        """Extend a held lease; False means the lease was lost."""

        if owner is None:
            return False
        return self.backend.refresh(key, owner, ttl_seconds or self.settings.lock_ttl_seconds)

    @contextmanager
    def hold(self, key: str, ttl_seconds: int | None = None, wait_seconds: float | None = None):
        owner = self.acquire(key, ttl_seconds, wait_seconds)
        if owner is None:
            raise LockUnavailable(f"lock {key} is already held", key=key)
        try:
            yield owner
        finally:
            self.release(key, owner)

    def block(self, key: str, callback, ttl_seconds: int | None = None, wait_seconds: float | None = None):
        """Run `callback` while holding `key`; raises `LockUnavailable` otherwise."""

        with self.hold(key, ttl_seconds, wait_seconds):
            return callback()


def build_lock_service(session_factory, settings, clock) -> LockService:
    """Pick the lock driver named by `settings.lock_driver`."""

    if settings.lock_driver == "redis":
        backend = RedisLockBackend(redis.Redis.from_url(settings.redis_url, decode_responses=True))
    else:
        backend = DatabaseLockBackend(session_factory, clock)
    return LockService(backend, settings, clock)
