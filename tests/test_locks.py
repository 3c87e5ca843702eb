import pytest

from payledger.common.db import SessionLocal
from payledger.common.errors import LockUnavailable
from payledger.services.locks.service import DatabaseLockBackend, LockService, RedisLockBackend


class FakeRedis:
    """Just enough of redis-py for the lease scripts."""

    def __init__(self) -> None:
        self.values = {}
        self.ttls = {}

    def set(self, name, value, nx=False, ex=None):
        if nx and name in self.values:
            return None
        self.values[name] = value
        self.ttls[name] = ex
        return True

    def eval(self, script, numkeys, name, owner, *args):
        if self.values.get(name) != owner:
            return 0
        if "expire" in script:
            self.ttls[name] = int(args[0])
            return 1
        del self.values[name]
        self.ttls.pop(name, None)
        return 1


@pytest.fixture
def db_locks(settings, clock):
    def make():
        return LockService(DatabaseLockBackend(SessionLocal, clock), settings, clock)

    return make


def test_database_lock_is_exclusive(db_locks):
    worker_a, worker_b = db_locks(), db_locks()

    owner = worker_a.acquire("settlement_window:7", ttl_seconds=60)
    assert owner
    assert worker_b.acquire("settlement_window:7", ttl_seconds=60) is None
    assert worker_b.acquire("settlement_window:8", ttl_seconds=60)

    assert worker_a.release("settlement_window:7", owner)
    assert worker_b.acquire("settlement_window:7", ttl_seconds=60)


def test_expired_lease_is_taken_over(db_locks, clock):
    worker_a, worker_b = db_locks(), db_locks()
    stale = worker_a.acquire("schedule:payroll:s1", ttl_seconds=10)
    assert stale

    clock.advance(seconds=11)

    assert worker_b.acquire("schedule:payroll:s1", ttl_seconds=10)
    assert not worker_a.refresh("schedule:payroll:s1", stale)
    assert not worker_a.release("schedule:payroll:s1", stale)
    assert db_locks().acquire("schedule:payroll:s1", ttl_seconds=10) is None


def test_stale_holder_cannot_release_shared_service_lock(settings, clock):
    locks = LockService(DatabaseLockBackend(SessionLocal, clock), settings, clock)
    first = locks.acquire("settlement_window:1", ttl_seconds=60)

    clock.advance(seconds=120)
    second = locks.acquire("settlement_window:1", ttl_seconds=60)
    assert second and second != first

    assert locks.release("settlement_window:1", first) is False
    assert locks.acquire("settlement_window:1", ttl_seconds=60) is None
    assert locks.release("settlement_window:1", second) is True


def test_refresh_extends_held_lease(db_locks, clock):
    worker_a, worker_b = db_locks(), db_locks()
    owner = worker_a.acquire("recalculate:j1", ttl_seconds=10)

    clock.advance(seconds=8)
    assert worker_a.refresh("recalculate:j1", owner, ttl_seconds=10)
    clock.advance(seconds=8)

    assert worker_b.acquire("recalculate:j1", ttl_seconds=10) is None


def test_release_without_acquire_is_noop(db_locks):
    assert db_locks().release("never-taken", None) is False
    assert db_locks().release("never-taken", "someone-else") is False


def test_hold_raises_when_taken(db_locks):
    worker_a, worker_b = db_locks(), db_locks()

    with worker_a.hold("ledger:verify") as owner:
        assert owner
        with pytest.raises(LockUnavailable) as excinfo:
            with worker_b.hold("ledger:verify"):
                pass
    assert excinfo.value.retryable is True
    assert excinfo.value.details == {"key": "ledger:verify"}

    with worker_b.hold("ledger:verify"):
        pass


def test_block_runs_callback_under_lock(db_locks):
    locks = db_locks()

    assert locks.block("snapshots:daily", lambda: "done") == "done"
    assert locks.acquire("snapshots:daily")


def test_redis_backend_leases(settings, clock):
    client = FakeRedis()
    worker_a = LockService(RedisLockBackend(client), settings, clock)
    worker_b = LockService(RedisLockBackend(client), settings, clock)

    owner = worker_a.acquire("settlement_window:1", ttl_seconds=300)
    assert owner
    assert client.ttls["lock:settlement_window:1"] == 300
    assert worker_b.acquire("settlement_window:1") is None
    assert not worker_b.release("settlement_window:1", "not-the-owner")

    assert worker_a.refresh("settlement_window:1", owner, ttl_seconds=600)
    assert client.ttls["lock:settlement_window:1"] == 600
    assert worker_a.release("settlement_window:1", owner)
    assert "lock:settlement_window:1" not in client.values
    assert worker_b.acquire("settlement_window:1")
