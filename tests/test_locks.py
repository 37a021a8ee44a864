import asyncio

import pytest

from core.locks import KeyedLock, LockTimeout


class ManualClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestKeyedLock:
    def test_try_acquire_is_exclusive_per_key(self):
        lock = KeyedLock(name="test", ttl_seconds=30)

        token = lock.try_acquire("a")
        assert token is not None
        assert lock.try_acquire("a") is None
        assert lock.try_acquire("b") is not None
        assert lock.is_locked("a")

        assert lock.release("a", token) is True
        assert not lock.is_locked("a")

    def test_release_with_wrong_token_is_ignored(self):
        lock = KeyedLock(name="test", ttl_seconds=30)
        lock.try_acquire("a")
        assert lock.release("a", "not-the-token") is False
        assert lock.is_locked("a")

    def test_lease_expires_after_ttl(self):
        clock = ManualClock()
        lock = KeyedLock(name="test", ttl_seconds=10, clock=clock)
        stale = lock.try_acquire("a")

        clock.now = 10
        fresh = lock.try_acquire("a")

        assert fresh is not None
        # The expired holder must not release the new lease
        assert lock.release("a", stale) is False
        assert lock.is_locked("a")

    @pytest.mark.asyncio
    async def test_waiter_is_woken_on_release(self):
        lock = KeyedLock(name="test", ttl_seconds=30)
        token = lock.try_acquire("a")

        waiter = asyncio.create_task(lock.acquire("a", timeout=1))
        await asyncio.sleep(0.01)
        assert not waiter.done()

        lock.release("a", token)
        new_token = await waiter
        assert new_token != token

    @pytest.mark.asyncio
    async def test_acquire_times_out(self):
        lock = KeyedLock(name="test", ttl_seconds=30)
        lock.try_acquire("a")

        with pytest.raises(LockTimeout) as exc:
            await lock.acquire("a", timeout=0.05)
        assert exc.value.key == "a"

    @pytest.mark.asyncio
    async def test_hold_releases_on_error(self):
        lock = KeyedLock(name="test", ttl_seconds=30)

        with pytest.raises(RuntimeError):
            async with lock.hold("a", timeout=0.1):
                raise RuntimeError("boom")

        assert not lock.is_locked("a")
