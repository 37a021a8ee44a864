import random
from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

import config
from app.runtime import GameRuntime
from app.services.game_engine import GameSettings
from app.services.snapshot_store import MemorySnapshotStore
from app.services.withdraw_security import RiskSettings
from core.ports.chain import DepositVerification, TransferFailed
from core.rate_limit import RateLimiter

ADMIN_TOKEN = "test-admin-token"
START_TIME = 1_760_000_000.0  # 2025-10-09 08:53:20 UTC


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start=START_TIME):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeTransfer:
    def __init__(self):
        self.calls = []
        self.fail_with = None

    async def transfer(self, *, to_address, amount, reference):
        self.calls.append({"to_address": to_address, "amount": amount, "reference": reference})
        if self.fail_with:
            raise TransferFailed(self.fail_with)
        return "0x" + f"{len(self.calls):064x}"


class FakeVerifier:
    """Returns a confirmed verification for the requested amount unless told otherwise."""

    def __init__(self):
        self.calls = []
        self.next_result = None

    async def verify(self, tx_hash, address, expected_amount=None):
        self.calls.append((tx_hash, address, expected_amount))
        if self.next_result is not None:
            return self.next_result
        return DepositVerification(
            confirmed=True,
            amount=Decimal(expected_amount),
            confirmations=5,
            required_confirmations=3,
            block_number=100,
            timestamp=int(START_TIME),
        )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemorySnapshotStore()


@pytest.fixture
def rng():
    return random.Random(1234)


@pytest.fixture
def fake_transfer():
    return FakeTransfer()


@pytest.fixture
def fake_verifier():
    return FakeVerifier()


@pytest_asyncio.fixture
async def runtime(store, clock, rng, fake_transfer, fake_verifier):
    rt = GameRuntime(
        store,
        verifier=fake_verifier,
        transfer=fake_transfer,
        rate_limiter=RateLimiter(clock=clock),
        game_settings=GameSettings(),
        risk_settings=RiskSettings(lock_wait_seconds=0.2),
        rng=rng,
        clock=clock,
    )
    await rt.load()
    return rt


@pytest.fixture
def admin_headers(monkeypatch):
    monkeypatch.setattr(config, "ADMIN_API_TOKEN", ADMIN_TOKEN)
    return {"X-Admin-Token": ADMIN_TOKEN}


@pytest_asyncio.fixture
async def client(runtime):
    from main import create_app

    app = create_app(runtime, scheduler_enabled=False)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
