"""
Game Runtime - owns every stateful component for the lifetime of the app
"""
import logging
import random
import time
from typing import Callable, Optional

import config
from app.db import build_engine, build_session_factory, create_tables
from app.services.deposit_verifier import RpcDepositVerifier
from app.services.game_engine import GameEngine, GameSettings
from app.services.ledger_service import BalanceLedger
from app.services.snapshot_store import MemorySnapshotStore, SqlSnapshotStore
from app.services.transfer_service import HttpTransferGateway
from app.services.withdraw_security import RiskSettings, WithdrawalRiskEngine
from core.ports.chain import DepositVerifierPort, TransferPort
from core.ports.persistence import SnapshotStore
from core.rate_limit import RateLimiter, build_rate_limiter

logger = logging.getLogger(__name__)


class GameRuntime:
    def __init__(
        self,
        store: SnapshotStore,
        *,
        verifier: Optional[DepositVerifierPort] = None,
        transfer: Optional[TransferPort] = None,
        rate_limiter: Optional[RateLimiter] = None,
        game_settings: Optional[GameSettings] = None,
        risk_settings: Optional[RiskSettings] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time,
        lock_clock: Callable[[], float] = time.monotonic,
        db_engine=None,
    ):
        self.store = store
        self.verifier = verifier
        self.transfer = transfer
        self.rate_limiter = rate_limiter or RateLimiter(clock=clock)
        self.clock = clock
        self.ledger = BalanceLedger(store, clock=clock)
        self.risk = WithdrawalRiskEngine(store, settings=risk_settings, clock=clock, lock_clock=lock_clock)
        self.engine = GameEngine(self.ledger, settings=game_settings, rng=rng, clock=clock, lock_clock=lock_clock)
        self.ledger.add_deposit_listener(self.risk.record_deposit)
        self.started_at = clock()
        self._db_engine = db_engine

    async def load(self) -> None:
        await self.ledger.load()
        await self.risk.load()
        stale = self.ledger.open_reservations(older_than_seconds=config.RECONCILIATION_GRACE_SECONDS)
        if stale:
            logger.warning(
                f"{len(stale)} withdrawal reservations are still open from a previous run, "
                f"see /api/v1/admin/reconciliation/reservations"
            )

    async def tick(self) -> None:
        await self.engine.advance()

    async def close(self) -> None:
        await self.rate_limiter.close()
        if self._db_engine is not None:
            await self._db_engine.dispose()


async def build_runtime() -> GameRuntime:
    db_engine = None
    if config.DATABASE_URL:
        db_engine = build_engine(config.DATABASE_URL)
        await create_tables(db_engine)
        store = SqlSnapshotStore(build_session_factory(db_engine))
    else:
        logger.warning("DATABASE_URL not set, game state is kept in memory and lost on restart")
        store = MemorySnapshotStore()

    runtime = GameRuntime(
        store,
        verifier=RpcDepositVerifier(),
        transfer=HttpTransferGateway(),
        rate_limiter=build_rate_limiter(),
        db_engine=db_engine,
    )
    await runtime.load()
    return runtime
