from decimal import Decimal

import pytest
import pytest_asyncio

from app.db import build_engine, build_session_factory, create_tables, normalize_database_url
from app.models.snapshot import StateSnapshot
from app.services.ledger_service import BalanceLedger
from app.services.snapshot_store import MemorySnapshotStore, SqlSnapshotStore

ALICE = "0x" + "a1" * 20


@pytest_asyncio.fixture
async def sql_store(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'state.db'}")
    await create_tables(engine)
    factory = build_session_factory(engine)
    yield SqlSnapshotStore(factory), factory
    await engine.dispose()


class TestSqlSnapshotStore:
    @pytest.mark.asyncio
    async def test_missing_snapshot(self, sql_store):
        store, _ = sql_store
        assert await store.load("ledger") is None

    @pytest.mark.asyncio
    async def test_save_overwrites_and_bumps_version(self, sql_store):
        store, factory = sql_store

        await store.save_snapshot("ledger", {"balances": {"a": "1"}})
        await store.save_snapshot("ledger", {"balances": {"a": "2"}})

        assert await store.load("ledger") == {"balances": {"a": "2"}}
        async with factory() as session:
            row = await session.get(StateSnapshot, "ledger")
            assert row.version == 2

    @pytest.mark.asyncio
    async def test_ledger_round_trip_through_sql(self, sql_store, clock):
        store, _ = sql_store
        ledger = BalanceLedger(store, clock=clock)
        await ledger.load()
        await ledger.credit(ALICE, Decimal("12.34"), "bonus")
        await ledger.reserve(ALICE, Decimal("2"))

        restored = BalanceLedger(store, clock=clock)
        await restored.load()

        assert restored.get_balance(ALICE) == Decimal("12.34")
        assert restored.get_available(ALICE) == Decimal("10.34")
        assert [tx.status for tx in restored.transactions_for(ALICE)] == ["reserved", "completed"]


class TestMemorySnapshotStore:
    @pytest.mark.asyncio
    async def test_returns_copies(self):
        store = MemorySnapshotStore()
        payload = {"items": [1]}
        await store.save_snapshot("x", payload)
        payload["items"].append(2)

        assert await store.load("x") == {"items": [1]}
        assert store.save_count == 1

    @pytest.mark.asyncio
    async def test_rejects_unserializable(self):
        store = MemorySnapshotStore()
        with pytest.raises(TypeError):
            await store.save_snapshot("x", {"amount": Decimal("1")})


class TestDatabaseUrl:
    def test_postgres_url_with_sslmode(self):
        url, args = normalize_database_url("postgres://u:p@db.example.com/app?sslmode=require")
        assert url == "postgresql+asyncpg://u:p@db.example.com/app"
        assert args == {"ssl": True}

    def test_sqlite_untouched(self):
        assert normalize_database_url("sqlite+aiosqlite:///x.db") == ("sqlite+aiosqlite:///x.db", {})
