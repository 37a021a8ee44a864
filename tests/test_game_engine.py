"""
Game engine tests: phase machine, bets, target override, settlement and
history retention.
"""

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from app.services.bot_liquidity import BotSettings
from app.services.game_engine import (
    BettingClosed,
    BotBet,
    GameEngine,
    GameSettings,
    InvalidBetAmount,
    InvalidRoom,
    OverrideRejected,
    Phase,
    RoomChangeNotAllowed,
    TooManyRequests,
)
from app.services.ledger_service import BalanceLedger

ALICE = "0x" + "a1" * 20
BOB = "0x" + "b2" * 20
CAROL = "0x" + "c3" * 20

SHORT = GameSettings(betting_duration=5, killer_duration=2, settling_duration=1)


@pytest_asyncio.fixture
async def ledger(store, clock):
    ledger = BalanceLedger(store, clock=clock)
    await ledger.load()
    return ledger


@pytest_asyncio.fixture
async def engine(ledger, rng, clock):
    return GameEngine(ledger, settings=GameSettings(), rng=rng, clock=clock)


async def run_ticks(engine, clock, count):
    for _ in range(count):
        clock.advance(1)
        await engine.advance()


class TestPhases:
    @pytest.mark.asyncio
    async def test_new_engine_starts_betting(self, engine):
        game = engine.current
        assert game.id == 1
        assert game.phase is Phase.BETTING
        assert game.countdown == 60
        assert set(game.room_targets) == set(range(1, 9))
        assert all(4200 <= t <= 5800 for t in game.room_targets.values())

    @pytest.mark.asyncio
    async def test_full_cycle(self, ledger, rng, clock):
        engine = GameEngine(ledger, settings=SHORT, rng=rng, clock=clock)

        await run_ticks(engine, clock, 5)
        assert engine.current.phase is Phase.KILLER_MOVING
        assert engine.current.countdown == 2
        assert 1 <= engine.current.target_room <= 8

        await run_ticks(engine, clock, 2)
        assert engine.current.phase is Phase.SETTLING
        assert engine.current.result is not None

        await run_ticks(engine, clock, 1)
        assert engine.current.id == 2
        assert engine.current.phase is Phase.BETTING
        assert engine.current.countdown == 5
        assert engine.find_game(1).result is not None

    @pytest.mark.asyncio
    async def test_game_ids_increase(self, ledger, rng, clock):
        engine = GameEngine(ledger, settings=SHORT, rng=rng, clock=clock)
        seen = set()
        for _ in range(8 * 3):
            seen.add(engine.current.id)
            await run_ticks(engine, clock, 1)
        assert sorted(seen) == [1, 2, 3]
        assert engine.current.id == 4

    @pytest.mark.asyncio
    async def test_retained_games_pruned(self, ledger, rng, clock):
        engine = GameEngine(
            ledger,
            settings=GameSettings(betting_duration=5, killer_duration=2, settling_duration=1, retention_seconds=30),
            rng=rng,
            clock=clock,
        )
        await run_ticks(engine, clock, 8)
        assert engine.find_game(1) is not None

        await run_ticks(engine, clock, 40)
        assert engine.find_game(1) is None


class TestBetting:
    @pytest.mark.asyncio
    async def test_place_bet_accumulates_in_same_room(self, engine):
        engine.place_bet(ALICE, 3, Decimal("10"), "alice")
        bet = engine.place_bet(ALICE.upper().replace("0X", "0x"), 3, "5.5")

        assert bet.amount == Decimal("15.5")
        assert bet.display_name == "alice"
        assert len(engine.current.players) == 1

    @pytest.mark.asyncio
    async def test_default_display_name(self, engine):
        engine.place_bet(ALICE, 1, 10)
        bet = engine.place_bet(BOB, 2, 10)
        assert bet.display_name == "Player2"

    @pytest.mark.asyncio
    async def test_room_change_rejected(self, engine):
        engine.place_bet(ALICE, 3, 10)
        with pytest.raises(RoomChangeNotAllowed):
            engine.place_bet(ALICE, 4, 10)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("room_id", [0, 9, "3", None])
    async def test_invalid_room(self, engine, room_id):
        with pytest.raises(InvalidRoom):
            engine.check_bet(room_id, 10)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["0.5", "500.01", "abc", "NaN", None])
    async def test_invalid_amount(self, engine, amount):
        with pytest.raises(InvalidBetAmount):
            engine.check_bet(1, amount)

    @pytest.mark.asyncio
    async def test_bet_bounds_are_inclusive(self, engine):
        assert engine.check_bet(1, "1") == Decimal("1")
        assert engine.check_bet(1, "500") == Decimal("500")

    @pytest.mark.asyncio
    async def test_betting_closed_outside_betting_phase(self, engine):
        engine.current.phase = Phase.KILLER_MOVING
        with pytest.raises(BettingClosed):
            engine.place_bet(ALICE, 1, 10)

    @pytest.mark.asyncio
    async def test_bet_lock_rejects_concurrent_bet(self, engine):
        async with engine.bet_lock(ALICE):
            with pytest.raises(TooManyRequests):
                async with engine.bet_lock(ALICE):
                    pass
            async with engine.bet_lock(BOB):
                pass
        async with engine.bet_lock(ALICE):
            pass

    @pytest.mark.asyncio
    async def test_player_game(self, engine):
        engine.place_bet(ALICE, 2, 10)

        mine = engine.player_game(ALICE)
        assert mine["in_game"] is True
        assert mine["my_bet"]["room_id"] == 2
        assert engine.player_game(BOB) == {"in_game": False, "game": None, "my_bet": None}


class TestTargetOverride:
    @pytest.mark.asyncio
    async def test_rejected_outside_window(self, engine):
        with pytest.raises(OverrideRejected):
            engine.set_target_override(4)

    @pytest.mark.asyncio
    async def test_rejected_for_invalid_room(self, engine):
        engine.current.countdown = 2
        with pytest.raises(InvalidRoom):
            engine.set_target_override(12)

    @pytest.mark.asyncio
    async def test_used_as_target(self, engine, clock):
        engine.current.countdown = 2
        result = engine.set_target_override(6)
        assert result["room_name"] == "Private Booths"
        assert engine.admin_view()["can_set_target"] is True

        await run_ticks(engine, clock, 2)

        assert engine.current.phase is Phase.KILLER_MOVING
        assert engine.current.target_room == 6
        assert engine.current.target_override is None


class TestSettlement:
    @pytest.mark.asyncio
    async def test_eliminated_stake_pays_survivors(self, engine, ledger):
        engine.place_bet(ALICE, 3, 100)
        engine.place_bet(BOB, 5, 300)
        engine.current.target_room = 3

        result = await engine.settle()

        assert result["pool"] == Decimal("90")
        assert result["killed_total"] == Decimal("100")
        assert [s["address"] for s in result["survivors"]] == [BOB]
        assert result["survivors"][0]["payout"] == Decimal("390")
        assert ledger.get_balance(BOB) == Decimal("390")
        assert ledger.get_balance(ALICE) == Decimal("0")
        tx = ledger.transactions_for(BOB)[0]
        assert tx.reason == "party_crisis_win"
        assert tx.meta["target_room"] == 3
        assert engine.current.phase is Phase.SETTLING

    @pytest.mark.asyncio
    async def test_pool_split_by_stake(self, engine, ledger):
        engine.place_bet(ALICE, 1, 100)
        engine.place_bet(BOB, 2, 100)
        engine.place_bet(CAROL, 4, 300)
        engine.current.target_room = 1

        await engine.settle()

        assert ledger.get_balance(BOB) == Decimal("122.5")
        assert ledger.get_balance(CAROL) == Decimal("367.5")

    @pytest.mark.asyncio
    async def test_bot_stakes_in_target_room_fund_pool(self, engine, ledger):
        engine.place_bet(ALICE, 2, 100)
        engine.current.target_room = 7
        engine.current.bots.append(BotBet(id="bot-1-0", name="Wolf", room_id=7, amount=Decimal("200")))
        engine.current.bots.append(BotBet(id="bot-1-1", name="Fox", room_id=2, amount=Decimal("900")))

        result = await engine.settle()

        assert result["bot_killed_total"] == Decimal("200")
        assert result["pool"] == Decimal("180")
        # Bots never share the pool
        assert ledger.get_balance(ALICE) == Decimal("280")

    @pytest.mark.asyncio
    async def test_no_survivors(self, engine, ledger):
        engine.place_bet(ALICE, 3, 100)
        engine.current.target_room = 3

        result = await engine.settle()

        assert result["survivors"] == []
        assert [e["address"] for e in result["eliminated"]] == [ALICE]
        assert ledger.all_transactions() == []

    @pytest.mark.asyncio
    async def test_payout_rounds_down(self, engine, ledger):
        engine.place_bet(ALICE, 1, 1)
        engine.place_bet(BOB, 2, 3)
        engine.place_bet(CAROL, 3, 3)
        engine.current.target_room = 1

        result = await engine.settle()

        # 0.9 / 2 each
        assert [s["payout"] for s in result["survivors"]] == [Decimal("3.45"), Decimal("3.45")]
        paid = sum(s["payout"] - s["bet"] for s in result["survivors"])
        assert paid <= result["pool"]

    @pytest.mark.asyncio
    async def test_settle_is_idempotent(self, engine, ledger):
        engine.place_bet(BOB, 5, 10)
        engine.current.target_room = 3

        first = await engine.settle()
        second = await engine.settle()

        assert first is second
        assert ledger.get_balance(BOB) == Decimal("10")

    @pytest.mark.asyncio
    async def test_failed_credit_is_reported(self, engine, ledger):
        engine.place_bet(ALICE, 3, 100)
        engine.place_bet(BOB, 5, 100)
        engine.place_bet(CAROL, 6, 100)
        engine.current.target_room = 3
        real_credit = ledger.credit

        async def flaky_credit(address, *args, **kwargs):
            if address == BOB:
                raise RuntimeError("store offline")
            return await real_credit(address, *args, **kwargs)

        ledger.credit = AsyncMock(side_effect=flaky_credit)

        result = await engine.settle()

        assert [f["address"] for f in result["failed_credits"]] == [BOB]
        assert result["failed_credits"][0]["error"] == "store offline"
        assert [s["address"] for s in result["survivors"]] == [CAROL]
        assert ledger.get_balance(CAROL) == Decimal("145")


class TestBots:
    @pytest.mark.asyncio
    async def test_betting_phase_fills_rooms_with_unround_bets(self, engine, clock):
        await run_ticks(engine, clock, 59)
        game = engine.current

        assert game.phase is Phase.BETTING
        assert game.bots
        for bot in game.bots:
            assert 50 <= bot.amount <= 600
            assert bot.amount % 10 != 0
            assert 1 <= bot.room_id <= 8
        assert len({bot.id for bot in game.bots}) == len(game.bots)

    @pytest.mark.asyncio
    async def test_no_bots_in_final_second_or_after_betting(self, engine, clock):
        await run_ticks(engine, clock, 59)
        count = len(engine.current.bots)

        await run_ticks(engine, clock, 5)

        assert engine.current.phase is Phase.KILLER_MOVING
        assert len(engine.current.bots) == count

    @pytest.mark.asyncio
    async def test_early_window_respects_bot_cap(self, ledger, rng, clock):
        settings = GameSettings(bots=BotSettings(bot_count_max=5))
        engine = GameEngine(ledger, settings=settings, rng=rng, clock=clock)

        await run_ticks(engine, clock, 29)

        # One batch is allowed to cross the cap, then targeted injection stops
        assert len(engine.current.bots) <= 5 + 8


class TestHistory:
    @pytest.mark.asyncio
    async def test_global_history_capped(self, ledger, rng, clock):
        engine = GameEngine(
            ledger,
            settings=GameSettings(betting_duration=3, killer_duration=1, settling_duration=1),
            rng=rng,
            clock=clock,
        )
        await run_ticks(engine, clock, 25 * 5)

        assert len(engine.global_history) == 20
        assert len(engine.status()["game"]["history"]) == 10
        entries = engine.history(limit=5)
        assert len(entries) == 5
        assert entries[0]["timestamp"] >= entries[-1]["timestamp"]

    @pytest.mark.asyncio
    async def test_status_shape(self, engine):
        engine.place_bet(ALICE, 4, 20)
        status = engine.status()

        assert status["game"]["game_id"] == 1
        assert status["game"]["room_stats"][4]["total_bet"] == Decimal("20")
        assert status["config"]["rooms"][8] == "Dance Floor"
