"""
Test Party Crisis Endpoints: status, betting, my-game and history
"""
from decimal import Decimal

import pytest

from app.services.game_engine import Phase

BASE = "/api/v1/party-crisis"
ALICE = "0x" + "a1" * 20
BOB = "0x" + "b2" * 20


async def fund(runtime, address, amount="1000"):
    await runtime.ledger.credit(address, Decimal(amount), "test_funding")


async def bet(client, address=ALICE, room_id=3, amount="100"):
    return await client.post(f"{BASE}/bet", json={"address": address, "room_id": room_id, "amount": amount})


class TestStatus:
    """Test GET /party-crisis/status"""

    @pytest.mark.asyncio
    async def test_status(self, client):
        response = await client.get(f"{BASE}/status")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["game"]["game_id"] == 1
        assert data["game"]["phase"] == "betting"
        assert data["game"]["countdown"] == 60
        assert len(data["game"]["room_stats"]) == 8
        assert data["config"]["platform_fee"] == 0.1
        assert data["config"]["rooms"]["1"] == "Office"


class TestBet:
    """Test POST /party-crisis/bet"""

    @pytest.mark.asyncio
    async def test_bet_debits_stake(self, client, runtime):
        await fund(runtime, ALICE)

        response = await bet(client)

        assert response.status_code == 200
        data = response.json()
        assert data["game_id"] == 1
        assert data["bet"]["room_id"] == 3
        assert data["bet"]["amount"] == 100
        assert data["new_balance"] == 900
        spend = runtime.ledger.transactions_for(ALICE)[0]
        assert spend.reason == "party_crisis_bet"
        assert spend.meta == {"game_id": 1, "room_id": 3}

    @pytest.mark.asyncio
    async def test_rebet_adds_to_stake(self, client, runtime):
        await fund(runtime, ALICE)
        await bet(client)

        response = await bet(client, amount="50")

        assert response.json()["bet"]["amount"] == 150
        assert runtime.ledger.get_balance(ALICE) == Decimal("850")

    @pytest.mark.asyncio
    async def test_room_change_rejected_without_debit(self, client, runtime):
        await fund(runtime, ALICE)
        await bet(client)

        response = await bet(client, room_id=4)

        assert response.status_code == 400
        assert "cannot change room" in response.json()["detail"]
        assert runtime.ledger.get_balance(ALICE) == Decimal("900")

    @pytest.mark.asyncio
    async def test_uses_display_name(self, client, runtime):
        await fund(runtime, ALICE)
        await runtime.ledger.set_display_name(ALICE, "alice")

        response = await bet(client)

        assert response.json()["bet"]["display_name"] == "alice"

    @pytest.mark.asyncio
    async def test_insufficient_balance(self, client, runtime):
        await fund(runtime, ALICE, "50")

        response = await bet(client)

        assert response.status_code == 400
        assert runtime.engine.current.players == {}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("room_id, amount", [(0, "10"), (9, "10"), (3, "0.5"), (3, "501")])
    async def test_invalid_bets(self, client, runtime, room_id, amount):
        await fund(runtime, ALICE)

        response = await bet(client, room_id=room_id, amount=amount)

        assert response.status_code == 400
        assert runtime.ledger.get_balance(ALICE) == Decimal("1000")

    @pytest.mark.asyncio
    async def test_betting_closed(self, client, runtime):
        await fund(runtime, ALICE)
        runtime.engine.current.phase = Phase.KILLER_MOVING

        response = await bet(client)

        assert response.status_code == 400
        assert "closed" in response.json()["detail"]
        assert runtime.ledger.get_balance(ALICE) == Decimal("1000")

    @pytest.mark.asyncio
    async def test_concurrent_bet_rejected(self, client, runtime):
        await fund(runtime, ALICE)

        async with runtime.engine.bet_lock(ALICE):
            response = await bet(client)

        assert response.status_code == 429
        assert runtime.ledger.get_balance(ALICE) == Decimal("1000")

    @pytest.mark.asyncio
    async def test_refund_when_game_moves_on(self, client, runtime, monkeypatch):
        await fund(runtime, ALICE)
        engine = runtime.engine
        original_debit = runtime.ledger.debit

        async def debit_then_close(*args, **kwargs):
            tx = await original_debit(*args, **kwargs)
            engine.current.phase = Phase.KILLER_MOVING
            return tx

        monkeypatch.setattr(runtime.ledger, "debit", debit_then_close)

        response = await bet(client)

        assert response.status_code == 400
        assert runtime.ledger.get_balance(ALICE) == Decimal("1000")
        refund, stake = runtime.ledger.transactions_for(ALICE)[:2]
        assert refund.reason == "party_crisis_refund"
        assert stake.reason == "party_crisis_bet"
        assert refund.meta == {"game_id": 1, "room_id": 3, "refund": True, "refund_of": stake.id}


class TestRound:
    """A full round through the HTTP surface"""

    @pytest.mark.asyncio
    async def test_survivor_collects_pool(self, client, runtime, clock, admin_headers):
        await fund(runtime, ALICE)
        await fund(runtime, BOB)
        await bet(client, ALICE, room_id=3, amount="100")
        await bet(client, BOB, room_id=5, amount="300")
        engine = runtime.engine
        engine.current.bots.clear()
        engine.current.countdown = 2
        assert (await client.post(
            "/api/v1/admin/party-crisis/set-target", json={"room_id": 3}, headers=admin_headers
        )).status_code == 200

        for _ in range(2 + engine.settings.killer_duration):
            clock.advance(1)
            await runtime.tick()

        status = (await client.get(f"{BASE}/status")).json()
        assert status["game"]["phase"] == "settling"
        result = status["game"]["result"]
        assert result["target_room"] == 3
        assert result["pool"] == 90
        assert result["survivors"][0]["payout"] == 390
        assert runtime.ledger.get_balance(BOB) == Decimal("1090")
        assert runtime.ledger.get_balance(ALICE) == Decimal("900")

        mine = (await client.get(f"{BASE}/my-game/{BOB}")).json()
        assert mine["in_game"] is True
        assert mine["my_bet"]["amount"] == 300

        history = (await client.get(f"{BASE}/history", params={"limit": 5})).json()["history"]
        assert history[0]["target_room"] == 3
        assert history[0]["room_name"] == "Lounge"


class TestMyGame:
    """Test GET /party-crisis/my-game/{address}"""

    @pytest.mark.asyncio
    async def test_not_in_game(self, client):
        response = await client.get(f"{BASE}/my-game/{ALICE}")

        assert response.status_code == 200
        assert response.json() == {"success": True, "in_game": False, "game": None, "my_bet": None}

    @pytest.mark.asyncio
    async def test_invalid_address(self, client):
        assert (await client.get(f"{BASE}/my-game/not-an-address")).status_code == 400
