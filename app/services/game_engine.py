"""
Party Crisis Game Engine - phase state machine, synthetic liquidity and
pari-mutuel settlement

One heartbeat per second drives the active game through
betting -> killer_moving -> settling, then a fresh game starts in the same
tick. The engine never moves money on bet placement; the caller debits the
ledger first. Settlement credits the ledger once per surviving player.
"""
import logging
import random
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from enum import Enum
from typing import Any, AsyncIterator, Callable, Deque, Dict, List, Optional

import config
from app.services import bot_liquidity
from app.services.bot_liquidity import BotSettings
from app.services.ledger_service import BalanceLedger
from core.locks import KeyedLock

logger = logging.getLogger(__name__)

PAYOUT_QUANTUM = Decimal("0.00000001")
WIN_REASON = "party_crisis_win"

ROOMS: Dict[int, str] = {
    1: "Office",
    2: "Bar",
    3: "Lounge",
    4: "VIP Suite",
    5: "Dining Hall",
    6: "Private Booths",
    7: "Restaurant",
    8: "Dance Floor",
}


class Phase(str, Enum):
    BETTING = "betting"
    KILLER_MOVING = "killer_moving"
    SETTLING = "settling"


class GameError(ValueError):
    """Base exception for rejected game actions"""
    pass


class BettingClosed(GameError):
    pass


class InvalidRoom(GameError):
    pass


class InvalidBetAmount(GameError):
    pass


class RoomChangeNotAllowed(GameError):
    pass


class OverrideRejected(GameError):
    pass


class TooManyRequests(Exception):
    """Another operation for the same address is already in flight."""
    pass


@dataclass
class GameSettings:
    betting_duration: int = config.BETTING_DURATION
    killer_duration: int = config.KILLER_DURATION
    settling_duration: int = config.SETTLING_DURATION
    min_bet: Decimal = Decimal(config.MIN_BET)
    max_bet: Decimal = Decimal(config.MAX_BET)
    platform_fee: Decimal = Decimal(config.PLATFORM_FEE)
    override_window: int = config.TARGET_OVERRIDE_WINDOW
    retention_seconds: int = config.GAME_RETENTION_SECONDS
    history_limit: int = config.HISTORY_LIMIT
    status_history_limit: int = config.STATUS_HISTORY_LIMIT
    bet_lock_ttl_seconds: float = config.BET_LOCK_TIMEOUT_SECONDS
    bots: BotSettings = field(default_factory=BotSettings)

    @property
    def room_count(self) -> int:
        return self.bots.room_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "betting_duration": self.betting_duration,
            "killer_duration": self.killer_duration,
            "settling_duration": self.settling_duration,
            "min_bet": self.min_bet,
            "max_bet": self.max_bet,
            "platform_fee": self.platform_fee,
            "room_count": self.room_count,
            "rooms": {room: ROOMS.get(room, f"Room {room}") for room in range(1, self.room_count + 1)},
        }


@dataclass
class PlayerBet:
    address: str
    room_id: int
    amount: Decimal
    display_name: str
    joined_at: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "room_id": self.room_id,
            "amount": self.amount,
            "display_name": self.display_name,
            "joined_at": self.joined_at,
        }


@dataclass
class BotBet:
    id: str
    name: str
    room_id: int
    amount: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "room_id": self.room_id, "amount": self.amount, "is_bot": True}


@dataclass
class Game:
    id: int
    countdown: int
    room_targets: Dict[int, int]
    started_at: float
    phase: Phase = Phase.BETTING
    players: Dict[str, PlayerBet] = field(default_factory=dict)
    bots: List[BotBet] = field(default_factory=list)
    target_room: Optional[int] = None
    target_override: Optional[int] = None
    ended_at: Optional[float] = None
    result: Optional[Dict[str, Any]] = None
    history: List[Dict[str, Any]] = field(default_factory=list)
    bot_counter: int = 0

    def room_stats(self, room_count: int) -> Dict[int, Dict[str, Any]]:
        stats = {room: {"player_count": 0, "total_bet": Decimal("0")} for room in range(1, room_count + 1)}
        for bet in list(self.players.values()) + self.bots:
            stats[bet.room_id]["player_count"] += 1
            stats[bet.room_id]["total_bet"] += bet.amount
        return stats

    def room_totals(self, room_count: int) -> Dict[int, int]:
        return {room: int(s["total_bet"]) for room, s in self.room_stats(room_count).items()}

    def to_dict(self, room_count: int) -> Dict[str, Any]:
        return {
            "game_id": self.id,
            "phase": self.phase.value,
            "countdown": self.countdown,
            "players": [bet.to_dict() for bet in self.players.values()],
            "bots": [bot.to_dict() for bot in self.bots],
            "target_room": self.target_room,
            "room_stats": self.room_stats(room_count),
            "result": self.result,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
        }


class GameEngine:
    def __init__(
        self,
        ledger: BalanceLedger,
        *,
        settings: Optional[GameSettings] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time,
        lock_clock: Callable[[], float] = time.monotonic,
    ):
        self.ledger = ledger
        self.settings = settings or GameSettings()
        self._rng = rng or random.Random()
        self._clock = clock
        self._next_id = 1
        self.global_history: Deque[Dict[str, Any]] = deque(maxlen=self.settings.history_limit)
        self.retained: List[Game] = []
        self.player_index: Dict[str, int] = {}
        self.bet_locks = KeyedLock(name="bet", ttl_seconds=self.settings.bet_lock_ttl_seconds, clock=lock_clock)
        self.current: Game = self._new_game()

    def _new_game(self) -> Game:
        game = Game(
            id=self._next_id,
            countdown=self.settings.betting_duration,
            room_targets=bot_liquidity.room_targets(self._rng, self.settings.bots),
            started_at=self._clock(),
        )
        self._next_id += 1
        logger.info(f"[Party Crisis] Game #{game.id} started, room targets: {game.room_targets}")
        return game

    # --- heartbeat ---

    async def advance(self) -> Game:
        """One scheduler tick. Returns the game that is active after the tick."""
        game = self.current
        game.countdown -= 1

        if game.phase is Phase.BETTING and game.countdown > 1:
            self._inject_bots(game)

        if game.countdown <= 0:
            if game.phase is Phase.BETTING:
                self._log_betting_summary(game)
                game.phase = Phase.KILLER_MOVING
                game.countdown = self.settings.killer_duration
                self._select_target(game)
            elif game.phase is Phase.KILLER_MOVING:
                await self.settle(game)
            elif game.phase is Phase.SETTLING:
                self._retire(game)
                self.current = self._new_game()

        self._prune_retained()
        return self.current

    def _inject_bots(self, game: Game) -> None:
        s = self.settings
        if game.countdown > s.betting_duration / 2:
            if game.countdown % 2 != 0 or len(game.bots) >= s.bots.bot_count_max:
                return
            batch = bot_liquidity.targeted_batch(
                self._rng, game.room_targets, game.room_totals(s.room_count), s.bots
            )
        else:
            if game.countdown % 3 != 0:
                return
            batch = bot_liquidity.ambient_batch(
                self._rng, game.room_targets, game.room_totals(s.room_count), s.bots
            )

        for room_id, amount in batch:
            game.bots.append(BotBet(
                id=f"bot-{game.id}-{game.bot_counter}",
                name=bot_liquidity.bot_name(self._rng),
                room_id=room_id,
                amount=Decimal(amount),
            ))
            game.bot_counter += 1

        totals = game.room_totals(s.room_count)
        completion = 100 * sum(totals.values()) / max(1, sum(game.room_targets.values()))
        logger.debug(f"[Bots] +{len(batch)}, total {len(game.bots)}, completion {completion:.1f}%")

    def _log_betting_summary(self, game: Game) -> None:
        totals = list(game.room_totals(self.settings.room_count).values())
        logger.info(
            f"[Party Crisis] Game #{game.id} betting closed: {len(game.players)} players, "
            f"{len(game.bots)} bots, room totals min={min(totals)} max={max(totals)}"
        )

    def _select_target(self, game: Game) -> int:
        if game.target_override is not None:
            game.target_room = game.target_override
            game.target_override = None
            logger.warning(f"[Party Crisis] Game #{game.id} using admin target room {game.target_room}")
        else:
            game.target_room = self._rng.randint(1, self.settings.room_count)
        logger.info(
            f"[Party Crisis] Game #{game.id} killer moving, target room: "
            f"{game.target_room} ({ROOMS.get(game.target_room)})"
        )
        return game.target_room

    def _retire(self, game: Game) -> None:
        for address in game.players:
            if self.player_index.get(address) == game.id:
                del self.player_index[address]
        if game.ended_at is None:
            game.ended_at = self._clock()
        self.retained.append(game)
        logger.info(f"[Party Crisis] Game #{game.id} retired")

    def _prune_retained(self) -> None:
        cutoff = self._clock() - self.settings.retention_seconds
        self.retained = [g for g in self.retained if (g.ended_at or 0) > cutoff]

    # --- betting ---

    def check_bet(self, room_id: int, amount: Any) -> Decimal:
        """Validate a bet against the active game without side effects."""
        game = self.current
        if game.phase is not Phase.BETTING:
            raise BettingClosed("Betting is closed for the current game")
        if not isinstance(room_id, int) or not 1 <= room_id <= self.settings.room_count:
            raise InvalidRoom(f"Invalid room id: {room_id}")
        try:
            value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
        except (InvalidOperation, ValueError, TypeError):
            raise InvalidBetAmount(f"Invalid bet amount: {amount!r}")
        s = self.settings
        if not value.is_finite() or not s.min_bet <= value <= s.max_bet:
            raise InvalidBetAmount(f"Bet amount must be between {s.min_bet} and {s.max_bet}")
        return value

    def check_room(self, address: str, room_id: int) -> None:
        existing = self.current.players.get(address.lower())
        if existing is not None and existing.room_id != room_id:
            raise RoomChangeNotAllowed("Already bet in this game, cannot change room")

    def place_bet(self, address: str, room_id: int, amount: Any, display_name: Optional[str] = None) -> PlayerBet:
        value = self.check_bet(room_id, amount)
        address = address.lower()
        self.check_room(address, room_id)
        game = self.current

        existing = game.players.get(address)
        if existing is not None:
            existing.amount += value
            bet = existing
        else:
            bet = PlayerBet(
                address=address,
                room_id=room_id,
                amount=value,
                display_name=display_name or f"Player{len(game.players) + 1}",
                joined_at=self._clock(),
            )
            game.players[address] = bet
            self.player_index[address] = game.id

        logger.info(f"[Party Crisis] Game #{game.id} bet: {address} room {room_id} +{value} (total {bet.amount})")
        return bet

    @asynccontextmanager
    async def bet_lock(self, address: str) -> AsyncIterator[str]:
        key = address.lower()
        token = self.bet_locks.try_acquire(key)
        if token is None:
            raise TooManyRequests("A bet for this address is already being processed, please retry")
        try:
            yield token
        finally:
            self.bet_locks.release(key, token)

    def set_target_override(self, room_id: int) -> Dict[str, Any]:
        game = self.current
        if not isinstance(room_id, int) or not 1 <= room_id <= self.settings.room_count:
            raise InvalidRoom(f"Invalid room id: {room_id}")
        if game.phase is not Phase.BETTING:
            raise OverrideRejected("Target can only be set during the betting phase")
        if game.countdown > self.settings.override_window:
            raise OverrideRejected(
                f"Target can only be set in the last {self.settings.override_window} seconds of betting"
            )
        game.target_override = room_id
        logger.warning(f"[Admin] Game #{game.id} target room set to {room_id} ({ROOMS.get(room_id)})")
        return {"game_id": game.id, "room_id": room_id, "room_name": ROOMS.get(room_id), "countdown": game.countdown}

    # --- settlement ---

    async def settle(self, game: Optional[Game] = None) -> Dict[str, Any]:
        game = game or self.current
        if game.result is not None:
            return game.result
        game.phase = Phase.SETTLING
        game.countdown = self.settings.settling_duration
        target = game.target_room if game.target_room is not None else self._select_target(game)

        eliminated = [bet for bet in game.players.values() if bet.room_id == target]
        survivors = [bet for bet in game.players.values() if bet.room_id != target]
        killed_total = sum((bet.amount for bet in eliminated), Decimal("0"))
        bot_killed_total = sum((bot.amount for bot in game.bots if bot.room_id == target), Decimal("0"))
        pool = (killed_total + bot_killed_total) * (Decimal("1") - self.settings.platform_fee)
        # Synthetic survivors fund nothing from the pool
        total_weight = sum((bet.amount for bet in survivors), Decimal("0"))

        logger.info(
            f"[Settlement] Game #{game.id} room {target}: players lost {killed_total}, "
            f"bots lost {bot_killed_total}, pool {pool}"
        )

        survivor_results: List[Dict[str, Any]] = []
        failed_credits: List[Dict[str, Any]] = []
        for bet in survivors:
            winnings = Decimal("0")
            if total_weight > 0:
                winnings = (pool * bet.amount / total_weight).quantize(PAYOUT_QUANTUM, rounding=ROUND_DOWN)
            payout = bet.amount + winnings
            line = {
                "address": bet.address,
                "display_name": bet.display_name,
                "room_id": bet.room_id,
                "bet": bet.amount,
                "payout": payout,
                "profit": payout - bet.amount,
            }
            try:
                await self.ledger.credit(
                    bet.address,
                    payout,
                    WIN_REASON,
                    meta={
                        "game_id": game.id,
                        "room_id": bet.room_id,
                        "bet": str(bet.amount),
                        "payout": str(payout),
                        "target_room": target,
                    },
                )
            except Exception as exc:
                logger.exception(f"[Settlement] Game #{game.id} credit failed for {bet.address}, payout {payout}")
                failed_credits.append({**line, "error": str(exc)})
                continue
            survivor_results.append(line)

        now = self._clock()
        summary = {
            "game_id": game.id,
            "target_room": target,
            "room_name": ROOMS.get(target),
            "timestamp": now,
            "killed_count": len(eliminated),
            "survivor_count": len(survivors),
            "pool": pool,
        }
        game.history.append(summary)
        self.global_history.append(summary)
        game.ended_at = now
        game.result = {
            "target_room": target,
            "room_name": ROOMS.get(target),
            "eliminated": [
                {"address": b.address, "display_name": b.display_name, "room_id": b.room_id, "bet": b.amount}
                for b in eliminated
            ],
            "survivors": survivor_results,
            "killed_total": killed_total,
            "bot_killed_total": bot_killed_total,
            "pool": pool,
            "failed_credits": failed_credits,
        }
        if failed_credits:
            logger.error(
                f"[Settlement] Game #{game.id} finished with {len(failed_credits)} failed credits, "
                f"manual reconciliation required"
            )
        return game.result

    # --- views ---

    def status(self) -> Dict[str, Any]:
        game = self.current
        data = game.to_dict(self.settings.room_count)
        data["history"] = list(self.global_history)[-self.settings.status_history_limit:]
        return {"game": data, "config": self.settings.to_dict()}

    def find_game(self, game_id: int) -> Optional[Game]:
        if self.current.id == game_id:
            return self.current
        return next((g for g in self.retained if g.id == game_id), None)

    def player_game(self, address: str) -> Dict[str, Any]:
        address = address.lower()
        game_id = self.player_index.get(address)
        game = self.find_game(game_id) if game_id is not None else None
        if game is None:
            return {"in_game": False, "game": None, "my_bet": None}
        bet = game.players.get(address)
        return {
            "in_game": True,
            "game": game.to_dict(self.settings.room_count),
            "my_bet": bet.to_dict() if bet else None,
        }

    def history(self, limit: int = 50) -> List[Dict[str, Any]]:
        games = self.retained + [self.current]
        entries = [entry for g in games for entry in g.history]
        entries.sort(key=lambda e: e["timestamp"], reverse=True)
        return entries[: max(0, limit)]

    def admin_view(self) -> Dict[str, Any]:
        game = self.current
        stats = game.room_stats(self.settings.room_count)
        return {
            "game_id": game.id,
            "phase": game.phase.value,
            "countdown": game.countdown,
            "player_count": len(game.players),
            "bot_count": len(game.bots),
            "real_total": sum((b.amount for b in game.players.values()), Decimal("0")),
            "bot_total": sum((b.amount for b in game.bots), Decimal("0")),
            "room_stats": stats,
            "room_targets": game.room_targets,
            "target_room": game.target_room,
            "admin_override": game.target_override,
            "players": [bet.to_dict() for bet in game.players.values()],
            "override_window": self.settings.override_window,
            "can_set_target": (
                game.phase is Phase.BETTING and game.countdown <= self.settings.override_window
            ),
        }
