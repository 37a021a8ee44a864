"""Party Crisis service layer."""

import logging

from fastapi import HTTPException, status
from fastapi.encoders import jsonable_encoder

from app.runtime import GameRuntime
from app.services.game_engine import BettingClosed, GameError, TooManyRequests
from app.services.ledger_service import InsufficientBalance, LedgerError, normalize_address

from .schemas import BetResponse, MyGameResponse, PlayerBetResponse

logger = logging.getLogger(__name__)

BET_REASON = "party_crisis_bet"
REFUND_REASON = "party_crisis_refund"


def get_status(runtime: GameRuntime) -> dict:
    return {"success": True, **jsonable_encoder(runtime.engine.status())}


async def place_bet(runtime: GameRuntime, *, request) -> BetResponse:
    """Debit the stake, then record the bet; refund if the game moved on meanwhile."""
    engine, ledger = runtime.engine, runtime.ledger
    try:
        address = normalize_address(request.address)
        async with engine.bet_lock(address):
            amount = engine.check_bet(request.room_id, request.amount)
            engine.check_room(address, request.room_id)
            game_id = engine.current.id
            meta = {"game_id": game_id, "room_id": request.room_id}
            user = ledger.get_user(address)

            stake = await ledger.debit(address, amount, BET_REASON, meta)
            try:
                if engine.current.id != game_id:
                    raise BettingClosed("Betting is closed for the current game")
                bet = engine.place_bet(
                    address, request.room_id, amount, display_name=user.display_name if user else None
                )
            except GameError:
                # Refunds are credits but not winnings; admin views tell them apart by meta
                await ledger.credit(address, amount, REFUND_REASON, {**meta, "refund": True, "refund_of": stake.id})
                logger.warning(f"Bet refunded: address={address}, amount={amount}, game={game_id}")
                raise
    except TooManyRequests as e:
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=str(e))
    except InsufficientBalance as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except (GameError, LedgerError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    game = engine.current
    return BetResponse(
        game_id=game.id,
        bet=PlayerBetResponse(**bet.to_dict()),
        new_balance=ledger.get_balance(address),
        game=jsonable_encoder(game.to_dict(engine.settings.room_count)),
    )


def get_my_game(runtime: GameRuntime, *, address: str) -> MyGameResponse:
    try:
        address = normalize_address(address)
    except LedgerError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    view = runtime.engine.player_game(address)
    return MyGameResponse(
        in_game=view["in_game"],
        game=jsonable_encoder(view["game"]) if view["game"] else None,
        my_bet=PlayerBetResponse(**view["my_bet"]) if view["my_bet"] else None,
    )


def get_history(runtime: GameRuntime, *, limit: int) -> dict:
    return {"success": True, "history": jsonable_encoder(runtime.engine.history(limit=limit))}
