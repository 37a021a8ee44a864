"""Party Crisis Router - game status, betting and history."""

from fastapi import APIRouter, Depends, Query

from app.dependencies import general_rate_limit, get_runtime
from app.runtime import GameRuntime

from . import service
from .schemas import BetRequest, BetResponse, MyGameResponse

router = APIRouter(prefix="/party-crisis", tags=["Party Crisis"])


@router.get("/status")
async def get_status(runtime: GameRuntime = Depends(get_runtime)):
    """
    Current game snapshot: phase, countdown, room stats, result once settled,
    the last 10 settlements and the game configuration.
    """
    return service.get_status(runtime)


@router.post("/bet", response_model=BetResponse, dependencies=[Depends(general_rate_limit)])
async def place_bet(request: BetRequest, runtime: GameRuntime = Depends(get_runtime)):
    """
    Stake DP on a room during the betting phase.

    The stake is debited before the bet is recorded. Re-betting in the same
    game adds to the existing stake and must use the same room.
    """
    return await service.place_bet(runtime, request=request)


@router.get("/my-game/{address}", response_model=MyGameResponse)
async def get_my_game(address: str, runtime: GameRuntime = Depends(get_runtime)):
    return service.get_my_game(runtime, address=address)


@router.get("/history")
async def get_history(
    limit: int = Query(50, ge=1, le=200),
    runtime: GameRuntime = Depends(get_runtime),
):
    return service.get_history(runtime, limit=limit)
