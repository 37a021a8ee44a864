"""Party Crisis schemas."""

from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from app.routers.ledger.schemas import ADDRESS_PATTERN


class BetRequest(BaseModel):
    address: str = Field(..., pattern=ADDRESS_PATTERN)
    room_id: int = Field(..., description="Room 1-8")
    amount: Decimal = Field(..., gt=0, description="Stake in DP")


class PlayerBetResponse(BaseModel):
    address: str
    room_id: int
    amount: float
    display_name: str
    joined_at: float


class BetResponse(BaseModel):
    success: bool = True
    game_id: int
    bet: PlayerBetResponse
    new_balance: float
    game: Dict[str, Any]


class MyGameResponse(BaseModel):
    success: bool = True
    in_game: bool
    game: Optional[Dict[str, Any]] = None
    my_bet: Optional[PlayerBetResponse] = None
