"""Admin schemas."""

from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from app.routers.ledger.schemas import ADDRESS_PATTERN, TX_HASH_PATTERN


class ReviewDecisionRequest(BaseModel):
    note: str = Field("", max_length=500)


class SetTargetRequest(BaseModel):
    room_id: int = Field(..., description="Room 1-8 to strike this game")


class ManualDepositRequest(BaseModel):
    address: str = Field(..., pattern=ADDRESS_PATTERN)
    amount: Decimal = Field(..., gt=0)
    tx_hash: str = Field(..., pattern=TX_HASH_PATTERN)


class ReconcileRequest(BaseModel):
    transferred: bool = Field(..., description="Whether the transfer actually left the platform wallet")
    tx_hash: Optional[str] = Field(None, description="Transfer hash when transferred is true")


class ReviewResponse(BaseModel):
    id: str
    address: str
    amount: float
    reason: str
    timestamp: float
    created_at: str
    status: str
    reviewed_at: Optional[str] = None
    reviewed_by: Optional[str] = None
    review_note: Optional[str] = None
    reservation_id: Optional[str] = None
    executed: bool = False
    tx_hash: Optional[str] = None
    failure: Optional[str] = None


class ReviewListResponse(BaseModel):
    success: bool = True
    reviews: List[ReviewResponse]


class ReviewDecisionResponse(BaseModel):
    success: bool = True
    review: ReviewResponse
    tx_hash: Optional[str] = None
    message: str = ""


class ReservationResponse(BaseModel):
    id: str
    address: str
    amount: float
    created_at: float
    review_id: Optional[str] = None


class ReservationListResponse(BaseModel):
    success: bool = True
    reservations: List[ReservationResponse]
