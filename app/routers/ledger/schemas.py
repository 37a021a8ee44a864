"""Game balance / deposit / withdrawal / user schemas."""

from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

ADDRESS_PATTERN = r"^0x[0-9a-fA-F]{40}$"
TX_HASH_PATTERN = r"^0x[0-9a-fA-F]{64}$"


class DepositRequest(BaseModel):
    address: str = Field(..., pattern=ADDRESS_PATTERN, description="Depositing wallet address")
    amount: Decimal = Field(..., gt=0, description="Deposited DP amount as reported by the client")
    tx_hash: str = Field(..., pattern=TX_HASH_PATTERN, description="On-chain transfer transaction hash")


class WithdrawRequest(BaseModel):
    address: str = Field(..., pattern=ADDRESS_PATTERN)
    amount: Decimal = Field(..., gt=0)


class LedgerAdjustRequest(BaseModel):
    address: str = Field(..., pattern=ADDRESS_PATTERN)
    amount: Decimal = Field(..., gt=0)
    reason: str = Field(..., min_length=1, max_length=64)
    meta: Dict[str, Any] = Field(default_factory=dict)


class DisplayNameRequest(BaseModel):
    address: str = Field(..., pattern=ADDRESS_PATTERN)
    display_name: str = Field(..., description="3-20 letters, digits, underscores or CJK characters")


class UserResponse(BaseModel):
    uid: str
    address: str
    display_name: Optional[str] = None
    display_name_set_at: Optional[str] = None
    created_at: str
    first_deposit_at: Optional[str] = None


class TransactionResponse(BaseModel):
    id: str
    address: str
    kind: str
    amount: float
    timestamp: float
    status: str
    reason: str
    meta: Dict[str, Any] = Field(default_factory=dict)


class BalanceResponse(BaseModel):
    success: bool = True
    address: str
    balance: float
    frozen: float
    available: float
    user: Optional[UserResponse] = None


class DepositResponse(BaseModel):
    success: bool
    pending: bool = False
    confirmations: int = 0
    required_confirmations: int = 0
    message: str = ""
    new_balance: Optional[float] = None
    transaction: Optional[TransactionResponse] = None
    user: Optional[UserResponse] = None
    is_first_deposit: bool = False


class WithdrawResponse(BaseModel):
    success: bool
    pending_review: bool = False
    review_id: Optional[str] = None
    tx_hash: Optional[str] = None
    new_balance: Optional[float] = None
    message: str = ""


class LedgerAdjustResponse(BaseModel):
    success: bool = True
    transaction: TransactionResponse
    new_balance: float


class TransactionListResponse(BaseModel):
    success: bool = True
    transactions: List[TransactionResponse]


class DisplayNameCheckResponse(BaseModel):
    available: bool
    valid: bool
    message: str = ""
