"""Game Balance Router - balances, deposits, withdrawals and user profiles."""

from fastapi import APIRouter, Depends, Query, Response

from app.dependencies import general_rate_limit, get_admin, get_runtime, withdraw_rate_limit
from app.runtime import GameRuntime

from . import service
from .schemas import (
    BalanceResponse,
    DepositRequest,
    DepositResponse,
    DisplayNameCheckResponse,
    DisplayNameRequest,
    LedgerAdjustRequest,
    LedgerAdjustResponse,
    TransactionListResponse,
    UserResponse,
    WithdrawRequest,
    WithdrawResponse,
)

router = APIRouter(prefix="/game-balance", tags=["Game Balance"])


@router.get("/balance/{address}", response_model=BalanceResponse, dependencies=[Depends(general_rate_limit)])
async def get_balance(address: str, runtime: GameRuntime = Depends(get_runtime)):
    """
    Get the balance, frozen amount and available amount for an address.
    """
    return service.get_balance(runtime, address=address)


@router.post("/deposit", response_model=DepositResponse, dependencies=[Depends(general_rate_limit)])
async def deposit(request: DepositRequest, runtime: GameRuntime = Depends(get_runtime)):
    """
    Credit an on-chain DP deposit.

    Returns `pending: true` with the confirmation count while the transaction
    is still confirming; the client retries with the same hash.
    """
    return await service.deposit(runtime, request=request)


@router.post(
    "/withdraw",
    response_model=WithdrawResponse,
    responses={202: {"model": WithdrawResponse, "description": "Held for manual review"}},
    dependencies=[Depends(withdraw_rate_limit)],
)
async def withdraw(request: WithdrawRequest, response: Response, runtime: GameRuntime = Depends(get_runtime)):
    """
    Withdraw DP to the address.

    - 200: transfer sent
    - 202: held for manual review, funds frozen until resolved
    - 429: cooldown active (`withdraw_cooldown:<seconds>`) or request in progress
    - 502: transfer failed, balance unchanged
    """
    return await service.withdraw(runtime, request=request, response=response)


@router.get("/transactions/{address}", response_model=TransactionListResponse,
            dependencies=[Depends(general_rate_limit)])
async def list_transactions(
    address: str,
    limit: int = Query(50, ge=1, le=500),
    runtime: GameRuntime = Depends(get_runtime),
):
    return service.list_transactions(runtime, address=address, limit=limit)


@router.post("/spend", response_model=LedgerAdjustResponse)
async def spend(
    request: LedgerAdjustRequest,
    runtime: GameRuntime = Depends(get_runtime),
    admin: str = Depends(get_admin),
):
    """Internal: debit a game spend."""
    return await service.spend(runtime, request=request)


@router.post("/reward", response_model=LedgerAdjustResponse)
async def reward(
    request: LedgerAdjustRequest,
    runtime: GameRuntime = Depends(get_runtime),
    admin: str = Depends(get_admin),
):
    """Internal: credit a game reward."""
    return await service.reward(runtime, request=request)


@router.get("/users/check-display-name", response_model=DisplayNameCheckResponse,
            dependencies=[Depends(general_rate_limit)])
async def check_display_name(
    display_name: str = Query(..., min_length=1),
    runtime: GameRuntime = Depends(get_runtime),
):
    return service.check_display_name(runtime, display_name=display_name)


@router.post("/users/display-name", response_model=UserResponse, dependencies=[Depends(general_rate_limit)])
async def set_display_name(request: DisplayNameRequest, runtime: GameRuntime = Depends(get_runtime)):
    """
    Set the display name for an address. A name can be set once and is unique
    regardless of case.
    """
    return await service.set_display_name(runtime, request=request)


@router.get("/users/{address}", response_model=UserResponse, dependencies=[Depends(general_rate_limit)])
async def get_user(address: str, runtime: GameRuntime = Depends(get_runtime)):
    return service.get_user(runtime, address=address)
