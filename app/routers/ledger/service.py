"""Game balance service layer: maps ledger and risk outcomes onto HTTP responses."""

import logging
from decimal import Decimal

from fastapi import HTTPException, Response, status

import config
from app.runtime import GameRuntime
from app.services.ledger_service import (
    DepositVerificationFailed,
    DisplayNameError,
    DuplicateDeposit,
    InsufficientBalance,
    LedgerError,
    Transaction,
    User,
    UserNotFound,
    normalize_address,
)
from app.services.withdraw_security import FAILED_WINDOW_SECONDS
from core.locks import LockTimeout
from core.ports.chain import TransferFailed

from .schemas import (
    BalanceResponse,
    DepositResponse,
    DisplayNameCheckResponse,
    LedgerAdjustResponse,
    TransactionListResponse,
    TransactionResponse,
    UserResponse,
    WithdrawResponse,
)

logger = logging.getLogger(__name__)


def transaction_response(tx: Transaction) -> TransactionResponse:
    return TransactionResponse(
        id=tx.id,
        address=tx.address,
        kind=tx.kind,
        amount=tx.amount,
        timestamp=tx.timestamp,
        status=tx.status,
        reason=tx.reason,
        meta=tx.meta,
    )


def user_response(user: User) -> UserResponse:
    return UserResponse(**user.to_dict())


def _address_or_400(address: str) -> str:
    try:
        return normalize_address(address)
    except LedgerError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


def get_balance(runtime: GameRuntime, *, address: str) -> BalanceResponse:
    address = _address_or_400(address)
    view = runtime.ledger.query(address)
    user = runtime.ledger.get_user(address)
    return BalanceResponse(
        address=view.address,
        balance=view.balance,
        frozen=view.frozen,
        available=view.available,
        user=user_response(user) if user else None,
    )


async def deposit(runtime: GameRuntime, *, request) -> DepositResponse:
    try:
        result = await runtime.ledger.deposit_external(
            request.address, request.amount, request.tx_hash, runtime.verifier
        )
    except DuplicateDeposit as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except DepositVerificationFailed as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except LedgerError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    if result.pending:
        return DepositResponse(
            success=False,
            pending=True,
            confirmations=result.confirmations,
            required_confirmations=result.required_confirmations,
            message=result.message,
        )
    return DepositResponse(
        success=True,
        message=result.message,
        new_balance=result.new_balance,
        transaction=transaction_response(result.transaction),
        user=user_response(result.user) if result.user else None,
        is_first_deposit=result.is_first_deposit,
    )


async def withdraw(runtime: GameRuntime, *, request, response: Response) -> WithdrawResponse:
    ledger, risk = runtime.ledger, runtime.risk
    address = _address_or_400(request.address)
    amount = Decimal(request.amount)

    min_withdraw = Decimal(config.MIN_WITHDRAW)
    if amount < min_withdraw:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Minimum withdrawal amount is {min_withdraw}",
        )

    logger.info(f"Withdraw request: address={address}, amount={amount}")
    try:
        async with risk.address_lock(address):
            available = ledger.get_available(address)
            if available < amount:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail=f"Insufficient balance. Available: {available}, Required: {amount}",
                )
            if risk.has_pending_review(address):
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="A withdrawal for this address is already pending review",
                )

            check = risk.check_withdraw_allowed(
                address, amount, ledger.transactions_within(address, FAILED_WINDOW_SECONDS, kind="withdraw")
            )
            if not check.allowed:
                logger.info(f"Withdraw rejected: address={address}, reason={check.reason}")
                raise HTTPException(
                    status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                    detail=check.reason,
                    headers={"Retry-After": str(check.retry_after_seconds)},
                )

            if check.needs_review:
                return await _hold_for_review(runtime, address, amount, check.review_reason, response)

            try:
                tx = await ledger.withdraw_external(address, amount, runtime.transfer)
            except TransferFailed as e:
                raise HTTPException(
                    status_code=status.HTTP_502_BAD_GATEWAY,
                    detail=f"Withdrawal transfer failed: {e}. Your balance has not been changed.",
                )
            except InsufficientBalance as e:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
            await risk.record_success(address, amount)
    except LockTimeout:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Another withdrawal for this address is in progress, please retry",
        )

    return WithdrawResponse(
        success=True,
        tx_hash=tx.meta.get("tx_hash"),
        new_balance=ledger.get_balance(address),
        message="Withdrawal sent",
    )


async def _hold_for_review(runtime: GameRuntime, address: str, amount: Decimal, reason: str,
                           response: Response) -> WithdrawResponse:
    ledger, risk = runtime.ledger, runtime.risk
    reservation = await ledger.reserve(address, amount)
    try:
        review = await risk.create_pending_review(address, amount, reason, reservation_id=reservation.id)
    except Exception:
        await ledger.release_reservation(reservation.id, reason="review_not_created", failed=True)
        raise
    await ledger.link_reservation(reservation.id, review["id"])

    response.status_code = status.HTTP_202_ACCEPTED
    return WithdrawResponse(
        success=True,
        pending_review=True,
        review_id=review["id"],
        new_balance=ledger.get_balance(address),
        message="Withdrawal is pending manual review",
    )


def list_transactions(runtime: GameRuntime, *, address: str, limit: int) -> TransactionListResponse:
    address = _address_or_400(address)
    transactions = runtime.ledger.transactions_for(address, limit=limit)
    return TransactionListResponse(transactions=[transaction_response(tx) for tx in transactions])


async def spend(runtime: GameRuntime, *, request) -> LedgerAdjustResponse:
    try:
        tx = await runtime.ledger.debit(request.address, request.amount, request.reason, request.meta)
    except LedgerError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return LedgerAdjustResponse(
        transaction=transaction_response(tx), new_balance=runtime.ledger.get_balance(tx.address)
    )


async def reward(runtime: GameRuntime, *, request) -> LedgerAdjustResponse:
    try:
        tx = await runtime.ledger.credit(request.address, request.amount, request.reason, request.meta)
    except LedgerError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return LedgerAdjustResponse(
        transaction=transaction_response(tx), new_balance=runtime.ledger.get_balance(tx.address)
    )


def get_user(runtime: GameRuntime, *, address: str) -> UserResponse:
    address = _address_or_400(address)
    user = runtime.ledger.get_user(address)
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user_response(user)


async def set_display_name(runtime: GameRuntime, *, request) -> UserResponse:
    try:
        user = await runtime.ledger.set_display_name(request.address, request.display_name)
    except UserNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except DisplayNameError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except LedgerError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return user_response(user)


def check_display_name(runtime: GameRuntime, *, display_name: str) -> DisplayNameCheckResponse:
    try:
        name = runtime.ledger.validate_display_name(display_name)
    except DisplayNameError as e:
        return DisplayNameCheckResponse(available=False, valid=False, message=str(e))
    if runtime.ledger.is_display_name_taken(name):
        return DisplayNameCheckResponse(available=False, valid=True, message="Display name is already taken")
    return DisplayNameCheckResponse(available=True, valid=True, message="Display name is available")
