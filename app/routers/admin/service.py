"""Admin service layer: withdrawal reviews, game controls and reconciliation."""

import logging
from decimal import Decimal
from typing import Optional

from fastapi import HTTPException, status
from fastapi.encoders import jsonable_encoder

import config
from app.routers.ledger.service import transaction_response
from app.runtime import GameRuntime
from app.services.game_engine import GameError
from app.services.ledger_service import (
    TRANSACTION_KINDS,
    DuplicateDeposit,
    LedgerError,
    ReservationNotFound,
)
from app.services.withdraw_security import ReviewAlreadyResolved, ReviewNotFound
from core.locks import LockTimeout
from core.ports.chain import TransferFailed

from .schemas import (
    ReservationListResponse,
    ReservationResponse,
    ReviewDecisionResponse,
    ReviewListResponse,
    ReviewResponse,
)

logger = logging.getLogger(__name__)


def _review_or_404(runtime: GameRuntime, review_id: str) -> dict:
    try:
        return runtime.risk.get_review(review_id)
    except ReviewNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


def _lock_busy() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail="Another withdrawal operation for this address is in progress, please retry",
    )


def list_reviews(runtime: GameRuntime, *, status_filter: str) -> ReviewListResponse:
    try:
        reviews = runtime.risk.list_reviews(status_filter)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return ReviewListResponse(reviews=[ReviewResponse(**r) for r in reviews])


async def approve_review(runtime: GameRuntime, *, review_id: str, note: str, reviewer: str) -> ReviewDecisionResponse:
    """Resolve the review, then send the reserved funds."""
    ledger, risk = runtime.ledger, runtime.risk
    review = _review_or_404(runtime, review_id)
    address = review["address"]
    try:
        async with risk.address_lock(address):
            try:
                review = await risk.review_withdraw(review_id, True, note, reviewer)
            except ReviewAlreadyResolved as e:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

            reservation_id = review.get("reservation_id")
            if not reservation_id or reservation_id not in ledger.reservations:
                await risk.mark_review_executed(review_id, failure="reservation_missing")
                raise HTTPException(
                    status_code=status.HTTP_409_CONFLICT,
                    detail="Reserved funds for this review no longer exist, check reconciliation",
                )

            try:
                tx = await ledger.execute_reservation(reservation_id, runtime.transfer)
            except TransferFailed as e:
                await risk.mark_review_executed(review_id, failure=str(e))
                raise HTTPException(
                    status_code=status.HTTP_502_BAD_GATEWAY,
                    detail=f"Transfer failed: {e}. Reserved funds have been released to the user.",
                )
            await risk.record_success(address, Decimal(review["amount"]))
            review = await risk.mark_review_executed(review_id, tx_hash=tx.meta.get("tx_hash"))
    except LockTimeout:
        raise _lock_busy()

    logger.info(f"Review {review_id} approved by {reviewer}, withdrawal sent: {review['tx_hash']}")
    return ReviewDecisionResponse(
        review=ReviewResponse(**review), tx_hash=review["tx_hash"], message="Withdrawal approved and sent"
    )


async def reject_review(runtime: GameRuntime, *, review_id: str, note: str, reviewer: str) -> ReviewDecisionResponse:
    ledger, risk = runtime.ledger, runtime.risk
    review = _review_or_404(runtime, review_id)
    try:
        async with risk.address_lock(review["address"]):
            try:
                review = await risk.review_withdraw(review_id, False, note, reviewer)
            except ReviewAlreadyResolved as e:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
            reservation_id = review.get("reservation_id")
            if reservation_id and reservation_id in ledger.reservations:
                await ledger.release_reservation(reservation_id, reason="review_rejected")
    except LockTimeout:
        raise _lock_busy()

    return ReviewDecisionResponse(review=ReviewResponse(**review), message="Withdrawal rejected, funds released")


def withdraw_stats(runtime: GameRuntime) -> dict:
    return {"success": True, **runtime.risk.all_stats()}


def withdraw_user_stats(runtime: GameRuntime, *, address: str) -> dict:
    return {"success": True, "address": address.lower(), **runtime.risk.user_stats(address)}


def current_game(runtime: GameRuntime) -> dict:
    return {"success": True, "game": jsonable_encoder(runtime.engine.admin_view())}


def set_target(runtime: GameRuntime, *, room_id: int) -> dict:
    try:
        result = runtime.engine.set_target_override(room_id)
    except GameError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return {"success": True, **result}


def game_history(runtime: GameRuntime, *, limit: int) -> dict:
    engine = runtime.engine
    return {
        "success": True,
        "global_history": jsonable_encoder(list(reversed(engine.global_history))),
        "history": jsonable_encoder(engine.history(limit=limit)),
    }


def all_transactions(runtime: GameRuntime, *, kind: Optional[str], limit: int,
                     reason: Optional[str] = None) -> dict:
    if kind is not None and kind not in TRANSACTION_KINDS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown transaction kind: {kind}",
        )
    transactions = runtime.ledger.all_transactions(kind=kind, limit=limit, reason=reason)
    return {"success": True, "transactions": [transaction_response(tx) for tx in transactions]}


async def manual_deposit(runtime: GameRuntime, *, request, reviewer: str) -> dict:
    logger.warning(f"Manual deposit by {reviewer}: address={request.address}, amount={request.amount}, "
                   f"tx_hash={request.tx_hash}")
    try:
        result = await runtime.ledger.deposit_external(
            request.address, request.amount, request.tx_hash, None, skip_verification=True
        )
    except DuplicateDeposit as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except LedgerError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return {
        "success": True,
        "transaction": transaction_response(result.transaction),
        "new_balance": result.new_balance,
    }


def list_reservations(runtime: GameRuntime, *, older_than_seconds: int) -> ReservationListResponse:
    reservations = runtime.ledger.open_reservations(older_than_seconds=older_than_seconds)
    return ReservationListResponse(reservations=[ReservationResponse(**r.to_dict()) for r in reservations])


async def reconcile_reservation(runtime: GameRuntime, *, reservation_id: str, request, reviewer: str) -> dict:
    """Finish a withdrawal interrupted between transfer and commit."""
    ledger, risk = runtime.ledger, runtime.risk
    try:
        reservation = ledger.get_reservation(reservation_id)
    except ReservationNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if request.transferred and not request.tx_hash:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="tx_hash is required when the transfer was sent",
        )

    try:
        async with risk.address_lock(reservation.address):
            if request.transferred:
                tx = await ledger.commit_reservation(reservation_id, tx_hash=request.tx_hash)
                await risk.record_success(reservation.address, reservation.amount)
            else:
                tx = await ledger.release_reservation(reservation_id, reason="reconciled_not_sent", failed=True)
            if reservation.review_id:
                try:
                    await risk.mark_review_executed(
                        reservation.review_id,
                        tx_hash=request.tx_hash if request.transferred else None,
                        failure=None if request.transferred else "reconciled_not_sent",
                    )
                except ReviewNotFound:
                    logger.warning(f"Reservation {reservation_id} points at unknown review {reservation.review_id}")
    except LockTimeout:
        raise _lock_busy()

    logger.warning(f"Reservation {reservation_id} reconciled by {reviewer}: transferred={request.transferred}")
    return {
        "success": True,
        "transaction": transaction_response(tx),
        "new_balance": ledger.get_balance(reservation.address),
    }


def get_config(runtime: GameRuntime) -> dict:
    return {
        "success": True,
        "environment": config.ENVIRONMENT,
        "game": jsonable_encoder(runtime.engine.settings.to_dict()),
        "withdraw_security": runtime.risk.settings.to_dict(),
        "deposits": {
            "min_deposit": config.MIN_DEPOSIT,
            "min_withdraw": config.MIN_WITHDRAW,
            "required_confirmations": config.REQUIRED_CONFIRMATIONS,
            "token": config.DP_TOKEN,
            "platform_receiver": config.PLATFORM_RECEIVER,
        },
        "rate_limits": {
            "withdraw_per_minute": config.WITHDRAW_RATE_LIMIT_PER_MINUTE,
            "general_per_minute": config.GENERAL_RATE_LIMIT_PER_MINUTE,
        },
        "persistence": "sql" if config.DATABASE_URL else "memory",
    }
