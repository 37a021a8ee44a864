"""Admin Router - withdrawal reviews, game controls, ledger views and reconciliation."""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from app.dependencies import get_admin, get_runtime
from app.runtime import GameRuntime

from . import service
from .schemas import (
    ManualDepositRequest,
    ReconcileRequest,
    ReservationListResponse,
    ReviewDecisionRequest,
    ReviewDecisionResponse,
    ReviewListResponse,
    SetTargetRequest,
)

router = APIRouter(prefix="/admin", tags=["Admin"])


@router.get("/withdrawals/reviews", response_model=ReviewListResponse)
async def list_reviews(
    status_filter: str = Query("pending", alias="status", description="pending, approved, rejected or all"),
    runtime: GameRuntime = Depends(get_runtime),
    admin: str = Depends(get_admin),
):
    """
    List withdrawal reviews, newest first.

    Default filter: status=pending
    """
    return service.list_reviews(runtime, status_filter=status_filter)


@router.post("/withdrawals/reviews/{review_id}/approve", response_model=ReviewDecisionResponse)
async def approve_review(
    review_id: str,
    request: Optional[ReviewDecisionRequest] = None,
    runtime: GameRuntime = Depends(get_runtime),
    admin: str = Depends(get_admin),
):
    """
    Approve a pending withdrawal and send the reserved funds.

    A transfer failure releases the reservation and returns 502.
    """
    note = request.note if request else ""
    return await service.approve_review(runtime, review_id=review_id, note=note, reviewer=admin)


@router.post("/withdrawals/reviews/{review_id}/reject", response_model=ReviewDecisionResponse)
async def reject_review(
    review_id: str,
    request: Optional[ReviewDecisionRequest] = None,
    runtime: GameRuntime = Depends(get_runtime),
    admin: str = Depends(get_admin),
):
    """Reject a pending withdrawal and release the reserved funds."""
    note = request.note if request else ""
    return await service.reject_review(runtime, review_id=review_id, note=note, reviewer=admin)


@router.get("/withdrawals/stats")
async def withdraw_stats(runtime: GameRuntime = Depends(get_runtime), admin: str = Depends(get_admin)):
    return service.withdraw_stats(runtime)


@router.get("/withdrawals/stats/{address}")
async def withdraw_user_stats(
    address: str, runtime: GameRuntime = Depends(get_runtime), admin: str = Depends(get_admin)
):
    return service.withdraw_user_stats(runtime, address=address)


@router.get("/party-crisis/current")
async def current_game(runtime: GameRuntime = Depends(get_runtime), admin: str = Depends(get_admin)):
    return service.current_game(runtime)


@router.post("/party-crisis/set-target")
async def set_target(
    request: SetTargetRequest, runtime: GameRuntime = Depends(get_runtime), admin: str = Depends(get_admin)
):
    """
    Force the target room of the current game.

    Only accepted in the last seconds of the betting phase; used once.
    """
    return service.set_target(runtime, room_id=request.room_id)


@router.get("/party-crisis/history")
async def game_history(
    limit: int = Query(50, ge=1, le=200),
    runtime: GameRuntime = Depends(get_runtime),
    admin: str = Depends(get_admin),
):
    return service.game_history(runtime, limit=limit)


@router.get("/transactions")
async def all_transactions(
    kind: Optional[str] = None,
    reason: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    runtime: GameRuntime = Depends(get_runtime),
    admin: str = Depends(get_admin),
):
    return service.all_transactions(runtime, kind=kind, limit=limit, reason=reason)


@router.post("/deposits/manual")
async def manual_deposit(
    request: ManualDepositRequest, runtime: GameRuntime = Depends(get_runtime), admin: str = Depends(get_admin)
):
    """Credit a deposit without chain verification. The hash is still deduplicated."""
    return await service.manual_deposit(runtime, request=request, reviewer=admin)


@router.get("/reconciliation/reservations", response_model=ReservationListResponse)
async def list_reservations(
    older_than_seconds: int = Query(0, ge=0),
    runtime: GameRuntime = Depends(get_runtime),
    admin: str = Depends(get_admin),
):
    """Open withdrawal reservations; old ones were interrupted between transfer and commit."""
    return service.list_reservations(runtime, older_than_seconds=older_than_seconds)


@router.post("/reconciliation/reservations/{reservation_id}")
async def reconcile_reservation(
    reservation_id: str,
    request: ReconcileRequest,
    runtime: GameRuntime = Depends(get_runtime),
    admin: str = Depends(get_admin),
):
    return await service.reconcile_reservation(
        runtime, reservation_id=reservation_id, request=request, reviewer=admin
    )


@router.get("/config")
async def get_config(runtime: GameRuntime = Depends(get_runtime), admin: str = Depends(get_admin)):
    return service.get_config(runtime)
