"""
Withdrawal Risk Engine - cooldowns, daily statistics, review queue and the
per-address withdrawal lock
"""
import logging
import math
import random
import string
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional

import pytz

import config
from core.locks import KeyedLock
from core.ports.persistence import SnapshotStore

logger = logging.getLogger(__name__)

SNAPSHOT_NAME = "withdraw_security"
ZERO = Decimal("0")
FAILED_WINDOW_SECONDS = 3600

REVIEW_STATUSES = ("pending", "approved", "rejected")


class RiskError(Exception):
    """Base exception for withdrawal review operations"""
    pass


class ReviewNotFound(RiskError):
    pass


class ReviewAlreadyResolved(RiskError):
    def __init__(self, review_id: str, status: str):
        super().__init__(f"Review {review_id} has already been resolved (status: {status})")
        self.review_id = review_id
        self.status = status


@dataclass
class WithdrawCheck:
    status: str  # rejected / approved / review
    reason: str = "ok"
    retry_after_seconds: int = 0
    review_reason: str = ""

    @property
    def allowed(self) -> bool:
        return self.status != "rejected"

    @property
    def needs_review(self) -> bool:
        return self.status == "review"


@dataclass
class RiskSettings:
    cooldown_seconds: int = config.WITHDRAW_COOLDOWN_SECONDS
    daily_amount_limit: Decimal = Decimal(config.DAILY_WITHDRAW_AMOUNT_LIMIT)
    review_ratio: Decimal = Decimal(config.WITHDRAW_REVIEW_RATIO)
    large_threshold: Decimal = Decimal(config.LARGE_WITHDRAW_THRESHOLD)
    failed_limit: int = config.FAILED_WITHDRAW_LIMIT
    lock_ttl_seconds: float = config.WITHDRAW_LOCK_TIMEOUT_SECONDS
    lock_wait_seconds: float = config.WITHDRAW_LOCK_WAIT_SECONDS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cooldown_seconds": self.cooldown_seconds,
            "daily_amount_limit": str(self.daily_amount_limit),
            "review_ratio": str(self.review_ratio),
            "large_withdraw_threshold": str(self.large_threshold),
            "failed_withdraw_limit": self.failed_limit,
            "lock_timeout_seconds": self.lock_ttl_seconds,
            "lock_wait_seconds": self.lock_wait_seconds,
        }


def _review_id(now: float) -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"review_{int(now * 1000)}_{suffix}"


class WithdrawalRiskEngine:
    def __init__(
        self,
        store: SnapshotStore,
        *,
        settings: Optional[RiskSettings] = None,
        clock: Callable[[], float] = time.time,
        lock_clock: Callable[[], float] = time.monotonic,
    ):
        self._store = store
        self.settings = settings or RiskSettings()
        self._clock = clock
        self.last_withdraw_time: Dict[str, float] = {}
        self.daily_stats: Dict[str, Dict[str, Any]] = {}
        self.reviews: List[Dict[str, Any]] = []
        self.locks = KeyedLock(name="withdraw", ttl_seconds=self.settings.lock_ttl_seconds, clock=lock_clock)

    async def load(self) -> None:
        data = await self._store.load(SNAPSHOT_NAME)
        if data is None:
            logger.warning("No withdrawal security snapshot found, initializing a new one")
            await self.save()
            return
        self.last_withdraw_time = {k: float(v) for k, v in (data.get("last_withdraw_time") or {}).items()}
        self.daily_stats = dict(data.get("daily_stats") or {})
        self.reviews = list(data.get("pending_reviews") or [])
        pending = sum(1 for r in self.reviews if r["status"] == "pending")
        logger.info(f"Withdrawal security loaded: {pending} pending reviews")

    async def save(self) -> None:
        await self._store.save_snapshot(SNAPSHOT_NAME, {
            "last_withdraw_time": self.last_withdraw_time,
            "daily_stats": self.daily_stats,
            "pending_reviews": self.reviews,
            "last_update": datetime.fromtimestamp(self._clock(), tz=pytz.utc).isoformat(),
        })

    def _today(self) -> str:
        return datetime.fromtimestamp(self._clock(), tz=pytz.utc).strftime("%Y-%m-%d")

    def _today_stats(self, address: str) -> Dict[str, Any]:
        """Return today's stats row for the address, rolling it over at UTC midnight."""
        address = address.lower()
        today = self._today()
        stats = self.daily_stats.get(address)
        if stats is None or stats.get("date") != today:
            stats = {"date": today, "withdraw_count": 0, "withdraw_amount": "0", "deposit_amount": "0"}
            self.daily_stats[address] = stats
        return stats

    @asynccontextmanager
    async def address_lock(self, address: str) -> AsyncIterator[str]:
        """Hold the withdrawal lock for an address. Raises LockTimeout after the bounded wait."""
        async with self.locks.hold(address.lower(), timeout=self.settings.lock_wait_seconds) as token:
            yield token

    async def record_deposit(self, address: str, amount: Decimal) -> None:
        stats = self._today_stats(address)
        stats["deposit_amount"] = str(Decimal(stats["deposit_amount"]) + Decimal(amount))
        await self.save()

    async def record_success(self, address: str, amount: Decimal) -> None:
        address = address.lower()
        stats = self._today_stats(address)
        stats["withdraw_count"] += 1
        stats["withdraw_amount"] = str(Decimal(stats["withdraw_amount"]) + Decimal(amount))
        self.last_withdraw_time[address] = self._clock()
        await self.save()
        logger.info(f"Withdrawal recorded: address={address}, amount={amount}, today={stats['withdraw_amount']}")

    def cooldown_remaining(self, address: str) -> int:
        last = self.last_withdraw_time.get(address.lower())
        if last is None:
            return 0
        elapsed = self._clock() - last
        if elapsed >= self.settings.cooldown_seconds:
            return 0
        return max(1, math.ceil(self.settings.cooldown_seconds - elapsed))

    def check_withdraw_allowed(
        self, address: str, amount: Decimal, recent_transactions: Iterable[Any] = ()
    ) -> WithdrawCheck:
        """Admission check for a withdrawal. Does not mutate state.

        Review triggers are evaluated in order and the first match wins.
        """
        address = address.lower()
        amount = Decimal(amount)

        remaining = self.cooldown_remaining(address)
        if remaining:
            return WithdrawCheck(
                status="rejected", reason=f"withdraw_cooldown:{remaining}", retry_after_seconds=remaining
            )

        stats = self.daily_stats.get(address)
        if stats is None or stats.get("date") != self._today():
            deposit_today, withdrawn_today = ZERO, ZERO
        else:
            deposit_today = Decimal(stats["deposit_amount"])
            withdrawn_today = Decimal(stats["withdraw_amount"])
        withdraw_after = withdrawn_today + amount

        s = self.settings
        if amount >= s.large_threshold:
            return WithdrawCheck(
                status="review",
                review_reason=f"Single withdrawal too large ({amount} >= {s.large_threshold}), manual review required",
            )
        if deposit_today == ZERO and withdraw_after > ZERO:
            return WithdrawCheck(
                status="review", review_reason=f"No deposits today but a withdrawal of {amount} was requested"
            )
        if deposit_today > ZERO and withdraw_after >= deposit_today * s.review_ratio:
            ratio = (withdraw_after / deposit_today).quantize(Decimal("0.01"))
            return WithdrawCheck(
                status="review",
                review_reason=(
                    f"Abnormal withdraw/deposit ratio ({ratio}x), "
                    f"deposited today: {deposit_today}, withdrawn today: {withdraw_after}"
                ),
            )

        cutoff = self._clock() - FAILED_WINDOW_SECONDS
        failed = [
            tx for tx in recent_transactions
            if tx.kind == "withdraw" and tx.status == "failed" and tx.timestamp > cutoff
        ]
        if len(failed) >= s.failed_limit:
            return WithdrawCheck(
                status="review", review_reason=f"{len(failed)} failed withdrawal attempts in the last hour"
            )

        return WithdrawCheck(status="approved")

    async def create_pending_review(
        self, address: str, amount: Decimal, reason: str, **additional: Any
    ) -> Dict[str, Any]:
        now = self._clock()
        review = {
            "id": _review_id(now),
            "address": address.lower(),
            "amount": str(amount),
            "reason": reason,
            "timestamp": now,
            "created_at": datetime.fromtimestamp(now, tz=pytz.utc).isoformat(),
            "status": "pending",
            "reviewed_at": None,
            "reviewed_by": None,
            "review_note": None,
            "executed": False,
            "tx_hash": None,
            "failure": None,
        }
        review.update(additional)
        self.reviews.append(review)
        try:
            await self.save()
        except Exception:
            self.reviews.remove(review)
            raise
        logger.info(f"Withdrawal review created: id={review['id']}, address={review['address']}, "
                    f"amount={amount}, reason={reason}")
        return review

    def has_pending_review(self, address: str) -> bool:
        address = address.lower()
        return any(r["address"] == address and r["status"] == "pending" for r in self.reviews)

    def list_reviews(self, status: str = "pending") -> List[Dict[str, Any]]:
        if status == "all":
            selected = list(self.reviews)
        elif status in REVIEW_STATUSES:
            selected = [r for r in self.reviews if r["status"] == status]
        else:
            raise ValueError(f"Unknown review status: {status}")
        return sorted(selected, key=lambda r: r["timestamp"], reverse=True)

    def get_review(self, review_id: str) -> Dict[str, Any]:
        review = next((r for r in self.reviews if r["id"] == review_id), None)
        if review is None:
            raise ReviewNotFound(f"Review {review_id} not found")
        return review

    async def review_withdraw(
        self, review_id: str, approved: bool, note: str = "", reviewer: str = "admin"
    ) -> Dict[str, Any]:
        review = self.get_review(review_id)
        if review["status"] != "pending":
            raise ReviewAlreadyResolved(review_id, review["status"])

        review["status"] = "approved" if approved else "rejected"
        review["reviewed_at"] = datetime.fromtimestamp(self._clock(), tz=pytz.utc).isoformat()
        review["reviewed_by"] = reviewer
        review["review_note"] = note
        try:
            await self.save()
        except Exception:
            review.update(status="pending", reviewed_at=None, reviewed_by=None, review_note=None)
            raise

        logger.info(f"Withdrawal review {review['status']}: id={review_id}, address={review['address']}, "
                    f"amount={review['amount']}, note={note}")
        return review

    async def mark_review_executed(
        self, review_id: str, *, tx_hash: Optional[str] = None, failure: Optional[str] = None
    ) -> Dict[str, Any]:
        review = self.get_review(review_id)
        review["executed"] = failure is None
        review["tx_hash"] = tx_hash
        review["failure"] = failure
        await self.save()
        return review

    def user_stats(self, address: str) -> Dict[str, Any]:
        address = address.lower()
        stats = self.daily_stats.get(address)
        if stats is None or stats.get("date") != self._today():
            stats = {"date": self._today(), "withdraw_count": 0, "withdraw_amount": "0", "deposit_amount": "0"}
        last = self.last_withdraw_time.get(address)
        return {
            "today": dict(stats),
            "last_withdraw_time": datetime.fromtimestamp(last, tz=pytz.utc).isoformat() if last else None,
            "cooldown_remaining_seconds": self.cooldown_remaining(address),
            "limits": {
                "daily_amount_limit": str(self.settings.daily_amount_limit),
                "cooldown_seconds": self.settings.cooldown_seconds,
                "large_withdraw_threshold": str(self.settings.large_threshold),
            },
        }

    def all_stats(self) -> Dict[str, Any]:
        return {
            "config": self.settings.to_dict(),
            "total_users": len(self.daily_stats),
            "pending_reviews_count": sum(1 for r in self.reviews if r["status"] == "pending"),
            "user_stats": {addr: dict(stats) for addr, stats in self.daily_stats.items()},
        }
