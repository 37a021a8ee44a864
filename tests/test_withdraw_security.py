"""
Withdrawal risk engine tests: cooldown, review triggers, daily rollover,
review resolution and the per-address lock.
"""

import asyncio
from decimal import Decimal
from types import SimpleNamespace

import pytest
import pytest_asyncio

from app.services.withdraw_security import (
    ReviewAlreadyResolved,
    ReviewNotFound,
    RiskSettings,
    WithdrawalRiskEngine,
)
from core.locks import LockTimeout

ALICE = "0x" + "a1" * 20
BOB = "0x" + "b2" * 20


@pytest_asyncio.fixture
async def risk(store, clock):
    engine = WithdrawalRiskEngine(store, settings=RiskSettings(lock_wait_seconds=0.1), clock=clock)
    await engine.load()
    return engine


def failed_withdraw(timestamp):
    return SimpleNamespace(kind="withdraw", status="failed", timestamp=timestamp)


class TestCooldown:
    @pytest.mark.asyncio
    async def test_rejected_one_second_after_success(self, risk, clock):
        await risk.record_deposit(ALICE, Decimal("1000"))
        await risk.record_success(ALICE, Decimal("10"))
        clock.advance(1)

        check = risk.check_withdraw_allowed(ALICE, Decimal("10"))

        assert check.status == "rejected"
        assert check.reason == "withdraw_cooldown:299"
        assert check.retry_after_seconds == 299

    @pytest.mark.asyncio
    async def test_allowed_after_cooldown(self, risk, clock):
        await risk.record_deposit(ALICE, Decimal("1000"))
        await risk.record_success(ALICE, Decimal("10"))
        clock.advance(300)

        assert risk.check_withdraw_allowed(ALICE, Decimal("10")).status == "approved"

    @pytest.mark.asyncio
    async def test_cooldown_is_per_address(self, risk):
        await risk.record_deposit(BOB, Decimal("1000"))
        await risk.record_success(ALICE, Decimal("10"))

        assert risk.check_withdraw_allowed(BOB, Decimal("10")).status == "approved"


class TestReviewTriggers:
    @pytest.mark.asyncio
    async def test_threshold_amount_always_reviewed(self, risk):
        await risk.record_deposit(ALICE, Decimal("1000000"))

        check = risk.check_withdraw_allowed(ALICE, Decimal("5000"))

        assert check.status == "review"
        assert "too large" in check.review_reason

    @pytest.mark.asyncio
    async def test_no_deposit_today(self, risk):
        check = risk.check_withdraw_allowed(ALICE, Decimal("10"))
        assert check.status == "review"
        assert "No deposits today" in check.review_reason

    @pytest.mark.asyncio
    async def test_ratio_trigger(self, risk):
        await risk.record_deposit(ALICE, Decimal("100"))

        assert risk.check_withdraw_allowed(ALICE, Decimal("399")).status == "approved"
        check = risk.check_withdraw_allowed(ALICE, Decimal("400"))
        assert check.status == "review"
        assert "4.00x" in check.review_reason

    @pytest.mark.asyncio
    async def test_ratio_counts_earlier_withdrawals(self, risk, clock):
        await risk.record_deposit(ALICE, Decimal("100"))
        await risk.record_success(ALICE, Decimal("300"))
        clock.advance(301)

        assert risk.check_withdraw_allowed(ALICE, Decimal("100")).status == "review"

    @pytest.mark.asyncio
    async def test_failed_attempts_in_last_hour(self, risk, clock):
        await risk.record_deposit(ALICE, Decimal("1000"))
        now = clock()
        recent = [failed_withdraw(now - 60 * i) for i in range(5)]
        old = [failed_withdraw(now - 4000) for _ in range(5)]

        assert risk.check_withdraw_allowed(ALICE, Decimal("10"), old + recent[:4]).status == "approved"
        check = risk.check_withdraw_allowed(ALICE, Decimal("10"), recent)
        assert check.status == "review"
        assert "5 failed" in check.review_reason

    @pytest.mark.asyncio
    async def test_daily_stats_roll_over_at_utc_midnight(self, risk, clock):
        await risk.record_deposit(ALICE, Decimal("100"))
        assert risk.check_withdraw_allowed(ALICE, Decimal("10")).status == "approved"

        clock.advance(24 * 3600)

        check = risk.check_withdraw_allowed(ALICE, Decimal("10"))
        assert check.status == "review"
        assert risk.user_stats(ALICE)["today"]["deposit_amount"] == "0"


class TestReviews:
    @pytest.mark.asyncio
    async def test_create_and_list(self, risk, clock):
        first = await risk.create_pending_review(ALICE, Decimal("6000"), "large", reservation_id="r1")
        clock.advance(1)
        second = await risk.create_pending_review(BOB, Decimal("10"), "no deposit")

        assert first["id"].startswith("review_")
        assert first["reservation_id"] == "r1"
        assert risk.has_pending_review(ALICE)
        assert [r["id"] for r in risk.list_reviews("pending")] == [second["id"], first["id"]]

    @pytest.mark.asyncio
    async def test_resolve_exactly_once(self, risk):
        review = await risk.create_pending_review(ALICE, Decimal("6000"), "large")

        resolved = await risk.review_withdraw(review["id"], True, "looks fine", "ops")
        assert resolved["status"] == "approved"
        assert resolved["reviewed_by"] == "ops"
        assert resolved["review_note"] == "looks fine"
        assert not risk.has_pending_review(ALICE)

        with pytest.raises(ReviewAlreadyResolved):
            await risk.review_withdraw(review["id"], False, "changed my mind")
        assert risk.get_review(review["id"])["status"] == "approved"

    @pytest.mark.asyncio
    async def test_unknown_review(self, risk):
        with pytest.raises(ReviewNotFound):
            await risk.review_withdraw("review_0_missing", True)

    @pytest.mark.asyncio
    async def test_list_filters(self, risk):
        a = await risk.create_pending_review(ALICE, Decimal("1"), "x")
        await risk.create_pending_review(BOB, Decimal("1"), "y")
        await risk.review_withdraw(a["id"], False)

        assert len(risk.list_reviews("all")) == 2
        assert [r["id"] for r in risk.list_reviews("rejected")] == [a["id"]]
        with pytest.raises(ValueError):
            risk.list_reviews("bogus")

    @pytest.mark.asyncio
    async def test_state_survives_restart(self, risk, store, clock):
        await risk.record_deposit(ALICE, Decimal("100"))
        await risk.record_success(ALICE, Decimal("10"))
        review = await risk.create_pending_review(BOB, Decimal("6000"), "large")

        restarted = WithdrawalRiskEngine(store, clock=clock)
        await restarted.load()

        assert restarted.cooldown_remaining(ALICE) == 300
        assert restarted.get_review(review["id"])["status"] == "pending"
        assert restarted.user_stats(ALICE)["today"]["withdraw_count"] == 1

    @pytest.mark.asyncio
    async def test_all_stats(self, risk):
        await risk.record_deposit(ALICE, Decimal("100"))
        await risk.create_pending_review(ALICE, Decimal("6000"), "large")

        stats = risk.all_stats()
        assert stats["total_users"] == 1
        assert stats["pending_reviews_count"] == 1
        assert stats["config"]["cooldown_seconds"] == 300


class TestAddressLock:
    @pytest.mark.asyncio
    async def test_back_to_back_requests_are_serialized(self, risk):
        order = []

        async def request(name, hold):
            async with risk.address_lock(ALICE):
                order.append(f"{name}:start")
                await asyncio.sleep(hold)
                order.append(f"{name}:end")

        await asyncio.gather(request("first", 0.05), request("second", 0))

        assert order == ["first:start", "first:end", "second:start", "second:end"]

    @pytest.mark.asyncio
    async def test_second_request_times_out_while_first_holds(self, risk):
        async with risk.address_lock(ALICE):
            with pytest.raises(LockTimeout):
                async with risk.address_lock(ALICE.upper().replace("0X", "0x")):
                    pass
            # A different address is unaffected
            async with risk.address_lock(BOB):
                pass
