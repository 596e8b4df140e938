"""
Unit Tests for InMemoryCreditLedger

Tests idempotent deduction and refund keyed by ``{job_id}:{retry_count}``.
"""

import pytest

from genguard.infrastructure.credits.credit_ledger import InMemoryCreditLedger


@pytest.fixture
def ledger():
    return InMemoryCreditLedger(default_balance=5, balances={"rich": 100})


@pytest.mark.unit
class TestCreditLedger:
    def test_balances(self, ledger):
        assert ledger.balance("rich") == 100
        assert ledger.balance("anyone") == 5

    @pytest.mark.asyncio
    async def test_grant(self, ledger):
        assert await ledger.grant("anyone", 3) == 8

    @pytest.mark.asyncio
    async def test_deduct(self, ledger):
        result = await ledger.deduct("user-1", 2, "job-1:0")

        assert result.success
        assert result.balance == 3
        assert ledger.balance("user-1") == 3

    @pytest.mark.asyncio
    async def test_duplicate_deduct_charges_once(self, ledger):
        await ledger.deduct("user-1", 1, "job-1:0")

        repeat = await ledger.deduct("user-1", 1, "job-1:0")

        assert repeat.success
        assert repeat.reason == "duplicate"
        assert ledger.balance("user-1") == 4

    @pytest.mark.asyncio
    async def test_insufficient_credits(self):
        ledger = InMemoryCreditLedger()

        result = await ledger.deduct("user-1", 1, "job-1:0")

        assert not result.success
        assert result.reason == "insufficient_credits"
        assert ledger.balance("user-1") == 0

    @pytest.mark.asyncio
    async def test_refund_once(self, ledger):
        await ledger.deduct("user-1", 1, "job-1:0")

        first = await ledger.refund("user-1", 1, "generation failed", "job-1:0")
        second = await ledger.refund("user-1", 1, "generation failed", "job-1:0")

        assert first.success
        assert second.reason == "duplicate"
        assert ledger.balance("user-1") == 5
        assert ledger.was_refunded("job-1:0")

    @pytest.mark.asyncio
    async def test_refund_without_deduction_is_refused(self, ledger):
        result = await ledger.refund("user-1", 1, "interrupted", "job-1:0")

        assert not result.success
        assert result.reason == "no_matching_deduction"
        assert ledger.balance("user-1") == 5
        assert not ledger.was_refunded("job-1:0")

    @pytest.mark.asyncio
    async def test_refund_never_exceeds_deduction(self, ledger):
        await ledger.deduct("user-1", 1, "job-1:0")

        await ledger.refund("user-1", 10, "generation failed", "job-1:0")

        assert ledger.balance("user-1") == 5

    @pytest.mark.asyncio
    async def test_each_attempt_has_its_own_key(self, ledger):
        await ledger.deduct("user-1", 1, "job-1:0")
        await ledger.refund("user-1", 1, "timeout", "job-1:0")
        await ledger.deduct("user-1", 1, "job-1:1")

        assert ledger.balance("user-1") == 4
