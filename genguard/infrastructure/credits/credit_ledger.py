"""
Idempotent In-Memory Credit Ledger

Reference ``CreditController`` used by the worker when no billing service is
injected, and by the tests.

Every deduction and refund carries an idempotency key (``"{job_id}:{retry_count}"``
from the worker). A key can be deducted once and refunded once, and a refund is
only honoured for a key that was actually deducted, which rules out both
double-charging and double-refunding a job attempt.
"""

import asyncio
from dataclasses import dataclass

from genguard.core.interfaces.ports import CreditResult
from genguard.core.logging.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class _Deduction:
    user_id: str
    amount: int


class InMemoryCreditLedger:
    """
    Per-user credit balances with idempotent deduct/refund.

    Usage:
        ledger = InMemoryCreditLedger(default_balance=10)
        result = await ledger.deduct("user-1", 1, "job-1:0")
        await ledger.refund("user-1", 1, "generation failed", "job-1:0")
    """

    def __init__(self, default_balance: int = 0, balances: dict[str, int] | None = None):
        self.default_balance = default_balance
        self._balances: dict[str, int] = dict(balances or {})
        self._deductions: dict[str, _Deduction] = {}
        self._refunds: set[str] = set()
        self._lock = asyncio.Lock()

    def balance(self, user_id: str) -> int:
        return self._balances.get(user_id, self.default_balance)

    async def grant(self, user_id: str, amount: int) -> int:
        async with self._lock:
            self._balances[user_id] = self.balance(user_id) + amount
            return self._balances[user_id]

    async def deduct(self, user_id: str, amount: int, idempotency_key: str) -> CreditResult:
        async with self._lock:
            if idempotency_key in self._deductions:
                return CreditResult(success=True, balance=self.balance(user_id), reason="duplicate")

            current = self.balance(user_id)
            if current < amount:
                logger.info(
                    "Credit deduction refused",
                    user_id=user_id,
                    amount=amount,
                    balance=current,
                    idempotency_key=idempotency_key,
                )
                return CreditResult(success=False, balance=current, reason="insufficient_credits")

            self._balances[user_id] = current - amount
            self._deductions[idempotency_key] = _Deduction(user_id=user_id, amount=amount)
            return CreditResult(success=True, balance=self._balances[user_id])

    async def refund(
        self, user_id: str, amount: int, reason: str, idempotency_key: str
    ) -> CreditResult:
        async with self._lock:
            deduction = self._deductions.get(idempotency_key)
            if deduction is None:
                return CreditResult(success=False, balance=self.balance(user_id), reason="no_matching_deduction")
            if idempotency_key in self._refunds:
                return CreditResult(success=True, balance=self.balance(user_id), reason="duplicate")

            refunded = min(amount, deduction.amount)
            self._balances[deduction.user_id] = self.balance(deduction.user_id) + refunded
            self._refunds.add(idempotency_key)
            logger.info(
                "Credits refunded",
                user_id=deduction.user_id,
                amount=refunded,
                reason=reason,
                idempotency_key=idempotency_key,
            )
            return CreditResult(success=True, balance=self._balances[deduction.user_id])

    def was_refunded(self, idempotency_key: str) -> bool:
        return idempotency_key in self._refunds
