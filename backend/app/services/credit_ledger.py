"""
Credit ledger: the system of record for user balances.

Every balance movement goes through `CreditLedgerStore.apply`, which validates
sufficiency, moves the balance and appends the transaction row in one atomic
storage operation. Spends and refunds are idempotent per
(user_id, reference_id, type); a replay returns the original row with
`idempotent=True`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from app.services.protocols import CreditAccountView, CreditLedgerStore, LedgerRow

logger = logging.getLogger(__name__)

TX_EARNED = "earned"
TX_PURCHASED = "purchased"
TX_BONUS = "bonus"
TX_SPENT = "spent"
TX_REFUND = "refund"

GRANT_TYPES = frozenset({TX_EARNED, TX_PURCHASED, TX_BONUS})
POSITIVE_TYPES = frozenset({TX_EARNED, TX_PURCHASED, TX_BONUS, TX_REFUND})
TRANSACTION_TYPES = POSITIVE_TYPES | {TX_SPENT}

# Grants keyed by a payment-provider id; the storage layer keeps these unique per reference.
PAYMENT_REFERENCE_TYPES = frozenset({"subscription_invoice", "credit_package", "upgrade_bonus"})


class CreditLedgerError(RuntimeError):
    pass


class InsufficientCreditsError(CreditLedgerError):
    def __init__(self, required: int, current: int) -> None:
        self.required = int(required)
        self.current = int(current)
        self.shortfall = max(0, self.required - self.current)
        super().__init__(f"Insufficient credits: required={self.required} current={self.current}")


class DuplicateReferenceError(CreditLedgerError):
    def __init__(self, user_id: str, reference_id: str, tx_type: str) -> None:
        self.user_id = user_id
        self.reference_id = reference_id
        self.tx_type = tx_type
        super().__init__(f"Duplicate {tx_type} for reference {reference_id}")


@dataclass(frozen=True)
class LedgerResult:
    balance_after: int
    amount: int
    idempotent: bool
    transaction_id: int | None


@dataclass(frozen=True)
class CreditCheck:
    has_enough: bool
    required: int
    current: int
    shortfall: int
    balance_after: int


def signed_amount(tx_type: str, amount: int) -> int:
    return -int(amount) if tx_type == TX_SPENT else int(amount)


def _require_positive(amount: int) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValueError("Amount must be a positive integer")
    return amount


def _result(row: LedgerRow, *, idempotent: bool) -> LedgerResult:
    return LedgerResult(
        balance_after=row.balance_after,
        amount=row.amount,
        idempotent=idempotent,
        transaction_id=row.id,
    )


class CreditLedger:
    def __init__(self, store: CreditLedgerStore) -> None:
        self._store = store

    async def get_or_create(self, user_id: str) -> CreditAccountView:
        if not user_id:
            raise ValueError("user_id is required")
        return await self._store.get_or_create_account(user_id)

    async def get_balance(self, user_id: str) -> int:
        return (await self.get_or_create(user_id)).balance

    async def check_sufficient(self, user_id: str, required: int) -> CreditCheck:
        account = await self.get_or_create(user_id)
        required = int(required)
        current = account.balance
        return CreditCheck(
            has_enough=current >= required,
            required=required,
            current=current,
            shortfall=max(0, required - current),
            balance_after=current - required,
        )

    async def _idempotent_apply(
        self,
        user_id: str,
        amount: int,
        tx_type: str,
        description: str,
        reference_id: Optional[str],
        reference_type: Optional[str],
    ) -> LedgerResult:
        if reference_id:
            existing = await self._store.find_transaction(user_id, reference_id, tx_type)
            if existing is not None:
                logger.info(
                    "credit_ledger.idempotent user_id=%s type=%s reference_id=%s",
                    user_id,
                    tx_type,
                    reference_id,
                )
                return _result(existing, idempotent=True)

        try:
            row = await self._store.apply(user_id, amount, tx_type, description, reference_id, reference_type)
        except DuplicateReferenceError:
            # A concurrent caller won the race; hand back its row.
            existing = await self._store.find_transaction(user_id, reference_id or "", tx_type)
            if existing is None:
                raise
            logger.info(
                "credit_ledger.idempotent_race user_id=%s type=%s reference_id=%s",
                user_id,
                tx_type,
                reference_id,
            )
            return _result(existing, idempotent=True)

        logger.info(
            "credit_ledger.applied user_id=%s type=%s amount=%s balance_after=%s reference_id=%s",
            user_id,
            tx_type,
            amount,
            row.balance_after,
            reference_id,
        )
        return _result(row, idempotent=False)

    async def debit(
        self,
        user_id: str,
        amount: int,
        description: str,
        reference_id: Optional[str] = None,
        reference_type: Optional[str] = None,
    ) -> LedgerResult:
        _require_positive(amount)
        await self.get_or_create(user_id)
        return await self._idempotent_apply(user_id, amount, TX_SPENT, description, reference_id, reference_type)

    async def spend(
        self,
        user_id: str,
        amount: int,
        description: str,
        reference_id: Optional[str] = None,
        reference_type: Optional[str] = None,
    ) -> LedgerResult:
        return await self.debit(user_id, amount, description, reference_id, reference_type)

    async def credit(
        self,
        user_id: str,
        amount: int,
        tx_type: str,
        description: str,
        reference_id: Optional[str] = None,
        reference_type: Optional[str] = None,
    ) -> LedgerResult:
        """
        Grant credits. Not idempotent by itself; webhook callers pre-check with
        find_transaction. A second grant with the same payment reference raises
        DuplicateReferenceError.
        """
        _require_positive(amount)
        if tx_type not in GRANT_TYPES:
            raise ValueError(f"Invalid credit type: {tx_type}")
        await self.get_or_create(user_id)
        row = await self._store.apply(user_id, amount, tx_type, description, reference_id, reference_type)
        logger.info(
            "credit_ledger.credited user_id=%s type=%s amount=%s balance_after=%s reference_id=%s",
            user_id,
            tx_type,
            amount,
            row.balance_after,
            reference_id,
        )
        return _result(row, idempotent=False)

    async def refund(
        self,
        user_id: str,
        amount: int,
        description: str,
        reference_id: str,
        reason: str,
        reference_type: str = "generation",
    ) -> LedgerResult:
        _require_positive(amount)
        if not reference_id:
            raise ValueError("reference_id is required for refunds")
        await self.get_or_create(user_id)
        return await self._idempotent_apply(
            user_id,
            amount,
            TX_REFUND,
            f"Refund: {description} - {reason}",
            reference_id,
            reference_type,
        )

    async def find_transaction(
        self, user_id: str, reference_id: str, tx_type: Optional[str] = None
    ) -> Optional[LedgerRow]:
        if not reference_id:
            return None
        return await self._store.find_transaction(user_id, reference_id, tx_type)

    async def list_transactions(
        self, user_id: str, *, limit: int = 50, offset: int = 0, tx_type: Optional[str] = None
    ) -> list[LedgerRow]:
        if tx_type is not None and tx_type not in TRANSACTION_TYPES:
            raise ValueError(f"Invalid transaction type: {tx_type}")
        limit = max(1, min(int(limit), 200))
        offset = max(0, int(offset))
        return await self._store.list_transactions(user_id, limit=limit, offset=offset, tx_type=tx_type)
