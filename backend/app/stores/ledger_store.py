from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from app.models.credit_account import CreditAccount
from app.models.credit_transaction import CreditTransaction
from app.services.credit_ledger import (
    TX_SPENT,
    CreditLedgerError,
    DuplicateReferenceError,
    InsufficientCreditsError,
)
from app.services.protocols import CreditAccountView, LedgerRow
from app.stores.base import SqlStore, as_utc

logger = logging.getLogger(__name__)


def _account_view(acct: CreditAccount) -> CreditAccountView:
    return CreditAccountView(
        user_id=acct.user_id,
        balance=int(acct.balance or 0),
        lifetime_earned=int(acct.lifetime_earned or 0),
        lifetime_spent=int(acct.lifetime_spent or 0),
    )


def _ledger_row(tx: CreditTransaction) -> LedgerRow:
    return LedgerRow(
        id=tx.id,
        user_id=tx.user_id,
        type=tx.type,
        amount=int(tx.amount),
        balance_after=int(tx.balance_after),
        description=tx.description,
        reference_id=tx.reference_id,
        reference_type=tx.reference_type,
        created_at=as_utc(tx.created_at),
    )


class SqlCreditLedgerStore(SqlStore):
    async def get_or_create_account(self, user_id: str) -> CreditAccountView:
        return await self._run(self._get_or_create_account, user_id)

    def _get_or_create_account(self, user_id: str) -> CreditAccountView:
        with self._session() as db:
            acct = db.query(CreditAccount).filter(CreditAccount.user_id == user_id).first()
            if acct is not None:
                return _account_view(acct)

            acct = CreditAccount(user_id=user_id, balance=0, lifetime_earned=0, lifetime_spent=0)
            db.add(acct)
            try:
                db.commit()
            except IntegrityError:
                # Created concurrently by another process.
                db.rollback()
                acct = db.query(CreditAccount).filter(CreditAccount.user_id == user_id).first()
                if acct is None:
                    raise
            logger.info("credit_ledger.account_created user_id=%s", user_id)
            return _account_view(acct)

    async def apply(
        self,
        user_id: str,
        amount: int,
        tx_type: str,
        description: str,
        reference_id: Optional[str],
        reference_type: Optional[str],
    ) -> LedgerRow:
        return await self._run(self._apply, user_id, amount, tx_type, description, reference_id, reference_type)

    def _apply(
        self,
        user_id: str,
        amount: int,
        tx_type: str,
        description: str,
        reference_id: Optional[str],
        reference_type: Optional[str],
    ) -> LedgerRow:
        amount = int(amount)
        if tx_type == TX_SPENT:
            stmt = (
                update(CreditAccount)
                .where(CreditAccount.user_id == user_id, CreditAccount.balance >= amount)
                .values(
                    balance=CreditAccount.balance - amount,
                    lifetime_spent=CreditAccount.lifetime_spent + amount,
                )
            )
        else:
            stmt = (
                update(CreditAccount)
                .where(CreditAccount.user_id == user_id)
                .values(
                    balance=CreditAccount.balance + amount,
                    lifetime_earned=CreditAccount.lifetime_earned + amount,
                )
            )
        stmt = stmt.returning(CreditAccount.balance).execution_options(synchronize_session=False)

        with self._session() as db:
            try:
                balance_after = db.execute(stmt).scalar_one_or_none()
                if balance_after is None:
                    current = db.query(CreditAccount.balance).filter(CreditAccount.user_id == user_id).scalar()
                    db.rollback()
                    if current is None:
                        raise CreditLedgerError(f"No credit account for user {user_id}")
                    raise InsufficientCreditsError(required=amount, current=int(current))

                tx = CreditTransaction(
                    user_id=user_id,
                    type=tx_type,
                    amount=amount,
                    balance_after=int(balance_after),
                    description=description,
                    reference_id=reference_id,
                    reference_type=reference_type,
                )
                db.add(tx)
                db.commit()
                db.refresh(tx)
            except IntegrityError:
                db.rollback()
                raise DuplicateReferenceError(user_id, reference_id or "", tx_type)
            return _ledger_row(tx)

    async def find_transaction(
        self, user_id: str, reference_id: str, tx_type: Optional[str] = None
    ) -> Optional[LedgerRow]:
        return await self._run(self._find_transaction, user_id, reference_id, tx_type)

    def _find_transaction(self, user_id: str, reference_id: str, tx_type: Optional[str]) -> Optional[LedgerRow]:
        with self._session() as db:
            q = db.query(CreditTransaction).filter(
                CreditTransaction.user_id == user_id,
                CreditTransaction.reference_id == reference_id,
            )
            if tx_type:
                q = q.filter(CreditTransaction.type == tx_type)
            tx = q.order_by(CreditTransaction.id.asc()).first()
            return _ledger_row(tx) if tx is not None else None

    async def list_transactions(
        self, user_id: str, *, limit: int = 50, offset: int = 0, tx_type: Optional[str] = None
    ) -> list[LedgerRow]:
        return await self._run(self._list_transactions, user_id, limit, offset, tx_type)

    def _list_transactions(self, user_id: str, limit: int, offset: int, tx_type: Optional[str]) -> list[LedgerRow]:
        with self._session() as db:
            q = db.query(CreditTransaction).filter(CreditTransaction.user_id == user_id)
            if tx_type:
                q = q.filter(CreditTransaction.type == tx_type)
            rows = q.order_by(CreditTransaction.id.desc()).offset(offset).limit(limit).all()
            return [_ledger_row(tx) for tx in rows]
