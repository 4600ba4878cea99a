from __future__ import annotations

from datetime import datetime

from app.models.credit_expiration import CreditExpiration
from app.services.protocols import ExpirationLot
from app.stores.base import SqlStore, as_utc

DUE_STATUSES = ("scheduled", "pending")


def _lot(row: CreditExpiration) -> ExpirationLot:
    return ExpirationLot(
        id=row.id,
        user_id=row.user_id,
        amount=int(row.amount),
        consumed_amount=int(row.consumed_amount or 0),
        expires_at=as_utc(row.expires_at),
        reason=row.reason,
        status=row.status,
        metadata=row.lot_metadata,
        error_message=row.error_message,
        processed_at=as_utc(row.processed_at),
    )


class SqlExpirationLotStore(SqlStore):
    async def create(self, lot: ExpirationLot) -> ExpirationLot:
        return await self._run(self._create, lot)

    def _create(self, lot: ExpirationLot) -> ExpirationLot:
        with self._session() as db:
            row = CreditExpiration(
                id=lot.id,
                user_id=lot.user_id,
                amount=lot.amount,
                consumed_amount=lot.consumed_amount,
                expires_at=as_utc(lot.expires_at),
                reason=lot.reason,
                status=lot.status,
                lot_metadata=lot.metadata,
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            return _lot(row)

    async def list_due(self, now: datetime) -> list[ExpirationLot]:
        return await self._run(self._list_due, now)

    def _list_due(self, now: datetime) -> list[ExpirationLot]:
        with self._session() as db:
            rows = (
                db.query(CreditExpiration)
                .filter(CreditExpiration.expires_at <= as_utc(now))
                .filter(CreditExpiration.status.in_(DUE_STATUSES))
                .order_by(CreditExpiration.expires_at.asc(), CreditExpiration.id.asc())
                .all()
            )
            return [_lot(row) for row in rows]

    async def mark_completed(self, lot_id: str, *, consumed_amount: int, processed_at: datetime) -> None:
        await self._run(self._mark, lot_id, status="completed", consumed_amount=consumed_amount, processed_at=processed_at)

    async def mark_failed(self, lot_id: str, *, error_message: str, processed_at: datetime) -> None:
        await self._run(self._mark, lot_id, status="failed", error_message=error_message, processed_at=processed_at)

    def _mark(self, lot_id: str, **fields) -> None:
        with self._session() as db:
            row = db.query(CreditExpiration).filter(CreditExpiration.id == lot_id).first()
            if row is None:
                return
            for key, value in fields.items():
                setattr(row, key, value)
            db.commit()
