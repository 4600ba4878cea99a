from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable
from uuid import uuid4

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from app.services.credit_ledger import CreditLedger
from app.services.protocols import ExpirationLot, ExpirationLotStore

logger = logging.getLogger(__name__)

EXPIRATION_DESCRIPTION = "Bonus credits expired"
EXPIRATION_REFERENCE_TYPE = "credit_expiration"


@dataclass(frozen=True)
class SweepReport:
    processed: int = 0
    completed: int = 0
    expired_credits: int = 0
    failed: int = 0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExpirationSweeper:
    def __init__(
        self,
        ledger: CreditLedger,
        lots: ExpirationLotStore,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._ledger = ledger
        self._lots = lots
        self._clock = clock

    async def schedule_expiration(
        self,
        user_id: str,
        amount: int,
        expires_at: datetime,
        reason: str = "upgrade_bonus",
        metadata: dict[str, Any] | None = None,
    ) -> ExpirationLot:
        if amount <= 0:
            raise ValueError("Amount must be a positive integer")
        lot = await self._lots.create(
            ExpirationLot(
                id=str(uuid4()),
                user_id=user_id,
                amount=int(amount),
                consumed_amount=0,
                expires_at=expires_at,
                reason=reason,
                status="scheduled",
                metadata=metadata,
            )
        )
        logger.info(
            "expiration.scheduled user_id=%s lot_id=%s amount=%s expires_at=%s",
            user_id,
            lot.id,
            amount,
            expires_at.isoformat(),
        )
        return lot

    async def sweep(self, now: datetime | None = None) -> SweepReport:
        now = now or self._clock()
        due = await self._lots.list_due(now)
        completed = 0
        failed = 0
        expired_credits = 0

        for lot in due:
            remaining = lot.amount - lot.consumed_amount
            try:
                if remaining > 0:
                    await self._ledger.spend(
                        lot.user_id,
                        remaining,
                        EXPIRATION_DESCRIPTION,
                        reference_id=lot.id,
                        reference_type=EXPIRATION_REFERENCE_TYPE,
                    )
                    expired_credits += remaining
                await self._lots.mark_completed(lot.id, consumed_amount=lot.amount, processed_at=now)
                completed += 1
            except Exception as e:
                failed += 1
                logger.warning(
                    "expiration.lot_failed lot_id=%s user_id=%s remaining=%s error=%s",
                    lot.id,
                    lot.user_id,
                    remaining,
                    e,
                )
                try:
                    await self._lots.mark_failed(lot.id, error_message=str(e) or e.__class__.__name__, processed_at=now)
                except Exception:
                    # Lot stays due and is retried by the next sweep.
                    logger.exception("expiration.mark_failed_error lot_id=%s", lot.id)

        report = SweepReport(processed=len(due), completed=completed, expired_credits=expired_credits, failed=failed)
        logger.info(
            "expiration.sweep_done processed=%s completed=%s expired_credits=%s failed=%s",
            report.processed,
            report.completed,
            report.expired_credits,
            report.failed,
        )
        return report


def build_expiration_scheduler(sweeper: ExpirationSweeper, *, hour: int = 0, minute: int = 10) -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.add_job(
        sweeper.sweep,
        CronTrigger(hour=hour, minute=minute, timezone="UTC"),
        id="credit_expiration_sweep",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    return scheduler
