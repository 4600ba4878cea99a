from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping

from app.services.credit_ledger import TX_BONUS, TX_EARNED, TX_PURCHASED, CreditLedger, DuplicateReferenceError
from app.services.expiration import ExpirationSweeper
from app.services.pricing import get_credit_pack

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_int(raw: Any) -> int:
    try:
        return int(str(raw).strip())
    except (TypeError, ValueError):
        return 0


def _metadata(obj: Mapping[str, Any]) -> dict[str, Any]:
    meta = obj.get("metadata") or {}
    if not meta:
        # Subscription invoices carry the subscription's metadata one level down.
        meta = (obj.get("subscription_details") or {}).get("metadata") or {}
    return dict(meta)


class PaymentEventHandler:
    """
    Applies payment webhook events to the credit ledger.

    Providers redeliver events, so every grant is keyed by the invoice or
    checkout-session id and skipped when the ledger already holds it.
    """

    def __init__(
        self,
        ledger: CreditLedger,
        sweeper: ExpirationSweeper,
        *,
        plan_credits: Mapping[str, int] | None = None,
        upgrade_bonus_expiry_days: int = 30,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._ledger = ledger
        self._sweeper = sweeper
        self._plan_credits = {k.lower(): int(v) for k, v in (plan_credits or {}).items()}
        self._upgrade_bonus_expiry_days = upgrade_bonus_expiry_days
        self._clock = clock

    async def handle(self, event: Mapping[str, Any]) -> dict[str, Any]:
        event_type = str(event.get("type") or "").strip()
        obj = (event.get("data") or {}).get("object") or {}

        if event_type == "invoice.payment_succeeded":
            return await self._invoice_paid(obj)
        if event_type == "checkout.session.completed":
            return await self._checkout_completed(obj)

        logger.info("payments.ignored event_type=%s event_id=%s", event_type, event.get("id"))
        return {"received": True, "handled": False}

    async def _grant_once(
        self,
        user_id: str,
        amount: int,
        tx_type: str,
        description: str,
        reference_id: str,
        reference_type: str,
    ) -> dict[str, Any]:
        existing = await self._ledger.find_transaction(user_id, reference_id, tx_type)
        if existing is not None:
            logger.info(
                "payments.duplicate user_id=%s type=%s reference_id=%s",
                user_id,
                tx_type,
                reference_id,
            )
            return {"received": True, "handled": True, "duplicate": True, "transaction_id": existing.id}

        try:
            result = await self._ledger.credit(user_id, amount, tx_type, description, reference_id, reference_type)
        except DuplicateReferenceError:
            # A concurrent delivery of the same event committed first.
            existing = await self._ledger.find_transaction(user_id, reference_id, tx_type)
            logger.info(
                "payments.duplicate_race user_id=%s type=%s reference_id=%s",
                user_id,
                tx_type,
                reference_id,
            )
            return {
                "received": True,
                "handled": True,
                "duplicate": True,
                "transaction_id": existing.id if existing else None,
            }

        logger.info(
            "payments.granted user_id=%s type=%s amount=%s reference_id=%s balance_after=%s",
            user_id,
            tx_type,
            amount,
            reference_id,
            result.balance_after,
        )
        return {
            "received": True,
            "handled": True,
            "duplicate": False,
            "credits": amount,
            "balance_after": result.balance_after,
            "transaction_id": result.transaction_id,
        }

    async def _invoice_paid(self, invoice: Mapping[str, Any]) -> dict[str, Any]:
        meta = _metadata(invoice)
        user_id = str(meta.get("user_id") or "").strip()
        invoice_id = str(invoice.get("id") or "").strip()
        if not user_id or not invoice_id:
            return {"received": True, "handled": False}

        plan_key = str(meta.get("plan_key") or "").strip().lower()
        credits = _as_int(meta.get("credits_included")) or self._plan_credits.get(plan_key, 0)
        if credits <= 0:
            logger.warning("payments.no_plan_credits user_id=%s plan_key=%s invoice_id=%s", user_id, plan_key, invoice_id)
            return {"received": True, "handled": False}

        return await self._grant_once(
            user_id,
            credits,
            TX_EARNED,
            f"Subscription credits ({plan_key or 'plan'})",
            invoice_id,
            "subscription_invoice",
        )

    async def _checkout_completed(self, session: Mapping[str, Any]) -> dict[str, Any]:
        meta = _metadata(session)
        user_id = str(meta.get("user_id") or session.get("client_reference_id") or "").strip()
        session_id = str(session.get("id") or "").strip()
        if not user_id or not session_id:
            return {"received": True, "handled": False}

        if str(meta.get("purpose") or "") == "credit_topup":
            pack = get_credit_pack(meta.get("pack_id"))
            credits = pack.credits if pack else _as_int(meta.get("credits"))
            if credits <= 0:
                logger.warning("payments.unknown_pack user_id=%s session_id=%s", user_id, session_id)
                return {"received": True, "handled": False}
            description = f"Credit top-up ({pack.name})" if pack else "Credit top-up"
            return await self._grant_once(user_id, credits, TX_PURCHASED, description, session_id, "credit_package")

        if str(meta.get("is_upgrade") or "").lower() == "true":
            bonus = _as_int(meta.get("upgrade_bonus_credits"))
            if bonus <= 0:
                return {"received": True, "handled": False}
            result = await self._grant_once(user_id, bonus, TX_BONUS, "Upgrade bonus credits", session_id, "upgrade_bonus")
            if not result.get("duplicate"):
                expires_at = self._clock() + timedelta(days=self._upgrade_bonus_expiry_days)
                lot = await self._sweeper.schedule_expiration(
                    user_id,
                    bonus,
                    expires_at,
                    reason="upgrade_bonus",
                    metadata={"checkout_session_id": session_id, "plan_key": meta.get("plan_key")},
                )
                result["expiration_lot_id"] = lot.id
            return result

        return {"received": True, "handled": False}
