import asyncio
import unittest
from datetime import datetime, timedelta, timezone

from app.services.credit_ledger import CreditLedger
from app.services.expiration import ExpirationSweeper
from app.services.payment_events import PaymentEventHandler
from app.stores.ledger_store import SqlCreditLedgerStore
from tests.fakes import FakeExpirationLotStore, FakeLedgerStore, sqlite_session_factory

NOW = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


def _event(event_type, obj):
    return {"id": f"evt_{obj.get('id')}", "type": event_type, "data": {"object": obj}}


class TestPaymentEventHandler(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.ledger = CreditLedger(FakeLedgerStore())
        self.lots = FakeExpirationLotStore()
        self.handler = PaymentEventHandler(
            self.ledger,
            ExpirationSweeper(self.ledger, self.lots),
            plan_credits={"pro": 26000},
            upgrade_bonus_expiry_days=30,
            clock=lambda: NOW,
        )

    async def test_invoice_grants_plan_credits_once(self):
        event = _event(
            "invoice.payment_succeeded",
            {"id": "in_1", "subscription_details": {"metadata": {"user_id": "u1", "plan_key": "pro"}}},
        )

        first = await self.handler.handle(event)
        second = await self.handler.handle(event)

        self.assertFalse(first["duplicate"])
        self.assertTrue(second["duplicate"])
        self.assertEqual(await self.ledger.get_balance("u1"), 26000)
        row = await self.ledger.find_transaction("u1", "in_1")
        self.assertEqual(row.type, "earned")
        self.assertEqual(row.reference_type, "subscription_invoice")

    async def test_invoice_prefers_credits_included(self):
        event = _event(
            "invoice.payment_succeeded",
            {"id": "in_2", "metadata": {"user_id": "u1", "plan_key": "pro", "credits_included": "500"}},
        )
        await self.handler.handle(event)
        self.assertEqual(await self.ledger.get_balance("u1"), 500)

    async def test_topup_uses_pack_catalogue(self):
        event = _event(
            "checkout.session.completed",
            {"id": "cs_1", "metadata": {"user_id": "u1", "purpose": "credit_topup", "pack_id": "medium"}},
        )
        for _ in range(3):
            await self.handler.handle(event)
        self.assertEqual(await self.ledger.get_balance("u1"), 15000)
        purchased = await self.ledger.list_transactions("u1", tx_type="purchased")
        self.assertEqual(len(purchased), 1)
        self.assertEqual(purchased[0].reference_type, "credit_package")

    async def test_upgrade_bonus_schedules_expiration(self):
        event = _event(
            "checkout.session.completed",
            {
                "id": "cs_up",
                "metadata": {"user_id": "u1", "is_upgrade": "true", "upgrade_bonus_credits": "2000", "plan_key": "pro"},
            },
        )

        result = await self.handler.handle(event)
        await self.handler.handle(event)

        self.assertEqual(await self.ledger.get_balance("u1"), 2000)
        self.assertEqual(len(self.lots.lots), 1)
        lot = self.lots.lots[result["expiration_lot_id"]]
        self.assertEqual(lot.amount, 2000)
        self.assertEqual(lot.expires_at, NOW + timedelta(days=30))

    async def test_unknown_or_anonymous_events_are_acknowledged(self):
        ignored = await self.handler.handle(_event("customer.created", {"id": "cus_1"}))
        anonymous = await self.handler.handle(_event("checkout.session.completed", {"id": "cs_2", "metadata": {}}))
        self.assertEqual(ignored, {"received": True, "handled": False})
        self.assertFalse(anonymous["handled"])
        self.assertEqual(await self.ledger.get_balance("u1"), 0)


class TestPaymentEventsConcurrentDelivery(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.ledger = CreditLedger(SqlCreditLedgerStore(sqlite_session_factory()))
        self.lots = FakeExpirationLotStore()
        self.handler = PaymentEventHandler(
            self.ledger,
            ExpirationSweeper(self.ledger, self.lots),
            plan_credits={"pro": 26000},
            clock=lambda: NOW,
        )

    async def test_simultaneous_invoice_deliveries_grant_once(self):
        event = _event(
            "invoice.payment_succeeded",
            {"id": "in_1", "subscription_details": {"metadata": {"user_id": "u1", "plan_key": "pro"}}},
        )

        results = await asyncio.gather(self.handler.handle(event), self.handler.handle(event))

        self.assertEqual(sorted(r["duplicate"] for r in results), [False, True])
        self.assertEqual(await self.ledger.get_balance("u1"), 26000)
        self.assertEqual(len(await self.ledger.list_transactions("u1", tx_type="earned")), 1)

    async def test_simultaneous_upgrade_deliveries_schedule_one_lot(self):
        event = _event(
            "checkout.session.completed",
            {"id": "cs_up", "metadata": {"user_id": "u1", "is_upgrade": "true", "upgrade_bonus_credits": "2000"}},
        )

        await asyncio.gather(*(self.handler.handle(event) for _ in range(3)))

        self.assertEqual(await self.ledger.get_balance("u1"), 2000)
        self.assertEqual(len(self.lots.lots), 1)


if __name__ == "__main__":
    unittest.main()
