import unittest
from datetime import datetime, timedelta, timezone

from app.services.credit_ledger import CreditLedger
from app.services.expiration import ExpirationSweeper, build_expiration_scheduler
from app.services.protocols import ExpirationLot
from app.stores.expiration_store import SqlExpirationLotStore
from tests.fakes import FakeExpirationLotStore, FakeLedgerStore, sqlite_session_factory

NOW = datetime(2026, 3, 1, 0, 10, tzinfo=timezone.utc)


def _lot(lot_id, user_id, amount, consumed=0, expires_at=None, status="scheduled"):
    return ExpirationLot(
        id=lot_id,
        user_id=user_id,
        amount=amount,
        consumed_amount=consumed,
        expires_at=expires_at or NOW - timedelta(hours=1),
        status=status,
    )


class TestExpirationSweeper(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.ledger = CreditLedger(FakeLedgerStore())
        self.lots = FakeExpirationLotStore()
        self.sweeper = ExpirationSweeper(self.ledger, self.lots, clock=lambda: NOW)
        await self.ledger.credit("u1", 100, "bonus", "Upgrade bonus credits")

    async def test_expires_remaining_credits(self):
        await self.lots.create(_lot("lot-1", "u1", 50, consumed=20))

        report = await self.sweeper.sweep()

        self.assertEqual((report.processed, report.completed, report.failed), (1, 1, 0))
        self.assertEqual(report.expired_credits, 30)
        self.assertEqual(await self.ledger.get_balance("u1"), 70)
        lot = self.lots.lots["lot-1"]
        self.assertEqual(lot.status, "completed")
        self.assertEqual(lot.consumed_amount, 50)
        row = await self.ledger.find_transaction("u1", "lot-1", "spent")
        self.assertEqual(row.description, "Bonus credits expired")
        self.assertEqual(row.reference_type, "credit_expiration")

    async def test_fully_consumed_lot_completes_without_spend(self):
        await self.lots.create(_lot("lot-1", "u1", 50, consumed=50))

        report = await self.sweeper.sweep()

        self.assertEqual(report.completed, 1)
        self.assertEqual(report.expired_credits, 0)
        self.assertEqual(await self.ledger.get_balance("u1"), 100)
        self.assertIsNone(await self.ledger.find_transaction("u1", "lot-1"))

    async def test_one_failure_does_not_stop_others(self):
        await self.ledger.credit("u2", 10, "bonus", "Upgrade bonus credits")
        await self.lots.create(_lot("lot-a", "u2", 40, expires_at=NOW - timedelta(days=2)))
        await self.lots.create(_lot("lot-b", "u1", 25))

        report = await self.sweeper.sweep()

        self.assertEqual((report.processed, report.completed, report.failed), (2, 1, 1))
        self.assertEqual(self.lots.lots["lot-a"].status, "failed")
        self.assertIn("Insufficient credits", self.lots.lots["lot-a"].error_message)
        self.assertEqual(self.lots.lots["lot-b"].status, "completed")
        self.assertEqual(await self.ledger.get_balance("u2"), 10)
        self.assertEqual(await self.ledger.get_balance("u1"), 75)

    async def test_mark_failed_error_does_not_stop_others(self):
        self.lots.fail_mark_failed = True
        await self.ledger.credit("u2", 10, "bonus", "Upgrade bonus credits")
        await self.lots.create(_lot("lot-a", "u2", 40, expires_at=NOW - timedelta(days=2)))
        await self.lots.create(_lot("lot-b", "u1", 25))

        with self.assertLogs("app.services.expiration", level="ERROR"):
            report = await self.sweeper.sweep()

        self.assertEqual((report.processed, report.completed, report.failed), (2, 1, 1))
        self.assertEqual(self.lots.lots["lot-a"].status, "scheduled")
        self.assertEqual(self.lots.lots["lot-b"].status, "completed")
        self.assertEqual(await self.ledger.get_balance("u1"), 75)

    async def test_future_and_processed_lots_are_skipped(self):
        await self.lots.create(_lot("future", "u1", 10, expires_at=NOW + timedelta(days=1)))
        await self.lots.create(_lot("done", "u1", 10, status="completed"))

        report = await self.sweeper.sweep()

        self.assertEqual(report.processed, 0)
        self.assertEqual(await self.ledger.get_balance("u1"), 100)

    async def test_second_sweep_is_a_no_op(self):
        await self.lots.create(_lot("lot-1", "u1", 50))
        await self.sweeper.sweep()
        report = await self.sweeper.sweep()
        self.assertEqual(report.processed, 0)
        self.assertEqual(await self.ledger.get_balance("u1"), 50)

    async def test_schedule_expiration_creates_lot(self):
        lot = await self.sweeper.schedule_expiration("u1", 40, NOW + timedelta(days=30), metadata={"plan_key": "pro"})
        self.assertEqual(self.lots.lots[lot.id].status, "scheduled")
        self.assertEqual(self.lots.lots[lot.id].reason, "upgrade_bonus")
        with self.assertRaises(ValueError):
            await self.sweeper.schedule_expiration("u1", 0, NOW)


class TestSqlExpirationLotStore(unittest.IsolatedAsyncioTestCase):
    async def test_due_lots_round_trip_as_utc(self):
        store = SqlExpirationLotStore(sqlite_session_factory())
        await store.create(_lot("due", "u1", 10))
        await store.create(_lot("later", "u1", 10, expires_at=NOW + timedelta(hours=1)))

        due = await store.list_due(NOW)
        self.assertEqual([lot.id for lot in due], ["due"])
        self.assertEqual(due[0].expires_at.tzinfo, timezone.utc)

        await store.mark_failed("due", error_message="boom", processed_at=NOW)
        self.assertEqual(await store.list_due(NOW), [])


class TestExpirationScheduler(unittest.TestCase):
    def test_daily_job_registered(self):
        sweeper = ExpirationSweeper(CreditLedger(FakeLedgerStore()), FakeExpirationLotStore())
        scheduler = build_expiration_scheduler(sweeper, hour=0, minute=10)
        job = scheduler.get_job("credit_expiration_sweep")
        self.assertIsNotNone(job)
        self.assertIn("hour='0'", str(job.trigger))
        self.assertIn("minute='10'", str(job.trigger))


if __name__ == "__main__":
    unittest.main()
