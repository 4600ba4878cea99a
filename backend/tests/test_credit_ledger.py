import asyncio
import unittest

from app.services.credit_ledger import CreditLedger, DuplicateReferenceError, InsufficientCreditsError
from app.stores.ledger_store import SqlCreditLedgerStore
from tests.fakes import FakeLedgerStore, sqlite_session_factory


class _LedgerContract:
    """Runs against every CreditLedgerStore adapter."""

    def make_store(self):
        raise NotImplementedError

    async def asyncSetUp(self):
        self.store = self.make_store()
        self.ledger = CreditLedger(self.store)
        await self.ledger.credit("u1", 100, "earned", "Starting credits")

    async def _assert_invariant(self, user_id="u1"):
        acct = await self.ledger.get_or_create(user_id)
        self.assertEqual(acct.balance, acct.lifetime_earned - acct.lifetime_spent)
        self.assertGreaterEqual(acct.balance, 0)
        rows = await self.ledger.list_transactions(user_id, limit=200)
        signed = sum(-r.amount if r.type == "spent" else r.amount for r in rows)
        self.assertEqual(signed, acct.balance)

    async def test_new_account_starts_empty(self):
        acct = await self.ledger.get_or_create("fresh")
        self.assertEqual((acct.balance, acct.lifetime_earned, acct.lifetime_spent), (0, 0, 0))

    async def test_debit_moves_balance(self):
        result = await self.ledger.debit("u1", 30, "Text to Image generation", "gen-1", "generation")
        self.assertEqual(result.balance_after, 70)
        self.assertFalse(result.idempotent)
        acct = await self.ledger.get_or_create("u1")
        self.assertEqual(acct.lifetime_spent, 30)
        await self._assert_invariant()

    async def test_debit_replay_is_idempotent(self):
        first = await self.ledger.debit("u1", 30, "gen", "gen-1", "generation")
        second = await self.ledger.debit("u1", 30, "gen", "gen-1", "generation")
        self.assertTrue(second.idempotent)
        self.assertEqual(second.transaction_id, first.transaction_id)
        self.assertEqual(await self.ledger.get_balance("u1"), 70)
        spent = await self.ledger.list_transactions("u1", tx_type="spent")
        self.assertEqual(len(spent), 1)

    async def test_insufficient_debit_changes_nothing(self):
        with self.assertRaises(InsufficientCreditsError) as ctx:
            await self.ledger.debit("u1", 150, "gen", "gen-1")
        self.assertEqual(ctx.exception.required, 150)
        self.assertEqual(ctx.exception.current, 100)
        self.assertEqual(ctx.exception.shortfall, 50)
        self.assertEqual(await self.ledger.get_balance("u1"), 100)
        self.assertEqual(await self.ledger.list_transactions("u1", tx_type="spent"), [])

    async def test_refund_replay_is_idempotent(self):
        await self.ledger.debit("u1", 30, "gen", "gen-1", "generation")
        first = await self.ledger.refund("u1", 30, "Text to Image generation", "gen-1", "provider timeout")
        second = await self.ledger.refund("u1", 30, "Text to Image generation", "gen-1", "provider timeout")
        self.assertFalse(first.idempotent)
        self.assertTrue(second.idempotent)
        self.assertEqual(await self.ledger.get_balance("u1"), 100)
        refunds = await self.ledger.list_transactions("u1", tx_type="refund")
        self.assertEqual(len(refunds), 1)
        self.assertEqual(refunds[0].description, "Refund: Text to Image generation - provider timeout")
        await self._assert_invariant()

    async def test_credit_is_not_idempotent_by_itself(self):
        await self.ledger.credit("u1", 10, "earned", "Goodwill", "ticket-7", "support_adjustment")
        await self.ledger.credit("u1", 10, "earned", "Goodwill", "ticket-7", "support_adjustment")
        self.assertEqual(await self.ledger.get_balance("u1"), 120)

    async def test_payment_reference_grant_is_unique(self):
        await self.ledger.credit("u1", 10, "purchased", "Top-up", "cs_1", "credit_package")
        with self.assertRaises(DuplicateReferenceError):
            await self.ledger.credit("u1", 10, "purchased", "Top-up", "cs_1", "credit_package")
        self.assertEqual(await self.ledger.get_balance("u1"), 110)
        self.assertEqual(len(await self.ledger.list_transactions("u1", tx_type="purchased")), 1)

    async def test_rejects_non_positive_amounts(self):
        for amount in (0, -5):
            with self.assertRaises(ValueError):
                await self.ledger.debit("u1", amount, "gen")
            with self.assertRaises(ValueError):
                await self.ledger.credit("u1", amount, "earned", "grant")
        with self.assertRaises(ValueError):
            await self.ledger.credit("u1", 5, "spent", "wrong type")

    async def test_check_sufficient(self):
        check = await self.ledger.check_sufficient("u1", 130)
        self.assertFalse(check.has_enough)
        self.assertEqual(check.shortfall, 30)
        self.assertEqual(check.balance_after, -30)
        check = await self.ledger.check_sufficient("u1", 80)
        self.assertTrue(check.has_enough)
        self.assertEqual(check.balance_after, 20)

    async def test_concurrent_debits_never_overdraw(self):
        results = await asyncio.gather(
            *(self.ledger.debit("u1", 30, "gen", f"gen-{i}") for i in range(10)),
            return_exceptions=True,
        )
        ok = [r for r in results if not isinstance(r, Exception)]
        failed = [r for r in results if isinstance(r, InsufficientCreditsError)]
        self.assertEqual(len(ok), 3)
        self.assertEqual(len(failed), 7)
        self.assertEqual(await self.ledger.get_balance("u1"), 10)
        await self._assert_invariant()

    async def test_concurrent_replays_apply_once(self):
        results = await asyncio.gather(*(self.ledger.debit("u1", 30, "gen", "gen-same") for _ in range(10)))
        self.assertEqual(sum(1 for r in results if not r.idempotent), 1)
        self.assertEqual({r.balance_after for r in results}, {70})
        self.assertEqual(await self.ledger.get_balance("u1"), 70)


class TestCreditLedgerInMemory(_LedgerContract, unittest.IsolatedAsyncioTestCase):
    def make_store(self):
        return FakeLedgerStore()


class TestCreditLedgerSql(_LedgerContract, unittest.IsolatedAsyncioTestCase):
    def make_store(self):
        return SqlCreditLedgerStore(sqlite_session_factory())

    async def test_find_transaction_by_reference(self):
        await self.ledger.debit("u1", 30, "gen", "gen-9", "generation")
        row = await self.ledger.find_transaction("u1", "gen-9")
        self.assertIsNotNone(row)
        self.assertEqual(row.type, "spent")
        self.assertEqual(row.reference_type, "generation")
        self.assertIsNone(await self.ledger.find_transaction("u1", "gen-9", "refund"))
        self.assertIsNone(await self.ledger.find_transaction("other", "gen-9"))


if __name__ == "__main__":
    unittest.main()
