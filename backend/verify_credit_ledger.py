import asyncio

from app.core.database import Base, make_engine, make_session_factory
from app.models import credit_account, credit_transaction  # noqa: F401
from app.services.credit_ledger import CreditLedger, InsufficientCreditsError, TX_PURCHASED
from app.stores.ledger_store import SqlCreditLedgerStore


async def run() -> None:
    engine = make_engine("sqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    ledger = CreditLedger(SqlCreditLedgerStore(make_session_factory(engine)))

    user_id = "user-1"
    account = await ledger.get_or_create(user_id)
    assert account.balance == 0, account

    await ledger.credit(user_id, 100, TX_PURCHASED, "Credit top-up", "cs_1", "credit_package")
    first = await ledger.debit(user_id, 30, "Text to Image generation", "gen-1")
    again = await ledger.debit(user_id, 30, "Text to Image generation", "gen-1")
    assert first.balance_after == 70, first
    assert again.idempotent and again.balance_after == 70, again

    try:
        await ledger.debit(user_id, 80, "Text to Video generation", "gen-2")
    except InsufficientCreditsError as e:
        assert e.shortfall == 10, e.shortfall
    else:
        raise AssertionError("overdraft accepted")

    refund = await ledger.refund(user_id, 30, "Text to Image generation", "gen-1", "provider failed")
    assert refund.balance_after == 100, refund
    assert (await ledger.refund(user_id, 30, "Text to Image generation", "gen-1", "provider failed")).idempotent

    rows = await ledger.list_transactions(user_id)
    assert [r.type for r in rows] == ["refund", "spent", "purchased"], [r.type for r in rows]
    assert rows[0].balance_after == (await ledger.get_balance(user_id))


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
    print("OK")
