import asyncio

import pytest

from guess_client.errors import InsufficientFunds, ValidationError
from guess_client.ledger import DEFAULT_BALANCE, open_ledger


async def test_new_store_starts_at_default(ledger):
    assert await ledger.balance() == DEFAULT_BALANCE == 50


async def test_debit_and_credit(ledger):
    entry = await ledger.debit(5, "test debit")
    assert entry.balance_after == 45
    assert entry.delta == -5
    await ledger.credit(2, "test credit")
    assert await ledger.balance() == 47


async def test_debit_over_balance_leaves_balance(ledger):
    with pytest.raises(InsufficientFunds):
        await ledger.debit(51)
    assert await ledger.balance() == 50
    assert await ledger.journal() == []


@pytest.mark.parametrize("amount", [0, -3, 1.5, True])
async def test_amount_must_be_positive_int(ledger, amount):
    with pytest.raises(ValidationError):
        await ledger.credit(amount)
    with pytest.raises(ValidationError):
        await ledger.debit(amount)
    assert await ledger.balance() == 50


async def test_balance_never_negative_under_concurrent_debits(ledger):
    results = await asyncio.gather(
        *(ledger.debit(3) for _ in range(30)), return_exceptions=True
    )
    ok = [r for r in results if not isinstance(r, Exception)]
    failed = [r for r in results if isinstance(r, InsufficientFunds)]
    assert len(ok) == 16
    assert len(failed) == 14
    assert await ledger.balance() == 2


async def test_concurrent_credit_and_debit_do_not_interleave(ledger):
    await asyncio.gather(
        *(ledger.debit(1) for _ in range(20)),
        *(ledger.credit(1) for _ in range(20)),
    )
    assert await ledger.balance() == 50
    assert len(await ledger.journal(limit=100)) == 40


async def test_invoice_credit_applies_once(ledger):
    assert await ledger.credit_invoice("inv-9", 13)
    for _ in range(100):
        assert not await ledger.credit_invoice("inv-9", 13)
    assert await ledger.balance() == 63
    assert await ledger.is_credited("inv-9")
    assert not await ledger.is_credited("inv-10")


async def test_concurrent_invoice_credits_apply_once(ledger):
    results = await asyncio.gather(*(ledger.credit_invoice("inv-c", 20) for _ in range(10)))
    assert results.count(True) == 1
    assert await ledger.balance() == 70


async def test_balance_and_invoice_record_survive_reopen(db_path):
    async with open_ledger(db_path) as ledger:
        await ledger.debit(10)
        await ledger.credit_invoice("inv-1", 13)
    async with open_ledger(db_path) as ledger:
        assert await ledger.balance() == 53
        assert not await ledger.credit_invoice("inv-1", 13)
        assert await ledger.balance() == 53


async def test_journal_chain_verifies(ledger):
    await ledger.debit(1, "entry")
    await ledger.credit(1, "payout")
    await ledger.credit_invoice("inv-2", 13)
    entries = await ledger.journal()
    assert [e.delta for e in entries] == [13, 1, -1]
    assert entries[0].invoice_id == "inv-2"
    assert len({e.chain_hash for e in entries}) == 3
    assert await ledger.verify_journal()


async def test_closed_ledger_refuses_work(db_path):
    async with open_ledger(db_path) as ledger:
        pass
    with pytest.raises(RuntimeError):
        await ledger.balance()
