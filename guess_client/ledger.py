"""
Coin ledger: the only owner of the coin balance.

Every read and write of the client store goes through one writer task that
owns the SQLite connection, so a round start and a purchase confirmation
landing at the same time are applied one after the other, never interleaved.
"""
import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from guess_client.database import invoice as invoice_db
from guess_client.database import journal as journal_db
from guess_client.errors import ValidationError
from guess_client.helper.db_helper import DB, open_db, transaction
from guess_client.schema.db import Invoice, JournalEntry, PaymentState

logger = logging.getLogger(__name__)

DEFAULT_BALANCE = 50

type Job = Callable[[DB], Awaitable[Any]]


def _check_amount(n: int) -> None:
    if isinstance(n, bool) or not isinstance(n, int) or n <= 0:
        raise ValidationError(f"amount must be a positive integer, got {n!r}")


class Ledger:
    def __init__(self, conn: DB, *, default_balance: int = DEFAULT_BALANCE):
        self._conn = conn
        self._default = default_balance
        self._jobs: asyncio.Queue[tuple[Job, asyncio.Future[Any]] | None] = asyncio.Queue()
        self._writer: asyncio.Task[None] | None = None

    async def start(self) -> None:
        if self._writer is not None:
            return
        self._writer = asyncio.create_task(self._run_writer(), name="ledger-writer")
        balance = await self._submit(self._init)
        logger.info("Ledger opened with balance %d", balance)

    async def close(self) -> None:
        if self._writer is None:
            return
        await self._jobs.put(None)
        await self._writer
        self._writer = None

    async def _init(self, conn: DB) -> int:
        async with transaction(conn):
            return await journal_db.init_balance(conn, self._default)

    async def _run_writer(self) -> None:
        while True:
            item = await self._jobs.get()
            if item is None:
                return
            job, fut = item
            try:
                result = await job(self._conn)
            except Exception as e:
                if not fut.done():
                    fut.set_exception(e)
            else:
                if not fut.done():
                    fut.set_result(result)

    async def _submit(self, job: Job) -> Any:
        if self._writer is None or self._writer.done():
            raise RuntimeError("Ledger is not running")
        fut: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        await self._jobs.put((job, fut))
        return await fut

    async def balance(self) -> int:
        async def job(conn: DB) -> int:
            current = await journal_db.read_balance(conn)
            return self._default if current is None else current

        return await self._submit(job)

    async def debit(self, n: int, reason: str = "Debit") -> JournalEntry:
        _check_amount(n)

        async def job(conn: DB) -> JournalEntry:
            async with transaction(conn):
                return await journal_db.apply_delta(conn, -n, reason, default=self._default)

        entry = await self._submit(job)
        logger.info("Debited %d coin(s) (%s), balance %d", n, reason, entry.balance_after)
        return entry

    async def credit(self, n: int, reason: str = "Credit") -> JournalEntry:
        _check_amount(n)

        async def job(conn: DB) -> JournalEntry:
            async with transaction(conn):
                return await journal_db.apply_delta(conn, n, reason, default=self._default)

        entry = await self._submit(job)
        logger.info("Credited %d coin(s) (%s), balance %d", n, reason, entry.balance_after)
        return entry

    async def credit_invoice(self, invoice_id: str, coins: int) -> bool:
        """Credit ``coins`` for a confirmed invoice, at most once per invoice id.

        Returns True when this call applied the credit, False when the invoice
        had already been credited (in this session or an earlier one).
        """
        _check_amount(coins)

        async def job(conn: DB) -> bool:
            async with transaction(conn):
                if await journal_db.invoice_credited(conn, invoice_id):
                    return False
                _ = await journal_db.apply_delta(
                    conn,
                    coins,
                    f"Purchase invoice:{invoice_id}",
                    default=self._default,
                    invoice_id=invoice_id,
                )
                await invoice_db.set_invoice_state(conn, invoice_id, PaymentState.CONFIRMED)
                return True

        credited = await self._submit(job)
        if credited:
            logger.info("Credited %d coin(s) for invoice %s", coins, invoice_id)
        else:
            logger.info("Invoice %s already credited, ignoring", invoice_id)
        return credited

    async def is_credited(self, invoice_id: str) -> bool:
        return await self._submit(lambda conn: journal_db.invoice_credited(conn, invoice_id))

    async def journal(self, limit: int = 100, offset: int = 0) -> list[JournalEntry]:
        return await self._submit(lambda conn: journal_db.list_journal(conn, limit, offset))

    async def verify_journal(self) -> bool:
        return await self._submit(journal_db.verify_chain)

    async def record_invoice(self, invoice: Invoice) -> None:
        async def job(conn: DB) -> None:
            async with transaction(conn):
                await invoice_db.save_invoice(conn, invoice)

        await self._submit(job)

    async def close_invoice(self, invoice_id: str, state: PaymentState) -> None:
        async def job(conn: DB) -> None:
            async with transaction(conn):
                await invoice_db.set_invoice_state(conn, invoice_id, state)

        await self._submit(job)

    async def pending_invoices(self) -> list[Invoice]:
        return await self._submit(invoice_db.list_pending_invoices)


@asynccontextmanager
async def open_ledger(
    path: Path | str, *, default_balance: int = DEFAULT_BALANCE
) -> AsyncIterator[Ledger]:
    async with open_db(path) as conn:
        ledger = Ledger(conn, default_balance=default_balance)
        await ledger.start()
        try:
            yield ledger
        finally:
            await ledger.close()
