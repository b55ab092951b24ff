from datetime import UTC, datetime

from cryptography.hazmat.primitives.hashes import Hash, SHA3_512

from guess_client.errors import InsufficientFunds
from guess_client.helper.db_helper import DB
from guess_client.schema.db import JournalEntry

BALANCE_KEY = "guessit.coins"
GENESIS_HASH = "0" * 128


def _sha3_512_hex(data: str) -> str:
    h = Hash(SHA3_512())
    h.update(data.encode())
    return h.finalize().hex()


def entry_data(
    delta: int, balance_after: int, reason: str, invoice_id: str | None, create_dt: str
) -> str:
    return f"{delta}|{balance_after}|{reason}|{invoice_id or ''}|{create_dt}"


def chain_hash(previous: str, data: str) -> str:
    return _sha3_512_hex(f"{previous}::{_sha3_512_hex(data)}")


async def read_balance(conn: DB) -> int | None:
    row = await (
        await conn.execute("SELECT value FROM kv_store WHERE key = ?", (BALANCE_KEY,))
    ).fetchone()
    if row is None:
        return None
    return int(row[0])


async def write_balance(conn: DB, amount: int) -> None:
    _ = await conn.execute(
        (
            "INSERT INTO kv_store(key, value) VALUES (?, ?) "
            "ON CONFLICT (key) DO UPDATE SET value = excluded.value"
        ),
        (BALANCE_KEY, str(amount)),
    )


async def init_balance(conn: DB, default: int) -> int:
    current = await read_balance(conn)
    if current is not None:
        return current
    await write_balance(conn, default)
    return default


async def last_chain_hash(conn: DB) -> str:
    row = await (
        await conn.execute("SELECT chain_hash FROM coin_journal ORDER BY id DESC LIMIT 1")
    ).fetchone()
    return row[0] if row else GENESIS_HASH


async def invoice_credited(conn: DB, invoice_id: str) -> bool:
    row = await (
        await conn.execute(
            "SELECT COUNT(*) FROM coin_journal WHERE invoice_id = ?", (invoice_id,)
        )
    ).fetchone()
    return row[0] > 0


async def apply_delta(
    conn: DB,
    delta: int,
    reason: str,
    *,
    default: int,
    invoice_id: str | None = None,
) -> JournalEntry:
    """Move the balance by ``delta`` and journal the move.

    Must run inside a transaction; the caller commits. Raises
    ``InsufficientFunds`` before writing anything when the result would go
    below zero.
    """
    current = await read_balance(conn)
    if current is None:
        current = default
    after = current + delta
    if after < 0:
        raise InsufficientFunds(f"Insufficient balance: have {current}, need {-delta}")

    create_dt = datetime.now(UTC).isoformat()
    new_hash = chain_hash(
        await last_chain_hash(conn),
        entry_data(delta, after, reason, invoice_id, create_dt),
    )
    await write_balance(conn, after)
    row = await (
        await conn.execute(
            (
                "INSERT INTO coin_journal (delta, balance_after, reason, invoice_id, create_dt, chain_hash) "
                "VALUES (?, ?, ?, ?, ?, ?) RETURNING id"
            ),
            (delta, after, reason, invoice_id, create_dt, new_hash),
        )
    ).fetchone()
    return JournalEntry(
        id=int(row[0]),
        delta=delta,
        balance_after=after,
        reason=reason,
        invoice_id=invoice_id,
        create_dt=create_dt,
        chain_hash=new_hash,
    )


async def list_journal(conn: DB, limit: int = 100, offset: int = 0) -> list[JournalEntry]:
    cur = await conn.execute(
        """
        SELECT id, delta, balance_after, reason, invoice_id, create_dt, chain_hash
        FROM coin_journal
        ORDER BY id DESC
        LIMIT ? OFFSET ?
        """,
        (limit, offset),
    )
    results: list[JournalEntry] = []
    for jid, delta, balance_after, reason, invoice_id, create_dt, hash_ in await cur.fetchall():
        results.append(
            JournalEntry(
                id=int(jid),
                delta=int(delta),
                balance_after=int(balance_after),
                reason=reason,
                invoice_id=invoice_id,
                create_dt=create_dt,
                chain_hash=hash_,
            )
        )
    return results


async def verify_chain(conn: DB) -> bool:
    cur = await conn.execute(
        """
        SELECT delta, balance_after, reason, invoice_id, create_dt, chain_hash
        FROM coin_journal
        ORDER BY id ASC
        """
    )
    previous = GENESIS_HASH
    for delta, balance_after, reason, invoice_id, create_dt, hash_ in await cur.fetchall():
        expected = chain_hash(
            previous, entry_data(delta, balance_after, reason, invoice_id, create_dt)
        )
        if expected != hash_:
            return False
        previous = hash_
    return True
