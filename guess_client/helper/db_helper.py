from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import asqlite

PRAGMAS = [
    "PRAGMA journal_mode=WAL;",
    "PRAGMA synchronous=FULL;",
    "PRAGMA foreign_keys=ON;",
    "PRAGMA temp_store=MEMORY;",
]

SCHEMA = """
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS coin_journal (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    delta INTEGER NOT NULL,
    balance_after INTEGER NOT NULL CHECK (balance_after >= 0),
    reason TEXT NOT NULL,
    invoice_id TEXT UNIQUE,
    create_dt TEXT NOT NULL,
    chain_hash TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS invoice (
    id TEXT PRIMARY KEY,
    coins INTEGER NOT NULL CHECK (coins > 0),
    price_total TEXT NOT NULL,
    network TEXT NOT NULL,
    address TEXT,
    memo TEXT,
    state TEXT NOT NULL DEFAULT 'pending'
        CHECK (state IN ('pending', 'confirmed', 'failed')),
    create_dt TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);
"""

type DB = asqlite.Connection


@asynccontextmanager
async def open_db(path: Path | str) -> AsyncIterator[DB]:
    path = Path(path)
    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
    async with asqlite.connect(path.absolute().as_posix()) as conn:
        for pragma in PRAGMAS:
            _ = await conn.execute(pragma)
        _ = await conn.executescript(SCHEMA)
        await conn.commit()
        yield conn


@asynccontextmanager
async def transaction(conn: DB, immediate: bool = True) -> AsyncIterator[DB]:
    if immediate:
        _ = await conn.execute("BEGIN IMMEDIATE;")
    else:
        _ = await conn.execute("BEGIN;")
    try:
        yield conn
    except BaseException:
        _ = await conn.execute("ROLLBACK;")
        raise
    else:
        _ = await conn.execute("COMMIT;")
