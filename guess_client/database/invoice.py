from decimal import Decimal

from guess_client.database.journal import invoice_credited
from guess_client.helper.db_helper import DB
from guess_client.schema.db import Invoice, Network, PaymentState


async def save_invoice(conn: DB, invoice: Invoice) -> None:
    _ = await conn.execute(
        """
        INSERT INTO invoice(id, coins, price_total, network, address, memo, state)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT (id) DO NOTHING
        """,
        (
            invoice.id,
            invoice.coins,
            str(invoice.price_total),
            invoice.network.value,
            invoice.address,
            invoice.memo,
            invoice.state.value,
        ),
    )


async def set_invoice_state(conn: DB, invoice_id: str, state: PaymentState) -> None:
    # pending is the only state that may be left
    _ = await conn.execute(
        "UPDATE invoice SET state = ? WHERE id = ? AND state = 'pending'",
        (state.value, invoice_id),
    )


async def list_pending_invoices(conn: DB) -> list[Invoice]:
    cur = await conn.execute(
        """
        SELECT id, coins, price_total, network, address, memo, state
        FROM invoice
        WHERE state = 'pending'
        ORDER BY create_dt ASC, rowid ASC
        """
    )
    return [await _to_invoice(conn, row) for row in await cur.fetchall()]


async def _to_invoice(conn: DB, row) -> Invoice:
    iid, coins, price_total, network, address, memo, state = row
    return Invoice(
        id=iid,
        coins=int(coins),
        price_total=Decimal(price_total),
        network=Network(network),
        address=address,
        memo=memo,
        state=PaymentState(state),
        credited=await invoice_credited(conn, iid),
    )
