import asyncio
from decimal import Decimal

import pytest

from guess_client.helper.config import PollPolicy
from guess_client.ledger import open_ledger
from guess_client.payment.gateway import InvoiceTicket
from guess_client.payment.reconcile import PurchaseController
from guess_client.schema.db import Network, PaymentState

FAST_POLL = PollPolicy(first_delay=0, interval=0.01)


class FakeGateway:
    """Scripted stand-in for the payment service.

    ``statuses`` is consumed one item per status check; the last item keeps
    repeating. Exceptions in the script are raised instead of returned.
    """

    def __init__(self, statuses=(PaymentState.PENDING,), ticket=None, create_error=None):
        self.statuses = list(statuses)
        self.ticket = ticket
        self.create_error = create_error
        self.created: list[tuple[Network, Decimal, int]] = []
        self.status_calls = 0
        self.gate: asyncio.Event | None = None

    async def create_invoice(self, network, amount, coins):
        self.created.append((network, amount, coins))
        if self.create_error is not None:
            raise self.create_error
        return self.ticket or InvoiceTicket(id="inv-1", address="TXaddr", memo=None, coins=coins)

    async def get_invoice_status(self, invoice_id):
        self.status_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        item = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        if isinstance(item, Exception):
            raise item
        return item


async def wait_until(predicate, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture()
def db_path(tmp_path):
    return tmp_path / "data" / "guessit.db"


@pytest.fixture()
async def ledger(db_path):
    async with open_ledger(db_path) as ledger:
        yield ledger


@pytest.fixture()
def gateway():
    return FakeGateway()


@pytest.fixture()
async def controller(ledger, gateway):
    ctl = PurchaseController(ledger, gateway, poll=FAST_POLL)
    yield ctl
    await ctl.shutdown()
