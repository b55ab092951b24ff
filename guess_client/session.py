import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from guess_client.game.engine import RoundEngine
from guess_client.helper.config import Settings
from guess_client.ledger import Ledger, open_ledger
from guess_client.payment.gateway import GatewayClient
from guess_client.payment.reconcile import Gateway, PurchaseController

logger = logging.getLogger(__name__)


@dataclass
class GameSession:
    ledger: Ledger
    rounds: RoundEngine
    purchases: PurchaseController


@asynccontextmanager
async def open_session(
    settings: Settings | None = None, *, gateway: Gateway | None = None
) -> AsyncIterator[GameSession]:
    """Build the ledger, round engine and purchase controller for one session.

    Pending invoices left by an earlier session are picked up again; on exit
    polling stops and the store is closed.
    """
    settings = settings or Settings.from_env()
    own_client: GatewayClient | None = None
    if gateway is None:
        own_client = GatewayClient.connect(settings.gateway_url, settings.request_timeout)
        gateway = own_client
    try:
        async with open_ledger(settings.db_path) as ledger:
            purchases = PurchaseController(
                ledger,
                gateway,
                price_per_coin=settings.price_per_coin,
                price_places=settings.price_places,
                min_purchase=settings.min_purchase,
                poll=settings.poll,
            )
            pending = await ledger.pending_invoices()
            if pending:
                # one purchase at a time; the rest wait for the next session
                await purchases.resume(pending[0])
                if len(pending) > 1:
                    logger.warning("%d more pending invoice(s) left for later", len(pending) - 1)
            try:
                yield GameSession(ledger, RoundEngine(ledger), purchases)
            finally:
                await purchases.shutdown()
    finally:
        if own_client is not None:
            await own_client.close()
