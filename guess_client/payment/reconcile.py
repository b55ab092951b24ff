"""
Invoice reconciliation.

A ``PurchaseController`` drives one purchase at a time through

    idle -> awaiting_invoice -> polling -> settled
                        \\            \\
                         `-> aborted  `-> aborted

Polling runs in a task keyed by invoice id. Each task holds a liveness token;
``abandon_purchase`` revokes the token before cancelling the task, and every
check re-reads the token after each await, so a status response that was
already in flight when the purchase was abandoned is dropped instead of
crediting the ledger.

Coins are credited through ``Ledger.credit_invoice``, which keeps a durable
per-invoice record, and the in-memory ``Invoice.credited`` flag short-circuits
repeated ``confirmed`` observations. A credit that has started always
finishes: abandoning at that point waits for it and the purchase settles.
"""
import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import StrEnum
from typing import Optional, Protocol

from guess_client.errors import GatewayError, PurchaseInProgress, ValidationError
from guess_client.helper.config import PollPolicy
from guess_client.ledger import Ledger
from guess_client.payment.gateway import InvoiceTicket
from guess_client.schema.db import Invoice, Network, PaymentState

logger = logging.getLogger(__name__)


class PurchaseState(StrEnum):
    IDLE = "idle"
    AWAITING_INVOICE = "awaiting_invoice"
    POLLING = "polling"
    SETTLED = "settled"
    ABORTED = "aborted"


TERMINAL = frozenset({PurchaseState.SETTLED, PurchaseState.ABORTED})


@dataclass(frozen=True)
class PurchaseUpdate:
    state: PurchaseState
    invoice: Optional[Invoice]
    message: str
    transient: bool = False
    error: Optional[Exception] = None


type Listener = Callable[[PurchaseUpdate], Awaitable[None] | None]


class Gateway(Protocol):
    async def create_invoice(
        self, network: Network, amount: Decimal, coins: int
    ) -> InvoiceTicket: ...

    async def get_invoice_status(self, invoice_id: str) -> PaymentState: ...


def price_for(coins: int, price_per_coin: Decimal, places: int = 2) -> Decimal:
    return (Decimal(price_per_coin) * coins).quantize(
        Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP
    )


class PurchaseController:
    def __init__(
        self,
        ledger: Ledger,
        gateway: Gateway,
        *,
        price_per_coin: Decimal = Decimal("0.99"),
        price_places: int = 2,
        min_purchase: int = 13,
        poll: PollPolicy = PollPolicy(),
    ):
        self._ledger = ledger
        self._gateway = gateway
        self._price_per_coin = Decimal(price_per_coin)
        self._price_places = price_places
        self.min_purchase = min_purchase
        self._policy = poll

        self.state = PurchaseState.IDLE
        self.invoice: Optional[Invoice] = None
        self.message = ""

        self._attempt: Optional[object] = None
        self._live: dict[str, object] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._listeners: list[Listener] = []
        self._crediting: dict[str, asyncio.Future[bool]] = {}

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def quote(self, coins: int) -> Decimal:
        return price_for(coins, self._price_per_coin, self._price_places)

    @property
    def busy(self) -> bool:
        return self.state in (PurchaseState.AWAITING_INVOICE, PurchaseState.POLLING)

    async def _set(
        self,
        state: PurchaseState,
        message: str,
        *,
        transient: bool = False,
        error: Optional[Exception] = None,
    ) -> None:
        self.state = state
        self.message = message
        update = PurchaseUpdate(state, self.invoice, message, transient, error)
        for listener in list(self._listeners):
            try:
                result = listener(update)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.error("Purchase listener failed", exc_info=True)

    async def begin_purchase(self, coins: int, network: Network | str) -> Optional[Invoice]:
        """Create an invoice for ``coins`` and start polling it.

        Validation problems raise ``ValidationError`` before any state change.
        Gateway failures move the purchase to aborted and are re-raised as is.
        Returns None when the purchase was abandoned while the invoice was
        being created.
        """
        if self.busy:
            raise PurchaseInProgress("A purchase is already in progress")
        if isinstance(coins, bool) or not isinstance(coins, int):
            raise ValidationError("Coin quantity must be a whole number")
        if coins < self.min_purchase:
            raise ValidationError(f"Minimum purchase is {self.min_purchase} coins")
        try:
            network = Network(network)
        except ValueError:
            raise ValidationError(f"Unsupported network {network!r}") from None

        price = self.quote(coins)
        attempt = object()
        self._attempt = attempt
        self.invoice = None
        await self._set(PurchaseState.AWAITING_INVOICE, f"Creating invoice for {price}")
        logger.info("Creating invoice for %d coin(s) at %s on %s", coins, price, network)

        try:
            ticket = await self._gateway.create_invoice(network, price, coins)
        except GatewayError as e:
            logger.warning("Invoice creation failed: %s", e)
            if self._attempt is attempt:
                self._attempt = None
                await self._set(PurchaseState.ABORTED, str(e), error=e)
            raise
        except Exception as e:
            logger.error("Invoice creation crashed", exc_info=True)
            if self._attempt is attempt:
                self._attempt = None
                await self._set(PurchaseState.ABORTED, "Invoice creation failed", error=e)
            raise

        if self._attempt is not attempt:
            logger.info("Purchase abandoned while creating invoice %s", ticket.id)
            return None

        invoice = Invoice(
            id=ticket.id,
            coins=coins,
            price_total=price,
            network=network,
            address=ticket.address,
            memo=ticket.memo,
        )
        await self._ledger.record_invoice(invoice)
        if self._attempt is not attempt:
            logger.info("Purchase abandoned while recording invoice %s", invoice.id)
            await self._ledger.close_invoice(invoice.id, PaymentState.FAILED)
            return None
        self._attempt = None
        await self._enter_polling(invoice)
        return invoice

    async def resume(self, invoice: Invoice) -> None:
        """Re-enter polling for an invoice left pending by an earlier session."""
        if self.busy:
            raise PurchaseInProgress("A purchase is already in progress")
        if invoice.state is not PaymentState.PENDING:
            return
        invoice.credited = invoice.credited or await self._ledger.is_credited(invoice.id)
        logger.info("Resuming invoice %s", invoice.id)
        await self._enter_polling(invoice)

    async def _enter_polling(self, invoice: Invoice) -> None:
        token = object()
        self._live[invoice.id] = token
        self.invoice = invoice
        # state must read polling before the task can run its first check
        self.state = PurchaseState.POLLING
        self._tasks[invoice.id] = asyncio.create_task(
            self._poll(invoice, token), name=f"poll-invoice-{invoice.id}"
        )
        await self._set(PurchaseState.POLLING, "Waiting for payment")

    def _alive(self, invoice_id: str, token: object) -> bool:
        return self._live.get(invoice_id) is token

    def _release(self, invoice_id: str) -> None:
        _ = self._live.pop(invoice_id, None)
        _ = self._tasks.pop(invoice_id, None)

    async def _poll(self, invoice: Invoice, token: object) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        delay = self._policy.first_delay
        try:
            while True:
                await asyncio.sleep(delay)
                delay = self._policy.interval
                if not self._alive(invoice.id, token):
                    return
                max_duration = self._policy.max_duration
                if max_duration is not None and loop.time() - started >= max_duration:
                    logger.info("Invoice %s not settled after %ss, giving up", invoice.id, max_duration)
                    self._release(invoice.id)
                    await self._ledger.close_invoice(invoice.id, PaymentState.FAILED)
                    await self._set(PurchaseState.ABORTED, "Payment was not confirmed in time")
                    return
                if await self._check(invoice, token):
                    return
        except asyncio.CancelledError:
            logger.info("Polling for invoice %s cancelled", invoice.id)
            raise
        except Exception as e:
            logger.error("Polling for invoice %s crashed", invoice.id, exc_info=True)
            if self._alive(invoice.id, token):
                self._release(invoice.id)
                await self._set(PurchaseState.ABORTED, "Payment check failed", error=e)

    async def _check(self, invoice: Invoice, token: object) -> bool:
        """Run one status check. Returns True once polling should stop."""
        try:
            status = await self._gateway.get_invoice_status(invoice.id)
        except GatewayError as e:
            if not self._alive(invoice.id, token):
                return True
            logger.warning("Status check for invoice %s inconclusive: %s", invoice.id, e)
            await self._set(
                PurchaseState.POLLING, "Still checking payment status", transient=True, error=e
            )
            return False

        if not self._alive(invoice.id, token):
            logger.info("Dropping %s status for abandoned invoice %s", status, invoice.id)
            return True

        if status is PaymentState.CONFIRMED:
            if not invoice.credited:
                await self._credit(invoice)
            invoice.state = PaymentState.CONFIRMED
            self._release(invoice.id)
            await self._set(PurchaseState.SETTLED, f"{invoice.coins} coins added")
            return True

        if status is PaymentState.FAILED:
            invoice.state = PaymentState.FAILED
            self._release(invoice.id)
            await self._ledger.close_invoice(invoice.id, PaymentState.FAILED)
            await self._set(PurchaseState.ABORTED, "Payment failed or expired")
            return True

        await self._set(PurchaseState.POLLING, "Waiting for payment")
        return False

    async def _credit(self, invoice: Invoice) -> None:
        # the ledger writer applies a queued credit even if this task is cancelled
        credit = asyncio.ensure_future(self._ledger.credit_invoice(invoice.id, invoice.coins))
        self._crediting[invoice.id] = credit
        try:
            _ = await asyncio.shield(credit)
        finally:
            if credit.done():
                _ = self._crediting.pop(invoice.id, None)
            else:
                credit.add_done_callback(lambda fut: self._credit_landed(invoice.id, fut))
        invoice.credited = True

    def _credit_landed(self, invoice_id: str, fut: asyncio.Future[bool]) -> None:
        _ = self._crediting.pop(invoice_id, None)
        if not fut.cancelled() and fut.exception() is not None:
            logger.error("Credit for invoice %s failed", invoice_id, exc_info=fut.exception())

    async def abandon_purchase(self) -> None:
        """Abort the current purchase.

        Once a confirmed payment is being credited the purchase can no longer
        be abandoned; the call waits for the credit and the purchase settles.
        """
        if self.state not in (PurchaseState.AWAITING_INVOICE, PurchaseState.POLLING):
            return
        self._attempt = None
        invoice = self.invoice
        if invoice is not None and invoice.id in self._crediting:
            logger.info("Invoice %s is already being credited, settling instead", invoice.id)
            task = self._tasks.get(invoice.id)
            if task is not None and task is not asyncio.current_task():
                await asyncio.shield(task)
            return
        if invoice is not None:
            await self._stop(invoice.id)
            await self._ledger.close_invoice(invoice.id, PaymentState.FAILED)
            logger.info("Purchase of invoice %s abandoned", invoice.id)
        await self._set(PurchaseState.ABORTED, "Purchase abandoned")

    def acknowledge(self) -> None:
        """Discard a settled or aborted purchase so a new one can start."""
        if self.state in TERMINAL:
            self.state = PurchaseState.IDLE
            self.invoice = None
            self.message = ""

    async def _stop(self, invoice_id: str) -> None:
        _ = self._live.pop(invoice_id, None)
        task = self._tasks.pop(invoice_id, None)
        if task is None or task is asyncio.current_task():
            return
        _ = task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def shutdown(self) -> None:
        """Stop every polling task, leaving pending invoices resumable."""
        self._attempt = None
        for invoice_id in list(self._tasks):
            await self._stop(invoice_id)
