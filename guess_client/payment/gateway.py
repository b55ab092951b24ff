"""
Client for the payment service's create / status operations.

The client is stateless and never retries; retry cadence belongs to the
reconciliation controller. Every failure is raised as one of the
``GatewayError`` subclasses so callers can tell a transient transport problem
from a rejected or garbled response.
"""
import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

from aiohttp import ClientError, ClientResponse, ClientSession, ClientTimeout

from guess_client.errors import (
    GatewayError,
    GatewayNetworkError,
    Misconfigured,
    UpstreamMalformed,
    UpstreamRejected,
)
from guess_client.schema.db import Network, PaymentState
from guess_client.schema.gateway import CreateReq

logger = logging.getLogger(__name__)

CREATE_PATH = "/payment/create"
STATUS_PATH = "/payment/status"

ERROR_CODES: dict[str, type[GatewayError]] = {
    "upstream_malformed": UpstreamMalformed,
    "upstream_rejected": UpstreamRejected,
    "upstream_unreachable": GatewayNetworkError,
    "misconfigured": Misconfigured,
    "bad_request": UpstreamRejected,
    "method_not_allowed": UpstreamRejected,
}

STATUS_FALLBACK: dict[int, type[GatewayError]] = {
    500: Misconfigured,
    502: UpstreamMalformed,
    503: GatewayNetworkError,
    504: GatewayNetworkError,
}


@dataclass(frozen=True)
class InvoiceTicket:
    id: str
    address: Optional[str]
    memo: Optional[str]
    coins: Optional[int]


def classify_error(status: int, body: Any) -> GatewayError:
    code = body.get("code") if isinstance(body, dict) else None
    message = body.get("error") if isinstance(body, dict) else None
    exc_type = ERROR_CODES.get(code) if isinstance(code, str) else None
    if exc_type is None:
        exc_type = STATUS_FALLBACK.get(status, UpstreamRejected)
    return exc_type(
        str(message or f"Payment service answered {status}"), status=status, payload=body
    )


def parse_payment_state(body: Any) -> PaymentState:
    if not isinstance(body, dict) or not isinstance(body.get("status"), str):
        raise UpstreamMalformed("Status response has no status field", status=200, payload=body)
    try:
        return PaymentState(body["status"])
    except ValueError:
        return PaymentState.PENDING


def parse_ticket(body: Any) -> InvoiceTicket:
    if not isinstance(body, dict):
        raise UpstreamMalformed("Create response is not an object", status=200, payload=body)
    invoice_id = body.get("id")
    if invoice_id is None or invoice_id == "":
        raise UpstreamMalformed("Create response has no invoice id", status=200, payload=body)
    coins = body.get("coins")
    if coins is not None and (isinstance(coins, bool) or not isinstance(coins, int)):
        raise UpstreamMalformed("Create response has a non-integer coin count", status=200, payload=body)
    return InvoiceTicket(
        id=str(invoice_id),
        address=body.get("address") or None,
        memo=body.get("memo") or None,
        coins=coins,
    )


class GatewayClient:
    def __init__(self, session: ClientSession):
        self._session = session

    @classmethod
    def connect(cls, base_url: str, timeout: float = 15) -> "GatewayClient":
        return cls(ClientSession(base_url, timeout=ClientTimeout(total=timeout)))

    async def close(self) -> None:
        await self._session.close()

    async def _read(self, resp: ClientResponse) -> Any:
        # proxies in front of the service may answer in any encoding
        text = (await resp.read()).decode("utf-8", errors="replace")
        try:
            body = json.loads(text)
        except ValueError:
            if resp.ok:
                raise UpstreamMalformed(
                    "Payment service returned non-JSON", status=resp.status, payload=text[:200]
                )
            raise classify_error(resp.status, {"error": text[:200]})
        if not resp.ok:
            raise classify_error(resp.status, body)
        return body

    async def create_invoice(
        self, network: Network, amount: Decimal, coins: int
    ) -> InvoiceTicket:
        payload: CreateReq = {
            "network": Network(network).value,
            "amount": float(amount),
            "coins": coins,
        }
        try:
            async with self._session.post(CREATE_PATH, json=payload) as resp:
                body = await self._read(resp)
        except (ClientError, TimeoutError) as e:
            logger.warning("Invoice creation failed in transport: %s", e)
            raise GatewayNetworkError(f"Cannot reach payment service: {e}") from e
        return parse_ticket(body)

    async def get_invoice_status(self, invoice_id: str) -> PaymentState:
        try:
            async with self._session.get(STATUS_PATH, params={"id": invoice_id}) as resp:
                body = await self._read(resp)
        except (ClientError, TimeoutError) as e:
            logger.warning("Status check for %s failed in transport: %s", invoice_id, e)
            raise GatewayNetworkError(f"Cannot reach payment service: {e}") from e
        return parse_payment_state(body)
