"""
Thin NOWPayments client.

Everything NOWPayments-specific lives here: the network to currency table,
the field names a created payment may come back with, and the raw status
vocabulary. Callers only ever see the normalized shapes from
``schema.payment`` or an ``UpstreamError``.
"""
import json
import logging
import os
import time
from typing import Any, Final
from urllib.parse import quote

from aiohttp import ClientError, ClientSession, ClientTimeout

from guess_server.schema.payment import CreateResp, ErrorResp, PaymentReq, StatusResp

logger = logging.getLogger(__name__)

API_KEY_ENV: Final[str] = "NOWPAYMENTS_API_KEY"
DEFAULT_BASE_URL: Final[str] = "https://api.nowpayments.io/v1"

PAY_CURRENCIES: dict[str, str] = {
    "TRON": "USDTTRC20",
    "POLYGON": "USDTPOLYGON",
}

# normalized field -> upstream fields, first non-empty wins
CREATED_FIELDS: dict[str, tuple[str, ...]] = {
    "id": ("payment_id", "id"),
    "address": ("pay_address", "invoice_url"),
    "memo": ("pay_memo",),
}

STATUS_MAP: dict[str, str] = {
    "finished": "confirmed",
    "failed": "failed",
    "expired": "failed",
}

type JSON = dict[str, JSON] | list[JSON] | str | None | bool | float | int


class UpstreamError(Exception):
    status_code: int = 500
    code: str = "internal"

    def __init__(self, message: str, *, status_code: int | None = None, **extra: Any):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.extra = extra

    def body(self) -> ErrorResp:
        return {"error": self.message, "code": self.code, **self.extra}  # pyright: ignore[reportReturnType]


class BadRequest(UpstreamError):
    status_code = 400
    code = "bad_request"


class Misconfigured(UpstreamError):
    status_code = 500
    code = "misconfigured"


class UpstreamMalformed(UpstreamError):
    status_code = 502
    code = "upstream_malformed"


class UpstreamRejected(UpstreamError):
    code = "upstream_rejected"


class UpstreamUnreachable(UpstreamError):
    status_code = 504
    code = "upstream_unreachable"


def pay_currency(network: str) -> str:
    try:
        return PAY_CURRENCIES[network]
    except KeyError:
        raise BadRequest(f"Bad request: unsupported network {network}")


def _pick(data: dict[str, Any], names: tuple[str, ...]) -> Any:
    for name in names:
        value = data.get(name)
        if value not in (None, ""):
            return value
    return None


def normalize_created(data: Any, coins: int | None) -> CreateResp:
    if not isinstance(data, dict):
        raise UpstreamMalformed("Upstream returned an unexpected body", upstream=str(data)[:200])
    picked = {key: _pick(data, names) for key, names in CREATED_FIELDS.items()}
    if picked["id"] is None:
        raise UpstreamMalformed("Upstream response has no payment id", upstream=json.dumps(data)[:200])
    return {
        "id": str(picked["id"]),
        "address": picked["address"],
        "memo": picked["memo"],
        "coins": coins,
    }


def map_payment_status(raw: Any) -> str:
    if isinstance(raw, dict):
        return STATUS_MAP.get(str(raw.get("payment_status")), "pending")
    return "pending"


def parse_upstream(status: int, text: str) -> Any:
    try:
        data = json.loads(text)
    except ValueError:
        # NOWPayments sometimes answers with an HTML error page
        raise UpstreamMalformed("Upstream non-JSON", upstream=text[:200])
    if not 200 <= status < 300:
        raise UpstreamRejected("NOWPayments error", status_code=status, details=data)
    return data


class NowPaymentsClient:
    def __init__(self, session: ClientSession, base_url: str | None = None):
        self._session = session
        self._base_url = (base_url or os.environ.get("NOWPAYMENTS_BASE_URL", DEFAULT_BASE_URL)).rstrip("/")

    @classmethod
    def create(cls, timeout: float = 15) -> "NowPaymentsClient":
        return cls(ClientSession(timeout=ClientTimeout(total=timeout)))

    async def close(self) -> None:
        await self._session.close()

    def api_key(self) -> str:
        key = os.environ.get(API_KEY_ENV)
        if not key:
            raise Misconfigured(f"Server misconfig: {API_KEY_ENV} missing")
        return key

    async def _send(
        self, method: str, path: str, *, json_body: JSON = None
    ) -> tuple[int, str]:
        headers = {"x-api-key": self.api_key()}
        try:
            async with self._session.request(
                method, f"{self._base_url}{path}", json=json_body, headers=headers
            ) as resp:
                return resp.status, await resp.text()
        except (ClientError, TimeoutError) as e:
            logger.error("NOWPayments %s %s failed", method, path, exc_info=True)
            raise UpstreamUnreachable(f"Upstream unreachable: {e}")

    async def create_payment(self, network: str, amount: float, coins: int | None) -> CreateResp:
        currency = pay_currency(network)
        # priced and settled in the same currency so no estimate call is needed
        payload: PaymentReq = {
            "price_amount": float(amount),
            "price_currency": currency,
            "pay_currency": currency,
            "order_id": f"order_{int(time.time() * 1000)}",
        }
        status, text = await self._send("POST", "/payment", json_body=dict(payload))
        created = normalize_created(parse_upstream(status, text), coins)
        logger.info("Created payment %s for %s %s", created["id"], amount, currency)
        return created

    async def payment_status(self, payment_id: str) -> StatusResp:
        status, text = await self._send("GET", f"/payment/{quote(payment_id, safe='')}")
        raw = parse_upstream(status, text)
        if not isinstance(raw, dict):
            raise UpstreamMalformed("Upstream returned an unexpected body", upstream=text[:200])
        return {"status": map_payment_status(raw), "raw": raw}
