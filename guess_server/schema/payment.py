from typing import Any, NotRequired, TypedDict


class PaymentReq(TypedDict):
    price_amount: float
    price_currency: str
    pay_currency: str
    order_id: str


class CreateResp(TypedDict):
    id: str
    address: str | None
    memo: str | None
    coins: int | None


class StatusResp(TypedDict):
    status: str
    raw: dict[str, Any]


class ErrorResp(TypedDict):
    error: str
    code: str
    details: NotRequired[Any]
    upstream: NotRequired[str]
