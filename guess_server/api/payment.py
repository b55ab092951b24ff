import logging
import math
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from guess_server.nowpayments.client import BadRequest, NowPaymentsClient, UpstreamError
from guess_server.schema.payment import CreateResp, StatusResp

logger = logging.getLogger(__name__)

pay_app = FastAPI()

HTTP_ERRORS: dict[int, tuple[str, str]] = {
    400: ("bad_request", "Bad request"),
    404: ("not_found", "Not found"),
    405: ("method_not_allowed", "Method not allowed"),
}


def get_nowpayments(request: Request) -> NowPaymentsClient:
    return request.state.parent.state.nowpayments  # pyright: ignore[reportAny]


@pay_app.exception_handler(UpstreamError)
async def upstream_error_handler(request: Request, exc: UpstreamError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("%s %s -> %d %s", request.method, request.url.path, exc.status_code, exc.message)
    return JSONResponse(exc.body(), status_code=exc.status_code)


@pay_app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message = HTTP_ERRORS.get(exc.status_code, ("http_error", str(exc.detail)))
    return JSONResponse(
        {"error": message, "code": code}, status_code=exc.status_code, headers=exc.headers
    )


@pay_app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # raw inputs are left out; they may hold NaN, which JSONResponse refuses
    details = [{"loc": list(err["loc"]), "msg": err["msg"]} for err in exc.errors()]
    return JSONResponse(
        {"error": "Bad request", "code": "bad_request", "details": details},
        status_code=400,
    )


@dataclass
class CreateReq:
    network: str | None = None
    amount: float | None = None
    coins: int | None = None


@pay_app.post("/create")
async def create_payment(
    req: CreateReq,
    client: Annotated[NowPaymentsClient, Depends(get_nowpayments)],
) -> CreateResp:
    if not req.network or not req.amount:
        raise BadRequest("Bad request: missing network/amount")
    # json.loads lets NaN and Infinity through
    if not math.isfinite(req.amount) or req.amount <= 0:
        raise BadRequest("Bad request: amount must be a positive number")
    return await client.create_payment(req.network, req.amount, req.coins)


@pay_app.get("/status")
async def payment_status(
    client: Annotated[NowPaymentsClient, Depends(get_nowpayments)],
    id: str | None = None,
) -> StatusResp:
    if not id:
        raise BadRequest("Missing id")
    return await client.payment_status(id)
