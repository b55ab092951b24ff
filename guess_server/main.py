import logging
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from guess_server.api.payment import pay_app
from guess_server.nowpayments.client import NowPaymentsClient

load_dotenv()  # pyright: ignore[reportUnusedCallResult]

logging.basicConfig(level=logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.nowpayments = NowPaymentsClient.create()
    yield
    await app.state.nowpayments.close()


app = FastAPI(lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)
app.mount("/payment", pay_app)


@app.middleware("http")
async def attach_parent(request: Request, call_next: Callable[[Request], Awaitable[Response]]):
    request.state.parent = app
    response = await call_next(request)
    return response


@app.get("/health")
async def health():
    return {"status": "ok"}
