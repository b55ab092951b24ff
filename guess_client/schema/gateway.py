from typing import TypedDict


class CreateReq(TypedDict):
    network: str
    amount: float
    coins: int
