from dataclasses import dataclass
from decimal import Decimal
from enum import StrEnum
from typing import Optional


class PaymentState(StrEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class Network(StrEnum):
    TRON = "TRON"
    POLYGON = "POLYGON"


@dataclass(frozen=True)
class JournalEntry:
    id: int
    delta: int
    balance_after: int
    reason: str
    invoice_id: Optional[str]
    create_dt: str
    chain_hash: str


@dataclass
class Invoice:
    id: str
    coins: int
    price_total: Decimal
    network: Network
    address: Optional[str]
    memo: Optional[str] = None
    state: PaymentState = PaymentState.PENDING
    credited: bool = False

