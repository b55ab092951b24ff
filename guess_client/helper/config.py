import os
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

load_dotenv()  # pyright: ignore[reportUnusedCallResult]


@dataclass(frozen=True)
class PollPolicy:
    first_delay: float = 1.5
    interval: float = 30.0
    # None polls until a terminal status or abandonment
    max_duration: Optional[float] = None


@dataclass(frozen=True)
class Settings:
    gateway_url: str = "http://127.0.0.1:8000"
    db_path: Path = Path() / "data" / "guessit.db"
    price_per_coin: Decimal = Decimal("0.99")
    price_places: int = 2
    min_purchase: int = 13
    request_timeout: float = 15.0
    poll: PollPolicy = PollPolicy()

    @classmethod
    def from_env(cls) -> "Settings":
        max_duration = os.environ.get("GUESSIT_POLL_MAX_DURATION")
        return cls(
            gateway_url=os.environ.get("GUESSIT_GATEWAY_URL", cls.gateway_url),
            db_path=Path(os.environ.get("GUESSIT_DB_PATH", cls.db_path)),
            price_per_coin=Decimal(os.environ.get("GUESSIT_PRICE_PER_COIN", "0.99")),
            min_purchase=int(os.environ.get("GUESSIT_MIN_PURCHASE", "13")),
            request_timeout=float(os.environ.get("GUESSIT_REQUEST_TIMEOUT", "15")),
            poll=PollPolicy(
                first_delay=float(os.environ.get("GUESSIT_POLL_FIRST_DELAY", "1.5")),
                interval=float(os.environ.get("GUESSIT_POLL_INTERVAL", "30")),
                max_duration=float(max_duration) if max_duration else None,
            ),
        )
