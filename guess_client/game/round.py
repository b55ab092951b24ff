"""
Rules of a single guessing round.

Nothing in here touches coins; ``guess_client.game.engine`` pairs these rules
with the ledger.
"""
import secrets
from dataclasses import dataclass, field
from enum import StrEnum
from random import Random
from typing import Literal, Optional

from guess_client.errors import DuplicateGuess, GuessOutOfRange, RoundClosedError

LOW = 1
HIGH = 100


class Mode(StrEnum):
    FUN = "fun"
    SERIOUS = "serious"


class RoundStatus(StrEnum):
    ACTIVE = "active"
    WON = "won"
    LOST = "lost"


@dataclass(frozen=True)
class ModeRules:
    max_tries: int
    payout: int


MODE_RULES: dict[Mode, ModeRules] = {
    Mode.FUN: ModeRules(max_tries=7, payout=1),
    Mode.SERIOUS: ModeRules(max_tries=6, payout=2),
}

type Hint = Literal["higher", "lower"]


@dataclass
class Round:
    secret: int
    mode: Mode
    round_id: str = field(default_factory=lambda: secrets.token_hex(8))
    guesses: list[int] = field(default_factory=list)
    status: RoundStatus = RoundStatus.ACTIVE
    paid: bool = False

    @property
    def max_tries(self) -> int:
        return MODE_RULES[self.mode].max_tries

    @property
    def payout(self) -> int:
        return MODE_RULES[self.mode].payout


@dataclass(frozen=True)
class GuessOutcome:
    value: int
    correct: bool
    hint: Optional[Hint]
    status: RoundStatus
    tries_left: int
    # only filled once the round is over
    secret: Optional[int] = None


def draw_secret(rng: Random | None = None) -> int:
    if rng is None:
        return LOW + secrets.randbelow(HIGH - LOW + 1)
    return rng.randint(LOW, HIGH)


def new_round(mode: Mode, secret: int) -> Round:
    if not LOW <= secret <= HIGH:
        raise ValueError(f"secret must be within [{LOW}, {HIGH}]")
    return Round(secret=secret, mode=Mode(mode))


def tries_left(rnd: Round) -> int:
    return rnd.max_tries - len(rnd.guesses)


def submit_guess(rnd: Round, value: int) -> GuessOutcome:
    if rnd.status is not RoundStatus.ACTIVE:
        raise RoundClosedError(f"Round {rnd.round_id} is already {rnd.status}")
    if isinstance(value, bool) or not isinstance(value, int) or not LOW <= value <= HIGH:
        raise GuessOutOfRange(f"Guess must be a whole number from {LOW} to {HIGH}")
    if value in rnd.guesses:
        raise DuplicateGuess(f"{value} was already guessed")

    rnd.guesses.append(value)

    if value == rnd.secret:
        rnd.status = RoundStatus.WON
        return GuessOutcome(value, True, None, rnd.status, tries_left(rnd), rnd.secret)

    hint: Hint = "higher" if value < rnd.secret else "lower"
    if len(rnd.guesses) >= rnd.max_tries:
        rnd.status = RoundStatus.LOST
        return GuessOutcome(value, False, hint, rnd.status, 0, rnd.secret)
    return GuessOutcome(value, False, hint, rnd.status, tries_left(rnd))


def partition_guesses(rnd: Round) -> tuple[list[int], list[int]]:
    """Misses below and above the secret, each sorted ascending."""
    below = sorted(g for g in rnd.guesses if g < rnd.secret)
    above = sorted(g for g in rnd.guesses if g > rnd.secret)
    return below, above
