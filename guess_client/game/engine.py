import logging
from collections.abc import Callable

from guess_client.errors import ValidationError
from guess_client.game.round import (
    GuessOutcome,
    Mode,
    Round,
    RoundStatus,
    draw_secret,
    new_round,
    submit_guess,
)
from guess_client.ledger import Ledger

logger = logging.getLogger(__name__)

ENTRY_FEE = 1


class RoundEngine:
    def __init__(self, ledger: Ledger, draw: Callable[[], int] = draw_secret):
        self._ledger = ledger
        self._draw = draw

    async def start_round(self, mode: Mode | str) -> Round:
        """Charge the entry fee and open a round.

        Raises ``InsufficientFunds`` with the balance untouched when the player
        cannot pay.
        """
        try:
            mode = Mode(mode)
        except ValueError:
            raise ValidationError(f"Unknown mode {mode!r}") from None
        secret = self._draw()
        rnd = new_round(mode, secret)
        _ = await self._ledger.debit(ENTRY_FEE, f"Round entry {mode}:{rnd.round_id}")
        logger.info("Round %s started in %s mode", rnd.round_id, mode)
        return rnd

    async def submit_guess(self, rnd: Round, value: int) -> GuessOutcome:
        outcome = submit_guess(rnd, value)
        if outcome.status is RoundStatus.WON:
            logger.info("Round %s won after %d guess(es)", rnd.round_id, len(rnd.guesses))
            _ = await self.settle(rnd)
        elif outcome.status is RoundStatus.LOST:
            logger.info("Round %s lost, secret was %d", rnd.round_id, rnd.secret)
        return outcome

    async def settle(self, rnd: Round) -> bool:
        """Credit the payout of a won round that has not been paid yet.

        Returns True when this call paid out. Safe to call again after a
        failed credit.
        """
        if rnd.status is not RoundStatus.WON or rnd.paid:
            return False
        _ = await self._ledger.credit(rnd.payout, f"Round payout {rnd.mode}:{rnd.round_id}")
        rnd.paid = True
        return True

    def resign(self, rnd: Round) -> None:
        if rnd.status is RoundStatus.ACTIVE:
            rnd.status = RoundStatus.LOST
            logger.info("Round %s abandoned", rnd.round_id)
