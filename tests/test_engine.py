import pytest

from guess_client.errors import (
    DuplicateGuess,
    InsufficientFunds,
    RoundClosedError,
    ValidationError,
)
from guess_client.game.engine import RoundEngine
from guess_client.game.round import Mode, RoundStatus


@pytest.fixture()
def engine(ledger):
    return RoundEngine(ledger, draw=lambda: 42)


async def drain(ledger, keep: int):
    balance = await ledger.balance()
    if balance > keep:
        await ledger.debit(balance - keep)


async def test_fun_round_scenario(engine, ledger):
    assert await ledger.balance() == 50
    rnd = await engine.start_round(Mode.FUN)
    assert await ledger.balance() == 49
    assert rnd.secret == 42

    assert (await engine.submit_guess(rnd, 50)).hint == "lower"
    assert (await engine.submit_guess(rnd, 1)).hint == "higher"
    outcome = await engine.submit_guess(rnd, 42)
    assert outcome.correct
    assert rnd.status is RoundStatus.WON
    assert await ledger.balance() == 50


async def test_serious_win_nets_one_coin(engine, ledger):
    rnd = await engine.start_round("serious")
    await engine.submit_guess(rnd, 42)
    assert await ledger.balance() == 51


@pytest.mark.parametrize("mode", [Mode.FUN, Mode.SERIOUS])
async def test_loss_nets_minus_one(engine, ledger, mode):
    rnd = await engine.start_round(mode)
    for value in range(1, rnd.max_tries + 1):
        await engine.submit_guess(rnd, value)
    assert rnd.status is RoundStatus.LOST
    assert await ledger.balance() == 49


async def test_start_round_without_coins(engine, ledger):
    await drain(ledger, 0)
    with pytest.raises(InsufficientFunds):
        await engine.start_round(Mode.FUN)
    assert await ledger.balance() == 0


async def test_last_coin_can_be_played(engine, ledger):
    await drain(ledger, 1)
    rnd = await engine.start_round(Mode.FUN)
    assert await ledger.balance() == 0
    await engine.submit_guess(rnd, 42)
    assert await ledger.balance() == 1


async def test_payout_only_once(engine, ledger):
    rnd = await engine.start_round(Mode.SERIOUS)
    await engine.submit_guess(rnd, 42)
    with pytest.raises(RoundClosedError):
        await engine.submit_guess(rnd, 42)
    assert await ledger.balance() == 51
    assert rnd.paid


async def test_duplicate_guess_through_engine(engine, ledger):
    rnd = await engine.start_round(Mode.FUN)
    await engine.submit_guess(rnd, 10)
    with pytest.raises(DuplicateGuess):
        await engine.submit_guess(rnd, 10)
    assert len(rnd.guesses) == 1
    assert await ledger.balance() == 49


async def test_resign_keeps_fee(engine, ledger):
    rnd = await engine.start_round(Mode.FUN)
    engine.resign(rnd)
    assert rnd.status is not RoundStatus.ACTIVE
    with pytest.raises(RoundClosedError):
        await engine.submit_guess(rnd, 42)
    assert await ledger.balance() == 49


async def test_unknown_mode_is_rejected(engine, ledger):
    with pytest.raises(ValidationError):
        await engine.start_round("hardcore")
    assert await ledger.balance() == 50


async def test_failed_payout_can_be_settled_later(engine, ledger, monkeypatch):
    rnd = await engine.start_round(Mode.SERIOUS)
    working_credit = ledger.credit

    async def closed_credit(n, reason="Credit"):
        raise RuntimeError("Ledger is not running")

    monkeypatch.setattr(ledger, "credit", closed_credit)
    with pytest.raises(RuntimeError):
        await engine.submit_guess(rnd, 42)
    assert rnd.status is RoundStatus.WON
    assert not rnd.paid
    assert await ledger.balance() == 49

    monkeypatch.setattr(ledger, "credit", working_credit)
    assert await engine.settle(rnd)
    assert not await engine.settle(rnd)
    assert rnd.paid
    assert await ledger.balance() == 51


async def test_settle_ignores_open_and_lost_rounds(engine, ledger):
    rnd = await engine.start_round(Mode.FUN)
    assert not await engine.settle(rnd)
    engine.resign(rnd)
    assert not await engine.settle(rnd)
    assert await ledger.balance() == 49
