import pytest

from roundwatch.data import parse_round
from roundwatch.domain import PermanentRemoteError


def _tuple(epoch=7, start=100, lock=400, close=700, lock_price=0, close_price=0, oracle=False):
    return (epoch, start, lock, close, lock_price, close_price, 0, 0, 30, 10, 20, 0, 0, oracle)


def test_parse_round_fields() -> None:
    raw = parse_round(7, _tuple(lock_price=5, close_price=6, oracle=True))
    assert raw.epoch == 7
    assert raw.lock_ts == 400 and raw.close_ts == 700
    assert raw.bull_amount == 10 and raw.bear_amount == 20
    assert raw.started and raw.locked and raw.finalized


def test_close_price_without_oracle_is_not_final() -> None:
    raw = parse_round(7, _tuple(lock_price=5, close_price=6, oracle=False))
    assert not raw.finalized


def test_zero_filled_round_is_not_started() -> None:
    raw = parse_round(9, (0,) * 13 + (False,))
    assert not raw.started
    assert raw.pool_empty


@pytest.mark.parametrize(
    "result",
    [
        (1, 2, 3),
        "not a tuple",
        (7, 100, "400", 700, 0, 0, 0, 0, 30, 10, 20, 0, 0, False),
        (7, 100, 400, 700, 0, 0, 0, 0, 30, True, 20, 0, 0, False),
    ],
)
def test_malformed_results_are_permanent(result) -> None:
    with pytest.raises(PermanentRemoteError):
        parse_round(7, result)


def test_epoch_mismatch_rejected() -> None:
    with pytest.raises(PermanentRemoteError):
        parse_round(8, _tuple(epoch=7))


def test_lock_after_close_rejected() -> None:
    with pytest.raises(PermanentRemoteError):
        parse_round(7, _tuple(lock=700, close=700))
