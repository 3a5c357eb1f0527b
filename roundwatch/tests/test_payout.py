from decimal import Decimal

from roundwatch.domain import Winner
from roundwatch.settlement import implied_multiples, settle


def test_bull_win_payout() -> None:
    out = settle(lock_price=300_00, close_price=301_00, bull_amount=100, bear_amount=50)
    assert out.winner is Winner.BULL
    assert out.payout_multiple == Decimal("1.5")


def test_bear_win_truncates_to_four_places() -> None:
    out = settle(lock_price=500, close_price=499, bull_amount=2, bear_amount=3)
    assert out.winner is Winner.BEAR
    assert out.payout_multiple == Decimal("1.6666")


def test_equal_prices_draw() -> None:
    out = settle(lock_price=42, close_price=42, bull_amount=10, bear_amount=10)
    assert out.winner is Winner.DRAW
    assert out.payout_multiple == Decimal(1)


def test_empty_pools_draw_zero() -> None:
    out = settle(lock_price=1, close_price=2, bull_amount=0, bear_amount=0)
    assert out.winner is Winner.DRAW
    assert out.payout_multiple == Decimal(0)


def test_winning_side_empty_pays_zero() -> None:
    out = settle(lock_price=1, close_price=2, bull_amount=0, bear_amount=7)
    assert out.winner is Winner.BULL
    assert out.payout_multiple == Decimal(0)


def test_settle_is_deterministic_on_wei_scale() -> None:
    bull = 12_345_678_901_234_567_890
    bear = 98_765_432_109_876_543_210
    a = settle(10**8, 10**8 + 1, bull, bear)
    b = settle(10**8, 10**8 + 1, bull, bear)
    assert a == b
    assert a.payout_multiple == Decimal((bull + bear) * 10_000 // bull) / Decimal(10_000)


def test_implied_multiples() -> None:
    up, down = implied_multiples(100, 50)
    assert up == Decimal("1.5")
    assert down == Decimal(3)
    assert implied_multiples(0, 5) == (None, Decimal(1))
