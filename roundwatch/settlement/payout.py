from __future__ import annotations

from decimal import Decimal

from roundwatch.domain import Settlement, Winner

# Payout multiples are kept to 4 decimal places: total * 10^4 // side, then scaled back.
PAYOUT_SCALE = 10_000


def _multiple(total: int, side: int) -> Decimal:
    if side <= 0:
        return Decimal(0)
    return Decimal(total * PAYOUT_SCALE // side) / Decimal(PAYOUT_SCALE)


def settle(lock_price: int, close_price: int, bull_amount: int, bear_amount: int) -> Settlement:
    """Winner and payout multiple from the four on-chain integers.

    Pure and integer-only: the same inputs always give the same Decimal.
    """
    lock_price = int(lock_price)
    close_price = int(close_price)
    bull_amount = int(bull_amount)
    bear_amount = int(bear_amount)
    total = bull_amount + bear_amount

    if total == 0:
        return Settlement(winner=Winner.DRAW, payout_multiple=Decimal(0))
    if close_price > lock_price:
        return Settlement(winner=Winner.BULL, payout_multiple=_multiple(total, bull_amount))
    if close_price < lock_price:
        return Settlement(winner=Winner.BEAR, payout_multiple=_multiple(total, bear_amount))
    return Settlement(winner=Winner.DRAW, payout_multiple=Decimal(1))


def implied_multiples(bull_amount: int, bear_amount: int) -> tuple[Decimal | None, Decimal | None]:
    """Payout each side would get if the pools froze now; None for an empty side."""
    total = int(bull_amount) + int(bear_amount)
    up = _multiple(total, int(bull_amount)) if bull_amount > 0 else None
    down = _multiple(total, int(bear_amount)) if bear_amount > 0 else None
    return up, down
