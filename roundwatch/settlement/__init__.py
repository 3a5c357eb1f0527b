from .payout import PAYOUT_SCALE, implied_multiples, settle

__all__ = ["PAYOUT_SCALE", "implied_multiples", "settle"]
