from .backfill import Backfiller, BackfillSummary, fill_from_chain
from .round_tracker import RoundTracker, TrackerConfig, snapshot_due

__all__ = ["BackfillSummary", "Backfiller", "RoundTracker", "TrackerConfig", "fill_from_chain", "snapshot_due"]
