from .errors import (
    PermanentRemoteError,
    RemoteUnavailableError,
    RoundwatchError,
    StartupError,
    TransientRemoteError,
)
from .models import PoolSlot, RawRound, RoundRecord, RoundStage, Settlement, TrackedRound, Winner

__all__ = [
    "PermanentRemoteError",
    "PoolSlot",
    "RawRound",
    "RemoteUnavailableError",
    "RoundRecord",
    "RoundStage",
    "RoundwatchError",
    "Settlement",
    "StartupError",
    "TrackedRound",
    "TransientRemoteError",
    "Winner",
]
