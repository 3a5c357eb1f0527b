from .log import get_logger
from .telemetry import ErrorTracker, RuntimeEventLogger

__all__ = ["ErrorTracker", "RuntimeEventLogger", "get_logger"]
