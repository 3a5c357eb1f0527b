from .settings import DEFAULT_RPC_URLS, PREDICTION_V2_ADDRESS, Settings, load_settings

__all__ = ["DEFAULT_RPC_URLS", "PREDICTION_V2_ADDRESS", "Settings", "load_settings"]
