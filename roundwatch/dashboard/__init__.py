from .server import build_status_app, run_status_server

__all__ = ["build_status_app", "run_status_server"]
