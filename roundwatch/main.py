from __future__ import annotations

from roundwatch.config import load_settings
from roundwatch.runtime.app import run_main


if __name__ == "__main__":
    raise SystemExit(run_main(load_settings()))
