from __future__ import annotations

import argparse
import asyncio
import json

from roundwatch.config import load_settings
from roundwatch.data import export_rounds_csv
from roundwatch.domain import StartupError
from roundwatch.infra import get_logger
from roundwatch.runtime.app import build_reader, open_store, reachable_epoch, run_backfill_job, run_main


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="roundwatch", description="Prediction round tracker and snapshot recorder")
    ap.add_argument("--env-file", default=None, help="dotenv file to load (default: $ROUNDWATCH_ENV_FILE or .env)")
    sub = ap.add_subparsers(dest="command")

    sub.add_parser("live", help="track rounds as they happen")

    bf = sub.add_parser("backfill", help="fill historical or incomplete rounds")
    mode = bf.add_mutually_exclusive_group()
    mode.add_argument("--incomplete", action="store_true", help="repair stored rounds missing lock or settlement (default)")
    mode.add_argument("--last", type=int, metavar="N", help="the N most recent epochs")
    mode.add_argument("--range", type=int, nargs=2, metavar=("START", "END"), help="inclusive epoch range")
    mode.add_argument("--gaps", action="store_true", help="epochs missing between the lowest and highest stored rows")
    bf.add_argument("--limit", type=int, default=None, help="max incomplete rounds to repair")
    bf.add_argument("--delay", type=float, default=None, help="seconds between rounds")

    st = sub.add_parser("stats", help="print stored round counts")
    st.add_argument("--offline", action="store_true", help="skip the on-chain epoch lookup")

    ex = sub.add_parser("export", help="write stored rounds to CSV")
    ex.add_argument("--out", required=True)
    ex.add_argument("--complete-only", action="store_true")
    return ap


def _backfill(settings, args) -> int:
    log = get_logger("cli", settings.log_level)
    if args.range:
        kwargs = {"mode": "range", "start": args.range[0], "end": args.range[1]}
    elif args.last is not None:
        kwargs = {"mode": "last", "count": args.last}
    elif args.gaps:
        kwargs = {"mode": "gaps"}
    else:
        kwargs = {"mode": "incomplete", "limit": args.limit}
    try:
        summary = asyncio.run(run_backfill_job(settings, delay=args.delay, **kwargs))
    except StartupError as exc:
        log.error("backfill aborted: %s", exc)
        return 1
    except ValueError as exc:
        log.error("%s", exc)
        return 2
    print(summary.as_line())
    return 0


def _stats(settings, args) -> int:
    store = open_store(settings)
    try:
        stats: dict = store.stats()
        stats["latest_epoch"] = store.latest_epoch()
        stats["gaps"] = [f"{a}..{b}" for a, b in store.find_gaps()]
    finally:
        store.close()
    if not args.offline:
        try:
            stats["chain_epoch"] = asyncio.run(reachable_epoch(build_reader(settings)))
        except StartupError as exc:
            get_logger("cli", settings.log_level).warning("chain epoch unavailable: %s", exc)
            stats["chain_epoch"] = None
    print(json.dumps(stats, indent=2))
    return 0


def _export(settings, args) -> int:
    store = open_store(settings)
    try:
        n = export_rounds_csv(store, args.out, complete_only=args.complete_only)
    finally:
        store.close()
    get_logger("cli", settings.log_level).info("exported %d rounds to %s", n, args.out)
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings(args.env_file)
    command = args.command or "live"
    try:
        if command == "backfill":
            return _backfill(settings, args)
        if command == "stats":
            return _stats(settings, args)
        if command == "export":
            return _export(settings, args)
    except StartupError as exc:
        get_logger("cli", settings.log_level).error("%s", exc)
        return 1
    return run_main(settings)


if __name__ == "__main__":
    raise SystemExit(main())
