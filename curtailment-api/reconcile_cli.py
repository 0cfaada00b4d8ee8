"""
Verify and repair curtailment data against Elexon.

Usage:
    python3 reconcile_cli.py verify 2025-03-01                  # progressive sampling
    python3 reconcile_cli.py verify 2025-03-01 fixed
    python3 reconcile_cli.py fix 2025-03-01 random:15           # repair if verification fails
    python3 reconcile_cli.py force-fix 2025-03-01               # always repair
    python3 reconcile_cli.py fix 2025-03-01 --to 2025-03-31     # date range
    python3 reconcile_cli.py status --from 2025-03-01 --to 2025-03-31
    python3 reconcile_cli.py recalc 2025-03-01 --to 2025-03-31  # mining cascade only
    python3 reconcile_cli.py init-db

Exit codes:
    0  every date passed (or was repaired)
    1  a repair failed or left periods unfetched
    2  verification failed and no repair was requested
    3  configuration error
"""

import argparse
import json
import logging
import signal
import sys
from datetime import date, datetime

from cancellation import CancelToken
from config import load_settings
from engine import build_engine, build_store
from errors import ConfigurationError, DataIntegrityViolation, PersistenceError, RunCancelled
from models import RepairMode
from repair import summarize, write_audit_log
from verifier import SamplingStrategy

log = logging.getLogger("curtailment.cli")

EXIT_OK = 0
EXIT_REPAIR_FAILED = 1
EXIT_VERIFY_FAILED = 2
EXIT_CONFIG = 3


def _date(text: str) -> date:
    try:
        return datetime.strptime(text, "%Y-%m-%d").date()
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid date '{text}', expected YYYY-MM-DD")


def _strategy(text: str) -> SamplingStrategy:
    try:
        return SamplingStrategy.parse(text)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Verify and repair Elexon curtailment data")
    parser.add_argument("--timeout", type=float, default=None,
                        help="Cancel the run after this many seconds")
    parser.add_argument("--log-dir", default=None, help="Audit log directory")
    sub = parser.add_subparsers(dest="command", required=True)

    for mode in RepairMode:
        p = sub.add_parser(mode.value, help=f"{mode.value} one date or a range")
        p.add_argument("date", type=_date)
        p.add_argument("sampling", nargs="?", type=_strategy, default=SamplingStrategy(),
                       help="fixed | random[:N] | full | progressive[:N] (default progressive)")
        p.add_argument("--to", dest="end", type=_date, default=None, help="Last date of a range")
        p.set_defaults(mode=mode)

    p = sub.add_parser("status", help="List dates whose mining calculations are incomplete")
    p.add_argument("--from", dest="start", type=_date, required=True)
    p.add_argument("--to", dest="end", type=_date, required=True)

    p = sub.add_parser("recalc", help="Rebuild the mining cascade for incomplete dates")
    p.add_argument("date", type=_date)
    p.add_argument("--to", dest="end", type=_date, default=None)

    sub.add_parser("init-db", help="Create tables")
    return parser


def exit_code_for(results) -> int:
    if any(r.error or (r.repair_needed and r.repair_success is False) for r in results):
        return EXIT_REPAIR_FAILED
    if any(not r.passed for r in results):
        if all(r.mode == RepairMode.verify for r in results):
            return EXIT_VERIFY_FAILED
        return EXIT_REPAIR_FAILED
    return EXIT_OK


def run_repair(args, engine, cancel) -> int:
    end = args.end or args.date
    if end < args.date:
        log.error("--to %s is before %s", end, args.date)
        return EXIT_REPAIR_FAILED
    results = engine.coordinator.reconcile_range(args.date, end, args.mode, args.sampling, cancel)

    log_dir = args.log_dir or engine.settings.log_dir
    log.info("=" * 60)
    for r in results:
        path = write_audit_log(r, log_dir)
        log.info("SUMMARY %s", json.dumps(summarize(r)))
        log.info("%s %s  (audit log: %s)", r.settlement_date, r.verdict, path)
    log.info("=" * 60)
    return exit_code_for(results)


def init_db(settings) -> int:
    try:
        build_store(settings).init_schema()
    except PersistenceError as e:
        log.error("PersistenceError: %s", e)
        return EXIT_REPAIR_FAILED
    return EXIT_OK


def main(argv=None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings()
        if args.command == "init-db":
            return init_db(settings)
        engine = build_engine(settings)
    except ConfigurationError as e:
        log.error("Configuration error: %s", e)
        return EXIT_CONFIG

    cancel = CancelToken(timeout=args.timeout)
    signal.signal(signal.SIGTERM, lambda *_: cancel.cancel("SIGTERM"))
    try:
        if args.command == "status":
            missing = engine.coordinator.find_dates_missing_calculations(args.start, args.end)
            for s in missing:
                log.info("  %s: %d records, calculations %s", s.settlement_date,
                         s.curtailment_records, s.calculations)
            log.info("%d dates with incomplete calculations", len(missing))
            return EXIT_OK if not missing else EXIT_VERIFY_FAILED
        if args.command == "recalc":
            engine.coordinator.recalculate_missing(args.date, args.end or args.date, cancel)
            return EXIT_OK
        return run_repair(args, engine, cancel)
    except (DataIntegrityViolation, PersistenceError, RunCancelled) as e:
        log.error("%s: %s", type(e).__name__, e)
        return EXIT_REPAIR_FAILED
    except KeyboardInterrupt:
        log.warning("Interrupted; affected dates must be repaired again")
        return EXIT_REPAIR_FAILED
    finally:
        engine.close()


if __name__ == "__main__":
    sys.exit(main())
