"""
Verify-and-repair for one settlement date, plus range and status helpers.

Modes:
  verify     verify only, report
  fix        verify; if the verdict fails, repair
  force-fix  repair without verifying first

A repair re-ingests the whole day from Elexon and rebuilds the mining
cascade. It is idempotent: repeating it against an unchanged source leaves
identical rows and totals.
"""

import json
import logging
import os
import time
from datetime import date, datetime, timedelta
from typing import Iterable, Iterator, List, Optional

from cancellation import CancelToken, ensure_token
from errors import DataIntegrityViolation, PersistenceError, RunCancelled
from models import CalculationStatus, RepairMode, RepairResult
from verifier import SamplingStrategy

logger = logging.getLogger("curtailment.repair")


def date_range(start: date, end: date) -> Iterator[date]:
    d = start
    while d <= end:
        yield d
        d += timedelta(days=1)


class RepairCoordinator:
    def __init__(self, verifier, ingestor, cascade, store, miner_models: Iterable[str],
                 verify_after_repair: bool = True):
        self.verifier = verifier
        self.ingestor = ingestor
        self.cascade = cascade
        self.store = store
        self.miner_models = list(miner_models)
        self.verify_after_repair = verify_after_repair

    def _repair(self, settlement_date: date, result: RepairResult, had_records: bool,
                cancel: CancelToken):
        ingest = self.ingestor.ingest_day(settlement_date, cancel)
        result.ingest = ingest
        if ingest.total_records > 0 or had_records:
            result.cascade = self.cascade.recompute_cascade(settlement_date, self.miner_models, cancel)
        else:
            logger.info("%s: no curtailment, cascade skipped", settlement_date)

    def verify_and_repair(self, settlement_date: date, mode=RepairMode.fix,
                          strategy=None, cancel: Optional[CancelToken] = None) -> RepairResult:
        cancel = ensure_token(cancel)
        mode = RepairMode(mode)
        if not isinstance(strategy, SamplingStrategy):
            strategy = SamplingStrategy.parse(strategy)
        started = time.monotonic()

        logger.info("=" * 60)
        logger.info("%s  mode=%s  sampling=%s", settlement_date, mode.value, strategy)
        logger.info("=" * 60)

        initial = self.store.day_snapshot(settlement_date)
        logger.info("Before: %d records, %d periods, %.2f MWh, £%.2f", initial.record_count,
                    initial.periods_covered, initial.total_volume, initial.total_payment)
        result = RepairResult(settlement_date=settlement_date, mode=mode,
                              strategy=str(strategy), initial_state=initial)

        try:
            if mode != RepairMode.force_fix:
                result.verification = self.verifier.verify(settlement_date, strategy, cancel)
                result.repair_needed = not result.verification.is_passing
                if not result.repair_needed:
                    logger.info("%s: data matches Elexon, no repair needed", settlement_date)
                elif mode == RepairMode.verify:
                    logger.warning("%s: repair needed (run with 'fix' to apply)", settlement_date)
            else:
                result.repair_needed = True

            if result.repair_needed and mode != RepairMode.verify:
                self._repair(settlement_date, result, initial.record_count > 0, cancel)
                failed = result.ingest.failed_periods
                result.repair_success = not failed
                if failed:
                    logger.error("%s: repair incomplete, %d periods could not be fetched: %s",
                                 settlement_date, len(failed), failed)
                if self.verify_after_repair:
                    result.post_verification = self.verifier.verify(settlement_date, strategy, cancel)
                    post = result.post_verification
                    if not post.classified:
                        logger.warning("%s: post-repair check reached no periods", settlement_date)
                    elif not post.is_passing:
                        logger.warning("%s: still differs from Elexon after repair", settlement_date)
        except DataIntegrityViolation as e:
            logger.error("%s: DATA INTEGRITY VIOLATION: %s", settlement_date, e)
            result.repair_success = False
            result.error = f"DataIntegrityViolation: {e}"
        except PersistenceError as e:
            logger.error("%s: database error: %s", settlement_date, e)
            result.repair_success = False
            result.error = f"PersistenceError: {e}"
        except RunCancelled as e:
            logger.warning("%s: cancelled (%s); records may be deleted, re-run repair", settlement_date, e)
            result.repair_success = False
            result.error = f"Cancelled: {e}"

        if result.repair_success is not None or result.error:
            try:
                result.final_state = self.store.day_snapshot(settlement_date)
            except PersistenceError as e:
                logger.error("%s: could not read final state: %s", settlement_date, e)
        else:
            result.final_state = initial

        result.elapsed_seconds = round(time.monotonic() - started, 3)
        diff = result.diff
        if diff is not None:
            logger.info("After:  %d records (%+d), %d periods (%+d), %.2f MWh (%+.2f), £%.2f (%+.2f)",
                        result.final_state.record_count, diff.records,
                        result.final_state.periods_covered, diff.periods,
                        result.final_state.total_volume, diff.volume,
                        result.final_state.total_payment, diff.payment)
        logger.info("%s: %s", settlement_date, result.verdict)
        return result

    def reconcile_range(self, start: date, end: date, mode=RepairMode.fix,
                        strategy=None, cancel: Optional[CancelToken] = None) -> List[RepairResult]:
        """verify_and_repair each date from *start* to *end* inclusive, in order."""
        cancel = ensure_token(cancel)
        results = []
        for d in date_range(start, end):
            cancel.check()
            results.append(self.verify_and_repair(d, mode, strategy, cancel))
        failed = [r.settlement_date.isoformat() for r in results if not r.passed]
        logger.info("Range %s..%s: %d dates, %d failed %s", start, end, len(results),
                    len(failed), failed or "")
        return results

    def find_dates_missing_calculations(self, start: date, end: date) -> List[CalculationStatus]:
        statuses = self.store.calculation_status(start, end, self.miner_models)
        return [s for s in statuses if not s.complete]

    def recalculate_missing(self, start: date, end: date,
                            cancel: Optional[CancelToken] = None) -> List[CalculationStatus]:
        """Rebuild the mining cascade (no Elexon calls) for incomplete dates."""
        cancel = ensure_token(cancel)
        missing = self.find_dates_missing_calculations(start, end)
        logger.info("%d dates between %s and %s need recalculation", len(missing), start, end)
        for status in missing:
            cancel.check()
            self.cascade.recompute_cascade(status.settlement_date, self.miner_models, cancel)
        return missing


def summarize(result: RepairResult) -> dict:
    """Flat end-of-run summary of one date, JSON-serialisable."""
    diff = result.diff
    return {
        "date": result.settlement_date.isoformat(),
        "mode": result.mode.value,
        "strategy": result.strategy,
        "verdict": result.verdict,
        "repair_needed": result.repair_needed,
        "repair_success": result.repair_success,
        "missing_periods": result.verification.missing_periods if result.verification else [],
        "mismatched_periods": result.verification.mismatched_periods if result.verification else [],
        "failed_periods": result.ingest.failed_periods if result.ingest else [],
        "completeness": result.ingest.completeness if result.ingest else None,
        "diff": diff.model_dump() if diff else None,
        "error": result.error,
        "elapsed_seconds": result.elapsed_seconds,
    }


def write_audit_log(result: RepairResult, log_dir: str) -> str:
    """Write the full result as JSON; returns the file path."""
    os.makedirs(log_dir, exist_ok=True)
    stamp = datetime.now().strftime("%Y%m%dT%H%M%S")
    path = os.path.join(log_dir, f"verify_and_fix_{result.settlement_date.isoformat()}_{stamp}.json")
    with open(path, "w", encoding="utf-8") as fh:
        json.dump(result.model_dump(mode="json"), fh, indent=2)
    return path
