"""
Full-day ingest: all 48 settlement periods of one date, replaced from Elexon.

The day's records are deleted first, then periods run in small concurrent
batches with a pause between batches. A period that fails after its
retries is reported in failed_periods and the day carries on.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import date
from typing import List, Optional

from cancellation import CancelToken, ensure_token
from config import SETTLEMENT_PERIODS, Settings
from models import DayIngestResult, DaySummary, SliceResult

logger = logging.getLogger("curtailment.ingest")


def period_batches(batch_size: int) -> List[List[int]]:
    periods = list(range(1, SETTLEMENT_PERIODS + 1))
    return [periods[i:i + batch_size] for i in range(0, len(periods), batch_size)]


class DayIngestor:
    def __init__(self, processor, store, settings: Settings):
        self.processor = processor
        self.store = store
        self.batch_size = settings.batch_size
        self.batch_delay = settings.batch_delay

    def ingest_day(self, settlement_date: date,
                   cancel: Optional[CancelToken] = None) -> DayIngestResult:
        cancel = ensure_token(cancel)
        cancel.check()

        deleted = self.store.delete_day_records(settlement_date)
        logger.info("%s: cleared %d existing records", settlement_date, deleted)

        results: List[SliceResult] = []
        batches = period_batches(self.batch_size)
        with ThreadPoolExecutor(max_workers=self.batch_size,
                                thread_name_prefix="period") as pool:
            for i, batch in enumerate(batches, 1):
                cancel.check()
                futures = {
                    pool.submit(self.processor.process_slice, settlement_date, p, cancel): p
                    for p in batch
                }
                for fut in as_completed(futures):
                    results.append(fut.result())
                logger.info("  batch %d/%d (P%d-P%d) done", i, len(batches), batch[0], batch[-1])
                if i < len(batches):
                    cancel.sleep(self.batch_delay)

        results.sort(key=lambda r: r.settlement_period)
        result = DayIngestResult(
            settlement_date=settlement_date,
            total_records=sum(r.record_count for r in results),
            periods_processed=sum(1 for r in results if r.record_count > 0),
            total_volume=sum(r.volume for r in results),
            total_payment=sum(r.payment for r in results),
            failed_periods=[r.settlement_period for r in results if r.failed],
        )

        self.store.replace_day_summary(DaySummary(
            summary_date=settlement_date,
            total_curtailed_energy=result.total_volume,
            total_payment=result.total_payment,
            total_records=result.total_records,
            periods_processed=result.periods_processed,
        ))
        year_month = settlement_date.strftime("%Y-%m")
        self.store.rebuild_monthly_summary(year_month)
        self.store.rebuild_yearly_summary(year_month[:4])

        if result.failed_periods:
            logger.warning("%s: %d periods failed: %s", settlement_date,
                           len(result.failed_periods), result.failed_periods)
        logger.info("%s: %d records across %d/%d periods, %.2f MWh, £%.2f",
                    settlement_date, result.total_records, result.periods_processed,
                    SETTLEMENT_PERIODS, result.total_volume, result.total_payment)
        return result
