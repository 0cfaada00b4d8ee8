"""
Bitcoin mining cascade: per-record calculations, then day, month and year
totals for every miner model, rebuilt bottom-up.

Each level is replaced from the level below (never patched in place). The
store checks every rebuilt row against the sum of its children in the same
transaction and raises DataIntegrityViolation if they differ.
"""

import logging
from datetime import date
from typing import Callable, Dict, Iterable, Optional

from cancellation import CancelToken, ensure_token
from errors import DataIntegrityViolation
from mining import compute
from models import CascadeTotals, DerivedMetricRecord

logger = logging.getLogger("curtailment.cascade")

# (volume_mwh, miner_model, difficulty, as_of) -> bitcoin
Calculator = Callable[[float, str, float, date], float]


class CascadeAggregator:
    def __init__(self, store, difficulty_resolver, calculator: Calculator = compute):
        self.store = store
        self.resolver = difficulty_resolver
        self.calculator = calculator

    def _derive(self, records, models, difficulty, settlement_date):
        try:
            return [
                DerivedMetricRecord(
                    settlement_date=settlement_date,
                    settlement_period=r.settlement_period,
                    farm_id=r.farm_id,
                    miner_model=model,
                    bitcoin_mined=self.calculator(r.volume, model, difficulty, settlement_date),
                    difficulty=difficulty,
                )
                for r in records
                for model in models
            ]
        except ValueError as e:
            raise DataIntegrityViolation(f"{settlement_date}: cannot compute mining output: {e}") from e

    def recompute_cascade(self, settlement_date: date, miner_models: Iterable[str],
                          cancel: Optional[CancelToken] = None) -> Dict[str, CascadeTotals]:
        cancel = ensure_token(cancel)
        models = list(miner_models)
        cancel.check()

        dupes = self.store.count_duplicate_records(settlement_date)
        if dupes:
            raise DataIntegrityViolation(
                f"{settlement_date}: {dupes} duplicate (period, farm) keys in curtailment_records"
            )

        records = self.store.fetch_day_records(settlement_date)
        difficulty = self.resolver.resolve(settlement_date)

        rows = self._derive(records, models, difficulty, settlement_date)
        self.store.replace_derived_records(settlement_date, rows)
        logger.info("%s: %d calculations (%d records x %d models) at difficulty %.0f",
                    settlement_date, len(rows), len(records), len(models), difficulty)

        year_month = settlement_date.strftime("%Y-%m")
        year = year_month[:4]
        totals = {}
        for model in models:
            cancel.check()
            day_total = self.store.rebuild_metric("day", settlement_date, model)
            month_total = self.store.rebuild_metric("month", year_month, model)
            year_total = self.store.rebuild_metric("year", year, model)

            totals[model] = CascadeTotals(
                miner_model=model,
                difficulty=difficulty,
                records=len(records),
                day_total=day_total,
                month_total=month_total,
                year_total=year_total,
            )
            logger.info("  %s: day %.8f  month %s %.8f  year %s %.8f BTC",
                        model, day_total, year_month, month_total, year, year_total)
        return totals
