from __future__ import annotations

import math
import sys
import threading
from datetime import date
from pathlib import Path

import pytest

MODULE_ROOT = Path(__file__).resolve().parents[1] / "curtailment-api"
if str(MODULE_ROOT) not in sys.path:  # pragma: no cover - import guard
    sys.path.insert(0, str(MODULE_ROOT))

from config import Settings
from errors import DataIntegrityViolation
from models import (
    CalculationStatus,
    DaySnapshot,
    FarmCurtailment,
    LeadPartyCurtailment,
    PeriodSummary,
)
from reference_data import BmuInfo, BmuMapping


def raw(bmu_id, volume, price, *, so=True, cadl=False, **extra):
    """An Elexon stack entry for a curtailment action of *volume* MWh."""
    entry = {
        "id": bmu_id,
        "volume": -abs(volume),
        "originalPrice": price,
        "finalPrice": price,
        "soFlag": so,
        "cadlFlag": cadl,
    }
    entry.update(extra)
    return entry


class FakeClient:
    """Scripted stand-in for ElexonClient.

    responses maps (date, period) to a list of raw records, an exception
    instance to raise, or a tuple of such outcomes consumed one per call.
    """

    def __init__(self, mapping, responses=None):
        self.mapping = mapping
        self.responses = dict(responses or {})
        self.calls = []

    def fetch(self, settlement_date, period, cancel=None):
        self.calls.append((settlement_date, period))
        outcome = self.responses.get((settlement_date, period), [])
        if isinstance(outcome, tuple):
            outcomes = list(outcome)
            outcome = outcomes.pop(0)
            if outcomes:
                self.responses[(settlement_date, period)] = tuple(outcomes)
        if isinstance(outcome, Exception):
            raise outcome
        return [dict(r) for r in outcome]


class FakeStore:
    """In-memory CurtailmentStore with the same method surface."""

    def __init__(self):
        self.records = []
        self.day_summaries = {}
        self.month_summaries = {}
        self.year_summaries = {}
        self.derived = []
        self.metrics = {"day": {}, "month": {}, "year": {}}
        self.difficulty = {}
        self.ops = []
        self._lock = threading.Lock()
        self._metric_lock = threading.RLock()

    # records

    def replace_slice_records(self, settlement_date, period, records):
        keys = [(r.settlement_date, r.settlement_period, r.farm_id) for r in records]
        if len(set(keys)) != len(keys):
            raise DataIntegrityViolation("Duplicate key in slice insert")
        with self._lock:
            self.ops.append(("replace_slice", settlement_date, period))
            self.records = [r for r in self.records
                            if not (r.settlement_date == settlement_date and r.settlement_period == period)]
            self.records.extend(records)

    def delete_day_records(self, settlement_date):
        self.ops.append(("delete_day", settlement_date))
        before = len(self.records)
        self.records = [r for r in self.records if r.settlement_date != settlement_date]
        return before - len(self.records)

    def fetch_slice_records(self, settlement_date, period):
        return [r for r in self.records
                if r.settlement_date == settlement_date and r.settlement_period == period]

    def fetch_day_records(self, settlement_date):
        return sorted((r for r in self.records if r.settlement_date == settlement_date),
                      key=lambda r: (r.settlement_period, r.farm_id))

    def count_duplicate_records(self, settlement_date):
        seen = {}
        for r in self.records:
            if r.settlement_date == settlement_date:
                key = (r.settlement_period, r.farm_id)
                seen[key] = seen.get(key, 0) + 1
        return sum(1 for n in seen.values() if n > 1)

    def day_snapshot(self, settlement_date):
        rows = self.fetch_day_records(settlement_date)
        periods = sorted({r.settlement_period for r in rows})
        return DaySnapshot(
            record_count=len(rows),
            periods_covered=len(periods),
            total_volume=sum(r.volume for r in rows),
            total_payment=sum(r.payment for r in rows),
            periods_present=periods,
        )

    def lead_party_breakdown(self, settlement_date):
        parties = {}
        for r in self.fetch_day_records(settlement_date):
            parties.setdefault(r.lead_party_name or "Unknown", []).append(r)
        return [
            LeadPartyCurtailment(lead_party_name=name, farm_count=len({r.farm_id for r in rows}),
                                 record_count=len(rows),
                                 total_curtailed_energy=sum(r.volume for r in rows),
                                 total_payment=sum(r.payment for r in rows))
            for name, rows in sorted(parties.items())
        ]

    def farm_breakdown(self, settlement_date):
        farms = {}
        for r in self.fetch_day_records(settlement_date):
            farms.setdefault(r.farm_id, []).append(r)
        result = []
        for farm_id, rows in farms.items():
            bitcoin = {}
            for d in self.fetch_derived_records(settlement_date):
                if d.farm_id == farm_id:
                    bitcoin[d.miner_model] = bitcoin.get(d.miner_model, 0.0) + d.bitcoin_mined
            result.append(FarmCurtailment(
                farm_id=farm_id,
                lead_party_name=rows[0].lead_party_name or "Unknown",
                periods=len(rows),
                total_curtailed_energy=sum(r.volume for r in rows),
                total_payment=sum(r.payment for r in rows),
                bitcoin=bitcoin,
            ))
        result.sort(key=lambda f: (-f.total_curtailed_energy, f.farm_id))
        return result

    # summaries

    def replace_day_summary(self, summary):
        self.day_summaries[summary.summary_date] = summary

    def rebuild_monthly_summary(self, year_month):
        days = [s for d, s in self.day_summaries.items() if d.strftime("%Y-%m") == year_month]
        self.month_summaries.pop(year_month, None)
        if not days:
            return None
        summary = PeriodSummary(
            period_key=year_month,
            total_curtailed_energy=sum(s.total_curtailed_energy for s in days),
            total_payment=sum(s.total_payment for s in days),
        )
        self.month_summaries[year_month] = summary
        return summary

    def rebuild_yearly_summary(self, year):
        months = [s for k, s in self.month_summaries.items() if k[:4] == year]
        self.year_summaries.pop(year, None)
        if not months:
            return None
        summary = PeriodSummary(
            period_key=year,
            total_curtailed_energy=sum(s.total_curtailed_energy for s in months),
            total_payment=sum(s.total_payment for s in months),
        )
        self.year_summaries[year] = summary
        return summary

    def get_day_summary(self, summary_date):
        return self.day_summaries.get(summary_date)

    def get_period_summary(self, level, key):
        return (self.month_summaries if level == "month" else self.year_summaries).get(key)

    # derived metrics

    def replace_derived_records(self, settlement_date, rows):
        self.derived = [r for r in self.derived if r.settlement_date != settlement_date]
        self.derived.extend(rows)

    def fetch_derived_records(self, settlement_date):
        return [r for r in self.derived if r.settlement_date == settlement_date]

    def _children(self, level, key, model):
        if level == "day":
            return [r.bitcoin_mined for r in self.derived
                    if r.settlement_date == key and r.miner_model == model]
        if level == "month":
            return [v for (d, m), v in sorted(self.metrics["day"].items())
                    if m == model and d.strftime("%Y-%m") == key]
        return [v for (ym, m), v in sorted(self.metrics["month"].items())
                if m == model and ym[:4] == key]

    def rebuild_metric(self, level, key, model):
        with self._metric_lock:
            self.metrics[level].pop((key, model), None)
            children = self._children(level, key, model)
            if not children:
                return 0.0
            stored = self._write_metric(level, key, model, sum(children))
            expected = sum(self._children(level, key, model))
            if not math.isclose(stored, expected, rel_tol=1e-12, abs_tol=1e-15):
                raise DataIntegrityViolation(
                    f"{level} {key} {model}: stored {stored!r} != sum of children {expected!r}")
            return stored

    def _write_metric(self, level, key, model, total):
        self.metrics[level][(key, model)] = total
        return total

    def get_metric(self, level, key, model):
        return self.metrics[level].get((key, model))

    def get_metric_totals(self, level, key):
        return {m: v for (k, m), v in sorted(self.metrics[level].items()) if k == key}

    # difficulty / status

    def lookup_difficulty(self, as_of):
        effective = [d for d in self.difficulty if d <= as_of]
        return self.difficulty[max(effective)] if effective else None

    def calculation_status(self, start, end, miner_models):
        counts = {}
        for r in self.records:
            if start <= r.settlement_date <= end:
                counts[r.settlement_date] = counts.get(r.settlement_date, 0) + 1
        result = []
        for d in sorted(counts):
            calcs = {m: sum(1 for x in self.derived if x.settlement_date == d and x.miner_model == m)
                     for m in miner_models}
            result.append(CalculationStatus(settlement_date=d, curtailment_records=counts[d],
                                            calculations=calcs))
        return result


@pytest.fixture
def mapping():
    return BmuMapping({
        "T_ALPHA-1": BmuInfo("T_ALPHA-1", "Alpha Wind Ltd"),
        "T_BRAVO-1": BmuInfo("T_BRAVO-1", "Bravo Renewables"),
        "T_CHARLIE-1": BmuInfo("T_CHARLIE-1", "Charlie Energy"),
        "T_DELTA-1": BmuInfo("T_DELTA-1", "Delta Power"),
    })


@pytest.fixture
def settings():
    return Settings(
        throttle_cooldown_seconds=0,
        slice_retry_delay=0,
        batch_delay=0,
        verify_request_delay=0,
        verify_after_repair=False,
        miner_models=("S19J_PRO", "S9"),
    )


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def day():
    return date(2025, 3, 14)
