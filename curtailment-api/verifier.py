"""
Spot-check persisted settlement periods against Elexon.

Sampling strategies (as accepted on the command line):
  fixed            periods 1, 12, 24, 36, 48
  random[:N]       N random periods (default from settings)
  full             all 48 periods
  progressive[:N]  fixed, then N more unchecked random periods if anything
                   was missing or mismatched

Single-letter aliases f / r / a / p are accepted as well.
"""

import logging
import random
from dataclasses import dataclass
from datetime import date
from typing import List, Optional, Sequence

from cancellation import CancelToken, ensure_token
from config import SETTLEMENT_PERIODS, Settings
from errors import TransientFetchError
from models import SliceCheck, SliceStatus, VerificationVerdict
from slice_processor import normalize_records

logger = logging.getLogger("curtailment.verify")

FIXED_PERIODS = (1, 12, 24, 36, 48)
ALL_PERIODS = tuple(range(1, SETTLEMENT_PERIODS + 1))

_ALIASES = {"f": "fixed", "r": "random", "a": "full", "p": "progressive"}
_KINDS = ("fixed", "random", "full", "progressive")


@dataclass(frozen=True)
class SamplingStrategy:
    kind: str = "progressive"
    sample_size: Optional[int] = None

    @classmethod
    def parse(cls, text: Optional[str]) -> "SamplingStrategy":
        """Parse 'fixed', 'random:15', 'p', ... ; None gives progressive."""
        if not text:
            return cls()
        name, _, size = text.strip().lower().partition(":")
        name = _ALIASES.get(name, name)
        if name not in _KINDS:
            raise ValueError(f"Unknown sampling strategy '{text}'. Valid: {', '.join(_KINDS)}")
        n = None
        if size:
            try:
                n = int(size)
            except ValueError:
                raise ValueError(f"Sample size in '{text}' is not an integer")
            if not 1 <= n <= SETTLEMENT_PERIODS:
                raise ValueError(f"Sample size must be 1..{SETTLEMENT_PERIODS}, got {n}")
        return cls(kind=name, sample_size=n)

    def __str__(self):
        return self.kind if self.sample_size is None else f"{self.kind}:{self.sample_size}"

    def initial_periods(self, rng: random.Random, default_n: int) -> List[int]:
        if self.kind in ("fixed", "progressive"):
            return list(FIXED_PERIODS)
        if self.kind == "full":
            return list(ALL_PERIODS)
        n = min(self.sample_size or default_n, SETTLEMENT_PERIODS)
        return sorted(rng.sample(ALL_PERIODS, n))


def within_tolerance(a: float, b: float, tolerance: float) -> bool:
    """Relative comparison; two zeros always agree."""
    if a == b:
        return True
    return abs(a - b) <= tolerance * max(abs(a), abs(b))


def classify(db_count: int, api_count: int, db_volume: float, api_volume: float,
             db_payment: float, api_payment: float, tolerance: float) -> SliceStatus:
    if db_count == 0 and api_count == 0:
        return SliceStatus.match
    if db_count == 0:
        return SliceStatus.missing
    if api_count == 0:
        return SliceStatus.mismatch
    if (db_count == api_count
            and within_tolerance(db_volume, api_volume, tolerance)
            and within_tolerance(db_payment, api_payment, tolerance)):
        return SliceStatus.match
    return SliceStatus.mismatch


class Verifier:
    def __init__(self, client, store, settings: Settings, rng: Optional[random.Random] = None):
        self.client = client
        self.store = store
        self.tolerance = settings.verify_tolerance
        self.request_delay = settings.verify_request_delay
        self.random_samples = settings.random_sample_size
        self.progressive_samples = settings.progressive_extra_samples
        self.rng = rng or random.Random()
        self.mapping = getattr(client, "mapping", None)

    def check_period(self, settlement_date: date, period: int,
                     cancel: Optional[CancelToken] = None) -> SliceCheck:
        try:
            raw = self.client.fetch(settlement_date, period, cancel)
        except TransientFetchError as e:
            logger.warning("  P%d: fetch failed: %s", period, e)
            return SliceCheck(settlement_period=period, status=SliceStatus.error, error=str(e))

        api = normalize_records(settlement_date, period, raw, self.mapping)
        db = self.store.fetch_slice_records(settlement_date, period)

        check = SliceCheck(
            settlement_period=period,
            status=SliceStatus.match,
            db_records=len(db),
            api_records=len(api),
            db_volume=sum(r.volume for r in db),
            api_volume=sum(r.volume for r in api),
            db_payment=sum(r.payment for r in db),
            api_payment=sum(r.payment for r in api),
        )
        check.status = classify(check.db_records, check.api_records, check.db_volume,
                                check.api_volume, check.db_payment, check.api_payment,
                                self.tolerance)
        if check.status != SliceStatus.match:
            logger.info("  P%d: %s (db %d rec %.2f MWh £%.2f | api %d rec %.2f MWh £%.2f)",
                        period, check.status.value, check.db_records, check.db_volume,
                        check.db_payment, check.api_records, check.api_volume, check.api_payment)
        return check

    def _check_all(self, settlement_date: date, periods: Sequence[int],
                   cancel: CancelToken) -> List[SliceCheck]:
        checks = []
        for i, period in enumerate(periods):
            if i:
                cancel.sleep(self.request_delay)
            checks.append(self.check_period(settlement_date, period, cancel))
        return checks

    def verify(self, settlement_date: date, strategy=None,
               cancel: Optional[CancelToken] = None) -> VerificationVerdict:
        """Compare sampled periods of *settlement_date* with Elexon."""
        cancel = ensure_token(cancel)
        if not isinstance(strategy, SamplingStrategy):
            strategy = SamplingStrategy.parse(strategy)

        periods = strategy.initial_periods(self.rng, self.random_samples)
        logger.info("Verifying %s with %s sampling: periods %s", settlement_date, strategy, periods)
        checks = self._check_all(settlement_date, periods, cancel)

        if strategy.kind == "progressive" and any(
                c.status in (SliceStatus.missing, SliceStatus.mismatch) for c in checks):
            checked = {c.settlement_period for c in checks}
            remaining = [p for p in ALL_PERIODS if p not in checked]
            n = min(strategy.sample_size or self.progressive_samples, len(remaining))
            extra = sorted(self.rng.sample(remaining, n))
            logger.info("Problems found, escalating to %d more periods: %s", n, extra)
            cancel.sleep(self.request_delay)
            checks.extend(self._check_all(settlement_date, extra, cancel))

        verdict = VerificationVerdict(
            settlement_date=settlement_date, strategy=str(strategy), checks=checks,
        )
        if verdict.error_periods:
            logger.warning("%s: %d periods could not be fetched: %s", settlement_date,
                           len(verdict.error_periods), verdict.error_periods)
        logger.info("%s verification %s: %d checked, missing %s, mismatched %s",
                    settlement_date, "PASSED" if verdict.is_passing else "FAILED",
                    len(checks), verdict.missing_periods, verdict.mismatched_periods)
        return verdict
