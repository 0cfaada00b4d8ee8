"""
Pydantic models for the curtailment reconciliation engine and its API.
"""

from datetime import date
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, computed_field

from config import SETTLEMENT_PERIODS


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------

class CurtailmentRecord(BaseModel):
    settlement_date: date
    settlement_period: int = Field(..., ge=1, le=SETTLEMENT_PERIODS)
    farm_id: str = Field(..., min_length=1)
    lead_party_name: Optional[str] = None
    volume: float = Field(..., ge=0, description="MWh curtailed, magnitude")
    payment: float = Field(..., ge=0, description="GBP, magnitude")
    original_price: float = 0.0
    final_price: float = 0.0
    so_flag: bool = False
    cadl_flag: bool = False


class DerivedMetricRecord(BaseModel):
    settlement_date: date
    settlement_period: int = Field(..., ge=1, le=SETTLEMENT_PERIODS)
    farm_id: str
    miner_model: str
    bitcoin_mined: float = Field(..., ge=0)
    difficulty: float = Field(..., gt=0)


class DaySummary(BaseModel):
    summary_date: date
    total_curtailed_energy: float
    total_payment: float
    total_records: int = 0
    periods_processed: int = 0


class PeriodSummary(BaseModel):
    """Monthly ('2024-03') or yearly ('2024') curtailment totals."""
    period_key: str
    total_curtailed_energy: float
    total_payment: float


# ---------------------------------------------------------------------------
# Ingestion results
# ---------------------------------------------------------------------------

class SliceResult(BaseModel):
    settlement_period: int
    record_count: int = 0
    volume: float = 0.0
    payment: float = 0.0
    failed: bool = False
    error: Optional[str] = None


class DayIngestResult(BaseModel):
    settlement_date: date
    total_records: int = 0
    periods_processed: int = 0
    total_volume: float = 0.0
    total_payment: float = 0.0
    failed_periods: List[int] = []

    @computed_field
    @property
    def completeness(self) -> float:
        return self.periods_processed / SETTLEMENT_PERIODS


class CascadeTotals(BaseModel):
    miner_model: str
    difficulty: float
    records: int
    day_total: float
    month_total: float
    year_total: float


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------

class SliceStatus(str, Enum):
    match = "match"
    mismatch = "mismatch"
    missing = "missing"
    error = "error"


class SliceCheck(BaseModel):
    settlement_period: int
    status: SliceStatus
    db_records: int = 0
    api_records: int = 0
    db_volume: float = 0.0
    api_volume: float = 0.0
    db_payment: float = 0.0
    api_payment: float = 0.0
    error: Optional[str] = None


class VerificationVerdict(BaseModel):
    settlement_date: date
    strategy: str
    checks: List[SliceCheck] = []

    def _periods(self, status: SliceStatus) -> List[int]:
        return sorted(c.settlement_period for c in self.checks if c.status == status)

    @computed_field
    @property
    def is_passing(self) -> bool:
        return all(c.status == SliceStatus.match
                   for c in self.checks if c.status != SliceStatus.error)

    @computed_field
    @property
    def classified(self) -> int:
        """Checks that reached Elexon (anything but error)."""
        return sum(1 for c in self.checks if c.status != SliceStatus.error)

    @computed_field
    @property
    def mismatched_periods(self) -> List[int]:
        return self._periods(SliceStatus.mismatch)

    @computed_field
    @property
    def missing_periods(self) -> List[int]:
        return self._periods(SliceStatus.missing)

    @computed_field
    @property
    def error_periods(self) -> List[int]:
        return self._periods(SliceStatus.error)

    def check_for(self, period: int) -> Optional[SliceCheck]:
        for c in self.checks:
            if c.settlement_period == period:
                return c
        return None


# ---------------------------------------------------------------------------
# Repair
# ---------------------------------------------------------------------------

class RepairMode(str, Enum):
    verify = "verify"
    fix = "fix"
    force_fix = "force-fix"


class DaySnapshot(BaseModel):
    """What the database holds for one date."""
    record_count: int = 0
    periods_covered: int = 0
    total_volume: float = 0.0
    total_payment: float = 0.0
    periods_present: List[int] = []


class SnapshotDiff(BaseModel):
    records: int
    periods: int
    volume: float
    payment: float


class RepairResult(BaseModel):
    settlement_date: date
    mode: RepairMode
    strategy: str
    initial_state: DaySnapshot
    final_state: Optional[DaySnapshot] = None
    verification: Optional[VerificationVerdict] = None
    post_verification: Optional[VerificationVerdict] = None
    repair_needed: bool = False
    repair_success: Optional[bool] = None
    ingest: Optional[DayIngestResult] = None
    cascade: Dict[str, CascadeTotals] = {}
    error: Optional[str] = None
    elapsed_seconds: float = 0.0

    @computed_field
    @property
    def diff(self) -> Optional[SnapshotDiff]:
        if self.final_state is None:
            return None
        return SnapshotDiff(
            records=self.final_state.record_count - self.initial_state.record_count,
            periods=self.final_state.periods_covered - self.initial_state.periods_covered,
            volume=self.final_state.total_volume - self.initial_state.total_volume,
            payment=self.final_state.total_payment - self.initial_state.total_payment,
        )

    @computed_field
    @property
    def passed(self) -> bool:
        if self.error:
            return False
        if self.repair_needed:
            if not self.repair_success:
                return False
            if self.ingest is not None and self.ingest.failed_periods:
                return False
            if self.post_verification is not None:
                # a re-check that only hit transport errors proves nothing
                return self.post_verification.classified > 0 and self.post_verification.is_passing
            return True
        return self.verification is None or self.verification.is_passing

    @property
    def verdict(self) -> str:
        return "PASS" if self.passed else "FAIL"


# ---------------------------------------------------------------------------
# Breakdowns
# ---------------------------------------------------------------------------

class LeadPartyCurtailment(BaseModel):
    lead_party_name: str
    farm_count: int
    record_count: int
    total_curtailed_energy: float
    total_payment: float


class FarmCurtailment(BaseModel):
    farm_id: str
    lead_party_name: str
    periods: int
    total_curtailed_energy: float
    total_payment: float
    bitcoin: Dict[str, float] = {}


class CalculationStatus(BaseModel):
    settlement_date: date
    curtailment_records: int
    calculations: Dict[str, int]

    @computed_field
    @property
    def complete(self) -> bool:
        return all(n == self.curtailment_records for n in self.calculations.values())
