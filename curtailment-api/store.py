"""
Persistence for curtailment records, derived mining metrics and every
aggregate level.

All writes are delete-then-insert on the exact replace scope (period, day,
month, year), inside one transaction, so rows of a unit that disappeared
upstream never survive a re-run. Aggregates are recomputed by the database
(INSERT ... SELECT SUM) from the level below.

Tables:
  curtailment_records              one row per (date, period, farm_id)
  daily_summaries                  curtailment totals per date
  monthly_summaries                curtailment totals per YYYY-MM
  yearly_summaries                 curtailment totals per YYYY
  historical_bitcoin_calculations  one row per (date, period, farm_id, miner_model)
  bitcoin_daily_summaries          per (date, miner_model)
  bitcoin_monthly_summaries        per (YYYY-MM, miner_model)
  bitcoin_yearly_summaries         per (YYYY, miner_model)
  network_difficulty               difficulty by effective date
"""

import logging
import math
from contextlib import contextmanager
from datetime import date
from typing import Dict, Iterable, List, Optional

import psycopg2
import psycopg2.extras
from psycopg2 import errors as pg_errors

from errors import DataIntegrityViolation, PersistenceError
from models import (
    CalculationStatus,
    CurtailmentRecord,
    DaySnapshot,
    DaySummary,
    DerivedMetricRecord,
    FarmCurtailment,
    LeadPartyCurtailment,
    PeriodSummary,
)

logger = logging.getLogger("curtailment.store")

LEVELS = ("day", "month", "year")
UNKNOWN_LEAD_PARTY = "Unknown"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS curtailment_records (
    id                 BIGSERIAL PRIMARY KEY,
    settlement_date    DATE        NOT NULL,
    settlement_period  SMALLINT    NOT NULL CHECK (settlement_period BETWEEN 1 AND 48),
    farm_id            TEXT        NOT NULL,
    lead_party_name    TEXT,
    volume             NUMERIC     NOT NULL CHECK (volume >= 0),
    payment            NUMERIC     NOT NULL CHECK (payment >= 0),
    original_price     NUMERIC     NOT NULL DEFAULT 0,
    final_price        NUMERIC     NOT NULL DEFAULT 0,
    so_flag            BOOLEAN     NOT NULL DEFAULT FALSE,
    cadl_flag          BOOLEAN     NOT NULL DEFAULT FALSE,
    created_at         TIMESTAMPTZ NOT NULL DEFAULT now(),
    UNIQUE (settlement_date, settlement_period, farm_id)
);

CREATE TABLE IF NOT EXISTS daily_summaries (
    summary_date            DATE PRIMARY KEY,
    total_curtailed_energy  NUMERIC     NOT NULL,
    total_payment           NUMERIC     NOT NULL,
    total_records           INTEGER     NOT NULL DEFAULT 0,
    periods_processed       SMALLINT    NOT NULL DEFAULT 0,
    updated_at              TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS monthly_summaries (
    year_month              CHAR(7) PRIMARY KEY,
    total_curtailed_energy  NUMERIC     NOT NULL,
    total_payment           NUMERIC     NOT NULL,
    updated_at              TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS yearly_summaries (
    year                    CHAR(4) PRIMARY KEY,
    total_curtailed_energy  NUMERIC     NOT NULL,
    total_payment           NUMERIC     NOT NULL,
    updated_at              TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS historical_bitcoin_calculations (
    id                 BIGSERIAL PRIMARY KEY,
    settlement_date    DATE        NOT NULL,
    settlement_period  SMALLINT    NOT NULL,
    farm_id            TEXT        NOT NULL,
    miner_model        TEXT        NOT NULL,
    bitcoin_mined      NUMERIC     NOT NULL,
    difficulty         NUMERIC     NOT NULL,
    calculated_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
    UNIQUE (settlement_date, settlement_period, farm_id, miner_model)
);

CREATE TABLE IF NOT EXISTS bitcoin_daily_summaries (
    summary_date   DATE    NOT NULL,
    miner_model    TEXT    NOT NULL,
    bitcoin_mined  NUMERIC NOT NULL,
    updated_at     TIMESTAMPTZ NOT NULL DEFAULT now(),
    UNIQUE (summary_date, miner_model)
);

CREATE TABLE IF NOT EXISTS bitcoin_monthly_summaries (
    year_month     CHAR(7) NOT NULL,
    miner_model    TEXT    NOT NULL,
    bitcoin_mined  NUMERIC NOT NULL,
    updated_at     TIMESTAMPTZ NOT NULL DEFAULT now(),
    UNIQUE (year_month, miner_model)
);

CREATE TABLE IF NOT EXISTS bitcoin_yearly_summaries (
    year           CHAR(4) NOT NULL,
    miner_model    TEXT    NOT NULL,
    bitcoin_mined  NUMERIC NOT NULL,
    updated_at     TIMESTAMPTZ NOT NULL DEFAULT now(),
    UNIQUE (year, miner_model)
);

CREATE TABLE IF NOT EXISTS network_difficulty (
    effective_date  DATE PRIMARY KEY,
    difficulty      NUMERIC NOT NULL CHECK (difficulty > 0)
);
"""

# level -> (table, key column, SQL summing the level below for one key and model)
_METRIC_LEVELS = {
    "day": (
        "bitcoin_daily_summaries", "summary_date",
        """SELECT COUNT(*), COALESCE(SUM(bitcoin_mined), 0)
           FROM historical_bitcoin_calculations
           WHERE settlement_date = %s AND miner_model = %s""",
    ),
    "month": (
        "bitcoin_monthly_summaries", "year_month",
        """SELECT COUNT(*), COALESCE(SUM(bitcoin_mined), 0)
           FROM bitcoin_daily_summaries
           WHERE TO_CHAR(summary_date, 'YYYY-MM') = %s AND miner_model = %s""",
    ),
    "year": (
        "bitcoin_yearly_summaries", "year",
        """SELECT COUNT(*), COALESCE(SUM(bitcoin_mined), 0)
           FROM bitcoin_monthly_summaries
           WHERE LEFT(year_month, 4) = %s AND miner_model = %s""",
    ),
}


def _f(value) -> float:
    return float(value) if value is not None else 0.0


def _cascade_lock_key(key, miner_model: str) -> str:
    """Advisory lock name shared by every aggregate level of one year."""
    return f"bitcoin_cascade:{str(key)[:4]}:{miner_model}"


class CurtailmentStore:
    def __init__(self, connect):
        """*connect* is a zero-argument callable returning a context manager
        that yields a psycopg2 connection (db.get_connection)."""
        self._connect = connect

    @contextmanager
    def _transaction(self):
        with self._connect() as conn:
            cur = conn.cursor()
            try:
                yield cur
                conn.commit()
            except pg_errors.UniqueViolation as e:
                conn.rollback()
                raise DataIntegrityViolation(f"Duplicate key: {e}") from e
            except psycopg2.Error as e:
                conn.rollback()
                raise PersistenceError(str(e)) from e
            except Exception:
                conn.rollback()
                raise
            finally:
                cur.close()

    def init_schema(self):
        """Create tables if they don't exist."""
        with self._transaction() as cur:
            cur.execute(SCHEMA_SQL)
        logger.info("Schema ready")

    # ------------------------------------------------------------------
    # Curtailment records
    # ------------------------------------------------------------------

    def replace_slice_records(self, settlement_date: date, period: int,
                              records: List[CurtailmentRecord]):
        rows = [
            (r.settlement_date, r.settlement_period, r.farm_id, r.lead_party_name,
             r.volume, r.payment, r.original_price, r.final_price, r.so_flag, r.cadl_flag)
            for r in records
        ]
        with self._transaction() as cur:
            cur.execute("""
                DELETE FROM curtailment_records
                WHERE settlement_date = %s AND settlement_period = %s
            """, (settlement_date, period))
            if rows:
                psycopg2.extras.execute_batch(cur, """
                    INSERT INTO curtailment_records
                        (settlement_date, settlement_period, farm_id, lead_party_name,
                         volume, payment, original_price, final_price, so_flag, cadl_flag)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """, rows, page_size=500)

    def delete_day_records(self, settlement_date: date) -> int:
        with self._transaction() as cur:
            cur.execute("DELETE FROM curtailment_records WHERE settlement_date = %s",
                        (settlement_date,))
            return cur.rowcount

    def _select_records(self, where: str, params) -> List[CurtailmentRecord]:
        with self._transaction() as cur:
            cur.execute(f"""
                SELECT settlement_date, settlement_period, farm_id, lead_party_name,
                       volume, payment, original_price, final_price, so_flag, cadl_flag
                FROM curtailment_records
                WHERE {where}
                ORDER BY settlement_period, farm_id
            """, params)
            rows = cur.fetchall()
        return [
            CurtailmentRecord(
                settlement_date=r[0], settlement_period=r[1], farm_id=r[2],
                lead_party_name=r[3], volume=_f(r[4]), payment=_f(r[5]),
                original_price=_f(r[6]), final_price=_f(r[7]),
                so_flag=bool(r[8]), cadl_flag=bool(r[9]),
            )
            for r in rows
        ]

    def fetch_slice_records(self, settlement_date: date, period: int) -> List[CurtailmentRecord]:
        return self._select_records("settlement_date = %s AND settlement_period = %s",
                                    (settlement_date, period))

    def fetch_day_records(self, settlement_date: date) -> List[CurtailmentRecord]:
        return self._select_records("settlement_date = %s", (settlement_date,))

    def count_duplicate_records(self, settlement_date: date) -> int:
        """Number of (period, farm_id) keys that appear more than once."""
        with self._transaction() as cur:
            cur.execute("""
                SELECT COUNT(*) FROM (
                    SELECT settlement_period, farm_id
                    FROM curtailment_records
                    WHERE settlement_date = %s
                    GROUP BY settlement_period, farm_id
                    HAVING COUNT(*) > 1
                ) dupes
            """, (settlement_date,))
            return int(cur.fetchone()[0])

    def day_snapshot(self, settlement_date: date) -> DaySnapshot:
        with self._transaction() as cur:
            cur.execute("""
                SELECT settlement_period, COUNT(*), COALESCE(SUM(volume), 0), COALESCE(SUM(payment), 0)
                FROM curtailment_records
                WHERE settlement_date = %s
                GROUP BY settlement_period
                ORDER BY settlement_period
            """, (settlement_date,))
            rows = cur.fetchall()
        return DaySnapshot(
            record_count=sum(int(r[1]) for r in rows),
            periods_covered=len(rows),
            total_volume=sum(_f(r[2]) for r in rows),
            total_payment=sum(_f(r[3]) for r in rows),
            periods_present=[int(r[0]) for r in rows],
        )

    def lead_party_breakdown(self, settlement_date: date) -> List[LeadPartyCurtailment]:
        with self._transaction() as cur:
            cur.execute("""
                SELECT COALESCE(lead_party_name, %s), COUNT(DISTINCT farm_id), COUNT(*),
                       COALESCE(SUM(volume), 0), COALESCE(SUM(payment), 0)
                FROM curtailment_records
                WHERE settlement_date = %s
                GROUP BY 1
                ORDER BY 1
            """, (UNKNOWN_LEAD_PARTY, settlement_date))
            rows = cur.fetchall()
        return [
            LeadPartyCurtailment(lead_party_name=r[0], farm_count=int(r[1]), record_count=int(r[2]),
                                 total_curtailed_energy=_f(r[3]), total_payment=_f(r[4]))
            for r in rows
        ]

    def farm_breakdown(self, settlement_date: date) -> List[FarmCurtailment]:
        """Per-farm curtailment for one date with bitcoin per miner model."""
        with self._transaction() as cur:
            cur.execute("""
                SELECT farm_id, COALESCE(MAX(lead_party_name), %s), COUNT(*),
                       COALESCE(SUM(volume), 0), COALESCE(SUM(payment), 0)
                FROM curtailment_records
                WHERE settlement_date = %s
                GROUP BY farm_id
                ORDER BY SUM(volume) DESC, farm_id
            """, (UNKNOWN_LEAD_PARTY, settlement_date))
            farms = cur.fetchall()
            cur.execute("""
                SELECT farm_id, miner_model, SUM(bitcoin_mined)
                FROM historical_bitcoin_calculations
                WHERE settlement_date = %s
                GROUP BY farm_id, miner_model
            """, (settlement_date,))
            bitcoin: Dict[str, Dict[str, float]] = {}
            for farm_id, model, btc in cur.fetchall():
                bitcoin.setdefault(farm_id, {})[model] = _f(btc)
        return [
            FarmCurtailment(farm_id=r[0], lead_party_name=r[1], periods=int(r[2]),
                            total_curtailed_energy=_f(r[3]), total_payment=_f(r[4]),
                            bitcoin=bitcoin.get(r[0], {}))
            for r in farms
        ]

    # ------------------------------------------------------------------
    # Curtailment summaries
    # ------------------------------------------------------------------

    def replace_day_summary(self, summary: DaySummary):
        with self._transaction() as cur:
            cur.execute("DELETE FROM daily_summaries WHERE summary_date = %s",
                        (summary.summary_date,))
            cur.execute("""
                INSERT INTO daily_summaries
                    (summary_date, total_curtailed_energy, total_payment,
                     total_records, periods_processed)
                VALUES (%s, %s, %s, %s, %s)
            """, (summary.summary_date, summary.total_curtailed_energy, summary.total_payment,
                  summary.total_records, summary.periods_processed))

    def rebuild_monthly_summary(self, year_month: str) -> Optional[PeriodSummary]:
        with self._transaction() as cur:
            cur.execute("DELETE FROM monthly_summaries WHERE year_month = %s", (year_month,))
            cur.execute("""
                INSERT INTO monthly_summaries (year_month, total_curtailed_energy, total_payment)
                SELECT %s, SUM(total_curtailed_energy), SUM(total_payment)
                FROM daily_summaries
                WHERE TO_CHAR(summary_date, 'YYYY-MM') = %s
                HAVING COUNT(*) > 0
                RETURNING total_curtailed_energy, total_payment
            """, (year_month, year_month))
            row = cur.fetchone()
        if row is None:
            return None
        return PeriodSummary(period_key=year_month, total_curtailed_energy=_f(row[0]),
                             total_payment=_f(row[1]))

    def rebuild_yearly_summary(self, year: str) -> Optional[PeriodSummary]:
        with self._transaction() as cur:
            cur.execute("DELETE FROM yearly_summaries WHERE year = %s", (year,))
            cur.execute("""
                INSERT INTO yearly_summaries (year, total_curtailed_energy, total_payment)
                SELECT %s, SUM(total_curtailed_energy), SUM(total_payment)
                FROM monthly_summaries
                WHERE LEFT(year_month, 4) = %s
                HAVING COUNT(*) > 0
                RETURNING total_curtailed_energy, total_payment
            """, (year, year))
            row = cur.fetchone()
        if row is None:
            return None
        return PeriodSummary(period_key=year, total_curtailed_energy=_f(row[0]),
                             total_payment=_f(row[1]))

    def get_day_summary(self, summary_date: date) -> Optional[DaySummary]:
        with self._transaction() as cur:
            cur.execute("""
                SELECT summary_date, total_curtailed_energy, total_payment,
                       total_records, periods_processed
                FROM daily_summaries WHERE summary_date = %s
            """, (summary_date,))
            row = cur.fetchone()
        if row is None:
            return None
        return DaySummary(summary_date=row[0], total_curtailed_energy=_f(row[1]),
                          total_payment=_f(row[2]), total_records=int(row[3]),
                          periods_processed=int(row[4]))

    def get_period_summary(self, level: str, key: str) -> Optional[PeriodSummary]:
        if level == "month":
            sql = """SELECT total_curtailed_energy, total_payment
                     FROM monthly_summaries WHERE year_month = %s"""
        elif level == "year":
            sql = """SELECT total_curtailed_energy, total_payment
                     FROM yearly_summaries WHERE year = %s"""
        else:
            raise ValueError(f"Unknown summary level '{level}'")
        with self._transaction() as cur:
            cur.execute(sql, (key,))
            row = cur.fetchone()
        if row is None:
            return None
        return PeriodSummary(period_key=key, total_curtailed_energy=_f(row[0]),
                             total_payment=_f(row[1]))

    # ------------------------------------------------------------------
    # Derived mining metrics
    # ------------------------------------------------------------------

    def replace_derived_records(self, settlement_date: date, rows: Iterable[DerivedMetricRecord]):
        batch = [
            (r.settlement_date, r.settlement_period, r.farm_id, r.miner_model,
             r.bitcoin_mined, r.difficulty)
            for r in rows
        ]
        with self._transaction() as cur:
            cur.execute("DELETE FROM historical_bitcoin_calculations WHERE settlement_date = %s",
                        (settlement_date,))
            if batch:
                psycopg2.extras.execute_batch(cur, """
                    INSERT INTO historical_bitcoin_calculations
                        (settlement_date, settlement_period, farm_id, miner_model,
                         bitcoin_mined, difficulty)
                    VALUES (%s, %s, %s, %s, %s, %s)
                """, batch, page_size=500)

    def fetch_derived_records(self, settlement_date: date) -> List[DerivedMetricRecord]:
        with self._transaction() as cur:
            cur.execute("""
                SELECT settlement_date, settlement_period, farm_id, miner_model,
                       bitcoin_mined, difficulty
                FROM historical_bitcoin_calculations
                WHERE settlement_date = %s
                ORDER BY settlement_period, farm_id, miner_model
            """, (settlement_date,))
            rows = cur.fetchall()
        return [
            DerivedMetricRecord(settlement_date=r[0], settlement_period=r[1], farm_id=r[2],
                                miner_model=r[3], bitcoin_mined=_f(r[4]), difficulty=_f(r[5]))
            for r in rows
        ]

    def rebuild_metric(self, level: str, key, miner_model: str) -> float:
        """Replace one aggregate row with the sum of the level below.

        *key* is a date for "day", "YYYY-MM" for "month", "YYYY" for "year".
        No children means no row and a total of 0.

        Delete, child sum, insert and the conservation check share one
        transaction under an advisory lock per (year, model), so rebuilds of
        other dates in the same month or year never interleave with it.
        Raises DataIntegrityViolation if the stored row differs from the sum
        of its children.
        """
        table, key_col, child_sql = _METRIC_LEVELS[level]
        with self._transaction() as cur:
            cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))",
                        (_cascade_lock_key(key, miner_model),))
            cur.execute(f"DELETE FROM {table} WHERE {key_col} = %s AND miner_model = %s",
                        (key, miner_model))
            cur.execute(child_sql, (key, miner_model))
            count, total = cur.fetchone()
            if not count:
                return 0.0
            cur.execute(f"""
                INSERT INTO {table} ({key_col}, miner_model, bitcoin_mined)
                VALUES (%s, %s, %s)
                RETURNING bitcoin_mined
            """, (key, miner_model, total))
            stored = _f(cur.fetchone()[0])
            cur.execute(child_sql, (key, miner_model))
            children = _f(cur.fetchone()[1])
            if not math.isclose(stored, children, rel_tol=1e-12, abs_tol=1e-15):
                raise DataIntegrityViolation(
                    f"{level} {key} {miner_model}: stored {stored!r} != sum of children {children!r}"
                )
            return stored

    def get_metric(self, level: str, key, miner_model: str) -> Optional[float]:
        table, key_col, _ = _METRIC_LEVELS[level]
        with self._transaction() as cur:
            cur.execute(f"SELECT bitcoin_mined FROM {table} WHERE {key_col} = %s AND miner_model = %s",
                        (key, miner_model))
            row = cur.fetchone()
        return _f(row[0]) if row else None

    def get_metric_totals(self, level: str, key) -> Dict[str, float]:
        table, key_col, _ = _METRIC_LEVELS[level]
        with self._transaction() as cur:
            cur.execute(f"""
                SELECT miner_model, bitcoin_mined FROM {table}
                WHERE {key_col} = %s ORDER BY miner_model
            """, (key,))
            return {r[0]: _f(r[1]) for r in cur.fetchall()}

    # ------------------------------------------------------------------
    # Network difficulty / status
    # ------------------------------------------------------------------

    def lookup_difficulty(self, as_of: date) -> Optional[float]:
        """Difficulty effective on *as_of* (latest adjustment on or before it)."""
        with self._transaction() as cur:
            cur.execute("""
                SELECT difficulty FROM network_difficulty
                WHERE effective_date <= %s
                ORDER BY effective_date DESC
                LIMIT 1
            """, (as_of,))
            row = cur.fetchone()
        return _f(row[0]) if row else None

    def calculation_status(self, start: date, end: date,
                           miner_models: Iterable[str]) -> List[CalculationStatus]:
        """Record count vs. derived-row count per model for each date with records."""
        models = list(miner_models)
        with self._transaction() as cur:
            cur.execute("""
                SELECT settlement_date, COUNT(*)
                FROM curtailment_records
                WHERE settlement_date BETWEEN %s AND %s
                GROUP BY settlement_date
                ORDER BY settlement_date
            """, (start, end))
            records = cur.fetchall()
            cur.execute("""
                SELECT settlement_date, miner_model, COUNT(*)
                FROM historical_bitcoin_calculations
                WHERE settlement_date BETWEEN %s AND %s
                GROUP BY settlement_date, miner_model
            """, (start, end))
            calcs: Dict[date, Dict[str, int]] = {}
            for d, model, n in cur.fetchall():
                calcs.setdefault(d, {})[model] = int(n)

        return [
            CalculationStatus(
                settlement_date=d,
                curtailment_records=int(n),
                calculations={m: calcs.get(d, {}).get(m, 0) for m in models},
            )
            for d, n in records
        ]
