from __future__ import annotations

from contextlib import contextmanager
from datetime import date
from decimal import Decimal
from unittest import mock

import psycopg2
import pytest
from psycopg2 import errors as pg_errors

from errors import DataIntegrityViolation, PersistenceError
from models import CurtailmentRecord, DaySummary
from store import SCHEMA_SQL, CurtailmentStore


class _Cursor:
    def __init__(self, results=None, fail_on=None):
        self.executed = []
        self.results = list(results or [])
        self.fail_on = fail_on
        self.rowcount = 0

    def execute(self, sql, params=None):
        if self.fail_on and self.fail_on[0] in sql:
            raise self.fail_on[1]
        self.executed.append((" ".join(sql.split()), params))

    def fetchone(self):
        return self.results.pop(0)

    def fetchall(self):
        return self.results.pop(0)

    def close(self):
        pass


class _Connection:
    def __init__(self, cursor):
        self._cursor = cursor
        self.commits = 0
        self.rollbacks = 0

    def cursor(self):
        return self._cursor

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1


def _store(cursor):
    conn = _Connection(cursor)

    @contextmanager
    def connect():
        yield conn

    return CurtailmentStore(connect), conn


def _rec(period, farm, volume):
    return CurtailmentRecord(settlement_date=date(2025, 3, 14), settlement_period=period,
                             farm_id=farm, volume=volume, payment=volume * 10)


def test_replace_slice_deletes_then_batches_insert_in_one_transaction():
    cursor = _Cursor()
    store, conn = _store(cursor)

    with mock.patch("psycopg2.extras.execute_batch") as execute_batch:
        store.replace_slice_records(date(2025, 3, 14), 16, [_rec(16, "T_A", 1.0), _rec(16, "T_B", 2.0)])

    assert cursor.executed[0][0].startswith("DELETE FROM curtailment_records")
    assert cursor.executed[0][1] == (date(2025, 3, 14), 16)
    execute_batch.assert_called_once()
    _, sql, rows = execute_batch.call_args[0]
    assert "INSERT INTO curtailment_records" in sql
    assert [r[2] for r in rows] == ["T_A", "T_B"]
    assert execute_batch.call_args[1] == {"page_size": 500}
    assert (conn.commits, conn.rollbacks) == (1, 0)


def test_replace_slice_with_no_records_only_deletes():
    cursor = _Cursor()
    store, _ = _store(cursor)
    with mock.patch("psycopg2.extras.execute_batch") as execute_batch:
        store.replace_slice_records(date(2025, 3, 14), 3, [])
    execute_batch.assert_not_called()
    assert len(cursor.executed) == 1


def test_unique_violation_becomes_integrity_violation():
    cursor = _Cursor()
    store, conn = _store(cursor)
    with mock.patch("psycopg2.extras.execute_batch",
                    side_effect=pg_errors.UniqueViolation("duplicate key")):
        with pytest.raises(DataIntegrityViolation):
            store.replace_slice_records(date(2025, 3, 14), 16, [_rec(16, "T_A", 1.0)])
    assert (conn.commits, conn.rollbacks) == (0, 1)


def test_other_database_errors_become_persistence_errors():
    cursor = _Cursor(fail_on=("DELETE FROM daily_summaries", psycopg2.OperationalError("gone")))
    store, conn = _store(cursor)
    summary = DaySummary(summary_date=date(2025, 3, 14), total_curtailed_energy=1, total_payment=2)
    with pytest.raises(PersistenceError):
        store.replace_day_summary(summary)
    assert conn.rollbacks == 1


def test_rebuild_metric_replaces_with_sum_of_children_under_lock():
    cursor = _Cursor(results=[(3, Decimal("0.125")), (Decimal("0.125"),), (3, Decimal("0.125"))])
    store, conn = _store(cursor)

    total = store.rebuild_metric("month", "2025-03", "S9")

    assert total == 0.125
    statements = [sql for sql, _ in cursor.executed]
    assert statements[0] == "SELECT pg_advisory_xact_lock(hashtext(%s))"
    assert cursor.executed[0][1] == ("bitcoin_cascade:2025:S9",)
    assert statements[1].startswith("DELETE FROM bitcoin_monthly_summaries")
    assert "FROM bitcoin_daily_summaries" in statements[2]
    assert statements[3].startswith("INSERT INTO bitcoin_monthly_summaries")
    assert cursor.executed[3][1] == ("2025-03", "S9", Decimal("0.125"))
    assert "FROM bitcoin_daily_summaries" in statements[4]
    assert (conn.commits, conn.rollbacks) == (1, 0)


def test_every_level_of_a_year_shares_one_lock():
    keys = []
    for level, key in (("day", date(2025, 3, 14)), ("month", "2025-03"), ("year", "2025")):
        cursor = _Cursor(results=[(0, Decimal("0"))])
        store, _ = _store(cursor)
        store.rebuild_metric(level, key, "S9")
        keys.append(cursor.executed[0][1])
    assert keys == [("bitcoin_cascade:2025:S9",)] * 3


def test_rebuild_metric_that_does_not_sum_rolls_back():
    cursor = _Cursor(results=[(2, Decimal("1.0")), (Decimal("1.0"),), (3, Decimal("3.0"))])
    store, conn = _store(cursor)

    with pytest.raises(DataIntegrityViolation, match="month 2025-03 S9"):
        store.rebuild_metric("month", "2025-03", "S9")

    assert (conn.commits, conn.rollbacks) == (0, 1)


def test_rebuild_metric_without_children_writes_nothing():
    cursor = _Cursor(results=[(0, Decimal("0"))])
    store, _ = _store(cursor)
    assert store.rebuild_metric("year", "2025", "S9") == 0.0
    assert not any(sql.startswith("INSERT") for sql, _ in cursor.executed)


def test_breakdowns_group_by_lead_party_and_farm():
    d = date(2025, 3, 14)
    cursor = _Cursor(results=[
        [("Alpha Wind Ltd", 2, 5, Decimal("30"), Decimal("900")), ("Unknown", 1, 1, Decimal("2"), Decimal("40"))],
        [("T_ALPHA-1", "Alpha Wind Ltd", 3, Decimal("20"), Decimal("600"))],
        [("T_ALPHA-1", "S9", Decimal("0.001")), ("T_ALPHA-1", "S19J_PRO", Decimal("0.01"))],
    ])
    store, _ = _store(cursor)

    parties = store.lead_party_breakdown(d)
    assert [(p.lead_party_name, p.farm_count, p.total_payment) for p in parties] == [
        ("Alpha Wind Ltd", 2, 900.0), ("Unknown", 1, 40.0)]
    assert cursor.executed[0][1] == ("Unknown", d)

    [farm] = store.farm_breakdown(d)
    assert farm.periods == 3
    assert farm.bitcoin == {"S9": 0.001, "S19J_PRO": 0.01}


def test_day_snapshot_and_difficulty_lookup():
    cursor = _Cursor(results=[
        [(5, 2, Decimal("15.5"), Decimal("610")), (24, 1, Decimal("20"), Decimal("700"))],
        (Decimal("108105433845147"),),
        None,
    ])
    store, _ = _store(cursor)

    snapshot = store.day_snapshot(date(2025, 3, 14))
    assert (snapshot.record_count, snapshot.periods_covered) == (3, 2)
    assert snapshot.total_volume == 35.5
    assert snapshot.periods_present == [5, 24]

    assert store.lookup_difficulty(date(2025, 3, 14)) == 108105433845147.0
    assert store.lookup_difficulty(date(2009, 1, 1)) is None


def test_calculation_status_reports_every_model():
    d = date(2025, 3, 14)
    cursor = _Cursor(results=[[(d, 4)], [(d, "S9", 4)]])
    store, _ = _store(cursor)
    [status] = store.calculation_status(d, d, ["S19J_PRO", "S9"])
    assert status.calculations == {"S19J_PRO": 0, "S9": 4}
    assert not status.complete


def test_schema_declares_unique_keys():
    assert "UNIQUE (settlement_date, settlement_period, farm_id)" in SCHEMA_SQL
    assert "UNIQUE (settlement_date, settlement_period, farm_id, miner_model)" in SCHEMA_SQL
    for table in ("bitcoin_daily_summaries", "bitcoin_monthly_summaries", "bitcoin_yearly_summaries"):
        assert f"CREATE TABLE IF NOT EXISTS {table}" in SCHEMA_SQL
