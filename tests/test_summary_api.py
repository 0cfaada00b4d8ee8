from __future__ import annotations

from datetime import date

import pytest
from fastapi.testclient import TestClient

import summary_api
from cascade import CascadeAggregator
from conftest import FakeStore
from day_ingestor import DayIngestor
from difficulty import DifficultyResolver
from models import CurtailmentRecord, DaySummary


@pytest.fixture
def populated():
    store = FakeStore()
    d = date(2025, 3, 14)
    store.records += [
        CurtailmentRecord(settlement_date=d, settlement_period=5, farm_id="T_ALPHA-1",
                          lead_party_name="Alpha Wind Ltd", volume=10.0, payment=500.0),
        CurtailmentRecord(settlement_date=d, settlement_period=6, farm_id="T_BRAVO-1",
                          volume=5.5, payment=110.0),
    ]
    store.replace_day_summary(DaySummary(summary_date=d, total_curtailed_energy=15.5,
                                         total_payment=610.0, total_records=2,
                                         periods_processed=2))
    store.rebuild_monthly_summary("2025-03")
    store.rebuild_yearly_summary("2025")
    CascadeAggregator(store, DifficultyResolver(store, 1e14)).recompute_cascade(d, ["S19J_PRO", "S9"])
    return store


@pytest.fixture
def client(populated):
    summary_api.app.dependency_overrides[summary_api.get_store] = lambda: populated
    summary_api.app.dependency_overrides[summary_api.get_miner_models] = lambda: ["S19J_PRO", "S9"]
    yield TestClient(summary_api.app)
    summary_api.app.dependency_overrides.clear()


def test_health(client):
    assert client.get("/api/health").json() == {"status": "ok"}


def test_daily_summary_includes_bitcoin_per_model(client, populated):
    body = client.get("/api/summary/daily/2025-03-14").json()
    assert body["total_curtailed_energy"] == 15.5
    assert body["total_payment"] == 610.0
    assert set(body["bitcoin"]) == {"S19J_PRO", "S9"}
    assert body["bitcoin"]["S9"] == populated.get_metric("day", date(2025, 3, 14), "S9")


def test_monthly_and_yearly_summaries(client):
    month = client.get("/api/summary/monthly/2025-03").json()
    year = client.get("/api/summary/yearly/2025").json()
    assert month["total_curtailed_energy"] == year["total_curtailed_energy"] == 15.5
    assert month["bitcoin"] == year["bitcoin"]


@pytest.mark.parametrize("path, status", [
    ("/api/summary/daily/2025-03-15", 404),
    ("/api/summary/daily/not-a-date", 422),
    ("/api/summary/monthly/2025-13", 400),
    ("/api/summary/monthly/2024-01", 404),
    ("/api/summary/yearly/25", 400),
])
def test_summary_errors(client, path, status):
    assert client.get(path).status_code == status


def test_reconciliation_status(client, populated):
    body = client.get("/api/reconciliation/status", params={"start": "2025-03-01",
                                                            "end": "2025-03-31"}).json()
    assert body["dates_with_data"] == 1
    assert body["incomplete"] == 0
    assert body["dates"][0]["calculations"] == {"S19J_PRO": 2, "S9": 2}

    populated.derived = [r for r in populated.derived if r.miner_model != "S9"]
    body = client.get("/api/reconciliation/status", params={"start": "2025-03-14"}).json()
    assert body["incomplete"] == 1
    assert body["dates"][0]["complete"] is False


def test_reconciliation_status_rejects_bad_range(client):
    r = client.get("/api/reconciliation/status", params={"start": "2025-03-10", "end": "2025-03-01"})
    assert r.status_code == 400


def test_lead_parties_for_a_date(client):
    body = client.get("/api/lead-parties/2025-03-14").json()
    assert [(p["lead_party_name"], p["total_curtailed_energy"]) for p in body] == [
        ("Alpha Wind Ltd", 10.0), ("Unknown", 5.5)]
    assert client.get("/api/lead-parties/2025-03-15").json() == []


def test_farm_breakdown_carries_bitcoin_per_model(client, populated):
    body = client.get("/api/curtailment/farms/2025-03-14").json()
    assert [f["farm_id"] for f in body] == ["T_ALPHA-1", "T_BRAVO-1"]
    alpha = body[0]
    assert alpha["lead_party_name"] == "Alpha Wind Ltd"
    assert set(alpha["bitcoin"]) == {"S19J_PRO", "S9"}
    assert sum(f["bitcoin"]["S9"] for f in body) == pytest.approx(
        populated.get_metric("day", date(2025, 3, 14), "S9"))

    only_alpha = client.get("/api/curtailment/farms/2025-03-14",
                            params={"lead_party": "Alpha Wind Ltd"}).json()
    assert [f["farm_id"] for f in only_alpha] == ["T_ALPHA-1"]
