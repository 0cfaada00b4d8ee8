"""
Read-only HTTP API over curtailment and mining summaries.

Endpoints:
  GET /api/health
  GET /api/summary/daily/{date}           curtailment + BTC per miner model
  GET /api/summary/monthly/{year_month}   e.g. 2025-03
  GET /api/summary/yearly/{year}          e.g. 2025
  GET /api/lead-parties/{date}            curtailment per lead party
  GET /api/curtailment/farms/{date}       per farm, with BTC per miner model
  GET /api/reconciliation/status?start=&end=

Run:
    uvicorn summary_api:app --port 8200
    python3 summary_api.py
"""

import logging
import re
from datetime import date, timedelta
from typing import Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query

from config import load_settings

logger = logging.getLogger("curtailment.api")

MAX_STATUS_DAYS = 366

_store = None
_settings = None


def get_settings():
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def get_store():
    global _store
    if _store is None:
        from engine import build_store
        _store = build_store(get_settings())
    return _store


def get_miner_models():
    return list(get_settings().miner_models)


router = APIRouter(prefix="/api", tags=["summary"])


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/summary/daily/{summary_date}")
def daily_summary(summary_date: date, store=Depends(get_store)):
    summary = store.get_day_summary(summary_date)
    if summary is None:
        raise HTTPException(status_code=404, detail=f"No summary for {summary_date}")
    return {
        **summary.model_dump(mode="json"),
        "bitcoin": store.get_metric_totals("day", summary_date),
    }


@router.get("/summary/monthly/{year_month}")
def monthly_summary(year_month: str, store=Depends(get_store)):
    if not re.fullmatch(r"\d{4}-(0[1-9]|1[0-2])", year_month):
        raise HTTPException(status_code=400, detail="year_month must be YYYY-MM")
    summary = store.get_period_summary("month", year_month)
    if summary is None:
        raise HTTPException(status_code=404, detail=f"No summary for {year_month}")
    return {
        **summary.model_dump(mode="json"),
        "bitcoin": store.get_metric_totals("month", year_month),
    }


@router.get("/summary/yearly/{year}")
def yearly_summary(year: str, store=Depends(get_store)):
    if not re.fullmatch(r"\d{4}", year):
        raise HTTPException(status_code=400, detail="year must be YYYY")
    summary = store.get_period_summary("year", year)
    if summary is None:
        raise HTTPException(status_code=404, detail=f"No summary for {year}")
    return {
        **summary.model_dump(mode="json"),
        "bitcoin": store.get_metric_totals("year", year),
    }


@router.get("/lead-parties/{settlement_date}")
def curtailed_lead_parties(settlement_date: date, store=Depends(get_store)):
    """Lead parties with curtailment on a date, largest volume first."""
    parties = store.lead_party_breakdown(settlement_date)
    parties.sort(key=lambda p: (-p.total_curtailed_energy, p.lead_party_name))
    return [p.model_dump(mode="json") for p in parties]


@router.get("/curtailment/farms/{settlement_date}")
def farm_curtailment(
    settlement_date: date,
    lead_party: Optional[str] = Query(None, description="Only farms of this lead party"),
    store=Depends(get_store),
):
    farms = store.farm_breakdown(settlement_date)
    if lead_party:
        farms = [f for f in farms if f.lead_party_name == lead_party]
    return [f.model_dump(mode="json") for f in farms]


@router.get("/reconciliation/status")
def reconciliation_status(
    start: date = Query(..., description="First settlement date"),
    end: Optional[date] = Query(None, description="Last settlement date (default: start)"),
    store=Depends(get_store),
    miner_models=Depends(get_miner_models),
):
    """Dates with curtailment records and how many mining calculations each has."""
    end = end or start
    if end < start:
        raise HTTPException(status_code=400, detail="end is before start")
    if end - start > timedelta(days=MAX_STATUS_DAYS):
        raise HTTPException(status_code=400, detail=f"range is limited to {MAX_STATUS_DAYS} days")

    statuses = store.calculation_status(start, end, miner_models)
    incomplete = [s for s in statuses if not s.complete]
    return {
        "start": start.isoformat(),
        "end": end.isoformat(),
        "dates_with_data": len(statuses),
        "incomplete": len(incomplete),
        "dates": [s.model_dump(mode="json") for s in statuses],
    }


app = FastAPI(title="Curtailment Summary API")
app.include_router(router)


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    uvicorn.run(app, host="0.0.0.0", port=get_settings().api_port)
