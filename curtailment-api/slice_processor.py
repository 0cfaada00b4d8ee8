"""
One settlement period: fetch from Elexon, normalise, replace in the database.
"""

import logging
from collections import OrderedDict
from datetime import date
from typing import Iterable, List, Optional

from cancellation import CancelToken, ensure_token
from config import Settings
from errors import SliceProcessingError, TransientFetchError
from models import CurtailmentRecord, SliceResult
from reference_data import BmuMapping
from retry import retry_call

logger = logging.getLogger("curtailment.slice")


def _num(value, default=0.0) -> float:
    if value is None:
        return default
    return float(value)


def record_payment(raw: dict) -> float:
    """Payment magnitude: the supplied payment, else |volume| x price."""
    if raw.get("payment") is not None:
        return abs(_num(raw["payment"]))
    price = raw.get("originalPrice", raw.get("price"))
    return abs(abs(_num(raw.get("volume"))) * _num(price))


def normalize_records(settlement_date: date, period: int, raw_records: Iterable[dict],
                      mapping: Optional[BmuMapping] = None) -> List[CurtailmentRecord]:
    """Turn filtered Elexon stack entries into one record per BMU.

    A unit with several accepted actions in the same period (across the bid
    and offer stacks too) is merged into a single record: volumes and
    payments are summed, prices volume-weighted.
    """
    merged = OrderedDict()
    for raw in raw_records:
        bmu_id = raw.get("id")
        if not bmu_id:
            continue
        volume = abs(_num(raw.get("volume")))
        payment = record_payment(raw)
        price = _num(raw.get("originalPrice", raw.get("price")))
        final_price = _num(raw.get("finalPrice"), price)

        acc = merged.setdefault(bmu_id, {
            "volume": 0.0, "payment": 0.0, "price_x_vol": 0.0, "final_x_vol": 0.0,
            "first_price": price, "first_final": final_price,
            "so_flag": False, "cadl_flag": False,
            "lead_party": raw.get("leadPartyName"),
        })
        acc["volume"] += volume
        acc["payment"] += payment
        acc["price_x_vol"] += price * volume
        acc["final_x_vol"] += final_price * volume
        acc["so_flag"] = acc["so_flag"] or bool(raw.get("soFlag"))
        acc["cadl_flag"] = acc["cadl_flag"] or bool(raw.get("cadlFlag"))

    records = []
    for bmu_id in sorted(merged):
        acc = merged[bmu_id]
        vol = acc["volume"]
        lead_party = acc["lead_party"]
        if mapping is not None:
            lead_party = mapping.lead_party(bmu_id) or lead_party
        records.append(CurtailmentRecord(
            settlement_date=settlement_date,
            settlement_period=period,
            farm_id=bmu_id,
            lead_party_name=lead_party,
            volume=vol,
            payment=acc["payment"],
            original_price=acc["price_x_vol"] / vol if vol else acc["first_price"],
            final_price=acc["final_x_vol"] / vol if vol else acc["first_final"],
            so_flag=acc["so_flag"],
            cadl_flag=acc["cadl_flag"],
        ))
    return records


class SliceProcessor:
    def __init__(self, client, store, settings: Settings, mapping: Optional[BmuMapping] = None):
        self.client = client
        self.store = store
        self.max_attempts = 1 + settings.slice_max_retries
        self.retry_delay = settings.slice_retry_delay
        self.mapping = mapping if mapping is not None else getattr(client, "mapping", None)

    def process_slice(self, settlement_date: date, period: int,
                      cancel: Optional[CancelToken] = None) -> SliceResult:
        """Fetch and replace one settlement period.

        A period that still fails after its retries yields a zero result
        with failed=True; the error is logged, not raised.
        """
        cancel = ensure_token(cancel)
        try:
            raw = retry_call(
                lambda: self.client.fetch(settlement_date, period, cancel),
                attempts=self.max_attempts,
                delay=self.retry_delay,
                retryable=lambda e: isinstance(e, TransientFetchError),
                cancel=cancel,
                label=f"{settlement_date} P{period}",
            )
        except TransientFetchError as e:
            failure = SliceProcessingError(settlement_date, period, self.max_attempts, e)
            logger.error("    %s", failure)
            return SliceResult(settlement_period=period, failed=True, error=str(failure))

        records = normalize_records(settlement_date, period, raw, self.mapping)
        self.store.replace_slice_records(settlement_date, period, records)

        volume = sum(r.volume for r in records)
        payment = sum(r.payment for r in records)
        if records:
            logger.info("    P%d: %d records, %.2f MWh, £%.2f", period, len(records), volume, payment)
        return SliceResult(
            settlement_period=period,
            record_count=len(records),
            volume=volume,
            payment=payment,
        )
