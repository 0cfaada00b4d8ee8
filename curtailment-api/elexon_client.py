"""
Elexon BMRS client for the balancing settlement stack.

For one settlement date and period it issues the paired queries

    GET {base}/balancing/settlement/stack/all/bid/{date}/{period}
    GET {base}/balancing/settlement/stack/all/offer/{date}/{period}

and keeps only curtailment of tracked units: negative volume, a directed
flag (soFlag or cadlFlag), and a BMU id present in the reference mapping.

Throttling (HTTP 429) sleeps a fixed cooldown and retries without limit;
any other failure is raised as TransientFetchError for the caller to retry.
"""

import logging
from datetime import date
from typing import List, Optional

import requests

from cancellation import CancelToken, ensure_token
from config import SETTLEMENT_PERIODS, Settings
from errors import ThrottledError, TransientFetchError
from rate_limit import SlidingWindowLimiter
from reference_data import BmuMapping
from retry import retry_call

logger = logging.getLogger("curtailment.elexon")

STACK_SIDES = ("bid", "offer")


def is_curtailment(record: dict, mapping: BmuMapping) -> bool:
    try:
        volume = float(record.get("volume") or 0)
    except (TypeError, ValueError):
        return False
    if volume >= 0:
        return False
    if not (record.get("soFlag") or record.get("cadlFlag")):
        return False
    return record.get("id") in mapping


class ElexonClient:
    def __init__(self, settings: Settings, mapping: BmuMapping,
                 session: Optional[requests.Session] = None,
                 limiter: Optional[SlidingWindowLimiter] = None):
        self.base_url = settings.elexon_base_url.rstrip("/")
        self.timeout = settings.request_timeout
        self.throttle_cooldown = settings.throttle_cooldown_seconds
        self.mapping = mapping
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json"})
        self.limiter = limiter or SlidingWindowLimiter(
            settings.max_requests_per_window, settings.rate_window_seconds,
        )

    def close(self):
        self.session.close()

    def _get_stack(self, side: str, settlement_date: date, period: int,
                   cancel: CancelToken) -> list:
        url = f"{self.base_url}/balancing/settlement/stack/all/{side}/{settlement_date.isoformat()}/{period}"
        label = f"{side} {settlement_date} P{period}"

        def attempt():
            self.limiter.acquire(cancel)
            try:
                r = self.session.get(url, timeout=self.timeout)
            except requests.exceptions.RequestException as e:
                raise TransientFetchError(f"{label}: {e}") from e

            if r.status_code == 429:
                logger.warning("    HTTP 429 on %s, cooling down %.0fs", label, self.throttle_cooldown)
                raise ThrottledError(f"{label}: HTTP 429")
            if r.status_code >= 400:
                raise TransientFetchError(f"{label}: HTTP {r.status_code} {r.text[:200]}")

            try:
                body = r.json()
            except ValueError as e:
                raise TransientFetchError(f"{label}: invalid JSON: {e}") from e
            if not isinstance(body, dict) or not isinstance(body.get("data"), list):
                raise TransientFetchError(f"{label}: response has no 'data' list")
            return body["data"]

        return retry_call(
            attempt,
            attempts=None,
            delay=self.throttle_cooldown,
            retryable=lambda e: isinstance(e, ThrottledError),
            cancel=cancel,
            label=label,
        )

    def fetch(self, settlement_date: date, period: int,
              cancel: Optional[CancelToken] = None) -> List[dict]:
        """Curtailment records of tracked BMUs for one settlement period."""
        if not 1 <= period <= SETTLEMENT_PERIODS:
            raise ValueError(f"settlement period must be 1..{SETTLEMENT_PERIODS}, got {period}")
        cancel = ensure_token(cancel)

        kept = []
        for side in STACK_SIDES:
            raw = self._get_stack(side, settlement_date, period, cancel)
            kept.extend(r for r in raw if isinstance(r, dict) and is_curtailment(r, self.mapping))
        logger.debug("%s P%d: %d curtailment records", settlement_date, period, len(kept))
        return kept
