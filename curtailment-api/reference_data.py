"""
BMU reference mapping: the wind-farm balancing mechanism units we track.

The mapping file is JSON, either a list of objects

    [{"elexonBmUnit": "T_ABRBO-1", "leadPartyName": "..."}, ...]

or an object keyed by BMU id whose values carry the same optional fields.
It is loaded once per process and cached per path.
"""

import json
import logging
import os
import threading
from dataclasses import dataclass
from typing import Dict, Optional

from errors import ConfigurationError

logger = logging.getLogger("curtailment.reference")


@dataclass(frozen=True)
class BmuInfo:
    bmu_id: str
    lead_party_name: Optional[str] = None


class BmuMapping:
    def __init__(self, units: Dict[str, BmuInfo], source: str = ""):
        self._units = dict(units)
        self.source = source

    def __contains__(self, bmu_id) -> bool:
        return bmu_id in self._units

    def __len__(self) -> int:
        return len(self._units)

    def get(self, bmu_id: str) -> Optional[BmuInfo]:
        return self._units.get(bmu_id)

    def lead_party(self, bmu_id: str) -> Optional[str]:
        info = self._units.get(bmu_id)
        return info.lead_party_name if info else None

    @property
    def ids(self) -> frozenset:
        return frozenset(self._units)


_cache: Dict[str, BmuMapping] = {}
_cache_lock = threading.Lock()


def _parse(payload, path: str) -> Dict[str, BmuInfo]:
    units: Dict[str, BmuInfo] = {}
    if isinstance(payload, dict):
        for bmu_id, meta in payload.items():
            meta = meta if isinstance(meta, dict) else {}
            units[str(bmu_id)] = BmuInfo(
                bmu_id=str(bmu_id),
                lead_party_name=meta.get("leadPartyName"),
            )
    elif isinstance(payload, list):
        for entry in payload:
            if not isinstance(entry, dict) or not entry.get("elexonBmUnit"):
                logger.warning("Skipping malformed BMU entry in %s: %r", path, entry)
                continue
            bmu_id = str(entry["elexonBmUnit"])
            units[bmu_id] = BmuInfo(
                bmu_id=bmu_id,
                lead_party_name=entry.get("leadPartyName"),
            )
    else:
        raise ConfigurationError(f"BMU mapping {path} must be a JSON list or object")
    return units


def load_bmu_mapping(path: str) -> BmuMapping:
    """Load (once) and return the BMU mapping at *path*.

    Raises ConfigurationError if the file is missing, unreadable, or holds
    no units.
    """
    key = os.path.abspath(path)
    with _cache_lock:
        cached = _cache.get(key)
        if cached is not None:
            return cached

        if not os.path.isfile(key):
            raise ConfigurationError(f"BMU mapping file not found: {path}")
        try:
            with open(key, encoding="utf-8") as fh:
                payload = json.load(fh)
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"Cannot read BMU mapping {path}: {e}") from e

        units = _parse(payload, path)
        if not units:
            raise ConfigurationError(f"BMU mapping {path} contains no units")

        mapping = BmuMapping(units, source=key)
        _cache[key] = mapping
        logger.info("Loaded %d BMUs from %s", len(mapping), path)
        return mapping


def clear_cache():
    with _cache_lock:
        _cache.clear()
