"""
Bitcoin mining potential of curtailed energy.

compute() is a pure function of (energy, miner model, network difficulty,
date). The miner models and the block-reward halving schedule are tables;
nothing else in the codebase should carry these constants.
"""

import bisect
from dataclasses import dataclass
from datetime import date
from typing import Dict, List, Tuple


@dataclass(frozen=True)
class MinerProfile:
    name: str
    hashrate: float          # H/s
    power_watts: float


PROFILES: Dict[str, MinerProfile] = {
    "S19J_PRO": MinerProfile("S19J_PRO", hashrate=100e12, power_watts=3050),
    "S9": MinerProfile("S9", hashrate=13.5e12, power_watts=1350),
    "M20S": MinerProfile("M20S", hashrate=68e12, power_watts=3360),
}

# (first day in effect, block reward in BTC)
HALVING_SCHEDULE: List[Tuple[date, float]] = [
    (date(2009, 1, 3), 50.0),
    (date(2012, 11, 28), 25.0),
    (date(2016, 7, 9), 12.5),
    (date(2020, 5, 11), 6.25),
    (date(2024, 4, 20), 3.125),
]

_HALVING_DATES = [d for d, _ in HALVING_SCHEDULE]


def block_reward(as_of: date) -> float:
    """Block subsidy in effect on *as_of*."""
    idx = bisect.bisect_right(_HALVING_DATES, as_of) - 1
    if idx < 0:
        raise ValueError(f"No block reward before {_HALVING_DATES[0]}")
    return HALVING_SCHEDULE[idx][1]


def get_profile(name: str) -> MinerProfile:
    profile = PROFILES.get(name)
    if profile is None:
        raise ValueError(f"Unknown miner model '{name}'. Valid: {sorted(PROFILES)}")
    return profile


def compute(volume_mwh: float, miner_model: str, difficulty: float, as_of: date) -> float:
    """Bitcoin that *volume_mwh* of energy would have mined on *as_of*.

    The energy runs one miner of the given model for
    volume / power seconds; expected hashes per block found are
    difficulty * 2**32.
    """
    if volume_mwh < 0:
        raise ValueError("volume must be non-negative")
    if difficulty <= 0:
        raise ValueError("difficulty must be positive")
    profile = get_profile(miner_model)
    if volume_mwh == 0:
        return 0.0
    seconds = volume_mwh * 1_000_000 / profile.power_watts * 3600
    hashes = profile.hashrate * seconds
    return hashes / (difficulty * 2 ** 32) * block_reward(as_of)
