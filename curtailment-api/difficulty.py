"""
Network difficulty by date.
"""

import logging
from datetime import date

logger = logging.getLogger("curtailment.difficulty")


class DifficultyResolver:
    def __init__(self, store, default_difficulty: float):
        self.store = store
        self.default_difficulty = default_difficulty

    def resolve(self, as_of: date) -> float:
        """Difficulty in effect on *as_of*, or the configured default.

        Falling back is logged as a warning: every mining figure for the
        date is computed from this one value.
        """
        value = self.store.lookup_difficulty(as_of)
        if value is None or value <= 0:
            logger.warning("No network difficulty for %s, using default %.0f",
                           as_of, self.default_difficulty)
            return self.default_difficulty
        logger.info("Network difficulty for %s: %.0f", as_of, value)
        return value
