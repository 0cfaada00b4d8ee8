"""
Exception taxonomy for the reconciliation engine.

  TransientFetchError     network / timeout / bad response from Elexon; retried
  ThrottledError          HTTP 429; retried after the cooldown, indefinitely
  SliceProcessingError    one settlement period gave up after its retries
  DataIntegrityViolation  duplicate keys or a cascade level that does not sum
  PersistenceError        any other database failure
  ConfigurationError      missing reference data or bad settings; fatal
  RunCancelled            the caller's CancelToken fired or its deadline passed
"""


class TransientFetchError(Exception):
    """Raised when an Elexon request fails for a reason worth retrying."""
    pass


class ThrottledError(TransientFetchError):
    """Raised on HTTP 429 from Elexon."""
    pass


class SliceProcessingError(Exception):
    """A settlement period failed after exhausting its retries."""

    def __init__(self, settlement_date, period, attempts, cause):
        self.settlement_date = settlement_date
        self.period = period
        self.attempts = attempts
        self.cause = cause
        super().__init__(
            f"{settlement_date} P{period}: failed after {attempts} attempts: {cause}"
        )


class DataIntegrityViolation(Exception):
    """Raised when persisted data breaks a uniqueness or conservation rule."""
    pass


class PersistenceError(Exception):
    """Raised when the database rejects an operation for a non-integrity reason."""
    pass


class ConfigurationError(Exception):
    """Raised when configuration or reference data is missing or invalid."""
    pass


class RunCancelled(Exception):
    """Raised at a suspension point once the run has been cancelled."""
    pass
