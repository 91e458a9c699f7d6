"""Domain exceptions for GridPilot."""


class GridPilotError(Exception):
    """Base class for all GridPilot errors."""


class DataUnavailable(GridPilotError):
    """The performance store could not be reached. Retryable."""

    def __init__(self, message: str, *, driver_id: str | None = None):
        super().__init__(message)
        self.driver_id = driver_id


class InvalidOpportunity(GridPilotError):
    """A candidate opportunity is missing required identifiers."""

    def __init__(self, message: str, *, opportunity_key: str | None = None):
        super().__init__(message)
        self.opportunity_key = opportunity_key


class ComputationTimeout(GridPilotError):
    """A caller gave up waiting on an in-flight computation.

    The computation itself keeps running and will populate the cache.
    """

    def __init__(self, cache_key: str, timeout: float):
        super().__init__(f"Timed out after {timeout:.1f}s waiting for {cache_key}")
        self.cache_key = cache_key
        self.timeout = timeout


class CacheCorruption(GridPilotError):
    """A cache key was observed in a state it cannot legally be in."""

    def __init__(self, cache_key: str, message: str):
        super().__init__(f"{cache_key}: {message}")
        self.cache_key = cache_key
