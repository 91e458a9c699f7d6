"""Performance store adapter for GridPilot.

The SQL implementation lives in ``gridpilot.services.store.sql`` and is
imported explicitly where a database is configured.
"""

from gridpilot.services.store.base import PerformanceStore
from gridpilot.services.store.memory import InMemoryPerformanceStore
from gridpilot.services.store.types import (
    Category,
    DriverLicense,
    LicenseLevel,
    Opportunity,
    RaceResult,
    RaceResultFilters,
    SessionType,
    TimeSlot,
    opportunity_key,
)

__all__ = [
    "PerformanceStore",
    "InMemoryPerformanceStore",
    "Category",
    "DriverLicense",
    "LicenseLevel",
    "Opportunity",
    "RaceResult",
    "RaceResultFilters",
    "SessionType",
    "TimeSlot",
    "opportunity_key",
]
