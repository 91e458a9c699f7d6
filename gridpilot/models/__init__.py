"""Database models for GridPilot."""

from gridpilot.models.base import Base, get_task_session, session_factory
from gridpilot.models.domain import (
    DriverLicenseRecord,
    DriverSync,
    RaceResultRecord,
    ScheduleEntryRecord,
)

__all__ = [
    # Base
    "Base",
    "session_factory",
    "get_task_session",
    # Domain models
    "RaceResultRecord",
    "ScheduleEntryRecord",
    "DriverLicenseRecord",
    "DriverSync",
]
