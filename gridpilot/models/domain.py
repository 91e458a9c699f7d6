"""Domain models for GridPilot.

These tables are owned by the sync process; the recommendation pipeline only
reads them through ``SqlPerformanceStore``. Columns hold the canonical shape
produced by ``gridpilot.services.store.normalize``.
"""

from datetime import date, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from gridpilot.models.base import Base, SyncTimestamps


class RaceResultRecord(Base, SyncTimestamps):
    """
    One driver's result in one subsession.

    Includes practice, qualifying and time-trial sessions; analytics only
    reads rows whose session_type is 'race'.
    """

    __tablename__ = "race_results"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    driver_id: Mapped[str] = mapped_column(String(50), nullable=False)
    subsession_id: Mapped[int] = mapped_column(Integer, nullable=False)
    series_id: Mapped[int] = mapped_column(Integer, nullable=False)
    series_name: Mapped[str] = mapped_column(String(200), nullable=False)
    track_id: Mapped[int] = mapped_column(Integer, nullable=False)
    track_name: Mapped[str] = mapped_column(String(200), nullable=False)
    category: Mapped[str] = mapped_column(String(20), nullable=False)
    session_type: Mapped[str] = mapped_column(String(20), nullable=False)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    start_position: Mapped[int | None] = mapped_column(Integer, nullable=True)
    finish_position: Mapped[int | None] = mapped_column(Integer, nullable=True)
    incidents: Mapped[int] = mapped_column(Integer, default=0)
    strength_of_field: Mapped[int | None] = mapped_column(Integer, nullable=True)
    race_length_minutes: Mapped[float | None] = mapped_column(Float, nullable=True)
    finished: Mapped[bool] = mapped_column(Boolean, default=True)
    season_year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    season_quarter: Mapped[int | None] = mapped_column(Integer, nullable=True)
    old_safety_rating: Mapped[float | None] = mapped_column(Float, nullable=True)
    new_safety_rating: Mapped[float | None] = mapped_column(Float, nullable=True)
    raw_data: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    __table_args__ = (
        UniqueConstraint("driver_id", "subsession_id", name="uq_race_result_driver_subsession"),
        Index("idx_race_results_driver_time", "driver_id", "start_time"),
        Index("idx_race_results_series_track", "series_id", "track_id", "start_time"),
    )

    def __repr__(self) -> str:
        return f"<RaceResult {self.driver_id} {self.subsession_id} ({self.session_type})>"


class ScheduleEntryRecord(Base, SyncTimestamps):
    """One race week of a series in a season."""

    __tablename__ = "schedule_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    series_id: Mapped[int] = mapped_column(Integer, nullable=False)
    series_name: Mapped[str] = mapped_column(String(200), nullable=False)
    track_id: Mapped[int] = mapped_column(Integer, nullable=False)
    track_name: Mapped[str] = mapped_column(String(200), nullable=False)
    license_required: Mapped[str] = mapped_column(String(10), nullable=False)
    category: Mapped[str] = mapped_column(String(20), nullable=False)
    season_year: Mapped[int] = mapped_column(Integer, nullable=False)
    season_quarter: Mapped[int] = mapped_column(Integer, nullable=False)
    race_week: Mapped[int] = mapped_column(Integer, nullable=False)
    race_length_minutes: Mapped[float] = mapped_column(Float, nullable=False)
    has_open_setup: Mapped[bool] = mapped_column(Boolean, default=False)
    week_start: Mapped[date | None] = mapped_column(Date, nullable=True)
    week_end: Mapped[date | None] = mapped_column(Date, nullable=True)
    time_slots: Mapped[list[str]] = mapped_column(
        JSON,
        default=list,
        doc="ISO-8601 session start times",
    )

    __table_args__ = (
        UniqueConstraint(
            "series_id", "season_year", "season_quarter", "race_week",
            name="uq_schedule_series_week",
        ),
        Index("idx_schedule_season", "season_year", "season_quarter"),
    )

    def __repr__(self) -> str:
        return f"<ScheduleEntry {self.series_name} @ {self.track_name} (week {self.race_week})>"


class DriverLicenseRecord(Base, SyncTimestamps):
    """A driver's license in one category."""

    __tablename__ = "driver_licenses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    driver_id: Mapped[str] = mapped_column(String(50), nullable=False)
    category: Mapped[str] = mapped_column(String(20), nullable=False)
    level: Mapped[str] = mapped_column(String(10), nullable=False)
    safety_rating: Mapped[float | None] = mapped_column(Float, nullable=True)
    irating: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        UniqueConstraint("driver_id", "category", name="uq_driver_license_category"),
    )


class DriverSync(Base, SyncTimestamps):
    """Sync bookkeeping per driver."""

    __tablename__ = "driver_syncs"

    driver_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    races_synced: Mapped[int] = mapped_column(Integer, default=0)
