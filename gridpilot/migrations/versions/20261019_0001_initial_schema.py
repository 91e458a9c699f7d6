"""Initial schema for GridPilot.

Revision ID: 0001
Revises:
Create Date: 2026-10-19

Creates the tables written by the sync workers and read by the
recommendation pipeline:
- race_results: one row per driver per subsession, every session type
- schedule_entries: one row per series race week
- driver_licenses: a driver's license per category
- driver_syncs: last successful sync per driver
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _sync_timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "ingested_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "race_results",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("driver_id", sa.String(length=50), nullable=False),
        sa.Column("subsession_id", sa.Integer(), nullable=False),
        sa.Column("series_id", sa.Integer(), nullable=False),
        sa.Column("series_name", sa.String(length=200), nullable=False),
        sa.Column("track_id", sa.Integer(), nullable=False),
        sa.Column("track_name", sa.String(length=200), nullable=False),
        sa.Column("category", sa.String(length=20), nullable=False),
        sa.Column(
            "session_type",
            sa.String(length=20),
            nullable=False,
            comment="'race', 'qualifying', 'practice' or 'time_trial'",
        ),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("start_position", sa.Integer(), nullable=True),
        sa.Column("finish_position", sa.Integer(), nullable=True),
        sa.Column("incidents", sa.Integer(), nullable=True, default=0),
        sa.Column("strength_of_field", sa.Integer(), nullable=True),
        sa.Column("race_length_minutes", sa.Float(), nullable=True),
        sa.Column("finished", sa.Boolean(), nullable=True, default=True),
        sa.Column("season_year", sa.Integer(), nullable=True),
        sa.Column("season_quarter", sa.Integer(), nullable=True),
        sa.Column("old_safety_rating", sa.Float(), nullable=True),
        sa.Column("new_safety_rating", sa.Float(), nullable=True),
        sa.Column("raw_data", sa.JSON(), nullable=True),
        *_sync_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "driver_id", "subsession_id", name="uq_race_result_driver_subsession"
        ),
    )
    op.create_index(
        "idx_race_results_driver_time", "race_results", ["driver_id", "start_time"]
    )
    op.create_index(
        "idx_race_results_series_track",
        "race_results",
        ["series_id", "track_id", "start_time"],
    )

    op.create_table(
        "schedule_entries",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("series_id", sa.Integer(), nullable=False),
        sa.Column("series_name", sa.String(length=200), nullable=False),
        sa.Column("track_id", sa.Integer(), nullable=False),
        sa.Column("track_name", sa.String(length=200), nullable=False),
        sa.Column("license_required", sa.String(length=10), nullable=False),
        sa.Column("category", sa.String(length=20), nullable=False),
        sa.Column("season_year", sa.Integer(), nullable=False),
        sa.Column("season_quarter", sa.Integer(), nullable=False),
        sa.Column("race_week", sa.Integer(), nullable=False),
        sa.Column("race_length_minutes", sa.Float(), nullable=False),
        sa.Column("has_open_setup", sa.Boolean(), nullable=True, default=False),
        sa.Column("week_start", sa.Date(), nullable=True),
        sa.Column("week_end", sa.Date(), nullable=True),
        sa.Column("time_slots", sa.JSON(), nullable=True, comment="ISO-8601 session start times"),
        *_sync_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "series_id",
            "season_year",
            "season_quarter",
            "race_week",
            name="uq_schedule_series_week",
        ),
    )
    op.create_index(
        "idx_schedule_season", "schedule_entries", ["season_year", "season_quarter"]
    )

    op.create_table(
        "driver_licenses",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("driver_id", sa.String(length=50), nullable=False),
        sa.Column("category", sa.String(length=20), nullable=False),
        sa.Column("level", sa.String(length=10), nullable=False),
        sa.Column("safety_rating", sa.Float(), nullable=True),
        sa.Column("irating", sa.Integer(), nullable=True),
        *_sync_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("driver_id", "category", name="uq_driver_license_category"),
    )

    op.create_table(
        "driver_syncs",
        sa.Column("driver_id", sa.String(length=50), nullable=False),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("races_synced", sa.Integer(), nullable=True, default=0),
        *_sync_timestamps(),
        sa.PrimaryKeyConstraint("driver_id"),
    )


def downgrade() -> None:
    op.drop_table("driver_syncs")
    op.drop_table("driver_licenses")
    op.drop_index("idx_schedule_season", table_name="schedule_entries")
    op.drop_table("schedule_entries")
    op.drop_index("idx_race_results_series_track", table_name="race_results")
    op.drop_index("idx_race_results_driver_time", table_name="race_results")
    op.drop_table("race_results")
