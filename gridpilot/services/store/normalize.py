"""Provider payload normalization.

The racing-data provider has shipped the same concept under several field
names over time (start time, positions, strength of field, track). All of
that is resolved here so the rest of the system only ever sees the canonical
shapes from ``gridpilot.services.store.types``.
"""

from datetime import datetime, timezone
from typing import Any

import structlog

from gridpilot.services.store.types import (
    Category,
    DriverLicense,
    LicenseLevel,
    Opportunity,
    RaceResult,
    SessionType,
    TimeSlot,
)

logger = structlog.get_logger(__name__)

START_TIME_KEYS = ("start_time", "session_start_time", "event_start_time", "race_date")
FINISH_POSITION_KEYS = ("finish_position", "finish_pos", "finishPos", "finishing_position")
START_POSITION_KEYS = ("starting_position", "start_position", "start_pos")
STRENGTH_OF_FIELD_KEYS = ("event_strength_of_field", "strength_of_field", "sof")
TRACK_ID_KEYS = ("track_id", "track.track_id")
TRACK_NAME_KEYS = ("track_name", "track.track_name")
SERIES_NAME_KEYS = ("series_name", "season_name", "season_short_name")
CATEGORY_KEYS = ("category", "category_id", "license_category", "license_category_id")

# Provider event_type codes. Unrecognised codes are treated as races.
EVENT_TYPES = {
    2: SessionType.PRACTICE,
    3: SessionType.QUALIFYING,
    4: SessionType.TIME_TRIAL,
    5: SessionType.RACE,
}

WEEKDAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


def _lookup(payload: dict[str, Any], key: str) -> Any:
    """Resolve a possibly dotted key against nested dicts."""
    value: Any = payload
    for part in key.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def first_present(payload: dict[str, Any], keys: tuple[str, ...]) -> Any:
    """Return the first non-None value among alternate field names."""
    for key in keys:
        value = _lookup(payload, key)
        if value is not None:
            return value
    return None


def parse_timestamp(value: Any) -> datetime | None:
    """Parse ISO strings (with or without 'Z') and epoch seconds to aware UTC."""
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        parsed = datetime.fromtimestamp(value, tz=timezone.utc)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_session_type(event_type: Any, event_type_name: Any = None) -> SessionType:
    """Resolve a session type from a code, a display name or both."""
    if isinstance(event_type, SessionType):
        return event_type
    if event_type is not None:
        try:
            return EVENT_TYPES.get(int(event_type), SessionType.RACE)
        except (TypeError, ValueError):
            event_type_name = event_type_name or event_type
    if event_type_name:
        text = str(event_type_name).strip().lower().replace(" ", "_")
        for session_type in SessionType:
            if session_type.value == text:
                return session_type
        if "qual" in text:
            return SessionType.QUALIFYING
        if "practice" in text:
            return SessionType.PRACTICE
    return SessionType.RACE


def _optional_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    return int(value)


def _optional_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    return float(value)


def normalize_race_result(payload: dict[str, Any], driver_id: str | None = None) -> RaceResult:
    """
    Build a RaceResult from a provider result payload.

    Args:
        payload: Raw result dict as returned by the provider
        driver_id: Owner of the result when the payload does not carry it

    Raises:
        ValueError: If identifiers or the start time are missing
    """
    owner = driver_id or payload.get("driver_id") or payload.get("cust_id")
    start_time = parse_timestamp(first_present(payload, START_TIME_KEYS))
    series_id = payload.get("series_id")
    track_id = first_present(payload, TRACK_ID_KEYS)
    if owner is None or start_time is None or series_id is None or track_id is None:
        raise ValueError(
            f"Result {payload.get('subsession_id')} is missing driver, series, "
            "track or start time"
        )

    reason_out = payload.get("reason_out")
    finished = payload.get("finished")
    if finished is None:
        finished = reason_out is None or str(reason_out).lower() == "running"

    race_length = _optional_float(
        first_present(payload, ("race_length", "race_length_minutes", "session_minutes"))
    )

    return RaceResult(
        driver_id=str(owner),
        subsession_id=int(payload.get("subsession_id") or 0),
        series_id=int(series_id),
        series_name=str(first_present(payload, SERIES_NAME_KEYS) or f"Series {series_id}"),
        track_id=int(track_id),
        track_name=str(first_present(payload, TRACK_NAME_KEYS) or f"Track {track_id}"),
        category=Category.normalize(first_present(payload, CATEGORY_KEYS)),
        session_type=normalize_session_type(
            payload.get("event_type", payload.get("session_type")),
            payload.get("event_type_name"),
        ),
        start_time=start_time,
        start_position=_optional_int(first_present(payload, START_POSITION_KEYS)),
        finish_position=_optional_int(first_present(payload, FINISH_POSITION_KEYS)),
        incidents=int(payload.get("incidents") or 0),
        strength_of_field=_optional_int(first_present(payload, STRENGTH_OF_FIELD_KEYS)),
        race_length_minutes=race_length,
        finished=bool(finished),
        season_year=_optional_int(payload.get("season_year")),
        season_quarter=_optional_int(payload.get("season_quarter")),
        old_safety_rating=_optional_float(
            first_present(payload, ("old_safety_rating", "oldsub_level"))
        ),
        new_safety_rating=_optional_float(
            first_present(payload, ("new_safety_rating", "newsub_level"))
        ),
    )


def _time_slots(payload: dict[str, Any]) -> tuple[TimeSlot, ...]:
    """Collect session start times from the shapes the schedule has used."""
    raw_times: list[Any] = []
    for slot in payload.get("time_slots") or []:
        raw_times.append(slot.get("start_time") if isinstance(slot, dict) else slot)
    for descriptor in payload.get("race_time_descriptors") or []:
        raw_times.extend(descriptor.get("session_times") or [])
        if descriptor.get("first_session_time") and not descriptor.get("session_times"):
            raw_times.append(descriptor["first_session_time"])

    slots = []
    for raw in raw_times:
        start = parse_timestamp(raw)
        if start is not None:
            slots.append(TimeSlot(start_time=start, weekday=WEEKDAYS[start.weekday()]))
    return tuple(sorted(set(slots), key=lambda s: s.start_time))


def normalize_schedule_entry(
    payload: dict[str, Any],
    season_year: int | None = None,
    season_quarter: int | None = None,
) -> Opportunity:
    """
    Build an Opportunity from a schedule payload.

    Missing identifiers are kept as None; the scoring engine rejects such
    entries individually rather than failing the whole schedule.
    """
    race_length = first_present(payload, ("race_length", "race_length_minutes"))
    if race_length is None:
        descriptors = payload.get("race_time_descriptors") or []
        if descriptors and descriptors[0].get("session_minutes"):
            race_length = descriptors[0]["session_minutes"]
        else:
            race_length = payload.get("race_time_limit")

    has_open_setup = payload.get("has_open_setup")
    if has_open_setup is None:
        has_open_setup = not payload.get("fixed_setup", True)

    series_id = payload.get("series_id")
    track_id = first_present(payload, TRACK_ID_KEYS)

    return Opportunity(
        series_id=_optional_int(series_id),
        series_name=str(first_present(payload, SERIES_NAME_KEYS) or f"Series {series_id}"),
        track_id=_optional_int(track_id),
        track_name=str(first_present(payload, TRACK_NAME_KEYS) or f"Track {track_id}"),
        license_required=LicenseLevel.normalize(
            first_present(payload, ("license_required", "min_license_level", "license_group"))
        ),
        category=Category.normalize(first_present(payload, CATEGORY_KEYS)),
        season_year=int(payload.get("season_year") or season_year or 0),
        season_quarter=int(payload.get("season_quarter") or season_quarter or 0),
        race_week=int(first_present(payload, ("race_week", "race_week_num")) or 0),
        race_length_minutes=float(race_length or 0),
        has_open_setup=bool(has_open_setup),
        time_slots=_time_slots(payload),
    )


def normalize_license(payload: dict[str, Any]) -> DriverLicense:
    """Build a DriverLicense from a member-profile license payload."""
    return DriverLicense(
        category=Category.normalize(first_present(payload, CATEGORY_KEYS)),
        level=LicenseLevel.normalize(
            first_present(payload, ("level", "group_name", "license_level", "group_id"))
        ),
        safety_rating=_optional_float(first_present(payload, ("safety_rating", "sr"))),
        irating=_optional_int(first_present(payload, ("irating", "i_rating"))),
    )


def normalize_race_results(
    payloads: list[dict[str, Any]], driver_id: str | None = None
) -> list[RaceResult]:
    """Normalize a batch, skipping and logging payloads that cannot be used."""
    results = []
    for payload in payloads:
        try:
            results.append(normalize_race_result(payload, driver_id))
        except (TypeError, ValueError) as e:
            logger.warning(
                "race_result_skipped",
                subsession_id=payload.get("subsession_id"),
                error=str(e),
            )
    return results
