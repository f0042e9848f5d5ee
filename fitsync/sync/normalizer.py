"""Map validated provider payloads onto the canonical FitSync records.

Pure functions, no I/O.  Three concerns live here:

- **Units**: every distance becomes meters via ``to_meters``.  An absent or
  unknown unit yields ``None``; distance is omitted rather than guessed.
- **Activity types**: explicit per-provider tables; anything unmapped is
  ``ActivityType.OTHER``.
- **Time**: provider-local wall-clock times are interpreted in the user's
  time zone, and the local time is kept next to the UTC instant.  The date
  bucket always comes from the local start.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fitsync.sync.adapters.google_fit import (
    CALORIES_EXPENDED,
    DISTANCE_DELTA,
    HEART_RATE_BPM,
    STEP_COUNT_DELTA,
)
from fitsync.sync.base import (
    ActivityRecord,
    ActivityType,
    DailySummary,
    HeartRateRecord,
    Provider,
    SleepRecord,
)
from fitsync.sync.payloads import (
    FitbitActivityListResponse,
    FitbitDailyActivityResponse,
    FitbitDayActivity,
    FitbitHeartRateResponse,
    FitbitSleepResponse,
    GoogleFitAggregateResponse,
    GoogleFitSession,
    StravaActivity,
)

logger = logging.getLogger("fitsync.sync.normalizer")


# ---------------------------------------------------------------------------
# Units
# ---------------------------------------------------------------------------

_METERS_PER_UNIT: dict[str, float] = {
    "m": 1.0,
    "meter": 1.0,
    "meters": 1.0,
    "km": 1000.0,
    "kilometer": 1000.0,
    "kilometers": 1000.0,
    "mi": 1609.34,
    "mile": 1609.34,
    "miles": 1609.34,
    "yd": 0.9144,
    "yard": 0.9144,
    "yards": 0.9144,
}


def to_meters(value: float | None, unit: str | None) -> float | None:
    """Convert a distance to meters.

    Args:
        value: Distance in ``unit``; None passes through.
        unit:  Unit name, case-insensitive (meter, km, mile, yard, ...).

    Returns:
        Meters, or None when the value is missing or the unit is unknown.
    """
    if value is None:
        return None
    if not unit:
        logger.warning("Distance %s has no unit; omitting it", value)
        return None
    factor = _METERS_PER_UNIT.get(unit.strip().lower())
    if factor is None:
        logger.warning("Unknown distance unit %r; omitting distance %s", unit, value)
        return None
    return value * factor


# ---------------------------------------------------------------------------
# Activity-type classification
# ---------------------------------------------------------------------------

# Checked in order: "walk" must win over "run" for names like "Run/Walk"
_FITBIT_NAME_RULES: list[tuple[tuple[str, ...], ActivityType]] = [
    (("walk",), ActivityType.WALKING),
    (("run",), ActivityType.RUNNING),
    (("hike",), ActivityType.HIKING),
    (("swim",), ActivityType.SWIMMING),
    (("bike", "cycle"), ActivityType.CYCLING),
    (("workout", "sport", "exercise"), ActivityType.WORKOUT),
]

# https://developers.google.com/fit/rest/v1/reference/activity-types
_GOOGLE_FIT_TYPES: dict[int, ActivityType] = {
    **{code: ActivityType.WALKING for code in (7, 107, 108, 116)},
    **{code: ActivityType.RUNNING for code in (8, 94, 95, 96)},
    **{code: ActivityType.HIKING for code in (25, 113, 114, 115)},
    **{code: ActivityType.SWIMMING for code in (57, 101, 102)},
    **{code: ActivityType.CYCLING for code in (1, 9, 10, 11, 12, 13, 14, 15)},
}

# Sleep sessions share the sessions endpoint but are not activities
GOOGLE_FIT_SLEEP_TYPES = frozenset({72, 109, 110, 111, 112})

_STRAVA_TYPES: dict[str, ActivityType] = {
    "walk": ActivityType.WALKING,
    "run": ActivityType.RUNNING,
    "trailrun": ActivityType.RUNNING,
    "virtualrun": ActivityType.RUNNING,
    "hike": ActivityType.HIKING,
    "swim": ActivityType.SWIMMING,
    "ride": ActivityType.CYCLING,
    "virtualride": ActivityType.CYCLING,
    "ebikeride": ActivityType.CYCLING,
    "mountainbikeride": ActivityType.CYCLING,
    "gravelride": ActivityType.CYCLING,
    "emountainbikeride": ActivityType.CYCLING,
    "workout": ActivityType.WORKOUT,
    "weighttraining": ActivityType.WORKOUT,
    "crossfit": ActivityType.WORKOUT,
    "highintensityintervaltraining": ActivityType.WORKOUT,
}


def classify_fitbit(name: str | None) -> ActivityType:
    lowered = (name or "").lower()
    for needles, activity_type in _FITBIT_NAME_RULES:
        if any(n in lowered for n in needles):
            return activity_type
    return ActivityType.OTHER


def classify_google_fit(code: int) -> ActivityType:
    return _GOOGLE_FIT_TYPES.get(code, ActivityType.OTHER)


def classify_strava(activity_type: str | None, sport_type: str | None = None) -> ActivityType:
    for candidate in (sport_type, activity_type):
        if candidate:
            mapped = _STRAVA_TYPES.get(candidate.lower())
            if mapped is not None:
                return mapped
    return ActivityType.OTHER


def is_step_based(activity_type: ActivityType) -> bool:
    return activity_type in (ActivityType.WALKING, ActivityType.RUNNING, ActivityType.HIKING)


# ---------------------------------------------------------------------------
# Time reconciliation
# ---------------------------------------------------------------------------


def resolve_zone(tz: str | None, fallback: str = "UTC") -> ZoneInfo:
    """Return ``ZoneInfo(tz)``, or the fallback zone when tz is missing or unknown."""
    for name in (tz, fallback):
        if not name:
            continue
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown time zone %r", name)
    return ZoneInfo("UTC")


def _normalize_clock(time_str: str) -> str:
    """``HH:MM`` -> ``HH:MM:00``; longer forms pass through."""
    return f"{time_str}:00" if time_str.count(":") == 1 else time_str


def local_to_utc(day: str | date, time_str: str, tz: str | ZoneInfo) -> tuple[datetime, str]:
    """Interpret a provider-local date and wall-clock time in ``tz``.

    Args:
        day:      ``YYYY-MM-DD`` or a date.
        time_str: ``HH:MM`` or ``HH:MM:SS`` (fractions allowed).
        tz:       IANA zone name or ZoneInfo.

    Returns:
        (UTC instant, naive local ISO string).

    Raises:
        ValueError: If date or time cannot be parsed.
    """
    zone = tz if isinstance(tz, ZoneInfo) else resolve_zone(tz)
    day_str = day.isoformat() if isinstance(day, date) else day
    local_iso = f"{day_str}T{_normalize_clock(time_str)}"
    naive = datetime.fromisoformat(local_iso)
    return naive.replace(tzinfo=zone).astimezone(timezone.utc), naive.isoformat()


def _parse_iso(value: str) -> datetime:
    """Parse ISO 8601 including a trailing ``Z``."""
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _ms_to_seconds(value: int | None) -> float | None:
    return value / 1000 if value is not None else None


# ---------------------------------------------------------------------------
# Fitbit
# ---------------------------------------------------------------------------


def fitbit_daily_summary(
    user_id: str, day: date, payload: FitbitDailyActivityResponse, distance_unit: str
) -> DailySummary | None:
    """Daily summary for ``day``; None when the response has no summary block."""
    summary = payload.summary
    if summary is None:
        return None
    total = next((d.distance for d in summary.distances if d.activity == "total"), None)
    active = None
    if summary.fairly_active_minutes is not None or summary.very_active_minutes is not None:
        active = (summary.fairly_active_minutes or 0) + (summary.very_active_minutes or 0)
    return DailySummary(
        date=day.isoformat(),
        user_id=user_id,
        provider=Provider.FITBIT,
        steps=summary.steps,
        distance_meters=to_meters(total, distance_unit),
        calories_out=summary.calories_out,
        active_minutes=active,
    )


def fitbit_heart_rate(
    user_id: str, day: date, payload: FitbitHeartRateResponse
) -> HeartRateRecord | None:
    """Heart-rate record for ``day``; None when Fitbit returned nothing for it."""
    entry = next((d for d in payload.days if d.date_time == day.isoformat()), None)
    if entry is None and payload.days:
        entry = payload.days[0]
    if entry is None and (payload.intraday is None or not payload.intraday.dataset):
        return None

    intraday = None
    if payload.intraday is not None and payload.intraday.dataset:
        intraday = {
            "dataset": payload.intraday.dataset,
            "datasetInterval": payload.intraday.dataset_interval,
            "datasetType": payload.intraday.dataset_type,
        }
    zones = []
    resting = None
    if entry is not None:
        resting = entry.value.resting_heart_rate
        zones = [z.model_dump(by_alias=True, exclude_none=True) for z in entry.value.heart_rate_zones]
    return HeartRateRecord(
        date=day.isoformat(),
        user_id=user_id,
        provider=Provider.FITBIT,
        resting_heart_rate=resting,
        heart_rate_zones=zones,
        intraday_series=intraday,
    )


def fitbit_sleep_logs(user_id: str, payload: FitbitSleepResponse) -> list[SleepRecord]:
    """One record per sleep log; main sleep and naps of a date stay distinct."""
    return [
        SleepRecord(
            log_id=str(log.log_id),
            user_id=user_id,
            provider=Provider.FITBIT,
            date_of_sleep=log.date_of_sleep,
            start_time=log.start_time,
            end_time=log.end_time,
            duration_ms=log.duration,
            minutes_to_fall_asleep=log.minutes_to_fall_asleep,
            minutes_asleep=log.minutes_asleep,
            minutes_awake=log.minutes_awake,
            time_in_bed=log.time_in_bed,
            efficiency=log.efficiency,
            log_type=log.type,
            is_main_sleep=log.is_main_sleep,
            stages_summary=log.levels.summary if log.levels else {},
        )
        for log in payload.sleep
    ]


def fitbit_swims(
    user_id: str, swims: list[FitbitDayActivity], distance_unit: str, tz: str | None
) -> list[ActivityRecord]:
    """Swims from the daily activity list.

    ``startDate``/``startTime`` are local to the user; entries without a
    start time are anchored at local midnight.
    """
    zone = resolve_zone(tz)
    records: list[ActivityRecord] = []
    for swim in swims:
        try:
            start_utc, start_local = local_to_utc(swim.start_date, swim.start_time or "00:00", zone)
        except ValueError:
            logger.warning(
                "Skipping Fitbit swim %s: unparseable start %r %r",
                swim.log_id, swim.start_date, swim.start_time,
            )
            continue
        seconds = _ms_to_seconds(swim.duration)
        records.append(
            ActivityRecord(
                id=ActivityRecord.make_id(Provider.FITBIT, swim.log_id),
                user_id=user_id,
                provider=Provider.FITBIT,
                original_id=str(swim.log_id),
                activity_type=ActivityType.SWIMMING,
                name=swim.name or "Swim",
                start_time_utc=start_utc,
                start_time_local=start_local,
                timezone=str(zone),
                date=start_local[:10],
                duration_moving_sec=seconds,
                duration_elapsed_sec=seconds,
                distance_meters=to_meters(swim.distance, distance_unit),
                calories=swim.calories,
                steps=swim.steps,
            )
        )
    return records


def fitbit_logged_activities(
    user_id: str, payload: FitbitActivityListResponse, tz: str | None = None
) -> list[ActivityRecord]:
    """Logged activities, excluding swims (those arrive through the swim path)."""
    records: list[ActivityRecord] = []
    for log in payload.activities:
        activity_type = classify_fitbit(log.activity_name)
        if activity_type is ActivityType.SWIMMING:
            logger.debug("Skipping Fitbit log %s: swims are synced separately", log.log_id)
            continue
        try:
            start = _parse_iso(log.start_time)
        except ValueError:
            logger.warning("Skipping Fitbit log %s: unparseable start %r", log.log_id, log.start_time)
            continue
        if start.tzinfo is None:
            start = start.replace(tzinfo=resolve_zone(tz))
        local_naive = start.replace(tzinfo=None).isoformat()
        records.append(
            ActivityRecord(
                id=ActivityRecord.make_id(Provider.FITBIT, log.log_id),
                user_id=user_id,
                provider=Provider.FITBIT,
                original_id=str(log.log_id),
                activity_type=activity_type,
                name=log.activity_name or activity_type.display_name,
                start_time_utc=start.astimezone(timezone.utc),
                start_time_local=local_naive,
                timezone=tz,
                date=local_naive[:10],
                duration_moving_sec=_ms_to_seconds(log.active_duration),
                duration_elapsed_sec=_ms_to_seconds(log.duration),
                distance_meters=to_meters(log.distance, log.distance_unit),
                calories=log.calories,
                steps=log.steps,
                average_heart_rate_bpm=log.average_heart_rate,
                elevation_gain_meters=log.elevation_gain,
            )
        )
    return records


# ---------------------------------------------------------------------------
# Strava
# ---------------------------------------------------------------------------


def _strava_zone_name(raw: str | None) -> str | None:
    """``"(GMT-08:00) America/Los_Angeles"`` -> ``"America/Los_Angeles"``."""
    if not raw:
        return None
    return raw.rsplit(") ", 1)[-1].strip() or None


def strava_activities(user_id: str, activities: list[StravaActivity]) -> list[ActivityRecord]:
    """Strava summaries are already metric; local start comes from ``start_date_local``."""
    records: list[ActivityRecord] = []
    for activity in activities:
        try:
            start_utc = _parse_iso(activity.start_date).astimezone(timezone.utc)
        except ValueError:
            logger.warning(
                "Skipping Strava activity %s: unparseable start %r",
                activity.id, activity.start_date,
            )
            continue
        # start_date_local carries a misleading "Z"; it is wall-clock time
        if activity.start_date_local:
            local_naive = activity.start_date_local.rstrip("Z")
        else:
            local_naive = start_utc.replace(tzinfo=None).isoformat()
        activity_type = classify_strava(activity.type, activity.sport_type)
        records.append(
            ActivityRecord(
                id=ActivityRecord.make_id(Provider.STRAVA, activity.id),
                user_id=user_id,
                provider=Provider.STRAVA,
                original_id=str(activity.id),
                activity_type=activity_type,
                name=activity.name or activity_type.display_name,
                start_time_utc=start_utc,
                start_time_local=local_naive,
                timezone=_strava_zone_name(activity.timezone),
                date=local_naive[:10],
                duration_moving_sec=activity.moving_time,
                duration_elapsed_sec=activity.elapsed_time,
                distance_meters=activity.distance,
                calories=activity.calories,
                average_heart_rate_bpm=activity.average_heartrate,
                max_heart_rate_bpm=activity.max_heartrate,
                elevation_gain_meters=activity.total_elevation_gain,
                map_polyline=activity.map.summary_polyline if activity.map else None,
            )
        )
    return records


# ---------------------------------------------------------------------------
# Google Fit
# ---------------------------------------------------------------------------


def google_fit_metric(response: GoogleFitAggregateResponse, data_type_name: str) -> float | None:
    """Extract one metric from a single-bucket aggregate response.

    Deltas (distance, calories, steps) are summed over the bucket's points.
    Heart rate is the ``average`` of the first point, read from ``fpVal``
    or from the ``average`` entry of ``mapVal``.
    """
    points = response.points()
    if not points:
        return None

    if data_type_name.startswith("com.google.heart_rate"):
        for value in points[0].value:
            if value.fp_val is not None:
                return value.fp_val
            average = next((m for m in value.map_val if m.key == "average"), None)
            if average is not None:
                return average.value.fp_val
        return None

    total: float | None = None
    for point in points:
        if not point.value:
            continue
        first = point.value[0]
        amount = first.int_val if first.int_val is not None else first.fp_val
        if amount is not None:
            total = (total or 0) + amount
    return total


def google_fit_session(
    user_id: str,
    session: GoogleFitSession,
    metrics: dict[str, float | None],
    tz: str | None = None,
) -> ActivityRecord:
    """Build the canonical record for one session.

    Args:
        user_id: Internal user id.
        session: Session from the sessions endpoint.
        metrics: data type name -> value from ``google_fit_metric``; a
                 missing key means the metric was not fetched.
        tz:      Zone used for the local start and date bucket.
    """
    zone = resolve_zone(tz)
    start_utc = datetime.fromtimestamp(session.start_time_millis / 1000, tz=timezone.utc)
    local_naive = start_utc.astimezone(zone).replace(tzinfo=None).isoformat()
    activity_type = classify_google_fit(session.activity_type)
    steps = metrics.get(STEP_COUNT_DELTA)
    return ActivityRecord(
        id=ActivityRecord.make_id(Provider.GOOGLE_FIT, session.id),
        user_id=user_id,
        provider=Provider.GOOGLE_FIT,
        original_id=session.id,
        activity_type=activity_type,
        name=session.name or f"{activity_type.display_name} Session",
        start_time_utc=start_utc,
        start_time_local=local_naive,
        timezone=str(zone),
        date=local_naive[:10],
        duration_moving_sec=_ms_to_seconds(session.active_time_millis),
        duration_elapsed_sec=(session.end_time_millis - session.start_time_millis) / 1000,
        distance_meters=metrics.get(DISTANCE_DELTA),
        calories=metrics.get(CALORIES_EXPENDED),
        steps=int(steps) if steps is not None else None,
        average_heart_rate_bpm=metrics.get(HEART_RATE_BPM),
    )
