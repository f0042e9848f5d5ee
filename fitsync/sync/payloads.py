"""Pydantic models for raw provider API payloads.

Adapters validate every response body into one of these models before it
reaches the normalizer; a body that does not validate is reported as a
provider API error.  Models ignore unknown fields and only declare what the
normalizer reads.  Field names follow each provider's wire format via
aliases.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, RootModel
from pydantic.alias_generators import to_camel


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class _CamelPayload(_Payload):
    model_config = ConfigDict(
        extra="ignore", populate_by_name=True, alias_generator=to_camel
    )


# ---------------------------------------------------------------------------
# OAuth token endpoint (shared shape; Strava adds expires_at)
# ---------------------------------------------------------------------------


class TokenResponse(_Payload):
    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None
    expires_at: int | None = None
    token_type: str = "Bearer"
    scope: str | None = None


# ---------------------------------------------------------------------------
# Fitbit
# ---------------------------------------------------------------------------


class FitbitDistance(_CamelPayload):
    activity: str
    distance: float


class FitbitSummary(_CamelPayload):
    steps: int | None = None
    calories_out: int | None = None
    fairly_active_minutes: int | None = None
    very_active_minutes: int | None = None
    distances: list[FitbitDistance] = Field(default_factory=list)


class FitbitDayActivity(_CamelPayload):
    """Entry of the ``activities`` list in the daily summary response.

    ``start_time`` is local wall-clock ``HH:MM``; ``duration`` is ms;
    ``distance`` is in the unit implied by the request locale.
    """

    log_id: int
    name: str = ""
    activity_parent_name: str | None = None
    start_date: str
    start_time: str | None = None
    has_start_time: bool = True
    duration: int | None = None
    distance: float | None = None
    calories: float | None = None
    steps: int | None = None


class FitbitDailyActivityResponse(_CamelPayload):
    activities: list[FitbitDayActivity] = Field(default_factory=list)
    summary: FitbitSummary | None = None


class FitbitHeartRateZone(_CamelPayload):
    name: str
    min: int | None = None
    max: int | None = None
    minutes: int | None = None
    calories_out: float | None = None


class FitbitHeartRateValue(_CamelPayload):
    resting_heart_rate: int | None = None
    heart_rate_zones: list[FitbitHeartRateZone] = Field(default_factory=list)


class FitbitHeartRateDay(_CamelPayload):
    date_time: str
    value: FitbitHeartRateValue = Field(default_factory=FitbitHeartRateValue)


class FitbitIntradaySeries(_CamelPayload):
    dataset: list[dict[str, Any]] = Field(default_factory=list)
    dataset_interval: int | None = None
    dataset_type: str | None = None


class FitbitHeartRateResponse(_Payload):
    days: list[FitbitHeartRateDay] = Field(default_factory=list, alias="activities-heart")
    intraday: FitbitIntradaySeries | None = Field(
        default=None, alias="activities-heart-intraday"
    )


class FitbitSleepLevels(_Payload):
    summary: dict[str, dict[str, Any]] = Field(default_factory=dict)


class FitbitSleepLog(_CamelPayload):
    log_id: int
    date_of_sleep: str
    start_time: str | None = None
    end_time: str | None = None
    duration: int | None = None
    minutes_to_fall_asleep: int | None = None
    minutes_asleep: int | None = None
    minutes_awake: int | None = None
    time_in_bed: int | None = None
    efficiency: int | None = None
    type: str | None = None
    is_main_sleep: bool | None = None
    levels: FitbitSleepLevels | None = None


class FitbitSleepResponse(_Payload):
    sleep: list[FitbitSleepLog] = Field(default_factory=list)


class FitbitLoggedActivity(_CamelPayload):
    """Entry of ``/activities/list.json``.

    ``start_time`` is ISO 8601 with UTC offset; ``distance_unit`` names the
    unit of ``distance`` explicitly.
    """

    log_id: int
    activity_name: str = ""
    start_time: str
    duration: int | None = None
    active_duration: int | None = None
    distance: float | None = None
    distance_unit: str | None = None
    calories: float | None = None
    steps: int | None = None
    average_heart_rate: float | None = None
    elevation_gain: float | None = None


class FitbitActivityListResponse(_Payload):
    activities: list[FitbitLoggedActivity] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Strava
# ---------------------------------------------------------------------------


class StravaMap(_Payload):
    summary_polyline: str | None = None


class StravaActivity(_Payload):
    id: int
    name: str = ""
    type: str | None = None
    sport_type: str | None = None
    distance: float | None = None
    moving_time: int | None = None
    elapsed_time: int | None = None
    total_elevation_gain: float | None = None
    start_date: str
    start_date_local: str | None = None
    timezone: str | None = None
    calories: float | None = None
    kilojoules: float | None = None
    average_heartrate: float | None = None
    max_heartrate: float | None = None
    map: StravaMap | None = None


class StravaActivityPage(RootModel[list[StravaActivity]]):
    pass


# ---------------------------------------------------------------------------
# Google Fit
# ---------------------------------------------------------------------------


class GoogleFitSession(_CamelPayload):
    id: str
    name: str | None = None
    description: str | None = None
    start_time_millis: int
    end_time_millis: int
    activity_type: int
    active_time_millis: int | None = None


class GoogleFitSessionsResponse(_CamelPayload):
    session: list[GoogleFitSession] = Field(default_factory=list)
    next_page_token: str | None = None


class GoogleFitMapValue(_CamelPayload):
    fp_val: float | None = None
    int_val: int | None = None


class GoogleFitMapEntry(_Payload):
    key: str
    value: GoogleFitMapValue


class GoogleFitValue(_CamelPayload):
    fp_val: float | None = None
    int_val: int | None = None
    map_val: list[GoogleFitMapEntry] = Field(default_factory=list)


class GoogleFitDataPoint(_CamelPayload):
    data_type_name: str | None = None
    value: list[GoogleFitValue] = Field(default_factory=list)


class GoogleFitDataset(_CamelPayload):
    data_source_id: str | None = None
    point: list[GoogleFitDataPoint] = Field(default_factory=list)


class GoogleFitBucket(_CamelPayload):
    start_time_millis: int | None = None
    end_time_millis: int | None = None
    dataset: list[GoogleFitDataset] = Field(default_factory=list)


class GoogleFitAggregateResponse(_Payload):
    bucket: list[GoogleFitBucket] = Field(default_factory=list)

    def points(self) -> list[GoogleFitDataPoint]:
        return [p for b in self.bucket for ds in b.dataset for p in ds.point]
