"""Value types produced and consumed by the timeline engine.

All of these are immutable: transformations (merging, overnight extension,
labelling) build new values with ``dataclasses.replace``.
"""

import datetime
import enum
from dataclasses import dataclass, field

from errors import InvalidInput


def utcnow() -> datetime.datetime:
    """Current time as a naive UTC datetime."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


class TravelMode(str, enum.Enum):
    CAR = "CAR"
    WALK = "WALK"
    UNKNOWN = "UNKNOWN"


class DataSource(str, enum.Enum):
    LIVE = "LIVE"
    CACHED = "CACHED"
    MIXED = "MIXED"
    REGENERATING = "REGENERATING"


@dataclass(frozen=True, slots=True)
class TrackPoint:
    """One GPS fix. ``velocity`` is in m/s, ``accuracy`` is a radius in metres."""

    latitude: float
    longitude: float
    timestamp: datetime.datetime
    accuracy: float | None = None
    velocity: float | None = None


@dataclass(frozen=True, slots=True)
class TimelineStayPoint:
    latitude: float
    longitude: float
    start_time: datetime.datetime
    end_time: datetime.datetime
    location_key: str | None = None
    location_name: str | None = None
    favorite_id: int | None = None

    def __post_init__(self):
        if self.end_time < self.start_time:
            raise InvalidInput(
                f"stay ends before it starts ({self.start_time} > {self.end_time})"
            )

    @property
    def duration(self) -> datetime.timedelta:
        return self.end_time - self.start_time


@dataclass(frozen=True, slots=True)
class TripGpsStatistics:
    avg_speed_kmh: float
    max_speed_kmh: float
    sample_count: int


@dataclass(frozen=True, slots=True)
class TimelineTrip:
    start_time: datetime.datetime
    end_time: datetime.datetime
    path: tuple[TrackPoint, ...]
    distance_km: float
    travel_mode: TravelMode = TravelMode.UNKNOWN
    statistics: TripGpsStatistics | None = None

    def __post_init__(self):
        if len(self.path) < 2:
            raise InvalidInput("a trip needs at least two points")
        if self.end_time < self.start_time:
            raise InvalidInput(
                f"trip ends before it starts ({self.start_time} > {self.end_time})"
            )

    @property
    def duration(self) -> datetime.timedelta:
        return self.end_time - self.start_time

    @property
    def duration_minutes(self) -> float:
        return self.duration.total_seconds() / 60.0


@dataclass(frozen=True, slots=True)
class DataGap:
    start_time: datetime.datetime
    end_time: datetime.datetime

    @property
    def duration(self) -> datetime.timedelta:
        return self.end_time - self.start_time

    @property
    def duration_minutes(self) -> float:
        return self.duration.total_seconds() / 60.0


@dataclass(frozen=True)
class TimelineSnapshot:
    user_id: int
    stays: tuple[TimelineStayPoint, ...] = ()
    trips: tuple[TimelineTrip, ...] = ()
    data_gaps: tuple[DataGap, ...] = ()
    data_source: DataSource = DataSource.LIVE
    version_hash: str | None = None
    is_stale: bool = False
    day_versions: dict = field(default_factory=dict, compare=False)

    @classmethod
    def empty(cls, user_id: int, data_source: DataSource = DataSource.LIVE) -> "TimelineSnapshot":
        return cls(user_id=user_id, data_source=data_source)

    @property
    def events(self) -> list:
        """Stays and trips in start-time order."""
        return sorted([*self.stays, *self.trips], key=lambda e: e.start_time)

    def is_empty(self) -> bool:
        return not (self.stays or self.trips or self.data_gaps)


def day_bounds(day: datetime.date) -> tuple[datetime.datetime, datetime.datetime]:
    """``[00:00, next 00:00)`` of a UTC calendar day."""
    start = datetime.datetime.combine(day, datetime.time())
    return start, start + datetime.timedelta(days=1)
