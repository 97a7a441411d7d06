"""Persisted per-day timeline snapshots.

One ``timeline_days`` row per cached (user, day) carries the version hash the
day was computed with; stays, trips and gaps of that day carry the same hash.
Mutating methods only flush: the caller owns the transaction, so a day is
either replaced completely on commit or not at all.
"""

import contextlib
import datetime
import json
import logging
from dataclasses import dataclass, field, replace
from typing import Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from errors import TimelineStorageError
from models import CachedDataGap, CachedDay, CachedStay, CachedTrip
from timeline_models import (
    DataGap, DataSource, TimelineSnapshot, TimelineStayPoint, TimelineTrip, TrackPoint, TravelMode,
    TripGpsStatistics, utcnow,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Row <-> value conversion
# ---------------------------------------------------------------------------

def stay_from_row(row: CachedStay) -> TimelineStayPoint:
    return TimelineStayPoint(
        latitude=row.latitude,
        longitude=row.longitude,
        start_time=row.start_time,
        end_time=row.end_time,
        location_key=row.location_key,
        location_name=row.location_name,
        favorite_id=row.favorite_id,
    )


def own_stay(row: CachedStay) -> TimelineStayPoint:
    """The stay as computed for its own day, before any overnight extension."""
    stay = stay_from_row(row)
    if row.own_end_time is None:
        return stay
    return replace(stay, end_time=row.own_end_time)


def _path_to_json(path: Iterable[TrackPoint]) -> str:
    return json.dumps([
        [p.latitude, p.longitude, p.timestamp.isoformat(), p.accuracy, p.velocity]
        for p in path
    ])


def _path_from_json(text: str) -> tuple[TrackPoint, ...]:
    return tuple(
        TrackPoint(
            latitude=lat,
            longitude=lon,
            timestamp=datetime.datetime.fromisoformat(ts),
            accuracy=acc,
            velocity=vel,
        )
        for lat, lon, ts, acc, vel in json.loads(text)
    )


def trip_from_row(row: CachedTrip) -> TimelineTrip:
    statistics = None
    if row.sample_count is not None:
        statistics = TripGpsStatistics(
            avg_speed_kmh=row.avg_speed_kmh or 0.0,
            max_speed_kmh=row.max_speed_kmh or 0.0,
            sample_count=row.sample_count,
        )
    return TimelineTrip(
        start_time=row.start_time,
        end_time=row.end_time,
        path=_path_from_json(row.path_json),
        distance_km=row.distance_meters / 1000.0,
        travel_mode=TravelMode(row.travel_mode),
        statistics=statistics,
    )


def gap_from_row(row: CachedDataGap) -> DataGap:
    return DataGap(start_time=row.start_time, end_time=row.end_time)


@dataclass
class CachedDayView:
    """A cached day as loaded from storage."""

    record: CachedDay
    stays: list[CachedStay] = field(default_factory=list)
    trips: list[CachedTrip] = field(default_factory=list)
    gaps: list[CachedDataGap] = field(default_factory=list)

    @property
    def entities(self) -> list:
        """Rows whose version hash and stale flag decide validity."""
        return [self.record, *self.stays, *self.trips]

    def to_snapshot(self, user_id: int, data_source: DataSource = DataSource.CACHED) -> TimelineSnapshot:
        return TimelineSnapshot(
            user_id=user_id,
            stays=tuple(stay_from_row(r) for r in self.stays),
            trips=tuple(trip_from_row(r) for r in self.trips),
            data_gaps=tuple(gap_from_row(r) for r in self.gaps),
            data_source=data_source,
            version_hash=self.record.version_hash,
            is_stale=any(e.is_stale for e in self.entities),
            day_versions={self.record.day.isoformat(): self.record.version_hash},
        )


# ---------------------------------------------------------------------------
# Cache store
# ---------------------------------------------------------------------------

class TimelineCache:
    def __init__(self, db: Session):
        self.db = db

    @contextlib.contextmanager
    def _storage(self, action: str):
        try:
            yield
        except SQLAlchemyError as e:
            logger.error("Timeline cache failed to %s: %s", action, e)
            raise TimelineStorageError(f"timeline cache failed to {action}") from e

    def load_day(self, user_id: int, day: datetime.date) -> CachedDayView | None:
        with self._storage(f"load {day}"):
            record = (
                self.db.query(CachedDay)
                .filter(CachedDay.user_id == user_id, CachedDay.day == day)
                .first()
            )
            if record is None:
                return None
            return CachedDayView(
                record=record,
                stays=self._rows(CachedStay, user_id, [day]),
                trips=self._rows(CachedTrip, user_id, [day]),
                gaps=self._rows(CachedDataGap, user_id, [day]),
            )

    def _rows(self, model, user_id: int, days: list[datetime.date]) -> list:
        return (
            self.db.query(model)
            .filter(model.user_id == user_id, model.day.in_(days))
            .order_by(model.start_time.asc())
            .all()
        )

    def replace_day(
        self,
        user_id: int,
        day: datetime.date,
        snapshot: TimelineSnapshot,
        version_hash: str,
        point_count: int = 0,
    ) -> CachedDay:
        """Swap the stored rows of ``day`` for ``snapshot`` (flushed, not committed)."""
        with self._storage(f"store {day}"):
            self._delete(user_id, [day])
            record = CachedDay(
                user_id=user_id,
                day=day,
                version_hash=version_hash,
                is_stale=False,
                point_count=point_count,
                computed_at=utcnow(),
            )
            self.db.add(record)
            for stay in snapshot.stays:
                self.db.add(CachedStay(
                    user_id=user_id,
                    day=day,
                    start_time=stay.start_time,
                    end_time=stay.end_time,
                    own_end_time=stay.end_time,
                    duration_seconds=int(stay.duration.total_seconds()),
                    latitude=stay.latitude,
                    longitude=stay.longitude,
                    location_key=stay.location_key,
                    location_name=stay.location_name,
                    favorite_id=stay.favorite_id,
                    version_hash=version_hash,
                ))
            for trip in snapshot.trips:
                stats = trip.statistics
                self.db.add(CachedTrip(
                    user_id=user_id,
                    day=day,
                    start_time=trip.start_time,
                    end_time=trip.end_time,
                    duration_seconds=int(trip.duration.total_seconds()),
                    distance_meters=trip.distance_km * 1000.0,
                    travel_mode=trip.travel_mode.value,
                    avg_speed_kmh=stats.avg_speed_kmh if stats else None,
                    max_speed_kmh=stats.max_speed_kmh if stats else None,
                    sample_count=stats.sample_count if stats else None,
                    path_json=_path_to_json(trip.path),
                    version_hash=version_hash,
                ))
            for gap in snapshot.data_gaps:
                self.db.add(CachedDataGap(
                    user_id=user_id,
                    day=day,
                    start_time=gap.start_time,
                    end_time=gap.end_time,
                    duration_seconds=int(gap.duration.total_seconds()),
                ))
            self.db.flush()
            return record

    def _delete(self, user_id: int, days: list[datetime.date] | None) -> int:
        removed = 0
        for model in (CachedStay, CachedTrip, CachedDataGap, CachedDay):
            query = self.db.query(model).filter(model.user_id == user_id)
            if days is not None:
                query = query.filter(model.day.in_(days))
            removed += query.delete()
        return removed

    def delete_days(self, user_id: int, days: Iterable[datetime.date]) -> int:
        days = list(days)
        if not days:
            return 0
        with self._storage("delete days"):
            return self._delete(user_id, days)

    def delete_all(self, user_id: int) -> int:
        with self._storage("delete all days"):
            return self._delete(user_id, None)

    def mark_stale(self, user_id: int, days: Iterable[datetime.date]) -> int:
        """Flag cached days (and their stays/trips) as stale; returns days flagged."""
        days = list(days)
        if not days:
            return 0
        with self._storage("mark days stale"):
            flagged = (
                self.db.query(CachedDay)
                .filter(CachedDay.user_id == user_id, CachedDay.day.in_(days))
                .update({"is_stale": True})
            )
            for model in (CachedStay, CachedTrip):
                (
                    self.db.query(model)
                    .filter(model.user_id == user_id, model.day.in_(days))
                    .update({"is_stale": True})
                )
            return flagged

    def cached_days(self, user_id: int) -> list[datetime.date]:
        with self._storage("list cached days"):
            rows = (
                self.db.query(CachedDay.day)
                .filter(CachedDay.user_id == user_id)
                .order_by(CachedDay.day.asc())
                .all()
            )
            return [r.day for r in rows]

    def days_with_favorite(self, user_id: int, favorite_id: int) -> list[datetime.date]:
        with self._storage("find favorite stays"):
            rows = (
                self.db.query(CachedStay.day)
                .filter(CachedStay.user_id == user_id, CachedStay.favorite_id == favorite_id)
                .distinct()
                .order_by(CachedStay.day.asc())
                .all()
            )
            return [r.day for r in rows]

    def patch_location_name(self, user_id: int, favorite_id: int, new_name: str) -> int:
        """Relabel cached stays of a favorite in place; returns rows patched."""
        with self._storage("patch location names"):
            return (
                self.db.query(CachedStay)
                .filter(CachedStay.user_id == user_id, CachedStay.favorite_id == favorite_id)
                .update({"location_name": new_name})
            )

    def carried_over_stay(self, user_id: int, boundary: datetime.datetime) -> CachedStay | None:
        """A stay stored for an earlier day that was extended past ``boundary``."""
        with self._storage("find carried-over stay"):
            return (
                self.db.query(CachedStay)
                .filter(
                    CachedStay.user_id == user_id,
                    CachedStay.start_time < boundary,
                    CachedStay.end_time > boundary,
                )
                .order_by(CachedStay.start_time.desc())
                .first()
            )
