"""Timeline processing pipeline: raw fixes in, stays / trips / data gaps out.

Pipeline (runs for one user and one time window):
1. Load fixes and sanitise them (ordering, duplicates, impossible coordinates)
2. Detect stay points with the configured detector
3. Build and classify the trips between stays
4. Label each stay with a location identity (favorite or snapped place)
5. Merge same-location stays separated by a short or near trip
6. Detect data gaps over the same window

Everything except loading and labelling is pure and safe to run concurrently
for different users.
"""

import datetime
import logging
from dataclasses import replace
from typing import Callable, Iterable, Sequence

from sqlalchemy.orm import Session

from data_gaps import gaps_for_points
from geo import is_valid_coordinate
from locations import LocationLabel, LocationResolver
from models import Device, Location
from staypoints import detect_stay_points
from timeline_config import TimelineConfig, validate_config
from timeline_merge import interleave, merge_timeline, split_events
from timeline_models import DataSource, TimelineSnapshot, TimelineStayPoint, TrackPoint
from trips import build_trips

logger = logging.getLogger(__name__)

MIN_POINT_INTERVAL_S = 2  # deduplicate fixes closer than this in time


# ---------------------------------------------------------------------------
# Step 1: loading and sanitising fixes
# ---------------------------------------------------------------------------

def to_track_point(loc: Location) -> TrackPoint:
    return TrackPoint(
        latitude=loc.latitude,
        longitude=loc.longitude,
        timestamp=loc.timestamp,
        accuracy=loc.horizontal_accuracy,
        velocity=loc.speed,
    )


def sanitize_points(points: Iterable[TrackPoint | None], min_interval: float = MIN_POINT_INTERVAL_S) -> list[TrackPoint]:
    """Sort fixes, skip impossible ones with a warning, drop near-duplicates."""
    valid = []
    skipped = 0
    for pt in points:
        if pt is None or pt.timestamp is None or not is_valid_coordinate(pt.latitude, pt.longitude):
            skipped += 1
            continue
        valid.append(pt)
    if skipped:
        logger.warning("Skipped %d GPS fixes with missing or out-of-range coordinates", skipped)

    cleaned = []
    last_ts = None
    for pt in sorted(valid, key=lambda p: p.timestamp):
        if last_ts is not None and (pt.timestamp - last_ts).total_seconds() < min_interval:
            continue
        cleaned.append(pt)
        last_ts = pt.timestamp
    return cleaned


def load_track_points(
    db: Session, user_id: int, start: datetime.datetime, end: datetime.datetime,
) -> list[TrackPoint]:
    """All fixes of a user's devices in ``[start, end)``, sanitised."""
    rows = (
        db.query(Location)
        .join(Device, Location.device_id == Device.id)
        .filter(Device.user_id == user_id, Location.timestamp >= start, Location.timestamp < end)
        .order_by(Location.timestamp.asc())
        .all()
    )
    return sanitize_points(to_track_point(loc) for loc in rows)


# ---------------------------------------------------------------------------
# Steps 2-6: segmentation
# ---------------------------------------------------------------------------

def label_stay(stay: TimelineStayPoint, resolve: Callable[[float, float], LocationLabel]) -> TimelineStayPoint:
    label = resolve(stay.latitude, stay.longitude)
    return replace(stay, location_key=label.key, location_name=label.name, favorite_id=label.favorite_id)


def build_timeline(
    config: TimelineConfig,
    points: Sequence[TrackPoint],
    window_start: datetime.datetime,
    window_end: datetime.datetime,
    resolve: Callable[[float, float], LocationLabel] | None = None,
    user_id: int = 0,
) -> TimelineSnapshot:
    """Segment ``points`` into a live snapshot for ``[window_start, window_end)``."""
    validate_config(config)
    points = sanitize_points(points)

    stays = detect_stay_points(config, points)
    trips = build_trips(points, stays, config)
    if resolve is not None:
        stays = [label_stay(s, resolve) for s in stays]

    events = merge_timeline(interleave(stays, trips), config)
    stays, trips = split_events(events)
    gaps = gaps_for_points(window_start, window_end, points, config)

    logger.debug(
        "Timeline user=%d %s..%s: %d points, %d stays, %d trips, %d gaps",
        user_id, window_start, window_end, len(points), len(stays), len(trips), len(gaps),
    )
    return TimelineSnapshot(
        user_id=user_id,
        stays=tuple(stays),
        trips=tuple(trips),
        data_gaps=tuple(gaps),
        data_source=DataSource.LIVE,
    )


def compute_timeline(
    db: Session,
    user_id: int,
    config: TimelineConfig,
    window_start: datetime.datetime,
    window_end: datetime.datetime,
) -> TimelineSnapshot:
    """Load the user's fixes for the window and segment them."""
    points = load_track_points(db, user_id, window_start, window_end)
    resolver = LocationResolver(db, user_id)
    return build_timeline(config, points, window_start, window_end, resolver, user_id)
