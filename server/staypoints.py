"""Stay-point detection: cluster slow or stationary fixes into stays.

Two detectors implement the same ``detect(config, points)`` contract and are
selected by ``TimelineConfig.staypoint_detection_algorithm``:

- ``enhanced``: velocity-aware clustering around a running weighted centroid,
  accuracy and duration gates, arrival/departure refinement from forward
  velocity windows, then GPS-drift merging of adjacent clusters.
- ``simple``: radius clustering around a running centroid with the same gates
  and no refinement.

Points must be sorted by timestamp. Velocities are m/s.
"""

import datetime
import logging
from typing import Sequence

from geo import RunningCentroid, haversine_m, weighted_centroid
from timeline_config import TimelineConfig, validate_config
from timeline_models import TimelineStayPoint, TrackPoint
from velocity import analyze_window, median

logger = logging.getLogger(__name__)


class _Cluster:
    """Accepted cluster of fixes with its refined time span."""

    def __init__(self, points: list[TrackPoint], start_time: datetime.datetime, end_time: datetime.datetime):
        self.points = points
        self.start_time = start_time
        self.end_time = end_time
        self.latitude, self.longitude = weighted_centroid(points)

    def absorb(self, other: "_Cluster") -> "_Cluster":
        return _Cluster(
            self.points + other.points,
            min(self.start_time, other.start_time),
            max(self.end_time, other.end_time),
        )

    def to_stay(self) -> TimelineStayPoint:
        return TimelineStayPoint(
            latitude=self.latitude,
            longitude=self.longitude,
            start_time=self.start_time,
            end_time=self.end_time,
        )


def _trusted_velocity(point: TrackPoint, config: TimelineConfig) -> float | None:
    if not config.use_velocity_accuracy:
        return None
    return point.velocity


def _velocities(points: Sequence[TrackPoint], config: TimelineConfig) -> list[float]:
    values = (_trusted_velocity(p, config) for p in points)
    return [v for v in values if v is not None]


# ---------------------------------------------------------------------------
# Gates shared by both detectors
# ---------------------------------------------------------------------------

def passes_accuracy_gate(points: Sequence[TrackPoint], config: TimelineConfig) -> bool:
    """Enough accurate fixes, and a median velocity that looks stationary."""
    if not points:
        return False
    accurate = sum(
        1 for p in points
        if p.accuracy is None or p.accuracy <= config.staypoint_max_accuracy_threshold
    )
    if accurate / len(points) < config.staypoint_min_accuracy_ratio:
        return False
    velocities = _velocities(points, config)
    if velocities and median(velocities) > config.staypoint_velocity_threshold:
        return False
    return True


def passes_duration_gate(points: Sequence[TrackPoint], config: TimelineConfig) -> bool:
    if len(points) < 2:
        return False
    seconds = (points[-1].timestamp - points[0].timestamp).total_seconds()
    return seconds >= config.trip_min_duration_minutes * 60


# ---------------------------------------------------------------------------
# Enhanced detector
# ---------------------------------------------------------------------------

class EnhancedStayPointDetector:
    name = "enhanced"

    def detect(self, config: TimelineConfig, points: Sequence[TrackPoint]) -> list[TimelineStayPoint]:
        if not points:
            return []

        clusters = []
        for start, end in self._cluster_ranges(config, points):
            members = list(points[start:end + 1])
            if not passes_accuracy_gate(members, config):
                logger.debug("Cluster %s..%s rejected by accuracy gate", members[0].timestamp, members[-1].timestamp)
                continue
            if not passes_duration_gate(members, config):
                continue
            arrival = self._refine_arrival(config, points, start, end)
            departure = self._refine_departure(config, points, arrival, end)
            clusters.append(_Cluster(members, points[arrival].timestamp, departure))

        return [c.to_stay() for c in self._merge_drift(config, clusters)]

    def _cluster_ranges(self, config: TimelineConfig, points: Sequence[TrackPoint]) -> list[tuple[int, int]]:
        """Index ranges (inclusive) of raw clusters.

        A cluster starts on a slow fix (or any fix with unknown velocity) and
        closes on a fix that is both outside the radius and not slow.
        """
        threshold = config.staypoint_velocity_threshold
        radius = config.staypoint_radius_meters
        ranges = []
        start = None
        centroid = None

        for i, point in enumerate(points):
            velocity = _trusted_velocity(point, config)
            if start is None:
                if velocity is None or velocity <= threshold:
                    start = i
                    centroid = RunningCentroid()
                    centroid.add(point)
                continue

            inside = haversine_m(
                centroid.latitude, centroid.longitude, point.latitude, point.longitude,
            ) <= radius
            slow = velocity is not None and velocity <= threshold
            if inside or slow:
                centroid.add(point)
                continue

            ranges.append((start, i - 1))
            start = None
            if velocity is None:
                # Nothing says this fix is moving; it seeds the next cluster
                start = i
                centroid = RunningCentroid()
                centroid.add(point)

        if start is not None:
            ranges.append((start, len(points) - 1))
        return ranges

    def _refine_arrival(self, config: TimelineConfig, points: Sequence[TrackPoint], start: int, end: int) -> int:
        """First fix whose forward velocity window settles at or under the threshold."""
        threshold = config.staypoint_velocity_threshold
        size = config.transition_window_size
        for i in range(start, end + 1):
            velocity = _trusted_velocity(points[i], config)
            if velocity is None:
                return start
            if velocity > threshold:
                continue
            window = analyze_window(_velocities(points[i:min(i + size, end + 1)], config), i)
            if window is not None and window.median <= threshold:
                return i
        logger.debug("No arrival transition found, using cluster start %s", points[start].timestamp)
        return start

    def _refine_departure(
        self, config: TimelineConfig, points: Sequence[TrackPoint], arrival: int, end: int,
    ) -> datetime.datetime:
        """The fast fix that closed the cluster; else the cluster's last slow
        fix; else its last fix.
        """
        threshold = config.staypoint_velocity_threshold
        if end + 1 < len(points):
            closing = _trusted_velocity(points[end + 1], config)
            if closing is not None and closing > threshold:
                return points[end + 1].timestamp

        for i in range(end, arrival - 1, -1):
            velocity = _trusted_velocity(points[i], config)
            if velocity is not None and velocity <= threshold:
                return points[i].timestamp
        logger.debug("No departure transition found, using cluster end %s", points[end].timestamp)
        return points[end].timestamp

    def _merge_drift(self, config: TimelineConfig, clusters: list[_Cluster]) -> list[_Cluster]:
        merged: list[_Cluster] = []
        for cluster in clusters:
            if merged and self._is_drift(config, merged[-1], cluster):
                logger.debug("Drift merge of stays at %s and %s", merged[-1].start_time, cluster.start_time)
                merged[-1] = merged[-1].absorb(cluster)
            else:
                merged.append(cluster)
        return merged

    @staticmethod
    def _is_drift(config: TimelineConfig, a: _Cluster, b: _Cluster) -> bool:
        dist = haversine_m(a.latitude, a.longitude, b.latitude, b.longitude)
        if dist < config.drift_merge_distance_meters:
            return True
        if not config.merge_enabled:
            return False
        gap_minutes = (b.start_time - a.end_time).total_seconds() / 60.0
        return gap_minutes < config.merge_max_time_gap_minutes and dist < config.merge_max_distance_meters


# ---------------------------------------------------------------------------
# Simple detector
# ---------------------------------------------------------------------------

class SimpleStayPointDetector:
    name = "simple"

    def detect(self, config: TimelineConfig, points: Sequence[TrackPoint]) -> list[TimelineStayPoint]:
        """Grow a cluster while fixes stay within ``trip_min_distance_meters``
        of its running centroid and are not moving; poor-accuracy fixes are
        skipped rather than breaking the cluster.
        """
        if not points:
            return []

        radius = config.trip_min_distance_meters
        threshold = config.staypoint_velocity_threshold
        stays: list[TimelineStayPoint] = []
        cluster: list[TrackPoint] = []
        centroid = None

        for point in points:
            if point.accuracy is not None and point.accuracy > config.staypoint_max_accuracy_threshold:
                continue
            velocity = _trusted_velocity(point, config)
            if cluster:
                dist = haversine_m(centroid.latitude, centroid.longitude, point.latitude, point.longitude)
                if dist <= radius and (velocity is None or velocity <= threshold):
                    cluster.append(point)
                    centroid.add(point)
                    continue
                self._maybe_emit(config, cluster, stays)
            cluster = [point]
            centroid = RunningCentroid()
            centroid.add(point)

        self._maybe_emit(config, cluster, stays)
        return stays

    @staticmethod
    def _maybe_emit(config: TimelineConfig, cluster: list[TrackPoint], stays: list[TimelineStayPoint]):
        if not passes_duration_gate(cluster, config) or not passes_accuracy_gate(cluster, config):
            return
        lat, lon = weighted_centroid(cluster)
        stays.append(TimelineStayPoint(
            latitude=lat,
            longitude=lon,
            start_time=cluster[0].timestamp,
            end_time=cluster[-1].timestamp,
        ))


DETECTORS = {
    "simple": SimpleStayPointDetector,
    "enhanced": EnhancedStayPointDetector,
}


def detector_for(config: TimelineConfig):
    return DETECTORS[config.staypoint_detection_algorithm.lower()]()


def detect_stay_points(config: TimelineConfig, points: Sequence[TrackPoint] | None) -> list[TimelineStayPoint]:
    """Validate ``config`` and run the configured detector over ``points``."""
    validate_config(config)
    if not points:
        return []
    return detector_for(config).detect(config, points)
