"""Trip extraction between stays, speed statistics, travel-mode classification.

Trips occupy the complement of the stay intervals: every run of fixes between
consecutive stays (plus the runs before the first and after the last stay)
with at least two fixes becomes a trip. With the ``multi`` builder a run can
be split further where the travel mode visibly changes.
"""

import datetime
import logging
from typing import Sequence

from geo import path_length_m
from timeline_config import TimelineConfig, trip_algorithm
from timeline_models import TimelineStayPoint, TimelineTrip, TrackPoint, TravelMode, TripGpsStatistics
from velocity import filter_unrealistic, instant_speed_kmh, reject_speed_spikes, sliding_windows, speed_series

logger = logging.getLogger(__name__)

# Multimodal splitting
MULTI_MIN_POINTS = 10
MULTI_MIN_WINDOW = 5
MULTI_WINDOW_DIVISOR = 10
SUBSTANTIAL_SEGMENT_RATIO = 0.2
SMALL_SEGMENT_RATIO = 0.1


# ---------------------------------------------------------------------------
# Statistics & classification
# ---------------------------------------------------------------------------

def _without_glitch_fixes(path: Sequence[TrackPoint], config: TimelineConfig) -> list[TrackPoint]:
    """Drop fixes that jump away and straight back.

    A fix is a glitch when both speeds touching it are fast while the speed
    across it (previous to next fix) is several times slower.
    """
    if len(path) < 3:
        return list(path)
    kept = [path[0]]
    for i in range(1, len(path) - 1):
        prev, here, nxt = kept[-1], path[i], path[i + 1]
        inbound = instant_speed_kmh(prev, here)
        outbound = instant_speed_kmh(here, nxt)
        across = instant_speed_kmh(prev, nxt)
        floor = max(config.speed_spike_factor * across, config.walking_max_max_speed)
        if min(inbound, outbound) > floor:
            logger.debug("Ignoring glitch fix at %s (%.0f/%.0f km/h)", here.timestamp, inbound, outbound)
            continue
        kept.append(here)
    kept.append(path[-1])
    return kept


def compute_statistics(path: Sequence[TrackPoint], config: TimelineConfig) -> TripGpsStatistics:
    """Average and maximum speed (km/h) after excluding implausible samples."""
    speeds = speed_series(_without_glitch_fixes(path, config))
    speeds = filter_unrealistic(speeds, config.max_plausible_speed_kmh)
    speeds = reject_speed_spikes(speeds, config.speed_spike_factor)
    if not speeds:
        return TripGpsStatistics(avg_speed_kmh=0.0, max_speed_kmh=0.0, sample_count=0)
    return TripGpsStatistics(
        avg_speed_kmh=sum(speeds) / len(speeds),
        max_speed_kmh=max(speeds),
        sample_count=len(speeds),
    )


def classify(statistics: TripGpsStatistics | None, distance_km: float, config: TimelineConfig) -> TravelMode:
    """CAR if either speed looks motorised, WALK if both are on foot, else UNKNOWN."""
    if statistics is None or statistics.sample_count == 0 or distance_km <= 0:
        return TravelMode.UNKNOWN
    avg, top = statistics.avg_speed_kmh, statistics.max_speed_kmh
    if avg >= config.car_min_avg_speed or top >= config.car_min_max_speed:
        return TravelMode.CAR
    if avg <= config.walking_max_avg_speed and top <= config.walking_max_max_speed:
        return TravelMode.WALK
    return TravelMode.UNKNOWN


def make_trip(
    path: Sequence[TrackPoint],
    config: TimelineConfig,
    start_time: datetime.datetime | None = None,
    end_time: datetime.datetime | None = None,
    travel_mode: TravelMode | None = None,
) -> TimelineTrip:
    path = tuple(path)
    distance_km = path_length_m(path) / 1000.0
    statistics = compute_statistics(path, config)
    if travel_mode is None:
        travel_mode = classify(statistics, distance_km, config)
    return TimelineTrip(
        start_time=start_time or path[0].timestamp,
        end_time=end_time or path[-1].timestamp,
        path=path,
        distance_km=distance_km,
        travel_mode=travel_mode,
        statistics=statistics,
    )


# ---------------------------------------------------------------------------
# Runs between stays
# ---------------------------------------------------------------------------

def _runs(points: Sequence[TrackPoint], stays: Sequence[TimelineStayPoint], include_edges: bool):
    """Yield ``(run, start_boundary, end_boundary)``; boundaries are None on open ends."""
    if not stays:
        if include_edges:
            yield list(points), None, None
        return

    if include_edges:
        first = stays[0].start_time
        yield [p for p in points if p.timestamp <= first], None, first

    for prev, nxt in zip(stays, stays[1:]):
        if prev.end_time >= nxt.start_time:
            continue
        run = [p for p in points if prev.end_time <= p.timestamp <= nxt.start_time]
        yield run, prev.end_time, nxt.start_time

    if include_edges:
        last = stays[-1].end_time
        yield [p for p in points if p.timestamp >= last], last, None


def _single_trips(run, start, end, config: TimelineConfig) -> list[TimelineTrip]:
    return [make_trip(run, config, start, end)]


def _window_mode(window, config: TimelineConfig) -> TravelMode:
    if window.maximum >= config.car_min_max_speed and window.median >= config.car_min_avg_speed:
        return TravelMode.CAR
    if window.maximum <= config.walking_max_max_speed and window.median <= config.walking_max_avg_speed:
        return TravelMode.WALK
    return TravelMode.UNKNOWN


def mode_segments(path: Sequence[TrackPoint], config: TimelineConfig) -> list[list]:
    """``[start_index, end_index, mode]`` segments of consistent windowed speed.

    Adjacent segments share their boundary fix.
    """
    accurate = [
        p for p in path
        if p.accuracy is None or p.accuracy <= config.staypoint_max_accuracy_threshold
    ]
    if len(path) < MULTI_MIN_POINTS or len(accurate) < MULTI_MIN_POINTS:
        return []

    speeds = speed_series(path)
    size = max(MULTI_MIN_WINDOW, len(speeds) // MULTI_WINDOW_DIVISOR)
    segments = []
    current = None
    segment_start = 0
    for window in sliding_windows(speeds, size):
        mode = _window_mode(window, config)
        if current is None:
            current, segment_start = mode, window.start_index
        elif mode != current:
            segments.append([segment_start, window.start_index, current])
            current, segment_start = mode, window.start_index
    if current is not None:
        segments.append([segment_start, len(path) - 1, current])
    return _absorb_small_segments(segments, len(path))


def _absorb_small_segments(segments: list[list], total: int) -> list[list]:
    """Fold short UNKNOWN segments into a confident neighbour."""
    merged: list[list] = []
    for i, (start, end, mode) in enumerate(segments):
        small = (end - start + 1) < total * SMALL_SEGMENT_RATIO
        if small and mode is TravelMode.UNKNOWN:
            if merged:
                merged[-1][1] = end
                continue
            if i + 1 < len(segments):
                mode = segments[i + 1][2]
        if merged and merged[-1][2] == mode:
            merged[-1][1] = end
        else:
            merged.append([start, end, mode])
    return merged


def _should_split(segments: list[list], total: int) -> bool:
    if len(segments) < 2:
        return False
    substantial = all((end - start + 1) >= total * SUBSTANTIAL_SEGMENT_RATIO for start, end, _ in segments)
    confident = {mode for _, _, mode in segments if mode is not TravelMode.UNKNOWN}
    return substantial and len(confident) >= 2


def _multimodal_trips(run, start, end, config: TimelineConfig) -> list[TimelineTrip]:
    segments = mode_segments(run, config)
    if not _should_split(segments, len(run)):
        return _single_trips(run, start, end, config)

    logger.debug("Splitting trip at %s into %d mode segments", run[0].timestamp, len(segments))
    trips = []
    for n, (first, last, mode) in enumerate(segments):
        piece = run[first:last + 1]
        trips.append(make_trip(
            piece,
            config,
            start_time=start if n == 0 else None,
            end_time=end if n == len(segments) - 1 else None,
            travel_mode=mode,
        ))
    return trips


TRIP_BUILDERS = {
    "single": _single_trips,
    "multi": _multimodal_trips,
}


def build_trips(
    points: Sequence[TrackPoint],
    stays: Sequence[TimelineStayPoint],
    config: TimelineConfig,
    include_edges: bool = True,
) -> list[TimelineTrip]:
    """Trips for every run of at least two fixes outside the stays."""
    builder = TRIP_BUILDERS[trip_algorithm(config)]
    ordered_stays = sorted(stays, key=lambda s: s.start_time)
    trips = []
    for run, start, end in _runs(points, ordered_stays, include_edges):
        if len(run) < 2:
            continue
        trips.extend(builder(run, start, end, config))
    return trips
