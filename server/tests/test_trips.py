"""Tests for trip extraction, speed statistics and travel-mode classification."""

import datetime
from dataclasses import replace

import pytest

from errors import InvalidInput
from staypoints import detect_stay_points
from timeline_models import TimelineStayPoint, TimelineTrip, TrackPoint, TravelMode, TripGpsStatistics
from trips import TRIP_BUILDERS, build_trips, classify, compute_statistics, make_trip, mode_segments
from tests.gps_test_fixtures import track_points

T0 = datetime.datetime(2024, 1, 1, 10, 0, 0)


def _pt(lat, seconds, lon=0.0):
    return TrackPoint(lat, lon, T0 + datetime.timedelta(seconds=seconds), accuracy=10.0)


def _walk_then_drive():
    """20 fixes walking at ~4 km/h, then 20 driving at ~67 km/h, every 30 s."""
    points = [_pt(i * 0.0003, i * 30) for i in range(20)]
    last = points[-1].latitude
    points += [_pt(last + (i + 1) * 0.005, (20 + i) * 30) for i in range(20)]
    return points


# =====================================================================
# Statistics
# =====================================================================

class TestStatistics:
    def test_spike_is_excluded(self, config):
        # leg speeds 133.4, 33.4 and 66.7 km/h; the first is a spike
        path = [_pt(0.0, 0), _pt(0.01, 30), _pt(0.005, 90), _pt(0.02, 180)]
        stats = compute_statistics(path, config)
        assert stats.sample_count == 2
        assert stats.max_speed_kmh == pytest.approx(66.7, abs=0.1)
        assert stats.avg_speed_kmh == pytest.approx(50.0, abs=0.1)

    def test_spike_path_is_car(self, config):
        path = [_pt(0.0, 0), _pt(0.01, 30), _pt(0.005, 90), _pt(0.02, 180)]
        trip = make_trip(path, config)
        assert trip.travel_mode is TravelMode.CAR
        assert trip.statistics.max_speed_kmh < 100

    def test_glitch_fix_is_ignored(self, config):
        # walking north at ~5.3 km/h with one fix jumping 5 km away and back
        path = [_pt(0.0, 0), _pt(0.0008, 60), _pt(0.05, 120), _pt(0.0024, 180), _pt(0.0032, 240)]
        stats = compute_statistics(path, config)
        assert stats.sample_count == 3
        assert stats.max_speed_kmh == pytest.approx(5.34, abs=0.05)
        assert make_trip(path, config).travel_mode is TravelMode.WALK

    def test_max_never_exceeds_plausible_ceiling(self, config):
        path = [_pt(0.0, 0), _pt(0.1, 60)]  # ~667 km/h
        stats = compute_statistics(path, config)
        assert stats.sample_count == 0
        assert stats.max_speed_kmh <= config.max_plausible_speed_kmh
        assert make_trip(path, config).travel_mode is TravelMode.UNKNOWN

    def test_zero_duration_legs(self, config):
        path = [_pt(0.0, 0), _pt(0.001, 0)]
        stats = compute_statistics(path, config)
        assert stats.max_speed_kmh == 0.0


# =====================================================================
# Classification
# =====================================================================

class TestClassify:
    @pytest.mark.parametrize("avg,top,distance,expected", [
        (50.0, 70.0, 5.0, TravelMode.CAR),
        (8.0, 20.0, 2.0, TravelMode.CAR),     # a fast max is enough
        (12.0, 14.0, 2.0, TravelMode.CAR),    # a fast average is enough
        (4.5, 6.0, 1.0, TravelMode.WALK),
        (7.0, 9.0, 1.0, TravelMode.UNKNOWN),  # between walking and driving
        (4.5, 6.0, 0.0, TravelMode.UNKNOWN),  # no distance covered
    ])
    def test_thresholds(self, config, avg, top, distance, expected):
        stats = TripGpsStatistics(avg_speed_kmh=avg, max_speed_kmh=top, sample_count=5)
        assert classify(stats, distance, config) is expected

    def test_no_samples_is_unknown(self, config):
        assert classify(TripGpsStatistics(0.0, 0.0, 0), 1.0, config) is TravelMode.UNKNOWN
        assert classify(None, 1.0, config) is TravelMode.UNKNOWN

    def test_thresholds_follow_config(self, config):
        stats = TripGpsStatistics(avg_speed_kmh=7.0, max_speed_kmh=9.0, sample_count=5)
        relaxed = replace(config, walking_max_avg_speed=7.5, walking_max_max_speed=10.0)
        assert classify(stats, 1.0, relaxed) is TravelMode.WALK


# =====================================================================
# Trip construction
# =====================================================================

def _stay(start_s, end_s, lat=0.0):
    return TimelineStayPoint(lat, 0.0, T0 + datetime.timedelta(seconds=start_s), T0 + datetime.timedelta(seconds=end_s))


class TestBuildTrips:
    def test_trip_spans_the_gap_between_stays(self, config):
        points = [_pt(i * 0.001, i * 60) for i in range(20)]
        stays = [_stay(0, 300), _stay(900, 1140, lat=0.015)]
        trips = build_trips(points, stays, config)
        assert len(trips) == 1
        trip = trips[0]
        assert trip.start_time == stays[0].end_time
        assert trip.end_time == stays[1].start_time
        assert trip.path[0].timestamp == stays[0].end_time
        assert trip.path[-1].timestamp == stays[1].start_time

    def test_edge_runs(self, config):
        points = [_pt(i * 0.001, i * 60) for i in range(20)]
        stays = [_stay(300, 600)]
        with_edges = build_trips(points, stays, config)
        without = build_trips(points, stays, config, include_edges=False)
        assert len(with_edges) == 2
        assert with_edges[0].end_time == stays[0].start_time
        assert with_edges[1].start_time == stays[0].end_time
        assert without == []

    def test_single_point_runs_are_dropped(self, config):
        points = [_pt(i * 0.001, i * 60) for i in range(3)]
        stays = [_stay(0, 90), _stay(120, 150)]
        assert build_trips(points, stays, config, include_edges=False) == []

    def test_no_stays_one_trip(self, config):
        points = [_pt(i * 0.001, i * 60) for i in range(5)]
        trips = build_trips(points, [], config)
        assert len(trips) == 1
        assert trips[0].distance_km == pytest.approx(0.4448, abs=0.001)

    def test_no_points(self, config):
        assert build_trips([], [], config) == []

    def test_trip_needs_two_points(self):
        with pytest.raises(InvalidInput):
            TimelineTrip(T0, T0, (_pt(0.0, 0),), 0.0)

    def test_commute_trips_between_stays(self, config):
        points = track_points()
        stays = detect_stay_points(config, points)
        trips = build_trips(points, stays, config)
        assert len(trips) == 2
        assert 0.4 < trips[0].distance_km < 0.9
        assert 0.8 < trips[1].distance_km < 1.6
        for trip, (before, after) in zip(trips, zip(stays, stays[1:])):
            assert trip.start_time == before.end_time
            assert trip.end_time == after.start_time


class TestMultimodal:
    def test_builders_registry(self):
        assert set(TRIP_BUILDERS) == {"single", "multi"}

    def test_walk_then_drive_is_split(self, config):
        points = _walk_then_drive()
        trips = build_trips(points, [], replace(config, trip_detection_algorithm="multimodal"))
        assert [t.travel_mode for t in trips] == [TravelMode.WALK, TravelMode.CAR]
        assert trips[0].path[-1] == trips[1].path[0]
        assert trips[0].start_time == points[0].timestamp
        assert trips[-1].end_time == points[-1].timestamp

    def test_single_builder_keeps_one_trip(self, config):
        trips = build_trips(_walk_then_drive(), [], config)
        assert len(trips) == 1
        assert trips[0].travel_mode is TravelMode.CAR

    def test_short_run_is_not_split(self, config):
        points = _walk_then_drive()[15:24]
        assert mode_segments(points, config) == []
        trips = build_trips(points, [], replace(config, trip_detection_algorithm="multi"))
        assert len(trips) == 1

    def test_one_mode_is_not_split(self, config):
        points = [_pt(i * 0.005, i * 30) for i in range(30)]
        trips = build_trips(points, [], replace(config, trip_detection_algorithm="multi"))
        assert len(trips) == 1
        assert trips[0].travel_mode is TravelMode.CAR
