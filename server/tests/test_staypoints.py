"""Tests for stay-point detection (enhanced and simple detectors)."""

import datetime
from dataclasses import replace

import pytest

from errors import InvalidConfig
from staypoints import (
    DETECTORS,
    EnhancedStayPointDetector,
    SimpleStayPointDetector,
    detect_stay_points,
    detector_for,
    passes_accuracy_gate,
    passes_duration_gate,
)
from timeline_config import TimelineConfig
from tests.gps_test_fixtures import (
    COFFEE_SHOP_CENTER,
    HOME_CENTER,
    OFFICE_CENTER,
    PARK_CENTER,
    SCENARIO_BASE,
    car_to_park_trace,
    drift_trace,
    fix,
    moving,
    stationary,
    track_points,
    two_venues_trace,
)


@pytest.fixture
def scenario_config():
    return TimelineConfig(
        trip_min_duration_minutes=5,
        trip_min_distance_meters=50,
        staypoint_velocity_threshold=1.0,
        staypoint_max_accuracy_threshold=100.0,
        staypoint_min_accuracy_ratio=0.5,
        merge_enabled=True,
        merge_max_time_gap_minutes=15,
        merge_max_distance_meters=50,
    )


def _at(minute):
    return SCENARIO_BASE + datetime.timedelta(minutes=minute)


# =====================================================================
# Enhanced detector: transitions
# =====================================================================

class TestEnhancedDetector:
    def test_car_to_park(self, scenario_config):
        stays = detect_stay_points(scenario_config, car_to_park_trace())
        assert len(stays) == 1
        stay = stays[0]
        assert stay.latitude == pytest.approx(PARK_CENTER[0], abs=0.001)
        assert stay.longitude == pytest.approx(PARK_CENTER[1], abs=0.001)
        # arrival when the walk slowed under the threshold, not when lingering began
        assert stay.start_time == _at(12)
        # departure when the car pulled away, not when the walk back began
        assert stay.end_time == _at(28)
        assert stay.duration == datetime.timedelta(minutes=16)

    def test_two_venues(self, scenario_config):
        stays = detect_stay_points(scenario_config, two_venues_trace())
        assert [(s.start_time, s.end_time) for s in stays] == [
            (_at(8), _at(18)),
            (_at(27), _at(37)),
        ]

    def test_too_short_stop(self, scenario_config):
        points = moving(40.7500, -73.9800, 0, 5, dlat=0.001, dlon=0.0, velocity=10.0)
        points += [fix(i, 40.7505, -73.9800, 0.1) for i in range(5, 8)]
        points += moving(40.7505, -73.9800, 8, 7, dlat=0.001, dlon=0.0, velocity=10.0)
        assert detect_stay_points(scenario_config, points) == []

    def test_fast_fixes_never_cluster(self, scenario_config):
        # clustered positions, but a traffic jam at 5 m/s
        points = stationary(40.7500, -73.9800, 0, 20, velocity=5.0, spread=0.0005)
        assert detect_stay_points(scenario_config, points) == []

    def test_constant_slow_velocity_spans_everything(self, scenario_config):
        points = [fix(i, 40.7500, -73.9800, 0.5) for i in range(30)]
        stays = detect_stay_points(scenario_config, points)
        assert len(stays) == 1
        assert stays[0].start_time == _at(0)
        assert stays[0].end_time == _at(29)

    def test_velocity_at_threshold_counts_as_slow(self, scenario_config):
        points = [fix(i, 40.7500 + i * 0.00005, -73.9800, 1.0) for i in range(20)]
        points += [fix(i, 40.7500 + i * 0.003, -73.9800, 12.0) for i in range(20, 25)]
        stays = detect_stay_points(scenario_config, points)
        assert len(stays) == 1
        assert stays[0].start_time == _at(0)
        assert stays[0].end_time == _at(20)

    def test_departure_before_next_stay(self, scenario_config):
        stays = detect_stay_points(scenario_config, two_venues_trace())
        for a, b in zip(stays, stays[1:]):
            assert a.end_time <= b.start_time
            assert a.start_time <= a.end_time

    def test_unknown_velocity_falls_back_to_geometry(self, scenario_config):
        config = replace(scenario_config, use_velocity_accuracy=False)
        points = stationary(40.7500, -73.9800, 0, 20, velocity=5.0)
        stays = detect_stay_points(config, points)
        assert len(stays) == 1
        assert stays[0].start_time == _at(0)
        assert stays[0].end_time == _at(19)


# =====================================================================
# Enhanced detector: gates and drift
# =====================================================================

class TestEnhancedGates:
    def test_accuracy_gate_rejects_noisy_cluster(self, scenario_config):
        points = stationary(40.7500, -73.9800, 0, 20, accuracy=250.0)
        assert detect_stay_points(scenario_config, points) == []

    def test_accuracy_gate_ratio(self, scenario_config):
        good = stationary(40.7500, -73.9800, 0, 4)
        bad = stationary(40.7500, -73.9800, 4, 6, accuracy=250.0)
        assert not passes_accuracy_gate(good + bad, scenario_config)
        assert passes_accuracy_gate(good + bad[:4], scenario_config)

    def test_duration_gate(self, scenario_config):
        assert not passes_duration_gate(stationary(40.75, -73.98, 0, 1), scenario_config)
        assert not passes_duration_gate(stationary(40.75, -73.98, 0, 5), scenario_config)
        assert passes_duration_gate(stationary(40.75, -73.98, 0, 6), scenario_config)

    def test_drift_while_parked_is_one_stay(self, scenario_config):
        stays = detect_stay_points(scenario_config, drift_trace())
        assert len(stays) == 1
        stay = stays[0]
        assert stay.start_time == _at(10)
        assert stay.end_time in (_at(60), _at(61))
        assert stay.latitude == pytest.approx(PARK_CENTER[0], abs=0.001)
        assert stay.longitude == pytest.approx(PARK_CENTER[1], abs=0.001)

    def test_very_close_clusters_always_merge(self, scenario_config):
        points = moving(40.7500, -73.9800, 0, 10)
        points += stationary(40.7830, -73.9710, 10, 10, spread=0.0)
        points.append(fix(20, 40.7850, -73.9690, 12.0))
        # comes back 8 m away, long after the merge gap
        points += stationary(40.78307, -73.97095, 60, 10, spread=0.0)
        points += moving(40.7900, -73.9600, 70, 5)
        stays = detect_stay_points(scenario_config, points)
        assert len(stays) == 1
        assert stays[0].start_time == _at(10)
        assert stays[0].end_time == _at(70)

    def test_nearby_but_distinct_places_stay_apart(self, scenario_config):
        points = moving(40.7500, -73.9800, 0, 10)
        points += stationary(40.7830, -73.9710, 10, 15, spread=0.0)
        points += [
            fix(25, 40.7833, -73.9708, 1.5),
            fix(26, 40.7836, -73.9700, 1.4),
            fix(27, 40.7838, -73.9695, 1.3),
            fix(28, 40.7840, -73.9694, 1.2),
            fix(29, 40.7842, -73.9693, 1.1),
        ]
        points += stationary(40.7845, -73.9702, 35, 15, spread=0.0)
        points.append(fix(50, 40.7945, -73.9692, 1.5))
        points += moving(40.7890, -73.9682, 51, 9)
        stays = detect_stay_points(scenario_config, points)
        assert [(s.start_time, s.end_time) for s in stays] == [
            (_at(10), _at(26)),
            (_at(35), _at(50)),
        ]

    def test_merge_disabled_keeps_close_gap_clusters_apart(self, scenario_config):
        # 30 m apart: beyond drift distance, within merge distance
        points = stationary(40.7830, -73.9710, 0, 10, spread=0.0)
        points.append(fix(10, 40.7900, -73.9710, 12.0))
        points += stationary(40.78327, -73.9710, 12, 10, spread=0.0)
        merged = detect_stay_points(scenario_config, points)
        apart = detect_stay_points(replace(scenario_config, merge_enabled=False), points)
        assert len(merged) == 1
        assert len(apart) == 2


# =====================================================================
# Commute trace under default settings
# =====================================================================

class TestCommuteTrace:
    def test_three_stays(self, config):
        stays = detect_stay_points(config, track_points())
        assert len(stays) == 3

    def test_stays_near_centers(self, config):
        stays = detect_stay_points(config, track_points())
        for stay, center in zip(stays, [HOME_CENTER, COFFEE_SHOP_CENTER, OFFICE_CENTER]):
            assert stay.latitude == pytest.approx(center["latitude"], abs=0.0005)
            assert stay.longitude == pytest.approx(center["longitude"], abs=0.0005)

    def test_office_is_longest(self, config):
        stays = detect_stay_points(config, track_points())
        assert max(stays, key=lambda s: s.duration) is stays[2]

    def test_walking_segments_are_not_stays(self, config):
        stays = detect_stay_points(config, track_points())
        walk_start = datetime.datetime(2024, 1, 15, 8, 14)
        assert not any(s.start_time <= walk_start <= s.end_time for s in stays)


# =====================================================================
# Simple detector and selection
# =====================================================================

class TestSimpleDetector:
    def test_commute_three_stays(self, config):
        stays = SimpleStayPointDetector().detect(replace(config, staypoint_detection_algorithm="simple"), track_points())
        assert len(stays) == 3

    def test_bounds_are_first_and_last_fix(self, scenario_config):
        points = moving(40.7500, -73.9800, 0, 5)
        points += stationary(40.7830, -73.9710, 5, 10, spread=0.0)
        points += moving(40.7900, -73.9600, 15, 5)
        stays = SimpleStayPointDetector().detect(scenario_config, points)
        assert len(stays) == 1
        assert stays[0].start_time == _at(5)
        assert stays[0].end_time == _at(14)

    def test_poor_accuracy_fix_is_skipped(self, scenario_config):
        points = stationary(40.7830, -73.9710, 0, 10, spread=0.0)
        points.insert(5, fix(5.5, 40.7900, -73.9700, 0.1, accuracy=500.0))
        stays = SimpleStayPointDetector().detect(scenario_config, points)
        assert len(stays) == 1
        assert stays[0].end_time == _at(9)


class TestDetectorSelection:
    def test_registry(self):
        assert set(DETECTORS) == {"simple", "enhanced"}

    def test_detector_for(self, config):
        assert isinstance(detector_for(config), EnhancedStayPointDetector)
        assert isinstance(detector_for(replace(config, staypoint_detection_algorithm="SIMPLE")), SimpleStayPointDetector)

    def test_unknown_algorithm(self, config):
        with pytest.raises(InvalidConfig):
            detect_stay_points(replace(config, staypoint_detection_algorithm="dbscan"), track_points())

    def test_empty_and_none(self, config):
        assert detect_stay_points(config, []) == []
        assert detect_stay_points(config, None) == []
