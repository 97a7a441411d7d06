"""Tests for same-location stay merging."""

import datetime
from dataclasses import replace

from timeline_merge import interleave, merge_timeline, same_location, split_events
from timeline_models import TimelineStayPoint, TimelineTrip, TrackPoint, TravelMode

DAY = datetime.datetime(2024, 1, 15)


def _t(hour, minute=0):
    return DAY + datetime.timedelta(hours=hour, minutes=minute)


def _stay(start, end, key="place:1", name="Home"):
    return TimelineStayPoint(37.7615, -122.4240, start, end, location_key=key, location_name=name)


def _trip(start, end, km=0.1):
    path = (TrackPoint(37.7615, -122.4240, start), TrackPoint(37.7625, -122.4230, end))
    return TimelineTrip(start, end, path, km, TravelMode.WALK)


class TestSameLocation:
    def test_key_wins(self):
        assert same_location(_stay(_t(8), _t(9)), _stay(_t(10), _t(11), name="Other"))
        assert not same_location(_stay(_t(8), _t(9)), _stay(_t(10), _t(11), key="place:2"))

    def test_name_fallback(self):
        a = _stay(_t(8), _t(9), key=None, name="Gym")
        b = _stay(_t(10), _t(11), key=None, name="Gym")
        assert same_location(a, b)

    def test_unlabelled_never_match(self):
        a = _stay(_t(8), _t(9), key=None, name=None)
        assert not same_location(a, a)


class TestMergeTimeline:
    def test_short_trip_between_same_place_is_folded(self, config):
        events = [_stay(_t(8), _t(9)), _trip(_t(9), _t(9, 5)), _stay(_t(9, 5), _t(10))]
        merged = merge_timeline(events, config)
        assert len(merged) == 1
        stay = merged[0]
        assert stay.start_time == _t(8)
        assert stay.end_time == _t(10)
        # both stays plus the folded trip
        assert stay.duration == datetime.timedelta(minutes=60 + 5 + 55)

    def test_different_places_untouched(self, config):
        events = [_stay(_t(8), _t(9)), _trip(_t(9), _t(9, 5)), _stay(_t(9, 5), _t(10), key="place:2", name="Cafe")]
        assert merge_timeline(events, config) == events

    def test_long_and_far_trip_keeps_stays_apart(self, config):
        events = [_stay(_t(8), _t(9)), _trip(_t(9), _t(9, 30), km=2.0), _stay(_t(9, 30), _t(10))]
        assert merge_timeline(events, config) == events

    def test_quick_but_far_trip_is_folded(self, config):
        events = [_stay(_t(8), _t(9)), _trip(_t(9), _t(9, 5), km=2.0), _stay(_t(9, 5), _t(10))]
        assert len(merge_timeline(events, config)) == 1

    def test_slow_but_near_trip_is_folded(self, config):
        events = [_stay(_t(8), _t(9)), _trip(_t(9), _t(9, 40), km=0.05), _stay(_t(9, 40), _t(10))]
        assert len(merge_timeline(events, config)) == 1

    def test_chains_across_several_returns(self, config):
        events = [
            _stay(_t(8), _t(9)), _trip(_t(9), _t(9, 5)),
            _stay(_t(9, 5), _t(10)), _trip(_t(10), _t(10, 3)),
            _stay(_t(10, 3), _t(11)),
        ]
        merged = merge_timeline(events, config)
        assert len(merged) == 1
        assert (merged[0].start_time, merged[0].end_time) == (_t(8), _t(11))

    def test_other_place_breaks_the_chain(self, config):
        events = [
            _stay(_t(8), _t(9)), _trip(_t(9), _t(9, 5)),
            _stay(_t(9, 5), _t(10), key="place:2", name="Cafe"), _trip(_t(10), _t(10, 5)),
            _stay(_t(10, 5), _t(11)),
        ]
        assert merge_timeline(events, config) == events

    def test_disabled(self, config):
        events = [_stay(_t(8), _t(9)), _trip(_t(9), _t(9, 5)), _stay(_t(9, 5), _t(10))]
        assert merge_timeline(events, replace(config, merge_enabled=False)) == events

    def test_none_and_empty(self, config):
        assert merge_timeline(None, config) is None
        assert merge_timeline([], config) == []

    def test_idempotent(self, config):
        events = [
            _stay(_t(7), _t(8), key="place:2", name="Cafe"), _trip(_t(8), _t(8, 10), km=1.5),
            _stay(_t(8, 10), _t(9)), _trip(_t(9), _t(9, 5)), _stay(_t(9, 5), _t(10)),
            _trip(_t(10), _t(10, 30), km=3.0), _stay(_t(10, 30), _t(12), key="place:3", name="Office"),
        ]
        once = merge_timeline(events, config)
        assert merge_timeline(once, config) == once
        assert len(once) == 5

    def test_unsorted_input_is_ordered(self, config):
        a, t, b = _stay(_t(8), _t(9)), _trip(_t(9), _t(9, 30), km=3.0), _stay(_t(9, 30), _t(10), key="place:2")
        assert merge_timeline([b, a, t], config) == [a, t, b]


class TestInterleave:
    def test_orders_by_start(self):
        a, t, b = _stay(_t(8), _t(9)), _trip(_t(9), _t(9, 5)), _stay(_t(9, 5), _t(10))
        events = interleave([b, a], [t])
        assert events == [a, t, b]
        stays, trips = split_events(events)
        assert stays == [a, b]
        assert trips == [t]
