"""Collapse consecutive stays at the same location separated by a short trip."""

import datetime
import logging
from dataclasses import replace
from typing import Sequence

from timeline_config import TimelineConfig
from timeline_models import TimelineStayPoint, TimelineTrip

logger = logging.getLogger(__name__)


def interleave(stays: Sequence[TimelineStayPoint], trips: Sequence[TimelineTrip]) -> list:
    """Stays and trips as one start-time ordered sequence."""
    return sorted([*stays, *trips], key=lambda e: (e.start_time, e.end_time))


def split_events(events: Sequence) -> tuple[list[TimelineStayPoint], list[TimelineTrip]]:
    stays = [e for e in events if isinstance(e, TimelineStayPoint)]
    trips = [e for e in events if isinstance(e, TimelineTrip)]
    return stays, trips


def same_location(a: TimelineStayPoint, b: TimelineStayPoint) -> bool:
    """Stays share an identity: same location key, else same label."""
    if a.location_key is not None and b.location_key is not None:
        return a.location_key == b.location_key
    if a.location_name is not None and b.location_name is not None:
        return a.location_name == b.location_name
    return False


def _short_or_near(trips: list[TimelineTrip], config: TimelineConfig) -> bool:
    distance_m = sum(t.distance_km for t in trips) * 1000.0
    duration = sum((t.duration for t in trips), datetime.timedelta())
    return (
        distance_m < config.merge_max_distance_meters
        or duration < datetime.timedelta(minutes=config.merge_max_time_gap_minutes)
    )


def merge_timeline(events: Sequence | None, config: TimelineConfig) -> list | None:
    """Merge same-location stays whose intervening trips are short or near.

    The trips between merged stays are removed and the merged stay runs from
    the first arrival to the last departure, so its duration is the sum of
    both stays and the folded trip time. Merging chains left to right; a stay
    at another location breaks the chain. ``None`` in gives ``None`` out.
    """
    if events is None:
        return None
    ordered = sorted(events, key=lambda e: (e.start_time, e.end_time))
    if not config.merge_enabled or not ordered:
        return ordered

    result: list = []
    anchor_index = None   # index in result of the stay we may extend
    pending_trips: list[TimelineTrip] = []

    for event in ordered:
        if isinstance(event, TimelineTrip):
            pending_trips.append(event)
            continue

        if anchor_index is not None:
            anchor = result[anchor_index]
            if same_location(anchor, event) and _short_or_near(pending_trips, config):
                logger.debug(
                    "Merging stays at %s (%s and %s)",
                    event.location_name or event.location_key, anchor.start_time, event.start_time,
                )
                result[anchor_index] = replace(anchor, end_time=max(anchor.end_time, event.end_time))
                pending_trips = []
                continue

        result.extend(pending_trips)
        pending_trips = []
        result.append(event)
        anchor_index = len(result) - 1

    result.extend(pending_trips)
    return result
