"""Data-gap detection: intervals of a window with no GPS fixes."""

import datetime
from typing import Iterable, Sequence

from errors import InvalidInput
from timeline_config import TimelineConfig
from timeline_models import DataGap, TrackPoint


def detect_data_gaps(
    window_start: datetime.datetime,
    window_end: datetime.datetime,
    timestamps: Iterable[datetime.datetime],
    min_gap: datetime.timedelta,
) -> list[DataGap]:
    """Gaps longer than ``min_gap`` inside ``[window_start, window_end)``.

    The stretch before the first fix and after the last one count too. A
    window without any fix is reported as one gap covering all of it.
    """
    if window_start is None or window_end is None:
        raise InvalidInput("data gap window needs a start and an end")
    if window_end < window_start:
        raise InvalidInput(f"window ends before it starts ({window_start} > {window_end})")
    if window_end == window_start:
        return []

    inside = sorted(ts for ts in timestamps if window_start <= ts < window_end)
    if not inside:
        return [DataGap(start_time=window_start, end_time=window_end)]

    gaps = []
    previous = window_start
    for ts in inside:
        if ts - previous > min_gap:
            gaps.append(DataGap(start_time=previous, end_time=ts))
        previous = ts
    if window_end - previous > min_gap:
        gaps.append(DataGap(start_time=previous, end_time=window_end))
    return gaps


def gaps_for_points(
    window_start: datetime.datetime,
    window_end: datetime.datetime,
    points: Sequence[TrackPoint],
    config: TimelineConfig,
) -> list[DataGap]:
    min_gap = datetime.timedelta(minutes=config.data_gap_min_duration_minutes)
    return detect_data_gaps(window_start, window_end, (p.timestamp for p in points), min_gap)
