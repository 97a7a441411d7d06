"""Timeline queries backed by the versioned per-day cache.

Query protocol:
- windows starting today or later are computed live and never cached (LIVE)
- a closed past day is served from cache when its stored version hash matches
  the current fingerprint; a mismatch regenerates that day and stores it again;
  an absent day is computed, stored and fingerprinted (CACHED)
- multi-day past windows compute absent days one by one, but fall back to a
  direct recomputation of the whole window when any day is stale, queueing the
  stale days for background regeneration (REGENERATING)
- windows spanning the start of today combine both (MIXED)

Regeneration of a (user, day) is serialised by a per-key lock.
"""

import contextlib
import datetime
import logging
import threading
from dataclasses import replace
from typing import Callable, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from errors import InvalidInput, TimelineError, TimelineStorageError
from overnight import OvernightContinuityProcessor, gaps_after
from processing import compute_timeline
from regeneration import Priority
from timeline_cache import TimelineCache, stay_from_row
from timeline_config import TimelineConfig, effective_config
from timeline_merge import split_events
from timeline_models import DataSource, TimelineSnapshot, day_bounds, utcnow
from versioning import compute_input_signature, fingerprint, is_valid

logger = logging.getLogger(__name__)

MAX_TIMELINE_DAYS = 365

_locks_guard = threading.Lock()
# (user, day) -> [lock, holders and waiters]; dropped when nobody uses it
_day_locks: dict[tuple[int, datetime.date], list] = {}


@contextlib.contextmanager
def day_lock(user_id: int, day: datetime.date):
    """Serialise read-modify-write of one cached (user, day)."""
    key = (user_id, day)
    with _locks_guard:
        entry = _day_locks.setdefault(key, [threading.RLock(), 0])
        entry[1] += 1
    try:
        with entry[0]:
            yield
    finally:
        with _locks_guard:
            entry[1] -= 1
            if entry[1] == 0:
                del _day_locks[key]


def validate_range(start: datetime.datetime, end: datetime.datetime) -> None:
    if start is None or end is None:
        raise InvalidInput("time range needs a start and an end")
    if end < start:
        raise InvalidInput(f"time range ends before it starts ({start} > {end})")
    if end - start > datetime.timedelta(days=MAX_TIMELINE_DAYS):
        raise InvalidInput(f"time range exceeds {MAX_TIMELINE_DAYS} days")


def days_in(start: datetime.datetime, end: datetime.datetime) -> list[datetime.date]:
    """Calendar days overlapped by ``[start, end)``."""
    last = (end - datetime.timedelta(microseconds=1)).date() if end > start else start.date()
    day = start.date()
    days = []
    while day <= last:
        days.append(day)
        day += datetime.timedelta(days=1)
    return days


def _overlaps(event, start: datetime.datetime, end: datetime.datetime) -> bool:
    if event.start_time == event.end_time:
        return start <= event.start_time < end
    return event.start_time < end and event.end_time > start


def clip(snapshot: TimelineSnapshot, start: datetime.datetime, end: datetime.datetime) -> TimelineSnapshot:
    """Events overlapping ``[start, end)``; gaps cut to the window."""
    gaps = []
    for gap in snapshot.data_gaps:
        if gap.end_time <= start or gap.start_time >= end:
            continue
        gaps.append(replace(gap, start_time=max(gap.start_time, start), end_time=min(gap.end_time, end)))
    return replace(
        snapshot,
        stays=tuple(s for s in snapshot.stays if _overlaps(s, start, end)),
        trips=tuple(t for t in snapshot.trips if _overlaps(t, start, end)),
        data_gaps=tuple(gaps),
    )


def combine(user_id: int, snapshots: Sequence[TimelineSnapshot], data_source: DataSource) -> TimelineSnapshot:
    """Concatenate per-window snapshots; a later copy of a stay replaces an earlier one."""
    stays = {}
    for snap in snapshots:
        for stay in snap.stays:
            stays[(stay.start_time, stay.location_key)] = stay
    day_versions = {}
    for snap in snapshots:
        day_versions.update(snap.day_versions)
    hashes = {s.version_hash for s in snapshots if s.version_hash}
    return TimelineSnapshot(
        user_id=user_id,
        stays=tuple(sorted(stays.values(), key=lambda s: s.start_time)),
        trips=tuple(sorted((t for s in snapshots for t in s.trips), key=lambda t: t.start_time)),
        data_gaps=tuple(sorted((g for s in snapshots for g in s.data_gaps), key=lambda g: g.start_time)),
        data_source=data_source,
        version_hash=hashes.pop() if len(hashes) == 1 else None,
        is_stale=any(s.is_stale for s in snapshots),
        day_versions=day_versions,
    )


class TimelineService:
    def __init__(self, db: Session, clock: Callable[[], datetime.datetime] = utcnow, queue=None):
        self.db = db
        self.clock = clock
        self.queue = queue

    def today(self) -> datetime.date:
        return self.clock().date()

    # -----------------------------------------------------------------------
    # Public operations
    # -----------------------------------------------------------------------

    def get_timeline(self, user_id: int, start: datetime.datetime, end: datetime.datetime) -> TimelineSnapshot:
        validate_range(start, end)
        today_start, _ = day_bounds(self.today())

        if start >= today_start:
            return self._live(user_id, start, end)
        if end <= today_start:
            return self._past(user_id, start, end)

        past = self._past(user_id, start, today_start)
        live = self._live(user_id, today_start, end)
        return combine(user_id, [past, live], DataSource.MIXED)

    def force_regenerate(self, user_id: int, start: datetime.datetime, end: datetime.datetime) -> TimelineSnapshot:
        """Recompute and replace every cached past day of the window, then query.

        A day whose recomputation fails keeps its previous rows; the result
        is then flagged stale.
        """
        validate_range(start, end)
        past_days = [d for d in days_in(start, end) if d < self.today()]
        failed = []
        if past_days:
            config = effective_config(self.db, user_id)
            for day in past_days:
                with day_lock(user_id, day):
                    try:
                        self._compute_and_store(user_id, day, config, self._current_hash(user_id, day, config))
                    except (SQLAlchemyError, TimelineError) as e:
                        self.db.rollback()
                        logger.error("Forced regeneration of user=%d day=%s failed: %s", user_id, day, e)
                        failed.append(day)
            logger.info(
                "Regenerated %d of %d days for user=%d", len(past_days) - len(failed), len(past_days), user_id,
            )
        snapshot = self.get_timeline(user_id, start, end)
        if failed:
            snapshot = replace(snapshot, is_stale=True)
        return snapshot

    def data_source_for(self, user_id: int, day: datetime.date) -> DataSource:
        if day >= self.today():
            return DataSource.LIVE
        if self.queue is not None and self.queue.is_pending(user_id, day):
            return DataSource.REGENERATING
        return DataSource.CACHED

    def regenerate_day(self, user_id: int, day: datetime.date) -> TimelineSnapshot | None:
        """Recompute and store one closed day (used by the background queue)."""
        if day >= self.today():
            logger.debug("Skipping regeneration of live day %s for user=%d", day, user_id)
            return None
        with day_lock(user_id, day):
            config = effective_config(self.db, user_id)
            return self._compute_and_store(user_id, day, config, self._current_hash(user_id, day, config))

    # -----------------------------------------------------------------------
    # Live windows
    # -----------------------------------------------------------------------

    def _live(self, user_id: int, start: datetime.datetime, end: datetime.datetime) -> TimelineSnapshot:
        end = min(end, self.clock())
        if end <= start:
            return TimelineSnapshot.empty(user_id, DataSource.LIVE)
        try:
            config = effective_config(self.db, user_id)
            snapshot = compute_timeline(self.db, user_id, config, start, end)
            if start.time() == datetime.time():
                snapshot = self._with_live_context(user_id, start, snapshot, config)
            self.db.commit()
            return snapshot
        except (SQLAlchemyError, TimelineStorageError) as e:
            self.db.rollback()
            logger.warning("Live timeline for user=%d failed, serving an empty one: %s", user_id, e)
            return TimelineSnapshot.empty(user_id, DataSource.LIVE)

    def _with_live_context(
        self, user_id: int, boundary: datetime.datetime, snapshot: TimelineSnapshot, config: TimelineConfig,
    ) -> TimelineSnapshot:
        """Prepend yesterday's last stay, extended in memory only."""
        result = OvernightContinuityProcessor(self.db).apply(
            user_id, boundary, snapshot.events, config.staypoint_radius_meters, persist=False,
        )
        if result.extended_stay is None:
            return snapshot
        stays, trips = split_events(result.events)
        return replace(
            snapshot,
            stays=(result.extended_stay, *stays),
            trips=tuple(trips),
            data_gaps=tuple(gaps_after(snapshot.data_gaps, result.extended_stay.end_time)),
        )

    # -----------------------------------------------------------------------
    # Past windows
    # -----------------------------------------------------------------------

    def _past(self, user_id: int, start: datetime.datetime, end: datetime.datetime) -> TimelineSnapshot:
        days = days_in(start, end)
        if len(days) == 1:
            snapshot = self._day_snapshot(user_id, days[0])
        else:
            snapshot = self._past_range(user_id, days, start, end)
        return clip(self._with_carried_stay(user_id, days[0], snapshot), start, end)

    def _current_hash(self, user_id: int, day: datetime.date, config: TimelineConfig) -> str:
        return fingerprint(user_id, day, compute_input_signature(self.db, user_id, day), config)

    def _point_count(self, user_id: int, day: datetime.date) -> int:
        return compute_input_signature(self.db, user_id, day).point_count

    def _day_snapshot(self, user_id: int, day: datetime.date) -> TimelineSnapshot:
        with day_lock(user_id, day):
            cache = TimelineCache(self.db)
            cached = cache.load_day(user_id, day)
            config = effective_config(self.db, user_id)
            current = self._current_hash(user_id, day, config)

            if cached is None:
                logger.info("No cached timeline for user=%d day=%s, computing", user_id, day)
                return self._compute_and_store(user_id, day, config, current)
            if is_valid(cached.entities, current):
                return cached.to_snapshot(user_id)

            logger.info("Cached timeline for user=%d day=%s is stale, regenerating", user_id, day)
            try:
                return self._compute_and_store(user_id, day, config, current)
            except (SQLAlchemyError, TimelineError) as e:
                logger.error("Regenerating user=%d day=%s failed, serving stale copy: %s", user_id, day, e)
                previous = TimelineCache(self.db).load_day(user_id, day)
                if previous is None:
                    raise
                return replace(previous.to_snapshot(user_id), is_stale=True)

    def _past_range(
        self, user_id: int, days: list[datetime.date], start: datetime.datetime, end: datetime.datetime,
    ) -> TimelineSnapshot:
        cache = TimelineCache(self.db)
        config = effective_config(self.db, user_id)
        snapshots = {}
        missing, stale = [], []

        for day in days:
            view = cache.load_day(user_id, day)
            if view is None:
                missing.append(day)
            elif is_valid(view.entities, self._current_hash(user_id, day, config)):
                snapshots[day] = view.to_snapshot(user_id)
            else:
                stale.append(day)

        if stale:
            logger.info(
                "%d of %d days stale for user=%d, recomputing %s..%s directly",
                len(stale), len(days), user_id, start, end,
            )
            if self.queue is not None:
                self.queue.enqueue(user_id, stale, Priority.LOW)
            snapshot = compute_timeline(self.db, user_id, config, start, end)
            self.db.commit()
            return replace(snapshot, data_source=DataSource.REGENERATING)

        for day in missing:
            with day_lock(user_id, day):
                snapshots[day] = self._compute_and_store(
                    user_id, day, config, self._current_hash(user_id, day, config),
                )
        return combine(user_id, [snapshots[d] for d in days], DataSource.CACHED)

    def _with_carried_stay(self, user_id: int, day: datetime.date, snapshot: TimelineSnapshot) -> TimelineSnapshot:
        """Add an earlier day's stay that was extended into ``day``."""
        day_start, _ = day_bounds(day)
        row = TimelineCache(self.db).carried_over_stay(user_id, day_start)
        if row is None:
            return snapshot
        stay = stay_from_row(row)
        if any(s.start_time == stay.start_time for s in snapshot.stays):
            return snapshot
        return replace(snapshot, stays=(stay, *snapshot.stays))

    # -----------------------------------------------------------------------
    # Compute + persist one day
    # -----------------------------------------------------------------------

    def _compute_and_store(
        self, user_id: int, day: datetime.date, config: TimelineConfig, version_hash: str,
    ) -> TimelineSnapshot:
        """Segment one closed day and replace its cache rows in one transaction."""
        start, end = day_bounds(day)
        try:
            computed = compute_timeline(self.db, user_id, config, start, end)
            overnight = OvernightContinuityProcessor(self.db)
            continuity = overnight.apply(user_id, start, computed.events, config.staypoint_radius_meters)

            stays, trips = split_events(continuity.events)
            gaps = computed.data_gaps
            if continuity.extended_stay is not None:
                gaps = gaps_after(gaps, continuity.extended_stay.end_time)

            snapshot = TimelineSnapshot(
                user_id=user_id,
                stays=tuple(stays),
                trips=tuple(trips),
                data_gaps=tuple(gaps),
                data_source=DataSource.CACHED,
                version_hash=version_hash,
                day_versions={day.isoformat(): version_hash},
            )
            cache = TimelineCache(self.db)
            cache.replace_day(user_id, day, snapshot, version_hash, self._point_count(user_id, day))

            next_day = day + datetime.timedelta(days=1)
            following = cache.load_day(user_id, next_day)
            if following is not None:
                next_events = following.to_snapshot(user_id).events
                overnight.restitch(user_id, end, next_events, config.staypoint_radius_meters)

            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            "Stored timeline user=%d day=%s: %d stays, %d trips, %d gaps (%s)",
            user_id, day, len(snapshot.stays), len(snapshot.trips), len(snapshot.data_gaps),
            continuity.decision.outcome.value,
        )
        return snapshot
