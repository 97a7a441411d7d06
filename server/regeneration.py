"""Background timeline regeneration and cache-invalidation hooks.

Edits upstream of the timeline (favorite renames and moves, bulk imports of
fixes) either patch cached rows in place or mark the affected days stale and
queue them for regeneration. The queue is a priority queue drained by a small
pool of worker threads; a (user, day) that is already pending is not queued
twice. Every run is journalled in ``regeneration_jobs``.
"""

import datetime
import enum
import itertools
import logging
import os
import queue
import threading
from dataclasses import dataclass
from typing import Callable, Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import RegenerationJob
from timeline_cache import TimelineCache
from timeline_models import utcnow

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
DEFAULT_WORKERS = 2


class Priority(enum.IntEnum):
    HIGH = 0
    LOW = 1


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------

class RegenerationQueue:
    def __init__(
        self,
        session_factory: Callable[[], Session] | None = None,
        workers: int | None = None,
        clock: Callable[[], datetime.datetime] = utcnow,
    ):
        if session_factory is None:
            from database import SessionLocal
            session_factory = SessionLocal
        if workers is None:
            workers = int(os.environ.get("REGENERATION_WORKERS", DEFAULT_WORKERS))
        self.session_factory = session_factory
        self.workers = max(1, workers)
        self.clock = clock
        self._queue: queue.PriorityQueue = queue.PriorityQueue()
        self._pending: set[tuple[int, datetime.date]] = set()
        self._lock = threading.Lock()
        self._sequence = itertools.count()
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    def enqueue(
        self, user_id: int, days: Iterable[datetime.date], priority: Priority = Priority.LOW,
    ) -> int:
        """Queue each day not already pending; returns how many were added."""
        added = 0
        with self._lock:
            for day in sorted(set(days)):
                key = (user_id, day)
                if key in self._pending:
                    continue
                self._pending.add(key)
                self._queue.put((int(priority), next(self._sequence), user_id, day, 1))
                added += 1
        if added:
            logger.info("Queued %d day(s) for user=%d at %s priority", added, user_id, priority.name)
        return added

    def is_pending(self, user_id: int, day: datetime.date) -> bool:
        with self._lock:
            return (user_id, day) in self._pending

    def pending(self) -> list[tuple[int, datetime.date]]:
        with self._lock:
            return sorted(self._pending)

    # -- workers -------------------------------------------------------------

    def start(self) -> None:
        if self._threads:
            return
        self._stop.clear()
        for n in range(self.workers):
            t = threading.Thread(target=self._worker, name=f"timeline-regen-{n}", daemon=True)
            t.start()
            self._threads.append(t)
        logger.info("Started %d regeneration worker(s)", self.workers)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        for t in self._threads:
            t.join(timeout)
        self._threads = []

    def _worker(self) -> None:
        while not self._stop.is_set():
            try:
                item = self._queue.get(timeout=0.5)
            except queue.Empty:
                continue
            try:
                self._process(item)
            finally:
                self._queue.task_done()

    def run_once(self) -> bool:
        """Process one queued item on the calling thread, if any."""
        try:
            item = self._queue.get_nowait()
        except queue.Empty:
            return False
        try:
            self._process(item)
        finally:
            self._queue.task_done()
        return True

    def drain(self) -> int:
        processed = 0
        while self.run_once():
            processed += 1
        return processed

    def _process(self, item) -> None:
        from timeline_service import TimelineService

        priority, _, user_id, day, attempt = item
        retry = False
        db = None
        job_id = None
        try:
            db = self.session_factory()
            job = RegenerationJob(
                user_id=user_id,
                day=day,
                priority=Priority(priority).name,
                status="running",
                attempts=attempt,
                started_at=utcnow(),
            )
            db.add(job)
            db.commit()
            job_id = job.id

            TimelineService(db, clock=self.clock, queue=self).regenerate_day(user_id, day)
            job = db.query(RegenerationJob).filter(RegenerationJob.id == job_id).first()
            job.status = "completed"
            job.finished_at = utcnow()
            db.commit()
            logger.info("Regenerated user=%d day=%s (attempt %d)", user_id, day, attempt)
        except Exception as e:
            logger.exception("Regeneration of user=%d day=%s failed (attempt %d)", user_id, day, attempt)
            retry = attempt < MAX_RETRIES
            if db is not None:
                self._journal_failure(db, job_id, e)
        finally:
            if db is not None:
                db.close()
            with self._lock:
                if retry:
                    self._queue.put((priority, next(self._sequence), user_id, day, attempt + 1))
                else:
                    self._pending.discard((user_id, day))

    def _journal_failure(self, db: Session, job_id: int | None, error: Exception) -> None:
        try:
            db.rollback()
            if job_id is None:
                return
            job = db.query(RegenerationJob).filter(RegenerationJob.id == job_id).first()
            if job:
                job.status = "failed"
                job.finished_at = utcnow()
                job.error_message = str(error)
                db.commit()
        except SQLAlchemyError as e:
            logger.error("Could not journal failed regeneration job %s: %s", job_id, e)


_queue: RegenerationQueue | None = None


def get_queue() -> RegenerationQueue:
    """Process-wide queue used by the HTTP layer."""
    global _queue
    if _queue is None:
        _queue = RegenerationQueue()
    return _queue


# ---------------------------------------------------------------------------
# Upstream events and their impact on the cache
# ---------------------------------------------------------------------------

class ImpactKind(str, enum.Enum):
    NAME_ONLY = "NAME_ONLY"
    STRUCTURAL = "STRUCTURAL"


@dataclass(frozen=True)
class FavoriteRenamed:
    user_id: int
    favorite_id: int
    old_name: str | None
    new_name: str
    kind: str = "point"


@dataclass(frozen=True)
class FavoriteChanged:
    """A favorite was added, moved, resized or deleted."""

    user_id: int
    favorite_id: int


@dataclass(frozen=True)
class ImpactAnalysis:
    kind: ImpactKind
    affected_days: tuple[datetime.date, ...] = ()
    patched_rows: int = 0


def analyze_favorite_change(cache: TimelineCache, event) -> ImpactAnalysis:
    """Renaming a point favorite only touches labels; anything else is structural.

    Area favorites carry their name into the stays they cover, so a rename of
    one is treated like a geometry change.
    """
    if isinstance(event, FavoriteRenamed):
        days = tuple(cache.days_with_favorite(event.user_id, event.favorite_id))
        kind = ImpactKind.STRUCTURAL if event.kind == "area" else ImpactKind.NAME_ONLY
        return ImpactAnalysis(kind=kind, affected_days=days)
    return ImpactAnalysis(kind=ImpactKind.STRUCTURAL, affected_days=tuple(cache.cached_days(event.user_id)))


class TimelineEventHandler:
    def __init__(
        self,
        db: Session,
        queue: RegenerationQueue | None = None,
        clock: Callable[[], datetime.datetime] = utcnow,
    ):
        self.db = db
        self.queue = queue
        self.clock = clock
        self.cache = TimelineCache(db)

    def _past(self, days: Iterable[datetime.date]) -> list[datetime.date]:
        today = self.clock().date()
        return sorted(d for d in set(days) if d < today)

    def _invalidate(self, user_id: int, days: list[datetime.date], priority: Priority) -> None:
        flagged = self.cache.mark_stale(user_id, days)
        self.db.commit()
        logger.info("Marked %d cached day(s) stale for user=%d", flagged, user_id)
        if self.queue is not None and days:
            self.queue.enqueue(user_id, days, priority)

    def on_favorite_renamed(self, event: FavoriteRenamed) -> ImpactAnalysis:
        analysis = analyze_favorite_change(self.cache, event)
        if analysis.kind is ImpactKind.NAME_ONLY:
            patched = self.cache.patch_location_name(event.user_id, event.favorite_id, event.new_name)
            self.db.commit()
            logger.info(
                "Renamed favorite %d to %r in %d cached stay(s)", event.favorite_id, event.new_name, patched,
            )
            return ImpactAnalysis(ImpactKind.NAME_ONLY, analysis.affected_days, patched)

        self._invalidate(event.user_id, list(analysis.affected_days), Priority.HIGH)
        return analysis

    def on_favorite_changed(self, event: FavoriteChanged) -> ImpactAnalysis:
        analysis = analyze_favorite_change(self.cache, event)
        self._invalidate(event.user_id, self._past(analysis.affected_days), Priority.HIGH)
        return analysis

    def on_points_imported(self, user_id: int, timestamps: Iterable[datetime.datetime]) -> list[datetime.date]:
        """Invalidate the closed days that received new fixes; returns them."""
        cached = set(self.cache.cached_days(user_id))
        days = [d for d in self._past(ts.date() for ts in timestamps) if d in cached]
        if days:
            self._invalidate(user_id, days, Priority.LOW)
        return days
