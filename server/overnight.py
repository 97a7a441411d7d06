"""Overnight continuity: stitch the last persisted stay across a day boundary.

Protocol for one boundary (normally midnight):
1. read the latest persisted stay/trip that started before the boundary
2. compare it with the first event of the newly computed window
3. if it continues, issue one update of that record's end time

Outcomes:
- NO_PREDECESSOR: nothing persisted before the boundary; the window stands alone
- EXTENDED: the window starts with something else later on; the predecessor
  stay is extended up to that moment
- CONTINUED: the window starts with more of the same stay; the predecessor
  absorbs it and ends where it ends
- UNCHANGED: no events, a trip predecessor, or nothing to extend
"""

import datetime
import enum
import logging
from dataclasses import dataclass, replace
from typing import Sequence

from sqlalchemy.orm import Session

from geo import within_radius
from models import CachedStay, CachedTrip
from timeline_cache import own_stay, trip_from_row
from timeline_merge import same_location
from timeline_models import DataGap, TimelineStayPoint

logger = logging.getLogger(__name__)


class ContinuityOutcome(str, enum.Enum):
    NO_PREDECESSOR = "NO_PREDECESSOR"
    EXTENDED = "EXTENDED"
    CONTINUED = "CONTINUED"
    UNCHANGED = "UNCHANGED"


@dataclass(frozen=True)
class ContinuityDecision:
    outcome: ContinuityOutcome
    new_end: datetime.datetime | None = None
    absorbs_first_event: bool = False


def _same_place(a: TimelineStayPoint, b: TimelineStayPoint, radius_m: float) -> bool:
    labelled = (a.location_key is not None and b.location_key is not None) or (
        a.location_name is not None and b.location_name is not None
    )
    if labelled:
        return same_location(a, b)
    return within_radius(a, b, radius_m)


def plan_continuity(
    predecessor,
    events: Sequence,
    boundary: datetime.datetime,
    radius_m: float,
) -> ContinuityDecision:
    """Decide how ``predecessor`` relates to the first of the new ``events``."""
    if predecessor is None:
        return ContinuityDecision(ContinuityOutcome.NO_PREDECESSOR)
    if not isinstance(predecessor, TimelineStayPoint) or not events:
        return ContinuityDecision(ContinuityOutcome.UNCHANGED)

    first = events[0]
    if isinstance(first, TimelineStayPoint) and _same_place(predecessor, first, radius_m):
        return ContinuityDecision(
            ContinuityOutcome.CONTINUED,
            new_end=max(predecessor.end_time, first.end_time),
            absorbs_first_event=True,
        )
    if first.start_time > boundary and first.start_time > predecessor.end_time:
        return ContinuityDecision(ContinuityOutcome.EXTENDED, new_end=first.start_time)
    return ContinuityDecision(ContinuityOutcome.UNCHANGED)


def gaps_after(gaps: Sequence[DataGap], covered_until: datetime.datetime) -> list[DataGap]:
    """Drop the parts of ``gaps`` that an extended stay now covers."""
    kept = []
    for gap in gaps:
        if gap.end_time <= covered_until:
            continue
        if gap.start_time < covered_until:
            gap = replace(gap, start_time=covered_until)
        kept.append(gap)
    return kept


@dataclass
class ContinuityResult:
    decision: ContinuityDecision
    events: list
    extended_stay: TimelineStayPoint | None = None


class OvernightContinuityProcessor:
    def __init__(self, db: Session):
        self.db = db

    def find_predecessor(self, user_id: int, boundary: datetime.datetime):
        """Latest persisted stay or trip row starting before ``boundary``."""
        candidates = []
        for model in (CachedStay, CachedTrip):
            row = (
                self.db.query(model)
                .filter(model.user_id == user_id, model.start_time < boundary)
                .order_by(model.start_time.desc(), model.end_time.desc())
                .first()
            )
            if row is not None:
                candidates.append(row)
        if not candidates:
            return None
        return max(candidates, key=lambda r: (r.start_time, r.end_time))

    def apply(
        self,
        user_id: int,
        boundary: datetime.datetime,
        events: Sequence,
        radius_m: float,
        persist: bool = True,
    ) -> ContinuityResult:
        """Reconcile the new window's ``events`` with the persisted predecessor.

        The predecessor is judged by the end computed for its own day, so an
        earlier extension the new events no longer support is taken back.
        With ``persist=False`` nothing is written; the extended stay is only
        returned (used for live views of today).
        """
        row = self.find_predecessor(user_id, boundary)
        predecessor = None
        if isinstance(row, CachedStay):
            predecessor = own_stay(row)
        elif isinstance(row, CachedTrip):
            predecessor = trip_from_row(row)

        decision = plan_continuity(predecessor, events, boundary, radius_m)
        remaining = list(events)
        if decision.absorbs_first_event:
            remaining = remaining[1:]

        extended = None
        if decision.new_end is not None:
            extended = replace(predecessor, end_time=decision.new_end)
        if persist and isinstance(row, CachedStay):
            self._settle(row, predecessor.end_time if extended is None else decision.new_end)
        return ContinuityResult(decision=decision, events=remaining, extended_stay=extended)

    def _settle(self, row: CachedStay, end: datetime.datetime) -> None:
        if end == row.end_time:
            return
        if end > row.end_time:
            self.extend(row, end)
        else:
            self.retract(row, end)

    def _set_end(self, row: CachedStay, new_end: datetime.datetime) -> None:
        self.db.query(CachedStay).filter(CachedStay.id == row.id).update({
            "end_time": new_end,
            "duration_seconds": int((new_end - row.start_time).total_seconds()),
        })

    def extend(self, row: CachedStay, new_end: datetime.datetime) -> None:
        """Single targeted update of one persisted stay's end boundary."""
        old_end = row.end_time
        self._set_end(row, new_end)
        logger.info(
            "Extended stay %d (user=%d) from %s to %s across day boundary",
            row.id, row.user_id, old_end, new_end,
        )

    def retract(self, row: CachedStay, new_end: datetime.datetime) -> None:
        """Pull a previously extended stay back to ``new_end``."""
        old_end = row.end_time
        self._set_end(row, new_end)
        logger.info(
            "Shortened stay %d (user=%d) from %s back to %s",
            row.id, row.user_id, old_end, new_end,
        )

    def restitch(
        self,
        user_id: int,
        boundary: datetime.datetime,
        next_events: Sequence,
        radius_m: float,
    ) -> ContinuityDecision:
        """Extend the stay before ``boundary`` again after its day was rebuilt.

        Only an EXTENDED outcome is written; the cached events after the
        boundary are left as they are.
        """
        row = self.find_predecessor(user_id, boundary)
        if not isinstance(row, CachedStay):
            outcome = ContinuityOutcome.NO_PREDECESSOR if row is None else ContinuityOutcome.UNCHANGED
            return ContinuityDecision(outcome)
        decision = plan_continuity(own_stay(row), next_events, boundary, radius_m)
        if decision.outcome is ContinuityOutcome.EXTENDED and decision.new_end != row.end_time:
            self.extend(row, decision.new_end)
        return decision
