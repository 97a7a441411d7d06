"""REST API for timeline queries, fix uploads and favorite edits."""

import contextlib
import datetime
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from database import get_db
from errors import InvalidConfig, InvalidInput, TimelineStorageError
from models import Device, Favorite, Location, User
from regeneration import FavoriteChanged, FavoriteRenamed, TimelineEventHandler, get_queue
from timeline_cache import TimelineCache
from timeline_models import TimelineSnapshot, utcnow
from timeline_service import TimelineService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------

class TimeRange(BaseModel):
    start: datetime.datetime
    end: datetime.datetime


class StayResponse(BaseModel):
    latitude: float
    longitude: float
    start_time: str
    end_time: str
    duration_seconds: int
    location_key: Optional[str] = None
    location_name: Optional[str] = None
    favorite_id: Optional[int] = None


class TripResponse(BaseModel):
    start_time: str
    end_time: str
    duration_seconds: int
    distance_km: float
    travel_mode: str
    avg_speed_kmh: Optional[float] = None
    max_speed_kmh: Optional[float] = None
    path: list[list[float]]


class DataGapResponse(BaseModel):
    start_time: str
    end_time: str
    duration_seconds: int


class TimelineResponse(BaseModel):
    user_id: int
    data_source: str
    version_hash: Optional[str] = None
    is_stale: bool = False
    stays: list[StayResponse]
    trips: list[TripResponse]
    data_gaps: list[DataGapResponse]


class LocationPoint(BaseModel):
    latitude: float
    longitude: float
    altitude: Optional[float] = None
    horizontal_accuracy: Optional[float] = None
    speed: Optional[float] = None
    course: Optional[float] = None
    timestamp: str = Field(..., description="ISO 8601 timestamp from the device")


class LocationBatch(BaseModel):
    device_id: int
    locations: list[LocationPoint]


class BatchResponse(BaseModel):
    received: int
    batch_id: str
    stale_days: list[str] = []


class FavoriteCreate(BaseModel):
    name: str
    latitude: float
    longitude: float
    radius_meters: float = 75.0
    kind: str = Field("point", pattern="^(point|area)$")


class FavoriteResponse(BaseModel):
    id: int
    name: str
    latitude: float
    longitude: float
    radius_meters: float
    kind: str

    class Config:
        from_attributes = True


class FavoriteRename(BaseModel):
    name: str


class ImpactResponse(BaseModel):
    favorite_id: int
    name: str
    impact: str
    affected_days: list[str]
    patched_rows: int = 0


def snapshot_response(snapshot: TimelineSnapshot) -> TimelineResponse:
    return TimelineResponse(
        user_id=snapshot.user_id,
        data_source=snapshot.data_source.value,
        version_hash=snapshot.version_hash,
        is_stale=snapshot.is_stale,
        stays=[
            StayResponse(
                latitude=s.latitude,
                longitude=s.longitude,
                start_time=s.start_time.isoformat(),
                end_time=s.end_time.isoformat(),
                duration_seconds=int(s.duration.total_seconds()),
                location_key=s.location_key,
                location_name=s.location_name,
                favorite_id=s.favorite_id,
            )
            for s in snapshot.stays
        ],
        trips=[
            TripResponse(
                start_time=t.start_time.isoformat(),
                end_time=t.end_time.isoformat(),
                duration_seconds=int(t.duration.total_seconds()),
                distance_km=round(t.distance_km, 3),
                travel_mode=t.travel_mode.value,
                avg_speed_kmh=t.statistics.avg_speed_kmh if t.statistics else None,
                max_speed_kmh=t.statistics.max_speed_kmh if t.statistics else None,
                path=[[p.latitude, p.longitude] for p in t.path],
            )
            for t in snapshot.trips
        ],
        data_gaps=[
            DataGapResponse(
                start_time=g.start_time.isoformat(),
                end_time=g.end_time.isoformat(),
                duration_seconds=int(g.duration.total_seconds()),
            )
            for g in snapshot.data_gaps
        ],
    )


# ---------------------------------------------------------------------------
# Dependencies and helpers
# ---------------------------------------------------------------------------

def get_clock():
    return utcnow


def get_timeline_queue():
    return get_queue()


def get_user(user_id: int, db: Session = Depends(get_db)) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return user


def _naive_utc(value: datetime.datetime) -> datetime.datetime:
    if value.tzinfo is not None:
        value = value.astimezone(datetime.timezone.utc).replace(tzinfo=None)
    return value


@contextlib.contextmanager
def timeline_errors():
    """Map engine errors onto HTTP status codes."""
    try:
        yield
    except (InvalidInput, InvalidConfig) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except TimelineStorageError as e:
        logger.error("Timeline storage unavailable: %s", e)
        raise HTTPException(status_code=503, detail="Timeline storage unavailable")


# ---------------------------------------------------------------------------
# Timeline endpoints
# ---------------------------------------------------------------------------

@router.get("/users/{user_id}/timeline", response_model=TimelineResponse)
def get_timeline(
    start: datetime.datetime,
    end: datetime.datetime,
    user: User = Depends(get_user),
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
    queue=Depends(get_timeline_queue),
):
    service = TimelineService(db, clock=clock, queue=queue)
    with timeline_errors():
        snapshot = service.get_timeline(user.id, _naive_utc(start), _naive_utc(end))
    return snapshot_response(snapshot)


@router.post("/users/{user_id}/timeline/regenerate", response_model=TimelineResponse)
def regenerate_timeline(
    req: TimeRange,
    user: User = Depends(get_user),
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
    queue=Depends(get_timeline_queue),
):
    """Drop the cached days of the range and compute them again."""
    service = TimelineService(db, clock=clock, queue=queue)
    with timeline_errors():
        snapshot = service.force_regenerate(user.id, _naive_utc(req.start), _naive_utc(req.end))
    logger.info("Forced regeneration for user=%d %s..%s", user.id, req.start, req.end)
    return snapshot_response(snapshot)


@router.get("/users/{user_id}/timeline/source")
def timeline_source(
    day: datetime.date,
    user: User = Depends(get_user),
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
    queue=Depends(get_timeline_queue),
):
    service = TimelineService(db, clock=clock, queue=queue)
    return {"day": day.isoformat(), "data_source": service.data_source_for(user.id, day).value}


@router.get("/users/{user_id}/timeline/cached-days")
def cached_days(user: User = Depends(get_user), db: Session = Depends(get_db)):
    with timeline_errors():
        days = TimelineCache(db).cached_days(user.id)
    return {"days": [d.isoformat() for d in days]}


@router.delete("/users/{user_id}/timeline/cache")
def clear_cache(user: User = Depends(get_user), db: Session = Depends(get_db)):
    with timeline_errors():
        removed = TimelineCache(db).delete_all(user.id)
        db.commit()
    logger.info("Cleared timeline cache for user=%d (%d rows)", user.id, removed)
    return {"deleted": removed}


# ---------------------------------------------------------------------------
# Location upload
# ---------------------------------------------------------------------------

@router.post("/users/{user_id}/locations", response_model=BatchResponse)
def upload_locations(
    batch: LocationBatch,
    user: User = Depends(get_user),
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
    queue=Depends(get_timeline_queue),
):
    device = db.query(Device).filter(Device.id == batch.device_id, Device.user_id == user.id).first()
    if not device:
        raise HTTPException(status_code=404, detail="Device not found or not owned by user")

    batch_id = uuid.uuid4().hex[:12]
    now = clock()
    timestamps = []
    for pt in batch.locations:
        try:
            ts = _naive_utc(datetime.datetime.fromisoformat(pt.timestamp))
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid timestamp: {pt.timestamp}")
        timestamps.append(ts)
        db.add(Location(
            device_id=device.id,
            latitude=pt.latitude,
            longitude=pt.longitude,
            altitude=pt.altitude,
            horizontal_accuracy=pt.horizontal_accuracy,
            speed=pt.speed,
            course=pt.course,
            timestamp=ts,
            received_at=now,
            batch_id=batch_id,
        ))

    device.last_seen = now
    db.commit()

    logger.info(
        "Received %d locations from user=%d device=%d batch=%s",
        len(batch.locations), user.id, device.id, batch_id,
    )

    with timeline_errors():
        stale = TimelineEventHandler(db, queue, clock).on_points_imported(user.id, timestamps)
    return BatchResponse(
        received=len(batch.locations),
        batch_id=batch_id,
        stale_days=[d.isoformat() for d in stale],
    )


# ---------------------------------------------------------------------------
# Favorites
# ---------------------------------------------------------------------------

@router.post("/users/{user_id}/favorites", response_model=FavoriteResponse, status_code=201)
def create_favorite(
    req: FavoriteCreate,
    user: User = Depends(get_user),
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
    queue=Depends(get_timeline_queue),
):
    favorite = Favorite(user_id=user.id, **req.model_dump())
    db.add(favorite)
    db.commit()
    db.refresh(favorite)
    logger.info("Favorite created: %s (id=%d) for user=%d", favorite.name, favorite.id, user.id)

    with timeline_errors():
        TimelineEventHandler(db, queue, clock).on_favorite_changed(FavoriteChanged(user.id, favorite.id))
    return favorite


@router.put("/users/{user_id}/favorites/{favorite_id}/name", response_model=ImpactResponse)
def rename_favorite(
    favorite_id: int,
    body: FavoriteRename,
    user: User = Depends(get_user),
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
    queue=Depends(get_timeline_queue),
):
    favorite = db.query(Favorite).filter(Favorite.id == favorite_id, Favorite.user_id == user.id).first()
    if not favorite:
        raise HTTPException(status_code=404, detail="Favorite not found")
    old_name = favorite.name
    favorite.name = body.name
    db.commit()

    event = FavoriteRenamed(user.id, favorite.id, old_name, body.name, favorite.kind)
    with timeline_errors():
        analysis = TimelineEventHandler(db, queue, clock).on_favorite_renamed(event)
    return ImpactResponse(
        favorite_id=favorite.id,
        name=favorite.name,
        impact=analysis.kind.value,
        affected_days=[d.isoformat() for d in analysis.affected_days],
        patched_rows=analysis.patched_rows,
    )
