"""Version fingerprints for cached timeline days.

A day's fingerprint hashes the identity of the fixes that fall on it, the
geometry of the user's favorites, and every tunable of the active config. Any
change to one of them yields a different hash, which makes the cached day
stale. Favorite names are not part of it: renames are patched in place.
"""

import datetime
import hashlib
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import func
from sqlalchemy.orm import Session

from models import Device, Favorite, Location
from timeline_config import TimelineConfig, config_signature
from timeline_models import day_bounds


@dataclass(frozen=True)
class InputSignature:
    point_count: int
    first_timestamp: datetime.datetime | None
    last_timestamp: datetime.datetime | None
    max_location_id: int | None
    favorites: tuple = ()

    def canonical(self) -> str:
        favorites = "|".join(",".join(str(v) for v in fav) for fav in self.favorites)
        return (
            f"points={self.point_count};first={self.first_timestamp};last={self.last_timestamp};"
            f"maxid={self.max_location_id};favorites={favorites}"
        )


def compute_input_signature(db: Session, user_id: int, day: datetime.date) -> InputSignature:
    start, end = day_bounds(day)
    count, first_ts, last_ts, max_id = (
        db.query(
            func.count(Location.id),
            func.min(Location.timestamp),
            func.max(Location.timestamp),
            func.max(Location.id),
        )
        .join(Device, Location.device_id == Device.id)
        .filter(Device.user_id == user_id, Location.timestamp >= start, Location.timestamp < end)
        .one()
    )
    favorites = (
        db.query(Favorite)
        .filter(Favorite.user_id == user_id)
        .order_by(Favorite.id)
        .all()
    )
    return InputSignature(
        point_count=count or 0,
        first_timestamp=first_ts,
        last_timestamp=last_ts,
        max_location_id=max_id,
        favorites=tuple((f.id, f.latitude, f.longitude, f.radius_meters, f.kind) for f in favorites),
    )


def fingerprint(user_id: int, day: datetime.date, signature: InputSignature, config: TimelineConfig) -> str:
    """Deterministic SHA-256 over the day's inputs and the active config."""
    h = hashlib.sha256()
    h.update(f"user={user_id}\n".encode())
    h.update(f"day={day.isoformat()}\n".encode())
    h.update(signature.canonical().encode())
    h.update(b"\n")
    h.update(config_signature(config).encode())
    return h.hexdigest()


def is_valid(cached_entities: Iterable, current_hash: str) -> bool:
    """True iff every cached entity carries ``current_hash`` and none is stale."""
    return all(
        e.version_hash == current_hash and not e.is_stale
        for e in cached_entities
    )
