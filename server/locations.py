"""Location identity for stays: favorites first, then snapped places.

The key returned here is what the merger and the overnight processor compare
to decide whether two stays are "the same place".
"""

import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session

from geo import haversine_m
from models import Favorite, Place

logger = logging.getLogger(__name__)

# Snap to an existing place within this distance
PLACE_SNAP_RADIUS_M = 80.0


@dataclass(frozen=True, slots=True)
class LocationLabel:
    key: str
    name: str
    favorite_id: int | None = None


def snap_to_place(
    db: Session,
    user_id: int,
    lat: float,
    lon: float,
    snap_radius: float = PLACE_SNAP_RADIUS_M,
) -> Place:
    """Find the nearest existing Place within ``snap_radius``, or create one."""
    places = db.query(Place).filter(Place.user_id == user_id).all()

    best_place = None
    best_dist = float("inf")

    for p in places:
        d = haversine_m(lat, lon, p.latitude, p.longitude)
        if d < best_dist:
            best_dist = d
            best_place = p

    if best_place is not None and best_dist <= snap_radius:
        return best_place

    new_place = Place(user_id=user_id, latitude=lat, longitude=lon)
    db.add(new_place)
    db.flush()  # get the id
    logger.debug("Created place %d at %.5f, %.5f for user=%d", new_place.id, lat, lon, user_id)
    return new_place


def place_label(place: Place) -> str:
    return place.name or place.address or f"{place.latitude:.5f}, {place.longitude:.5f}"


class LocationResolver:
    """Callable ``(lat, lon) -> LocationLabel`` for one user."""

    def __init__(self, db: Session, user_id: int, snap_radius: float = PLACE_SNAP_RADIUS_M):
        self.db = db
        self.user_id = user_id
        self.snap_radius = snap_radius
        self._favorites = None

    def favorites(self) -> list[Favorite]:
        if self._favorites is None:
            self._favorites = (
                self.db.query(Favorite)
                .filter(Favorite.user_id == self.user_id)
                .order_by(Favorite.id)
                .all()
            )
        return self._favorites

    def favorite_at(self, lat: float, lon: float) -> Favorite | None:
        """Nearest favorite whose radius contains the position."""
        best, best_dist = None, float("inf")
        for fav in self.favorites():
            d = haversine_m(lat, lon, fav.latitude, fav.longitude)
            if d <= fav.radius_meters and d < best_dist:
                best, best_dist = fav, d
        return best

    def __call__(self, lat: float, lon: float) -> LocationLabel:
        fav = self.favorite_at(lat, lon)
        if fav is not None:
            return LocationLabel(key=f"favorite:{fav.id}", name=fav.name, favorite_id=fav.id)
        place = snap_to_place(self.db, self.user_id, lat, lon, self.snap_radius)
        return LocationLabel(key=f"place:{place.id}", name=place_label(place))
