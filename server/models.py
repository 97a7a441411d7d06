"""SQLAlchemy models: raw fixes, places, favorites, config, and the timeline cache."""

from sqlalchemy import (
    Boolean, Column, Date, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint,
)
from sqlalchemy.orm import relationship

from database import Base
from timeline_models import utcnow


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String, unique=True, nullable=False, index=True)
    email = Column(String, unique=True, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    is_active = Column(Boolean, default=True)

    devices = relationship("Device", back_populates="owner", cascade="all, delete-orphan")


class Device(Base):
    __tablename__ = "devices"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    identifier = Column(String, unique=True, nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime, default=utcnow)
    last_seen = Column(DateTime, nullable=True)

    owner = relationship("User", back_populates="devices")
    locations = relationship("Location", back_populates="device", cascade="all, delete-orphan")


class Location(Base):
    """One raw GPS fix as uploaded by a device. ``speed`` is m/s."""

    __tablename__ = "locations"

    id = Column(Integer, primary_key=True, index=True)
    device_id = Column(Integer, ForeignKey("devices.id"), nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    altitude = Column(Float, nullable=True)
    horizontal_accuracy = Column(Float, nullable=True)
    speed = Column(Float, nullable=True)
    course = Column(Float, nullable=True)
    timestamp = Column(DateTime, nullable=False, index=True)
    received_at = Column(DateTime, default=utcnow)
    batch_id = Column(String, nullable=True, index=True)

    device = relationship("Device", back_populates="locations")


class Place(Base):
    """A canonical location a stay snapped to.

    A stay that is not inside a favorite snaps to the nearest existing Place
    within a threshold radius, or a new Place is created.
    """

    __tablename__ = "places"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    name = Column(String, nullable=True)
    address = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    owner = relationship("User")


class Favorite(Base):
    """A user-named location. ``area`` favorites take part in stay merging."""

    __tablename__ = "favorites"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    radius_meters = Column(Float, nullable=False, default=75.0)
    kind = Column(String, nullable=False, default="point")
    created_at = Column(DateTime, default=utcnow)


class Config(Base):
    """Global key/value settings, including timeline tunables."""

    __tablename__ = "config"

    key = Column(String, primary_key=True)
    value = Column(String, nullable=False)


class TimelinePreference(Base):
    """Per-user timeline overrides; a NULL column falls through to the global value."""

    __tablename__ = "timeline_preferences"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)
    staypoint_detection_algorithm = Column(String, nullable=True)
    trip_detection_algorithm = Column(String, nullable=True)
    use_velocity_accuracy = Column(Boolean, nullable=True)
    staypoint_velocity_threshold = Column(Float, nullable=True)
    staypoint_max_accuracy_threshold = Column(Float, nullable=True)
    staypoint_min_accuracy_ratio = Column(Float, nullable=True)
    staypoint_radius_meters = Column(Float, nullable=True)
    trip_min_distance_meters = Column(Float, nullable=True)
    trip_min_duration_minutes = Column(Float, nullable=True)
    transition_window_size = Column(Integer, nullable=True)
    drift_merge_distance_meters = Column(Float, nullable=True)
    merge_enabled = Column(Boolean, nullable=True)
    merge_max_distance_meters = Column(Float, nullable=True)
    merge_max_time_gap_minutes = Column(Float, nullable=True)
    car_min_avg_speed = Column(Float, nullable=True)
    car_min_max_speed = Column(Float, nullable=True)
    walking_max_avg_speed = Column(Float, nullable=True)
    walking_max_max_speed = Column(Float, nullable=True)
    short_distance_km = Column(Float, nullable=True)
    max_plausible_speed_kmh = Column(Float, nullable=True)
    speed_spike_factor = Column(Float, nullable=True)
    data_gap_min_duration_minutes = Column(Float, nullable=True)


# ---------------------------------------------------------------------------
# Timeline cache
# ---------------------------------------------------------------------------

class CachedDay(Base):
    """Fingerprint record of one cached (user, day); its presence means "cached"."""

    __tablename__ = "timeline_days"
    __table_args__ = (UniqueConstraint("user_id", "day", name="uq_timeline_day"),)

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    day = Column(Date, nullable=False)
    version_hash = Column(String, nullable=False)
    is_stale = Column(Boolean, nullable=False, default=False)
    point_count = Column(Integer, nullable=False, default=0)
    computed_at = Column(DateTime, default=utcnow)


class CachedStay(Base):
    """A cached stay. ``end_time`` may reach into a later day after an
    overnight extension; ``own_end_time`` keeps the end computed for ``day``.
    """

    __tablename__ = "timeline_stays"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    day = Column(Date, nullable=False, index=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    own_end_time = Column(DateTime, nullable=True)
    duration_seconds = Column(Integer, nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    location_key = Column(String, nullable=True)
    location_name = Column(String, nullable=True)
    favorite_id = Column(Integer, nullable=True, index=True)
    version_hash = Column(String, nullable=False)
    is_stale = Column(Boolean, nullable=False, default=False)


class CachedTrip(Base):
    __tablename__ = "timeline_trips"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    day = Column(Date, nullable=False, index=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    duration_seconds = Column(Integer, nullable=False)
    distance_meters = Column(Float, nullable=False)
    travel_mode = Column(String, nullable=False)
    avg_speed_kmh = Column(Float, nullable=True)
    max_speed_kmh = Column(Float, nullable=True)
    sample_count = Column(Integer, nullable=True)
    path_json = Column(Text, nullable=False)
    version_hash = Column(String, nullable=False)
    is_stale = Column(Boolean, nullable=False, default=False)


class CachedDataGap(Base):
    __tablename__ = "timeline_data_gaps"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    day = Column(Date, nullable=False, index=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    duration_seconds = Column(Integer, nullable=False)


class RegenerationJob(Base):
    """Journal of background timeline regenerations."""

    __tablename__ = "regeneration_jobs"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    day = Column(Date, nullable=False)
    priority = Column(String, nullable=False)
    status = Column(String, nullable=False, default="running")
    attempts = Column(Integer, nullable=False, default=1)
    started_at = Column(DateTime, default=utcnow)
    finished_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
