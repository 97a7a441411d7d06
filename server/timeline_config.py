"""Timeline tunables: defaults, per-user overrides, validation.

Layering:
1. ``TimelineConfig`` field defaults
2. rows of the key/value ``config`` table (global, admin editable)
3. the user's ``timeline_preferences`` row (nullable columns; null falls through)
"""

import dataclasses
import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session

from errors import InvalidConfig

logger = logging.getLogger(__name__)

STAYPOINT_ALGORITHMS = ("simple", "enhanced")

# Accepted trip algorithm names and the builder each one selects
TRIP_ALGORITHM_ALIASES = {
    "single": "single",
    "simple": "single",
    "uni": "single",
    "multi": "multi",
    "multiple": "multi",
    "multimodal": "multi",
}


@dataclass(frozen=True)
class TimelineConfig:
    staypoint_detection_algorithm: str = "enhanced"
    trip_detection_algorithm: str = "single"
    use_velocity_accuracy: bool = True

    # Stay-point detection (velocity in m/s)
    staypoint_velocity_threshold: float = 1.0
    staypoint_max_accuracy_threshold: float = 60.0
    staypoint_min_accuracy_ratio: float = 0.5
    staypoint_radius_meters: float = 50.0
    trip_min_distance_meters: float = 50.0
    trip_min_duration_minutes: float = 7.0
    transition_window_size: int = 3
    drift_merge_distance_meters: float = 15.0

    # Merging
    merge_enabled: bool = True
    merge_max_distance_meters: float = 150.0
    merge_max_time_gap_minutes: float = 10.0

    # Travel classification (km/h)
    car_min_avg_speed: float = 10.0
    car_min_max_speed: float = 15.0
    walking_max_avg_speed: float = 6.0
    walking_max_max_speed: float = 8.0
    short_distance_km: float = 1.0
    max_plausible_speed_kmh: float = 300.0
    speed_spike_factor: float = 3.0

    # Data gaps
    data_gap_min_duration_minutes: float = 180.0


@dataclass(frozen=True)
class TimelineConfigOverrides:
    """Per-user overrides; ``None`` means "use the global value"."""

    staypoint_detection_algorithm: str | None = None
    trip_detection_algorithm: str | None = None
    use_velocity_accuracy: bool | None = None
    staypoint_velocity_threshold: float | None = None
    staypoint_max_accuracy_threshold: float | None = None
    staypoint_min_accuracy_ratio: float | None = None
    staypoint_radius_meters: float | None = None
    trip_min_distance_meters: float | None = None
    trip_min_duration_minutes: float | None = None
    transition_window_size: int | None = None
    drift_merge_distance_meters: float | None = None
    merge_enabled: bool | None = None
    merge_max_distance_meters: float | None = None
    merge_max_time_gap_minutes: float | None = None
    car_min_avg_speed: float | None = None
    car_min_max_speed: float | None = None
    walking_max_avg_speed: float | None = None
    walking_max_max_speed: float | None = None
    short_distance_km: float | None = None
    max_plausible_speed_kmh: float | None = None
    speed_spike_factor: float | None = None
    data_gap_min_duration_minutes: float | None = None


def _pick(override, default):
    return default if override is None else override


def merge_config(base: TimelineConfig, overrides: TimelineConfigOverrides | None) -> TimelineConfig:
    """Apply ``overrides`` onto ``base``; non-null override values win."""
    if overrides is None:
        return base
    o = overrides
    return TimelineConfig(
        staypoint_detection_algorithm=_pick(o.staypoint_detection_algorithm, base.staypoint_detection_algorithm),
        trip_detection_algorithm=_pick(o.trip_detection_algorithm, base.trip_detection_algorithm),
        use_velocity_accuracy=_pick(o.use_velocity_accuracy, base.use_velocity_accuracy),
        staypoint_velocity_threshold=_pick(o.staypoint_velocity_threshold, base.staypoint_velocity_threshold),
        staypoint_max_accuracy_threshold=_pick(o.staypoint_max_accuracy_threshold, base.staypoint_max_accuracy_threshold),
        staypoint_min_accuracy_ratio=_pick(o.staypoint_min_accuracy_ratio, base.staypoint_min_accuracy_ratio),
        staypoint_radius_meters=_pick(o.staypoint_radius_meters, base.staypoint_radius_meters),
        trip_min_distance_meters=_pick(o.trip_min_distance_meters, base.trip_min_distance_meters),
        trip_min_duration_minutes=_pick(o.trip_min_duration_minutes, base.trip_min_duration_minutes),
        transition_window_size=_pick(o.transition_window_size, base.transition_window_size),
        drift_merge_distance_meters=_pick(o.drift_merge_distance_meters, base.drift_merge_distance_meters),
        merge_enabled=_pick(o.merge_enabled, base.merge_enabled),
        merge_max_distance_meters=_pick(o.merge_max_distance_meters, base.merge_max_distance_meters),
        merge_max_time_gap_minutes=_pick(o.merge_max_time_gap_minutes, base.merge_max_time_gap_minutes),
        car_min_avg_speed=_pick(o.car_min_avg_speed, base.car_min_avg_speed),
        car_min_max_speed=_pick(o.car_min_max_speed, base.car_min_max_speed),
        walking_max_avg_speed=_pick(o.walking_max_avg_speed, base.walking_max_avg_speed),
        walking_max_max_speed=_pick(o.walking_max_max_speed, base.walking_max_max_speed),
        short_distance_km=_pick(o.short_distance_km, base.short_distance_km),
        max_plausible_speed_kmh=_pick(o.max_plausible_speed_kmh, base.max_plausible_speed_kmh),
        speed_spike_factor=_pick(o.speed_spike_factor, base.speed_spike_factor),
        data_gap_min_duration_minutes=_pick(o.data_gap_min_duration_minutes, base.data_gap_min_duration_minutes),
    )


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

_NON_NEGATIVE = (
    "staypoint_velocity_threshold",
    "trip_min_distance_meters",
    "trip_min_duration_minutes",
    "drift_merge_distance_meters",
    "merge_max_distance_meters",
    "merge_max_time_gap_minutes",
    "car_min_avg_speed",
    "car_min_max_speed",
    "walking_max_avg_speed",
    "walking_max_max_speed",
    "short_distance_km",
    "data_gap_min_duration_minutes",
)

_POSITIVE = (
    "staypoint_max_accuracy_threshold",
    "staypoint_radius_meters",
    "max_plausible_speed_kmh",
    "transition_window_size",
)


def trip_algorithm(config: TimelineConfig) -> str:
    """Canonical trip builder name for ``config``."""
    return TRIP_ALGORITHM_ALIASES[config.trip_detection_algorithm.lower()]


def validate_config(config: TimelineConfig) -> TimelineConfig:
    """Return ``config`` unchanged, or raise InvalidConfig listing every problem."""
    problems = []
    for name in _NON_NEGATIVE:
        value = getattr(config, name)
        if value is None or value < 0:
            problems.append(f"{name} must be >= 0 (got {value})")
    for name in _POSITIVE:
        value = getattr(config, name)
        if value is None or value <= 0:
            problems.append(f"{name} must be > 0 (got {value})")

    ratio = config.staypoint_min_accuracy_ratio
    if ratio is None or not 0.0 <= ratio <= 1.0:
        problems.append(f"staypoint_min_accuracy_ratio must be within [0, 1] (got {ratio})")
    if config.speed_spike_factor is None or config.speed_spike_factor <= 1.0:
        problems.append(f"speed_spike_factor must be > 1 (got {config.speed_spike_factor})")

    algorithm = (config.staypoint_detection_algorithm or "").lower()
    if algorithm not in STAYPOINT_ALGORITHMS:
        problems.append(f"unknown staypoint detection algorithm {config.staypoint_detection_algorithm!r}")
    if (config.trip_detection_algorithm or "").lower() not in TRIP_ALGORITHM_ALIASES:
        problems.append(f"unknown trip detection algorithm {config.trip_detection_algorithm!r}")

    if problems:
        raise InvalidConfig("; ".join(problems))
    return config


# ---------------------------------------------------------------------------
# Loading from the database
# ---------------------------------------------------------------------------

def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"not a boolean: {value!r}")


_PARSERS = {
    "staypoint_detection_algorithm": str,
    "trip_detection_algorithm": str,
    "use_velocity_accuracy": _parse_bool,
    "staypoint_velocity_threshold": float,
    "staypoint_max_accuracy_threshold": float,
    "staypoint_min_accuracy_ratio": float,
    "staypoint_radius_meters": float,
    "trip_min_distance_meters": float,
    "trip_min_duration_minutes": float,
    "transition_window_size": int,
    "drift_merge_distance_meters": float,
    "merge_enabled": _parse_bool,
    "merge_max_distance_meters": float,
    "merge_max_time_gap_minutes": float,
    "car_min_avg_speed": float,
    "car_min_max_speed": float,
    "walking_max_avg_speed": float,
    "walking_max_max_speed": float,
    "short_distance_km": float,
    "max_plausible_speed_kmh": float,
    "speed_spike_factor": float,
    "data_gap_min_duration_minutes": float,
}


def default_config_values() -> dict[str, str]:
    """Defaults rendered as strings, for seeding the ``config`` table."""
    values = {}
    for key, value in dataclasses.asdict(TimelineConfig()).items():
        values[key] = ("true" if value else "false") if isinstance(value, bool) else str(value)
    return values


def load_global_config(db: Session) -> TimelineConfig:
    """Read global tunables from the Config table, falling back to defaults."""
    from models import Config

    values = {}
    rows = db.query(Config).filter(Config.key.in_(_PARSERS.keys())).all()
    for row in rows:
        try:
            values[row.key] = _PARSERS[row.key](row.value)
        except ValueError as e:
            raise InvalidConfig(f"config key {row.key!r}: {e}") from e
    return TimelineConfig(**values)


def load_user_overrides(db: Session, user_id: int) -> TimelineConfigOverrides | None:
    from models import TimelinePreference

    pref = db.query(TimelinePreference).filter(TimelinePreference.user_id == user_id).first()
    if pref is None:
        return None
    return TimelineConfigOverrides(
        staypoint_detection_algorithm=pref.staypoint_detection_algorithm,
        trip_detection_algorithm=pref.trip_detection_algorithm,
        use_velocity_accuracy=pref.use_velocity_accuracy,
        staypoint_velocity_threshold=pref.staypoint_velocity_threshold,
        staypoint_max_accuracy_threshold=pref.staypoint_max_accuracy_threshold,
        staypoint_min_accuracy_ratio=pref.staypoint_min_accuracy_ratio,
        staypoint_radius_meters=pref.staypoint_radius_meters,
        trip_min_distance_meters=pref.trip_min_distance_meters,
        trip_min_duration_minutes=pref.trip_min_duration_minutes,
        transition_window_size=pref.transition_window_size,
        drift_merge_distance_meters=pref.drift_merge_distance_meters,
        merge_enabled=pref.merge_enabled,
        merge_max_distance_meters=pref.merge_max_distance_meters,
        merge_max_time_gap_minutes=pref.merge_max_time_gap_minutes,
        car_min_avg_speed=pref.car_min_avg_speed,
        car_min_max_speed=pref.car_min_max_speed,
        walking_max_avg_speed=pref.walking_max_avg_speed,
        walking_max_max_speed=pref.walking_max_max_speed,
        short_distance_km=pref.short_distance_km,
        max_plausible_speed_kmh=pref.max_plausible_speed_kmh,
        speed_spike_factor=pref.speed_spike_factor,
        data_gap_min_duration_minutes=pref.data_gap_min_duration_minutes,
    )


def effective_config(db: Session, user_id: int) -> TimelineConfig:
    """Validated configuration for one user."""
    config = merge_config(load_global_config(db), load_user_overrides(db, user_id))
    return validate_config(config)


def config_signature(config: TimelineConfig) -> str:
    """Stable textual form of every tunable, used in version fingerprints."""
    return ";".join(f"{k}={v}" for k, v in sorted(dataclasses.asdict(config).items()))
