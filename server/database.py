"""Database setup and session management using SQLAlchemy + SQLite."""

import logging
import os

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import declarative_base, sessionmaker

logger = logging.getLogger(__name__)

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///locations.db")

engine = create_engine(DATABASE_URL, connect_args={"check_same_thread": False})
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Create all tables and seed the default timeline settings."""
    import models  # noqa: F401

    logger.info("Initializing database at %s", DATABASE_URL)
    Base.metadata.create_all(bind=engine)
    _migrate()
    _seed_config()


def _migrate():
    """Add any missing columns to existing tables."""
    insp = inspect(engine)
    if "timeline_stays" in insp.get_table_names():
        columns = {c["name"] for c in insp.get_columns("timeline_stays")}
        if "own_end_time" not in columns:
            logger.info("Migrating: adding own_end_time column to timeline_stays table")
            with engine.begin() as conn:
                conn.execute(text("ALTER TABLE timeline_stays ADD COLUMN own_end_time DATETIME"))


def _seed_config():
    """Insert default timeline tunables if not present."""
    from models import Config
    from timeline_config import default_config_values

    db = SessionLocal()
    try:
        added = 0
        for key, value in default_config_values().items():
            if not db.query(Config).filter(Config.key == key).first():
                db.add(Config(key=key, value=value))
                added += 1
        db.commit()
        if added:
            logger.info("Seeded %d default timeline settings", added)
    finally:
        db.close()
