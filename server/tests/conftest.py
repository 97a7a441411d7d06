"""Shared pytest fixtures: in-memory DB, test user, test device, fixed clock."""

import sys
import os

# Add server root to path so imports work
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from models import User, Device
from timeline_config import TimelineConfig
from tests.gps_test_fixtures import NOW


@pytest.fixture
def engine():
    """Create a fresh in-memory SQLite database for each test."""
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def db(engine):
    """Provide a DB session, closed after each test."""
    Session = sessionmaker(bind=engine)
    session = Session()
    yield session
    session.close()


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def config():
    return TimelineConfig()


@pytest.fixture
def test_user(db):
    """Create a test user."""
    user = User(username="testuser", email="test@example.com")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def test_device(db, test_user):
    """Create a test device for the test user."""
    device = Device(
        name="Test iPhone",
        identifier="test-device-001",
        user_id=test_user.id,
    )
    db.add(device)
    db.commit()
    db.refresh(device)
    return device


@pytest.fixture
def populated_device(db, test_device):
    """Create a device populated with the full commute trace."""
    from tests.gps_test_fixtures import GPS_TRACE, add_locations

    add_locations(db, test_device, GPS_TRACE)
    return test_device
