#!/usr/bin/env python3
"""Seed the database with the commute fixture and cache its timeline.

Usage:
    python seed_test_data.py

This creates a demo user and device, stores the 50-point San Francisco
commute trace, then computes and caches the timeline of that day.
"""

from database import init_db, SessionLocal
from models import User, Device
from tests.gps_test_fixtures import COMMUTE_DAY, GPS_TRACE, add_locations
from timeline_models import day_bounds
from timeline_service import TimelineService


def seed():
    init_db()
    db = SessionLocal()

    existing = db.query(User).filter(User.username == "demo").first()
    if existing:
        print("Demo user already exists. Skipping seed.")
        db.close()
        return

    user = User(username="demo", email="demo@example.com")
    db.add(user)
    db.commit()
    db.refresh(user)
    print(f"Created user: demo (id={user.id})")

    device = Device(
        name="Demo iPhone",
        identifier="demo-iphone-001",
        user_id=user.id,
    )
    db.add(device)
    db.commit()
    db.refresh(device)
    print(f"Created device: {device.name} (id={device.id})")

    add_locations(db, device, GPS_TRACE)
    print(f"Inserted {len(GPS_TRACE)} location points")

    start, end = day_bounds(COMMUTE_DAY)
    snapshot = TimelineService(db).get_timeline(user.id, start, end)
    print(f"Cached {COMMUTE_DAY}: {len(snapshot.stays)} stays, {len(snapshot.trips)} trips")

    for event in snapshot.events:
        label = getattr(event, "location_name", None) or getattr(event, "travel_mode").value
        print(f"  - {label}: {event.start_time.strftime('%H:%M')}-{event.end_time.strftime('%H:%M')}")

    db.close()


if __name__ == "__main__":
    seed()
