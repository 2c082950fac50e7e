#!/usr/bin/env python3
"""Seed the database with a geolocated tag, an always-open schedule and a nearby user.

Usage:
    python seed_test_data.py

Creates a tag in Campo Grande with a 100 m radius, a schedule open every day,
a group linked to the schedule and a demo user whose last ping is ~89 m from
the tag, then runs one engine tick so the check-in and group membership show up.
"""

import datetime

from database import init_db, SessionLocal
from engine import CheckinEngine
from models import NotificationGroup, Schedule, Tag, User, UserTagLink
from store import add_location_ping

TIMEZONE = "America/Campo_Grande"
TAG_CENTER = {"latitude": -20.4697, "longitude": -54.6201}
# ~89 m due south of the tag
NEAR_89M = {"latitude": -20.4705, "longitude": -54.6201}


def seed():
    init_db()
    db = SessionLocal()

    existing = db.query(Tag).filter(Tag.uid == "DEMO-TAG-001").first()
    if existing:
        print("Demo tag already exists. Skipping seed.")
        db.close()
        return

    tag = Tag(
        uid="DEMO-TAG-001",
        name="Demo entrance",
        latitude=TAG_CENTER["latitude"],
        longitude=TAG_CENTER["longitude"],
        radius_meters=100,
    )
    schedule = Schedule(
        name="Demo (all day)",
        days_of_week="0,1,2,3,4,5,6",
        start_time="00:00",
        end_time="23:59",
        timezone=TIMEZONE,
        tags=[tag],
    )
    group = NotificationGroup(name="Demo attendees", schedules=[schedule])
    user = User(name="Demo User", email="demo@example.com")
    db.add_all([tag, schedule, group, user])
    db.commit()

    db.add(UserTagLink(user_id=user.id, tag_id=tag.id))
    db.commit()
    print(f"Created tag {tag.uid} (id={tag.id}), schedule id={schedule.id}, user id={user.id}")

    add_location_ping(
        db, user.id, NEAR_89M["latitude"], NEAR_89M["longitude"], accuracy=10.0,
        timestamp=datetime.datetime.now(datetime.timezone.utc) - datetime.timedelta(minutes=5),
    )
    db.close()

    stats = CheckinEngine(SessionLocal).run_tick()
    print(f"Tick: {stats.checkins_created} check-ins created, {stats.errors} errors")


if __name__ == "__main__":
    seed()
