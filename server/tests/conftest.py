"""Shared pytest fixtures: in-memory DB plus factories for tags, users, schedules, groups and pings."""

import sys
import os

# Add server root to path so imports work
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
from models import LocationPing, NotificationGroup, Schedule, Tag, User, UserTagLink
from tests.checkin_fixtures import TAG_CENTER, TIMEZONE, naive_utc


@pytest.fixture
def engine():
    """Create a fresh in-memory SQLite database for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine)


@pytest.fixture
def db(session_factory):
    """Provide a DB session, closed after each test."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_tag(db):
    counter = {"n": 0}

    def _make(**kwargs):
        counter["n"] += 1
        fields = {
            "uid": f"TAG-{counter['n']:03d}",
            "name": f"Tag {counter['n']}",
            "latitude": TAG_CENTER["latitude"],
            "longitude": TAG_CENTER["longitude"],
            "radius_meters": 100,
        }
        fields.update(kwargs)
        tag = Tag(**fields)
        db.add(tag)
        db.commit()
        db.refresh(tag)
        return tag

    return _make


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(tags=(), **kwargs):
        counter["n"] += 1
        fields = {"name": f"User {counter['n']}", "email": f"user{counter['n']}@example.com"}
        fields.update(kwargs)
        user = User(**fields)
        db.add(user)
        db.commit()
        for tag in tags:
            db.add(UserTagLink(user_id=user.id, tag_id=tag.id))
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def make_schedule(db):
    def _make(tags=(), days="0,1,2,3,4,5,6", start="08:00", end="10:00", **kwargs):
        fields = {
            "name": "Morning class",
            "days_of_week": days,
            "start_time": start,
            "end_time": end,
            "timezone": TIMEZONE,
        }
        fields.update(kwargs)
        schedule = Schedule(tags=list(tags), **fields)
        db.add(schedule)
        db.commit()
        db.refresh(schedule)
        return schedule

    return _make


@pytest.fixture
def make_group(db):
    def _make(schedules=(), **kwargs):
        fields = {"name": "Attendees"}
        fields.update(kwargs)
        group = NotificationGroup(schedules=list(schedules), **fields)
        db.add(group)
        db.commit()
        db.refresh(group)
        return group

    return _make


@pytest.fixture
def add_ping(db):
    """Add a ping `age_minutes` before `now` (an aware datetime)."""

    def _add(user, point, now, age_minutes=5, accuracy=10.0):
        ping = LocationPing(
            user_id=user.id,
            latitude=point["latitude"],
            longitude=point["longitude"],
            accuracy=accuracy,
            timestamp=naive_utc(now - datetime.timedelta(minutes=age_minutes)),
        )
        db.add(ping)
        db.commit()
        db.refresh(ping)
        return ping

    return _add
