"""SQLAlchemy models for tags, users, schedules, location pings, check-ins and groups."""

import datetime

from sqlalchemy import (
    Boolean, Column, Date, DateTime, Float, ForeignKey, Index, Integer, String, Table, Text,
    UniqueConstraint, event, text,
)
from sqlalchemy.orm import relationship

from database import Base
from schedules import DEFAULT_TIMEZONE, validate_schedule_fields


def utcnow() -> datetime.datetime:
    """Naive UTC timestamp, the convention for every DateTime column."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


TAG_ACTIVE = "active"
TAG_INACTIVE = "inactive"
TAG_BLOCKED = "blocked"

CHECKIN_MANUAL = "manual"
CHECKIN_AUTOMATIC = "automatic"

STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

ADDED_BY_AUTO = "auto"


schedule_tags = Table(
    "schedule_tags",
    Base.metadata,
    Column("schedule_id", Integer, ForeignKey("schedules.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", Integer, ForeignKey("tags.id"), primary_key=True),
)

group_schedules = Table(
    "group_schedules",
    Base.metadata,
    Column("group_id", Integer, ForeignKey("notification_groups.id", ondelete="CASCADE"), primary_key=True),
    Column("schedule_id", Integer, ForeignKey("schedules.id", ondelete="CASCADE"), primary_key=True),
)


class Tag(Base):
    __tablename__ = "tags"

    id = Column(Integer, primary_key=True, index=True)
    uid = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    radius_meters = Column(Integer, nullable=True, default=100)
    checkin_enabled = Column(Boolean, default=True, nullable=False)
    status = Column(String, default=TAG_ACTIVE, nullable=False)
    redirect_url = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    schedules = relationship("Schedule", secondary=schedule_tags, back_populates="tags")

    @property
    def has_geolocation(self) -> bool:
        return self.latitude is not None and self.longitude is not None


class User(Base):
    """A person who checks into tags (not an admin account)."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    email = Column(String, unique=True, nullable=True)
    phone = Column(String, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    tag_links = relationship("UserTagLink", back_populates="user", cascade="all, delete-orphan")


class UserTagLink(Base):
    """A user is associated with a tag once they have registered through it."""

    __tablename__ = "user_tag_links"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    tag_id = Column(Integer, ForeignKey("tags.id"), nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow)

    user = relationship("User", back_populates="tag_links")
    tag = relationship("Tag")

    __table_args__ = (UniqueConstraint("user_id", "tag_id", name="uq_user_tag_link"),)


class Schedule(Base):
    """A recurring window (days of week x HH:MM-HH:MM in a timezone) for automatic check-in."""

    __tablename__ = "schedules"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    days_of_week = Column(String, nullable=False)  # "0,3,6", 0 = Sunday
    start_time = Column(String, nullable=False)    # "HH:MM"
    end_time = Column(String, nullable=False)      # "HH:MM", same day as start_time
    timezone = Column(String, nullable=False, default=DEFAULT_TIMEZONE)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    tags = relationship("Tag", secondary=schedule_tags, back_populates="schedules", order_by="Tag.id")
    groups = relationship("NotificationGroup", secondary=group_schedules, back_populates="schedules")


@event.listens_for(Schedule, "before_insert")
@event.listens_for(Schedule, "before_update")
def _validate_schedule(mapper, connection, target):
    validate_schedule_fields(target.days_of_week, target.start_time, target.end_time, target.timezone)


class LocationPing(Base):
    """Append-only record of a user's reported position."""

    __tablename__ = "location_pings"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    accuracy = Column(Float, nullable=True)
    timestamp = Column(DateTime, nullable=False)
    received_at = Column(DateTime, default=utcnow)

    user = relationship("User")

    __table_args__ = (Index("ix_location_pings_user_timestamp", "user_id", "timestamp"),)


class Checkin(Base):
    """A manual or automatic check-in. Rows are never updated once written.

    At most one automatic check-in exists per (user, schedule, checkin_day) and
    at most one completed manual check-in per (user, tag, checkin_day); the two
    partial unique indexes are what enforce it.
    """

    __tablename__ = "checkins"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    tag_id = Column(Integer, ForeignKey("tags.id"), nullable=False, index=True)
    schedule_id = Column(Integer, ForeignKey("schedules.id"), nullable=True, index=True)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    distance_meters = Column(Float, nullable=False)
    is_within_radius = Column(Boolean, nullable=False)
    type = Column(String, nullable=False)
    status = Column(String, nullable=False, default=STATUS_COMPLETED)
    error_message = Column(Text, nullable=True)
    checkin_day = Column(Date, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    user = relationship("User")
    tag = relationship("Tag")
    schedule = relationship("Schedule")

    __table_args__ = (
        Index(
            "uq_automatic_checkin_per_day",
            "user_id", "schedule_id", "checkin_day",
            unique=True,
            sqlite_where=text("type = 'automatic'"),
            postgresql_where=text("type = 'automatic'"),
        ),
        Index(
            "uq_manual_checkin_per_day",
            "user_id", "tag_id", "checkin_day",
            unique=True,
            sqlite_where=text("type = 'manual' AND status = 'completed'"),
            postgresql_where=text("type = 'manual' AND status = 'completed'"),
        ),
        Index("ix_checkins_user_tag_day", "user_id", "tag_id", "checkin_day"),
    )


class NotificationGroup(Base):
    __tablename__ = "notification_groups"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    schedules = relationship("Schedule", secondary=group_schedules, back_populates="groups")
    memberships = relationship("GroupMembership", back_populates="group", cascade="all, delete-orphan")


class GroupMembership(Base):
    __tablename__ = "group_memberships"

    id = Column(Integer, primary_key=True, index=True)
    group_id = Column(Integer, ForeignKey("notification_groups.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    added_by = Column(String, nullable=False, default=ADDED_BY_AUTO)
    source_schedule_id = Column(Integer, ForeignKey("schedules.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow)

    group = relationship("NotificationGroup", back_populates="memberships")

    __table_args__ = (UniqueConstraint("group_id", "user_id", name="uq_group_membership"),)


class Config(Base):
    """Key/value engine settings, seeded by database.init_db()."""

    __tablename__ = "config"

    key = Column(String, primary_key=True)
    value = Column(String, nullable=False)
