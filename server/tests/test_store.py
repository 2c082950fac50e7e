"""Tests for the database queries the engine relies on, chiefly location freshness."""

import datetime

import pytest

from models import LocationPing
from store import (
    groups_linked_to_schedule, list_active_schedules, list_schedule_tags, recent_users_near_tag,
    upsert_group_membership,
)
from tests.checkin_fixtures import FAR_1KM, NEAR_89M, THURSDAY, local, naive_utc

NOW = local(THURSDAY, 9, 0)


class TestRecentUsersNearTag:
    def test_returns_fresh_ping(self, make_tag, make_user, add_ping, db):
        tag = make_tag()
        user = make_user(tags=[tag])
        ping = add_ping(user, NEAR_89M, NOW, age_minutes=5)

        result = recent_users_near_tag(db, tag.id, 30, NOW)

        assert [(u.id, p.id) for u, p in result] == [(user.id, ping.id)]

    def test_only_most_recent_ping_per_user(self, make_tag, make_user, add_ping, db):
        tag = make_tag()
        user = make_user(tags=[tag])
        add_ping(user, FAR_1KM, NOW, age_minutes=20)
        latest = add_ping(user, NEAR_89M, NOW, age_minutes=2)
        add_ping(user, FAR_1KM, NOW, age_minutes=10)

        result = recent_users_near_tag(db, tag.id, 30, NOW)

        assert len(result) == 1
        assert result[0][1].id == latest.id

    def test_stale_ping_excluded(self, make_tag, make_user, add_ping, db):
        tag = make_tag()
        user = make_user(tags=[tag])
        add_ping(user, NEAR_89M, NOW, age_minutes=45)

        assert recent_users_near_tag(db, tag.id, 30, NOW) == []

    def test_ping_at_window_edge_is_fresh(self, make_tag, make_user, add_ping, db):
        tag = make_tag()
        user = make_user(tags=[tag])
        add_ping(user, NEAR_89M, NOW, age_minutes=30)

        assert len(recent_users_near_tag(db, tag.id, 30, NOW)) == 1

    def test_ignores_users_not_linked_to_tag(self, make_tag, make_user, add_ping, db):
        tag = make_tag()
        other_tag = make_tag()
        stranger = make_user(tags=[other_tag])
        add_ping(stranger, NEAR_89M, NOW)

        assert recent_users_near_tag(db, tag.id, 30, NOW) == []

    def test_ignores_inactive_users(self, make_tag, make_user, add_ping, db):
        tag = make_tag()
        user = make_user(tags=[tag], is_active=False)
        add_ping(user, NEAR_89M, NOW)

        assert recent_users_near_tag(db, tag.id, 30, NOW) == []

    def test_does_not_filter_by_distance(self, make_tag, make_user, add_ping, db):
        tag = make_tag()
        near = make_user(tags=[tag])
        far = make_user(tags=[tag])
        add_ping(near, NEAR_89M, NOW)
        add_ping(far, FAR_1KM, NOW)

        result = recent_users_near_tag(db, tag.id, 30, NOW)

        assert sorted(u.id for u, _ in result) == sorted([near.id, far.id])

    def test_tied_timestamps_yield_one_row(self, make_tag, make_user, db):
        tag = make_tag()
        user = make_user(tags=[tag])
        ts = naive_utc(NOW - datetime.timedelta(minutes=1))
        db.add_all([
            LocationPing(user_id=user.id, latitude=FAR_1KM["latitude"], longitude=FAR_1KM["longitude"], timestamp=ts),
            LocationPing(user_id=user.id, latitude=NEAR_89M["latitude"], longitude=NEAR_89M["longitude"], timestamp=ts),
        ])
        db.commit()

        result = recent_users_near_tag(db, tag.id, 30, NOW)

        assert len(result) == 1
        assert result[0][1].latitude == pytest.approx(NEAR_89M["latitude"])

    def test_empty(self, make_tag, db):
        tag = make_tag()
        assert recent_users_near_tag(db, tag.id, 30, NOW) == []


class TestScheduleQueries:
    def test_list_active_schedules(self, make_schedule, db):
        active = make_schedule()
        make_schedule(is_active=False)

        assert [s.id for s in list_active_schedules(db)] == [active.id]

    def test_list_schedule_tags(self, make_tag, make_schedule, db):
        first, second = make_tag(), make_tag()
        make_tag()
        schedule = make_schedule(tags=[second, first])

        assert [t.id for t in list_schedule_tags(db, schedule.id)] == [first.id, second.id]

    def test_groups_linked_to_schedule_skips_inactive_groups(self, make_schedule, make_group, db):
        schedule = make_schedule()
        active = make_group(schedules=[schedule])
        make_group(schedules=[schedule], is_active=False)
        make_group()

        assert groups_linked_to_schedule(db, schedule.id) == [active.id]


class TestUpsertGroupMembership:
    def test_second_insert_is_noop(self, make_user, make_schedule, make_group, db):
        user = make_user()
        schedule = make_schedule()
        group = make_group(schedules=[schedule])

        assert upsert_group_membership(db, group.id, user.id, schedule.id) is True
        assert upsert_group_membership(db, group.id, user.id, schedule.id) is False
        assert len(group.memberships) == 1
