"""Notifications and the audit trail share one activity log."""

from datetime import datetime, timedelta, timezone

import pytest

from lostfound.service.activity import ActivityService
from lostfound.service.errors import ValidationError
from lostfound.storage.models import ActivityRecord, ROLE_ADMIN


@pytest.fixture
def activity(store):
    return ActivityService(store)


@pytest.fixture
def seeded(store, make_user):
    admin = make_user("Records Office", role=ROLE_ADMIN)
    finder = make_user("Ana Reyes")
    other = make_user("Ben Cruz")
    store.append_activity(
        ActivityRecord.new(
            "item_reported",
            actor_id=finder.id,
            actor_name=finder.full_name,
            details="Reported found item: Umbrella at Gym",
            item_id="item-1",
            item_type="Umbrella",
        )
    )
    store.append_activity(
        ActivityRecord.new(
            "item_verified",
            actor_id=admin.id,
            actor_name=admin.full_name,
            details='Your reported item "Umbrella" has been verified',
            item_id="item-1",
            item_type="Umbrella",
            notify_user_id=finder.id,
        )
    )
    store.append_activity(
        ActivityRecord.new(
            "item_rejected",
            actor_id=admin.id,
            actor_name=admin.full_name,
            details='Your reported item "Laptop" was rejected',
            item_id="item-2",
            item_type="Laptop",
            notify_user_id=other.id,
        )
    )
    return {"admin": admin, "finder": finder, "other": other}


class TestNotifications:
    def test_only_addressed_records(self, activity, seeded):
        notes = activity.get_notifications(seeded["finder"].id)
        assert [n.action for n in notes] == ["item_verified"]

    def test_ack_clears_unviewed_count(self, activity, seeded):
        finder = seeded["finder"].id
        assert activity.unviewed_count(finder) == 1

        assert activity.ack_notifications(finder) == 1
        assert activity.unviewed_count(finder) == 0
        assert activity.ack_notifications(finder) == 0
        # acknowledged notifications stay visible
        assert len(activity.get_notifications(finder)) == 1

    def test_user_activity_includes_own_actions(self, activity, seeded):
        actions = {r.action for r in activity.get_user_activity(seeded["finder"].id)}
        assert actions == {"item_reported", "item_verified"}


class TestAuditLog:
    def test_filters(self, activity, seeded):
        assert len(activity.get_audit_log()) == 3
        assert [r.action for r in activity.get_audit_log(action="item_rejected")] == ["item_rejected"]
        assert len(activity.get_audit_log(actor_id=seeded["admin"].id)) == 2
        assert len(activity.get_audit_log(item_id="item-1")) == 2
        future = datetime.now(timezone.utc) + timedelta(minutes=5)
        assert activity.get_audit_log(since=future) == []

    def test_limit_is_clamped(self, activity, seeded):
        assert len(activity.get_audit_log(limit=0)) == 1
        assert len(activity.get_audit_log(limit=5000)) == 3

    def test_unknown_action(self, activity):
        with pytest.raises(ValidationError):
            activity.get_audit_log(action="item_lost")


class TestClearing:
    def test_admin_clear_hides_audit_but_not_notifications(self, activity, seeded, store):
        assert activity.clear_audit_log("admin") == 3

        assert activity.get_audit_log() == []
        assert len(activity.get_notifications(seeded["finder"].id)) == 1
        assert len(store.activity) == 3

    def test_user_clear_is_per_user(self, activity, seeded, store):
        finder = seeded["finder"].id
        assert activity.clear_audit_log("user", finder) == 2

        assert activity.get_notifications(finder) == []
        assert activity.get_user_activity(finder) == []
        assert activity.unviewed_count(finder) == 0
        assert len(activity.get_notifications(seeded["other"].id)) == 1
        assert len(activity.get_audit_log()) == 3
        assert len(store.activity) == 3

    def test_scope_validation(self, activity):
        with pytest.raises(ValidationError):
            activity.clear_audit_log("user")
        with pytest.raises(ValidationError):
            activity.clear_audit_log("everyone")
