import json
import uuid
from datetime import datetime, timezone

import pytest

from lostfound.storage.errors import ConstraintViolation, TransitionConflict
from lostfound.storage.memory import MemoryStore
from lostfound.storage.models import (
    ITEM_PENDING,
    ITEM_VERIFIED,
    ActivityRecord,
    Claim,
    LostItem,
    SecurityQuestion,
)

KEY = "unit-test-key"


def _item(reporter_id: str) -> LostItem:
    return LostItem(
        id=str(uuid.uuid4()),
        item_type="Calculator",
        location="Room 301",
        found_at=datetime(2025, 1, 6, 8, 0, tzinfo=timezone.utc),
        reporter_id=reporter_id,
        security_questions=[SecurityQuestion("Brand?", "Casio")],
    )


def test_state_survives_reload(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), encryption_key=KEY)
    user = store.create_user("ana@plv.edu.ph", full_name="Ana", student_id="23-0001")
    item = store.create_item(
        _item(user.id),
        [
            ActivityRecord.new(
                "item_reported",
                actor_id=user.id,
                actor_name="Ana",
                details="Reported found item: Calculator at Room 301",
                item_id="x",
            )
        ],
    )
    claimant = store.create_user("ben@plv.edu.ph", full_name="Ben", student_id="23-0002")
    store.transition_item(item.id, ITEM_PENDING, ITEM_VERIFIED, reviewed_by=user.id)
    store.create_claim(
        Claim(id=str(uuid.uuid4()), item_id=item.id, claimant_id=claimant.id, code="CLM-2025-AAAA2222", answers=["casio"])
    )
    store.clear_activity_for_user(user.id)

    reloaded = MemoryStore(fs_root=str(tmp_path), encryption_key=KEY)

    assert reloaded.get_user_by_student_id("23-0001").id == user.id
    loaded_item = reloaded.get_item(item.id)
    assert loaded_item.status == ITEM_VERIFIED
    assert loaded_item.security_questions[0].answer == "Casio"
    assert reloaded.get_claim_by_code("clm-2025-aaaa2222").answers == ["casio"]
    assert reloaded.activity[0].cleared_by_users == [user.id]


def test_answers_are_encrypted_on_disk(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), encryption_key=KEY)
    user = store.create_user("ana@plv.edu.ph")
    store.create_item(_item(user.id))

    raw = (tmp_path / "state" / "memory_store.json").read_text()
    snapshot = json.loads(raw)
    assert "Casio" not in raw
    assert snapshot["items"][0]["security_questions"][0]["question"] == "Brand?"


def test_unique_email_and_student_id(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), encryption_key=KEY)
    store.create_user("ana@plv.edu.ph", student_id="23-0001")
    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_user(" ANA@plv.edu.ph ")
    assert excinfo.value.detail["field"] == "email"
    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_user("ben@plv.edu.ph", student_id="23-0001")
    assert excinfo.value.detail["field"] == "student_id"


def test_transition_is_compare_and_set(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), encryption_key=KEY)
    user = store.create_user("ana@plv.edu.ph")
    item = store.create_item(_item(user.id))
    store.transition_item(item.id, ITEM_PENDING, ITEM_VERIFIED, reviewed_by=user.id)

    with pytest.raises(TransitionConflict) as excinfo:
        store.transition_item(item.id, ITEM_PENDING, ITEM_VERIFIED, reviewed_by=user.id)
    assert excinfo.value.current_status == ITEM_VERIFIED
    assert store.transition_item("missing", ITEM_PENDING, ITEM_VERIFIED, reviewed_by=user.id) is None


def test_delete_user_drops_sessions(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), encryption_key=KEY)
    user = store.create_user("ana@plv.edu.ph")
    session = store.create_session(user.id)

    assert store.delete_user(user.id)
    assert store.get_session(session.id) is None
