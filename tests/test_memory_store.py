from datetime import timedelta

import pytest

from fingerauth.storage.errors import ConstraintViolation
from fingerauth.storage.memory import MemoryStore
from fingerauth.storage.models import utcnow


def test_user_email_is_unique_and_normalized(memory_store):
    user = memory_store.create_user(" Mixed@Case.COM ", name="M")
    assert user.email == "mixed@case.com"
    assert memory_store.get_user_by_email("MIXED@case.com").id == user.id
    with pytest.raises(ConstraintViolation):
        memory_store.create_user("mixed@case.com")


def test_returned_objects_are_copies(memory_store):
    user = memory_store.create_user("a@x.com")
    user.roles.append("ADMIN")
    assert memory_store.get_user(user.id).roles == ["USER"]

    record = memory_store.create_otp_record("key", "a@x.com", "1234", "fp")
    record.emails.append("evil@x.com")
    assert memory_store.get_otp_record(record.id).emails == ["a@x.com"]


def test_session_requires_existing_user(memory_store):
    with pytest.raises(ConstraintViolation):
        memory_store.create_session(99, "fp", "a", "r", utcnow())


def test_otp_record_key_is_unique(memory_store):
    memory_store.create_otp_record("key", "a@x.com", "1234", "fp")
    with pytest.raises(ConstraintViolation):
        memory_store.create_otp_record("key", "b@x.com", "5678", "fp")


def test_update_otp_record_touches_updated_at(memory_store):
    record = memory_store.create_otp_record("key", "a@x.com", "1234", "fp")
    memory_store.otp_records[record.id].updated_at -= timedelta(hours=2)

    updated = memory_store.update_otp_record(
        record.id,
        increment_mail_attempts=True,
        increment_code_attempts=True,
        emails=["a@x.com", "b@x.com", "a@x.com"],
    )
    assert updated.mail_attempts == 2
    assert updated.code_attempts == 2
    assert updated.emails == ["a@x.com", "b@x.com"]
    assert utcnow() - updated.updated_at < timedelta(seconds=5)


def test_update_otp_record_rejects_unknown_fields(memory_store):
    record = memory_store.create_otp_record("key", "a@x.com", "1234", "fp")
    with pytest.raises(ValueError):
        memory_store.update_otp_record(record.id, user_key="other")
    assert memory_store.update_otp_record(404, code_attempts=1) is None


def test_list_otp_records_substring_match(memory_store):
    first = memory_store.create_otp_record("k1", "ann@corp.com", "1", "fp")
    second = memory_store.create_otp_record("k2", "bob@home.org", "2", "fp")
    memory_store.update_otp_record(first.id, mail_attempts=5)
    memory_store.update_otp_record(second.id, mail_attempts=7)

    assert [r.id for r in memory_store.list_otp_records(5, "corp")] == [first.id]
    assert {r.id for r in memory_store.list_otp_records(6)} == {second.id}
    assert [r.id for r in memory_store.list_otp_records(5, newest_first=False)] == [
        first.id,
        second.id,
    ]


def test_state_survives_restart(tmp_path):
    root = tmp_path / "state-root"
    store = MemoryStore(fs_root=str(root))
    user = store.create_user("a@x.com", roles=["USER", "ADMIN"], provider="GOOGLE")
    session = store.create_session(user.id, "fp", "a", "r", utcnow() + timedelta(days=1))
    record = store.create_otp_record("key", "a@x.com", "1234", "fp")

    reloaded = MemoryStore(fs_root=str(root))
    assert reloaded.get_user(user.id).roles == ["USER", "ADMIN"]
    assert reloaded.get_user(user.id).provider == "GOOGLE"
    assert reloaded.get_session(session.id).refresh_token == "r"
    assert reloaded.get_otp_record_by_key("key").id == record.id
    # sequences continue after reload
    assert reloaded.create_user("b@x.com").id == user.id + 1
