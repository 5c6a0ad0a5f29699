from datetime import timedelta
from pathlib import Path
from uuid import uuid4

import pytest

from duke.stores.session_store import SessionStore

TIMEOUT = timedelta(minutes=15)


@pytest.fixture
def sessions(tmp_path: Path, clock) -> SessionStore:
    return SessionStore(tmp_path / "sessions", clock=clock)


def test_valid_until_expiry_then_removed(sessions, clock):
    user_id = uuid4()
    token = sessions.create(user_id, TIMEOUT)

    clock.advance(minutes=14, seconds=59)
    assert sessions.check(token, push_expiry=False) == user_id

    clock.advance(seconds=1)
    assert sessions.check(token, push_expiry=False) is None
    assert not sessions.db.contains_key(token)


def test_check_slides_expiry(sessions, clock):
    user_id = uuid4()
    token = sessions.create(user_id, TIMEOUT)

    clock.advance(minutes=10)
    assert sessions.check(token, push_expiry=True) == user_id
    clock.advance(minutes=10)
    assert sessions.check(token, push_expiry=False) == user_id
    clock.advance(minutes=5)
    assert sessions.check(token, push_expiry=False) is None


def test_unknown_token(sessions):
    assert sessions.check(uuid4()) is None


def test_destroy_is_idempotent(sessions, clock):
    token = sessions.create(uuid4(), TIMEOUT)
    sessions.destroy(token)
    sessions.destroy(token)
    assert sessions.check(token) is None

    expired = sessions.create(uuid4(), TIMEOUT)
    clock.advance(hours=1)
    sessions.destroy(expired)


def test_sweep_expired(sessions, clock):
    old = sessions.create(uuid4(), timedelta(minutes=1))
    fresh = sessions.create(uuid4(), TIMEOUT)
    clock.advance(minutes=2)

    assert sessions.sweep_expired() == 1
    assert not sessions.db.contains_key(old)
    assert sessions.db.contains_key(fresh)


def test_destroy_for_user(sessions):
    user_id = uuid4()
    a = sessions.create(user_id, TIMEOUT)
    b = sessions.create(user_id, TIMEOUT)
    other = sessions.create(uuid4(), TIMEOUT)

    assert sessions.destroy_for_user(user_id) == 2
    assert sessions.check(a) is None
    assert sessions.check(b) is None
    assert sessions.check(other) is not None


def test_unreadable_session_is_dropped(sessions):
    token = sessions.create(uuid4(), TIMEOUT)
    sessions.db._file_for(token.bytes).write_text("garbage", encoding="utf-8")

    assert sessions.check(token) is None
    assert not sessions.db.contains_key(token)
