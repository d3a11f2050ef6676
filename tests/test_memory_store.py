import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from pinguard.storage.errors import ConstraintViolation
from pinguard.storage.memory import MemoryStore
from pinguard.storage.models import ResetChallenge

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_pin_state_survives_reload(tmp_path: Path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("persist@example.com")
    store.set_pin(user.id, "$argon2id$hash", now=NOW)
    store.record_failed_pin_attempt(
        user.id, now=NOW, max_attempts=5, lock_until=NOW + timedelta(minutes=15)
    )
    challenge = ResetChallenge.new(
        user.id, user.email, "digest", now=NOW, ttl_minutes=10, max_attempts=3
    )
    store.save_reset_challenge(challenge)

    reloaded = MemoryStore(fs_root=str(tmp_path))
    record = reloaded.get_security_record_by_email("persist@example.com")
    assert record.pin_hash == "$argon2id$hash"
    assert record.biometric_enabled is True
    assert record.pin_created_at == NOW
    assert record.failed_pin_attempts == 1
    restored = reloaded.get_reset_challenge(user.id)
    assert restored.id == challenge.id
    assert restored.expires_at == challenge.expires_at


def test_duplicate_email_is_rejected(tmp_path: Path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.create_user("dup@example.com")
    with pytest.raises(ConstraintViolation):
        store.create_user("dup@example.com")


def test_records_are_copies(tmp_path: Path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("copy@example.com")
    record = store.get_security_record(user.id)
    record.failed_pin_attempts = 99
    assert store.get_security_record(user.id).failed_pin_attempts == 0


def test_lock_is_set_once_at_threshold(tmp_path: Path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("lock@example.com")
    store.set_pin(user.id, "$argon2id$hash", now=NOW)
    lock_until = NOW + timedelta(minutes=15)

    outcomes = [
        store.record_failed_pin_attempt(
            user.id, now=NOW, max_attempts=3, lock_until=lock_until
        )
        for _ in range(4)
    ]
    assert [o.failed_attempts for o in outcomes] == [1, 2, 3, 4]
    assert [o.locked_until for o in outcomes] == [None, None, lock_until, lock_until]

    # A later failure while locked never extends the lock
    later = store.record_failed_pin_attempt(
        user.id,
        now=NOW + timedelta(minutes=1),
        max_attempts=3,
        lock_until=NOW + timedelta(minutes=16),
    )
    assert later.locked_until == lock_until


def test_concurrent_failed_attempts_are_counted_exactly(tmp_path: Path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("threads@example.com")
    store.set_pin(user.id, "$argon2id$hash", now=NOW)
    lock_until = NOW + timedelta(minutes=15)
    outcomes = []
    outcomes_lock = threading.Lock()

    def worker():
        outcome = store.record_failed_pin_attempt(
            user.id, now=NOW, max_attempts=5, lock_until=lock_until
        )
        with outcomes_lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=worker) for _ in range(20)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(o.failed_attempts for o in outcomes) == list(range(1, 21))
    assert sum(1 for o in outcomes if o.locked_until is None) == 4
    assert store.get_security_record(user.id).failed_pin_attempts == 20


def test_set_pin_clears_attempts_and_lock(tmp_path: Path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("clear@example.com")
    store.set_pin(user.id, "$argon2id$old", now=NOW)
    for _ in range(5):
        store.record_failed_pin_attempt(
            user.id, now=NOW, max_attempts=5, lock_until=NOW + timedelta(minutes=15)
        )
    record = store.set_pin(user.id, "$argon2id$new", now=NOW)
    assert record.failed_pin_attempts == 0
    assert record.pin_locked_until is None


def test_reset_attempts_keeps_an_active_lock(tmp_path: Path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("held@example.com")
    store.set_pin(user.id, "$argon2id$hash", now=NOW)
    lock_until = NOW + timedelta(minutes=15)
    for _ in range(5):
        store.record_failed_pin_attempt(
            user.id, now=NOW, max_attempts=5, lock_until=lock_until
        )

    record = store.reset_pin_attempts(user.id, now=NOW)
    assert record.pin_locked_until == lock_until
    assert record.failed_pin_attempts == 5
    assert store.get_security_record(user.id).is_locked(NOW)

    after_lock = lock_until + timedelta(seconds=1)
    record = store.reset_pin_attempts(user.id, now=after_lock)
    assert record.failed_pin_attempts == 0
    assert record.pin_locked_until is None
    assert store.reset_pin_attempts("missing", now=NOW) is None


def test_guarded_set_pin_refused_while_locked(tmp_path: Path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("guarded@example.com")
    store.set_pin(user.id, "$argon2id$old", now=NOW)
    for _ in range(5):
        store.record_failed_pin_attempt(
            user.id, now=NOW, max_attempts=5, lock_until=NOW + timedelta(minutes=15)
        )

    record = store.set_pin(user.id, "$argon2id$new", now=NOW, require_unlocked=True)
    assert record.pin_hash == "$argon2id$old"
    assert record.is_locked(NOW)
    assert store.get_security_record(user.id).pin_hash == "$argon2id$old"


def test_consume_challenge_only_once(tmp_path: Path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("consume@example.com")
    challenge = store.save_reset_challenge(
        ResetChallenge.new(
            user.id, user.email, "digest", now=NOW, ttl_minutes=10, max_attempts=3
        )
    )

    first = store.consume_reset_challenge_and_set_pin(
        user.id, challenge.id, "$argon2id$hash", now=NOW
    )
    second = store.consume_reset_challenge_and_set_pin(
        user.id, challenge.id, "$argon2id$other", now=NOW
    )
    assert first is not None and first.biometric_enabled
    assert second is None
    assert store.get_reset_challenge(user.id).consumed is True


def test_save_challenge_for_unknown_user(tmp_path: Path):
    store = MemoryStore(fs_root=str(tmp_path))
    with pytest.raises(ConstraintViolation):
        store.save_reset_challenge(
            ResetChallenge.new(
                "missing", "x@example.com", "digest", now=NOW, ttl_minutes=10, max_attempts=3
            )
        )


def test_delete_user_removes_pin_state(tmp_path: Path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("gone@example.com")
    store.set_pin(user.id, "$argon2id$hash", now=NOW)
    assert store.delete_user(user.id) is True
    assert store.get_security_record(user.id) is None
    assert store.delete_user(user.id) is False
