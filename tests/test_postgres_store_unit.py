from datetime import datetime, timedelta, timezone
from pathlib import Path

from pinguard.storage.postgres import PostgresStore


class FakeCursor:
    def __init__(self, row):
        self._row = row

    def fetchone(self):
        return self._row


class FakeConnection:
    """Replays canned rows in order and records every statement."""

    def __init__(self, rows):
        self.rows = list(rows)
        self.executed = []

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        return FakeCursor(self.rows.pop(0) if self.rows else None)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False


class FakePool:
    def __init__(self, conn):
        self.conn = conn
        self.closed = False

    def connection(self):
        return self.conn

    def close(self):
        self.closed = True


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _store(tmp_path: Path, rows) -> tuple[PostgresStore, FakeConnection]:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    conn = FakeConnection(rows)
    store.pool = FakePool(conn)
    store.fs_root = tmp_path
    store.dsn = "postgresql://unit-test"
    return store, conn


def _user_row(**overrides):
    row = {
        "id": "user-1",
        "email": "user@example.com",
        "created_at": NOW - timedelta(days=1),
        "pin_hash": "$argon2id$hash",
        "biometric_enabled": True,
        "failed_pin_attempts": 0,
        "pin_locked_until": None,
        "pin_created_at": NOW - timedelta(hours=1),
    }
    row.update(overrides)
    return row


def _challenge_row(**overrides):
    row = {
        "id": "challenge-1",
        "user_id": "user-1",
        "email": "user@example.com",
        "code_hash": "abc",
        "created_at": NOW,
        "expires_at": NOW + timedelta(minutes=10),
        "attempts": 0,
        "max_attempts": 3,
        "consumed": False,
        "consumed_at": None,
    }
    row.update(overrides)
    return row


def test_failed_attempt_is_a_single_atomic_update(tmp_path: Path):
    lock_until = NOW + timedelta(minutes=15)
    store, conn = _store(
        tmp_path, [{"failed_pin_attempts": 5, "pin_locked_until": lock_until}]
    )

    outcome = store.record_failed_pin_attempt(
        "user-1", now=NOW, max_attempts=5, lock_until=lock_until
    )

    assert outcome.failed_attempts == 5
    assert outcome.locked_until == lock_until
    assert len(conn.executed) == 1
    sql, params = conn.executed[0]
    assert sql.startswith("UPDATE app_user SET failed_pin_attempts = CASE")
    assert "RETURNING failed_pin_attempts, pin_locked_until" in sql
    assert params == {
        "user_id": "user-1",
        "now": NOW,
        "max_attempts": 5,
        "lock_until": lock_until,
    }


def test_failed_attempt_for_missing_user(tmp_path: Path):
    store, _ = _store(tmp_path, [None])
    assert (
        store.record_failed_pin_attempt(
            "missing", now=NOW, max_attempts=5, lock_until=NOW
        )
        is None
    )


def test_set_pin_maps_returned_row(tmp_path: Path):
    store, conn = _store(tmp_path, [_user_row(pin_created_at=NOW)])
    record = store.set_pin("user-1", "$argon2id$hash", now=NOW)

    assert record.biometric_enabled is True
    assert record.pin_created_at == NOW
    sql, params = conn.executed[0]
    assert "biometric_enabled = TRUE" in sql
    assert params == ("$argon2id$hash", NOW, "user-1")


def test_reset_attempts_is_conditional_on_no_active_lock(tmp_path: Path):
    store, conn = _store(tmp_path, [_user_row()])
    record = store.reset_pin_attempts("user-1", now=NOW)

    assert record.failed_pin_attempts == 0
    assert len(conn.executed) == 1
    sql, params = conn.executed[0]
    assert sql.startswith("UPDATE app_user SET failed_pin_attempts = 0")
    assert "AND (pin_locked_until IS NULL OR pin_locked_until <= %(now)s)" in sql
    assert params == {"user_id": "user-1", "now": NOW}


def test_reset_attempts_reports_lock_when_update_misses(tmp_path: Path):
    lock_until = NOW + timedelta(minutes=15)
    store, conn = _store(
        tmp_path, [None, _user_row(failed_pin_attempts=5, pin_locked_until=lock_until)]
    )
    record = store.reset_pin_attempts("user-1", now=NOW)

    assert record.is_locked(NOW)
    assert record.failed_pin_attempts == 5
    assert conn.executed[1] == ("SELECT * FROM app_user WHERE id = %s", ("user-1",))


def test_guarded_set_pin_uses_lock_condition(tmp_path: Path):
    lock_until = NOW + timedelta(minutes=15)
    store, conn = _store(
        tmp_path, [None, _user_row(failed_pin_attempts=5, pin_locked_until=lock_until)]
    )
    record = store.set_pin("user-1", "$argon2id$new", now=NOW, require_unlocked=True)

    assert record.pin_hash == "$argon2id$hash"
    assert record.is_locked(NOW)
    sql, params = conn.executed[0]
    assert "AND (pin_locked_until IS NULL OR pin_locked_until <= %(now)s)" in sql
    assert params == {"pin_hash": "$argon2id$new", "now": NOW, "user_id": "user-1"}


def test_clear_pin_drops_reset_challenge(tmp_path: Path):
    store, conn = _store(
        tmp_path,
        [_user_row(pin_hash=None, biometric_enabled=False, pin_created_at=None)],
    )
    record = store.clear_pin("user-1")

    assert record.biometric_enabled is False
    assert record.pin_hash is None
    assert conn.executed[1] == (
        "DELETE FROM pin_reset_challenge WHERE user_id = %s",
        ("user-1",),
    )


def test_failed_reset_code_deletes_spent_challenge(tmp_path: Path):
    store, conn = _store(tmp_path, [_challenge_row(attempts=3)])
    challenge = store.record_failed_reset_code("user-1", "challenge-1")

    assert challenge.attempts_left == 0
    assert conn.executed[1][0].startswith("DELETE FROM pin_reset_challenge")


def test_failed_reset_code_keeps_challenge_with_budget_left(tmp_path: Path):
    store, conn = _store(tmp_path, [_challenge_row(attempts=1)])
    challenge = store.record_failed_reset_code("user-1", "challenge-1")

    assert challenge.attempts_left == 2
    assert len(conn.executed) == 1


def test_consume_locks_row_then_sets_pin(tmp_path: Path):
    store, conn = _store(
        tmp_path, [_challenge_row(), None, _user_row(pin_created_at=NOW)]
    )
    record = store.consume_reset_challenge_and_set_pin(
        "user-1", "challenge-1", "$argon2id$new", now=NOW
    )

    assert record.pin_created_at == NOW
    statements = [sql for sql, _ in conn.executed]
    assert statements[0].endswith("FOR UPDATE")
    assert statements[1].startswith("UPDATE pin_reset_challenge SET consumed = TRUE")
    assert statements[2].startswith("UPDATE app_user SET pin_hash")


def test_consume_refuses_stale_challenge(tmp_path: Path):
    store, conn = _store(tmp_path, [_challenge_row(consumed=True)])
    assert (
        store.consume_reset_challenge_and_set_pin(
            "user-1", "challenge-1", "$argon2id$new", now=NOW
        )
        is None
    )
    assert len(conn.executed) == 1

    store, conn = _store(tmp_path, [_challenge_row(id="challenge-2")])
    assert (
        store.consume_reset_challenge_and_set_pin(
            "user-1", "challenge-1", "$argon2id$new", now=NOW
        )
        is None
    )

    store, conn = _store(tmp_path, [_challenge_row()])
    assert (
        store.consume_reset_challenge_and_set_pin(
            "user-1", "challenge-1", "$argon2id$new", now=NOW + timedelta(minutes=11)
        )
        is None
    )


def test_close_closes_pool(tmp_path: Path):
    store, _ = _store(tmp_path, [])
    store.close()
    assert store.pool.closed is True
