"""Storage backends: in-memory store behavior and Postgres row handling."""

import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from cryptography.fernet import InvalidToken

from authcore.storage.errors import ConstraintViolation
from authcore.storage.memory import MemoryStore, build_secret_cipher
from authcore.storage.models import RefreshToken, StepUpSession
from authcore.storage.postgres import PostgresStore

NOW = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def store():
    return MemoryStore(secret_key_material="storage-test-key")


class TestMemoryUsers:
    def test_duplicate_email_is_case_insensitive(self, store):
        store.create_user("a@x.com")

        with pytest.raises(ConstraintViolation):
            store.create_user("A@X.COM")

    def test_returned_users_are_copies(self, store):
        user = store.create_user("a@x.com")
        user.email_confirmed = True

        assert not store.get_user(user.id).email_confirmed

    def test_failed_logins_lock_at_threshold(self, store):
        user = store.create_user("a@x.com")
        for _ in range(4):
            updated = store.record_failed_login(
                user.id, max_attempts=5, lockout_duration=timedelta(minutes=5), now=NOW
            )
        assert updated.access_failed_count == 4
        assert updated.lockout_end is None

        locked = store.record_failed_login(
            user.id, max_attempts=5, lockout_duration=timedelta(minutes=5), now=NOW
        )

        assert locked.lockout_end == NOW + timedelta(minutes=5)
        store.reset_failed_logins(user.id)
        assert store.get_user(user.id).lockout_end is None

    def test_password_requires_existing_user(self, store):
        with pytest.raises(ConstraintViolation):
            store.save_password("missing", "hash", "argon2id")

    def test_update_unknown_user_fails(self, store):
        user = store.create_user("a@x.com")
        user.id = str(uuid.uuid4())

        with pytest.raises(ConstraintViolation):
            store.update_user(user)


class TestMemoryRefreshLedger:
    def test_rotation_is_single_winner(self, store):
        user = store.create_user("a@x.com")
        store.add_refresh_token(RefreshToken.new(user.id, "old", timedelta(days=7), now=NOW))
        results = []
        barrier = threading.Barrier(4)

        def rotate(index):
            barrier.wait()
            results.append(
                store.rotate_refresh_token("old", f"new-{index}", NOW + timedelta(days=7), now=NOW)
            )

        threads = [threading.Thread(target=rotate, args=(i,)) for i in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        winners = [row for row in results if row is not None]
        assert len(winners) == 1
        assert store.get_refresh_token("old").replaced_by_token == winners[0].token

    def test_expired_token_cannot_rotate(self, store):
        user = store.create_user("a@x.com")
        store.add_refresh_token(RefreshToken.new(user.id, "old", timedelta(days=7), now=NOW))

        assert store.rotate_refresh_token(
            "old", "new", NOW + timedelta(days=14), now=NOW + timedelta(days=7)
        ) is None

    def test_token_requires_user(self, store):
        with pytest.raises(ConstraintViolation):
            store.add_refresh_token(RefreshToken.new("ghost", "t", timedelta(days=7), now=NOW))


class TestMemoryRoles:
    def test_assignments_ordered_by_time(self, store):
        user = store.create_user("a@x.com")
        late = store.create_role("Late")
        early = store.create_role("Early")
        store.assign_role(user.id, late.id, assigned_at=NOW + timedelta(hours=1))
        store.assign_role(user.id, early.id, assigned_at=NOW)

        assert [m.role_id for m in store.list_user_role_mappings(user.id)] == [early.id, late.id]

    def test_role_names_unique_among_live_roles(self, store):
        role = store.create_role("Viewer")
        with pytest.raises(ConstraintViolation):
            store.create_role("viewer")

        store.soft_delete_role(role.id)
        assert store.get_role_by_name("Viewer") is None
        store.create_role("Viewer")

    def test_assign_requires_known_role(self, store):
        user = store.create_user("a@x.com")

        with pytest.raises(ConstraintViolation):
            store.assign_role(user.id, str(uuid.uuid4()))


def test_cipher_round_trip_and_key_separation():
    cipher = build_secret_cipher("key-one")
    token = cipher.encrypt(b"JBSWY3DPEHPK3PXP")

    assert build_secret_cipher("key-one").decrypt(token) == b"JBSWY3DPEHPK3PXP"
    with pytest.raises(InvalidToken):
        build_secret_cipher("key-two").decrypt(token)


def test_step_up_session_serialization():
    session = StepUpSession(
        user_id="u-1", token="tok", channel="Email", expires_at=NOW, verified=True
    )

    payload = session.to_dict()

    assert payload["verified"] == "1"
    assert StepUpSession.from_dict(payload) == session
    assert not StepUpSession.from_dict({**payload, "verified": "0"}).verified


class FakeCursor:
    def __init__(self, row=None, rowcount=0):
        self.row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self.row


class FakeConnection:
    """Replays scripted cursor results and records executed statements."""

    def __init__(self, results):
        self.results = list(results)
        self.executed = []

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        return self.results.pop(0)

    @contextmanager
    def transaction(self):
        yield


class FakePool:
    def __init__(self, connection):
        self.conn = connection

    @contextmanager
    def connection(self):
        yield self.conn


def _postgres_store(connection) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(connection)
    store.logger = None
    store._cipher = build_secret_cipher("storage-test-key")
    return store


class TestPostgresStore:
    def test_requires_key_material(self):
        with pytest.raises(RuntimeError):
            PostgresStore("postgresql://unused", secret_key_material=None)

    def test_rotate_returns_none_when_update_matches_nothing(self):
        conn = FakeConnection([FakeCursor(row=None)])
        store = _postgres_store(conn)

        assert store.rotate_refresh_token("old", "new", NOW + timedelta(days=7), now=NOW) is None
        assert len(conn.executed) == 1
        assert "NOT is_revoked" in conn.executed[0][0]

    def test_rotate_inserts_replacement(self):
        user_id = uuid.uuid4()
        inserted = {
            "id": uuid.uuid4(),
            "user_id": user_id,
            "token": "new",
            "expires_at": NOW + timedelta(days=7),
            "created_at": NOW,
            "is_revoked": False,
            "revoked_at": None,
            "replaced_by_token": None,
        }
        conn = FakeConnection([FakeCursor(row={"user_id": user_id}), FakeCursor(row=inserted)])
        store = _postgres_store(conn)

        row = store.rotate_refresh_token("old", "new", NOW + timedelta(days=7), now=NOW)

        assert row.token == "new"
        assert row.user_id == str(user_id)
        assert conn.executed[0][1] == (NOW, "new", "old", NOW)

    def test_row_to_user_decrypts_secret(self):
        store = _postgres_store(FakeConnection([]))
        encrypted = store._cipher.encrypt(b"JBSWY3DPEHPK3PXP").decode()

        user = store._row_to_user(
            {
                "id": uuid.uuid4(),
                "email": "a@x.com",
                "authenticator_secret": encrypted,
                "security_stamp": "stamp",
            }
        )

        assert user.authenticator_secret == "JBSWY3DPEHPK3PXP"
        assert user.first_name == ""
        assert user.security_stamp == "stamp"
