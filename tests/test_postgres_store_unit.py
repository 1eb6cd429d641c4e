from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from psycopg import errors

from passage.logging import get_logger
from passage.storage.common import SecretCipher
from passage.storage.errors import ASSOCIATE_PROVIDER_REF, ConstraintViolation
from passage.storage.models import KIND_EMAIL
from passage.storage.postgres import REQUIRED_TABLES, SCHEMA_PATH, PostgresStore

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self.rows = list(rows or [])
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    """Replays scripted results and records every statement."""

    def __init__(self, results):
        self.results = list(results)
        self.statements = []
        self.transactions = 0

    def execute(self, query, params=None):
        self.statements.append((query, params))
        result = self.results.pop(0) if self.results else FakeCursor()
        if isinstance(result, Exception):
            raise result
        return result

    @contextmanager
    def transaction(self):
        self.transactions += 1
        yield


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @contextmanager
    def connection(self):
        yield self.conn


class DuplicateBinding(errors.UniqueViolation):
    diag = SimpleNamespace(constraint_name=ASSOCIATE_PROVIDER_REF)


def _store(*results) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unit-test"
    store.logger = get_logger("test")
    store._cipher = SecretCipher("unit-test-key")
    store.pool = FakePool(FakeConnection(results))
    return store


def _refresh_row(**overrides):
    row = {
        "id": "rt-1",
        "account_id": "acct-1",
        "token_hash": "hash",
        "expires_at": NOW + timedelta(days=30),
        "created_at": NOW,
        "revoked_at": None,
        "replaced_by_id": None,
        "created_by_ip": None,
    }
    row.update(overrides)
    return row


def test_dummy_pool_guards_unstubbed_access():
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = DummyPool()

    with pytest.raises(AssertionError):
        store.get_account("acct-1")


def test_schema_file_declares_required_tables():
    ddl = SCHEMA_PATH.read_text()

    for table in REQUIRED_TABLES:
        assert f"CREATE TABLE IF NOT EXISTS {table}" in ddl
    assert "CONSTRAINT associate_provider_ref UNIQUE (provider, provider_ref_id)" in ddl


def test_missing_tables_are_reported():
    present = FakeCursor([{"oid": "x"}])
    missing = FakeCursor([{"oid": None}])
    store = _store(present, missing, present, present, present, present)

    with pytest.raises(RuntimeError, match="associate"):
        store._verify_required_schema()


def test_apply_schema_runs_ddl():
    store = _store()

    store.apply_schema()

    assert store.pool.conn.statements[0][0] == SCHEMA_PATH.read_text()


def test_unique_violation_names_binding_constraint():
    binding = PostgresStore._unique_violation(
        SimpleNamespace(diag=SimpleNamespace(constraint_name=ASSOCIATE_PROVIDER_REF)), {}
    )
    other = PostgresStore._unique_violation(
        SimpleNamespace(diag=SimpleNamespace(constraint_name="account_pkey")), {}
    )

    assert binding.constraint == ASSOCIATE_PROVIDER_REF
    assert other.constraint == "account_pkey"


def test_account_and_associate_share_one_transaction():
    store = _store()

    account, associate = store.create_account_with_associate(
        provider="google", provider_ref_id="g-1", email="g@example.com"
    )

    conn = store.pool.conn
    assert conn.transactions == 1
    assert len(conn.statements) == 2
    assert associate.account_id == account.id
    assert conn.statements[1][1][:4] == (associate.id, account.id, "google", "g-1")


def test_duplicate_binding_raises_constraint_violation():
    store = _store(FakeCursor(), DuplicateBinding("duplicate key"))

    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_account_with_associate(provider="google", provider_ref_id="g-1")

    assert excinfo.value.constraint == ASSOCIATE_PROVIDER_REF


def test_rotation_is_conditional_and_links_successor():
    current = _refresh_row(revoked_at=NOW)
    successor = _refresh_row(id="rt-2", token_hash="next")
    linked = _refresh_row(revoked_at=NOW, replaced_by_id="rt-2")
    store = _store(FakeCursor([current]), FakeCursor([successor]), FakeCursor([linked]))

    previous, new = store.rotate_refresh_token(
        "hash", "next", NOW + timedelta(days=30), now=NOW, created_by_ip="10.0.0.1"
    )

    conn = store.pool.conn
    assert conn.transactions == 1
    assert "revoked_at IS NULL AND expires_at > %s" in conn.statements[0][0]
    assert conn.statements[1][1][-1] == "10.0.0.1"
    assert previous.replaced_by_id == new.id == "rt-2"


def test_rotation_of_spent_token_returns_none():
    store = _store(FakeCursor([]))

    assert store.rotate_refresh_token("hash", "next", NOW, now=NOW) is None
    assert len(store.pool.conn.statements) == 1


def test_increment_returns_none_when_budget_spent():
    store = _store(FakeCursor([{"attempts": 3}]), FakeCursor([]))

    assert store.increment_verification_attempts("code-1", 5) == 3
    assert store.increment_verification_attempts("code-1", 5) is None
    assert "attempts < %s" in store.pool.conn.statements[0][0]


def test_consume_backup_code_requires_match():
    store = _store(FakeCursor([{"id": "tf-1"}]), FakeCursor([]))

    assert store.consume_backup_code("acct-1", "h1") is True
    assert store.consume_backup_code("acct-1", "h1") is False
    query, params = store.pool.conn.statements[0]
    assert "array_remove" in query
    assert params == ("h1", "acct-1", "h1")


def test_two_factor_secret_encrypted_before_write():
    def row_for(conn):
        _, params = conn.statements[-1]
        return {
            "id": params[0],
            "account_id": params[1],
            "secret": params[2],
            "enabled": False,
            "verified_at": None,
            "backup_code_hashes": [],
            "created_at": NOW,
        }

    store = _store()
    conn = store.pool.conn
    original_execute = conn.execute

    def execute(query, params=None):
        original_execute(query, params)
        return FakeCursor([row_for(conn)])

    conn.execute = execute

    credential = store.save_two_factor_secret("acct-1", "JBSWY3DPEHPK3PXP")

    assert conn.statements[0][1][2] != "JBSWY3DPEHPK3PXP"
    assert "ON CONFLICT ON CONSTRAINT two_factor_account" in conn.statements[0][0]
    assert credential.secret == "JBSWY3DPEHPK3PXP"
    assert credential.enabled is False


def test_update_associate_binds_values_in_column_order():
    row = {
        "id": "as-1",
        "account_id": "acct-1",
        "provider": "password",
        "provider_ref_id": "a@example.com",
        "email": "a@example.com",
        "email_verified": True,
        "phone": None,
        "phone_verified": False,
        "password_hash": "hash",
        "created_at": NOW,
    }
    store = _store(FakeCursor([row]))

    updated = store.update_associate("as-1", password_hash="hash", email_verified=True)

    _, params = store.pool.conn.statements[0]
    assert params == [True, "hash", "as-1"]
    assert updated.email_verified is True


def test_update_associate_rejects_unknown_columns():
    store = _store()

    with pytest.raises(ValueError):
        store.update_associate("as-1", account_id="other")
    assert store.pool.conn.statements == []


def test_purge_reports_deleted_rows():
    store = _store(FakeCursor(rowcount=3))

    assert store.purge_expired_denylist(NOW) == 3


def test_latest_code_orders_by_sequence():
    store = _store(FakeCursor([]), FakeCursor([]))

    assert store.latest_verification_code("a@example.com", "email") is None
    assert store.latest_verification_code("a@example.com", "email", "register") is None
    first, second = store.pool.conn.statements
    assert "ORDER BY seq DESC" in first[0]
    assert first[1] == ("a@example.com", "email")
    assert second[1] == ("a@example.com", "email", "register")


def test_contact_verification_scoped_to_account():
    store = _store(FakeCursor([]))

    assert store.mark_contact_verified(KIND_EMAIL, "a@example.com", "acct-1") == []

    query, params = store.pool.conn.statements[0]
    assert "WHERE email = %s AND account_id = %s" in query
    assert params == ("a@example.com", "acct-1")
