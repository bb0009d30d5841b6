"""Unit tests for the Postgres and Redis backends with their clients stubbed out."""

from contextlib import contextmanager
from datetime import timedelta

import pytest
from psycopg import errors as pg_errors
from psycopg_pool import PoolTimeout
from redis.exceptions import ConnectionError as RedisConnectionError

from tokenledger.storage.errors import (
    ConstraintViolation,
    MissingReference,
    StoreUnavailable,
)
from tokenledger.storage.models import RefreshRecord, utcnow
from tokenledger.storage.postgres import PostgresStore
from tokenledger.storage.redis_ledger import RedisLedgerStore


class FakeResult:
    def __init__(self, row):
        self._row = row

    def fetchone(self):
        return self._row


class FakeConnection:
    def __init__(self, rows):
        self.rows = list(rows)
        self.executed = []

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        return FakeResult(self.rows.pop(0) if self.rows else None)


class RaisingConnection:
    def __init__(self, exc):
        self.exc = exc

    def execute(self, sql, params=None):
        raise self.exc


class FakePool:
    def __init__(self, conn=None, exc=None):
        self.conn = conn
        self.exc = exc

    @contextmanager
    def connection(self):
        if self.exc is not None:
            raise self.exc
        yield self.conn


def _postgres(conn=None, exc=None) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(conn, exc)
    return store


class TestPostgresStore:
    def test_revoke_is_conditional_update(self):
        conn = FakeConnection([{"token_id": "tid"}, None])
        store = _postgres(conn)

        assert store.revoke_refresh_record("tid") is True
        assert store.revoke_refresh_record("tid") is False
        sql, params = conn.executed[0]
        assert "WHERE token_id = %s AND revoked_at IS NULL" in sql
        assert "RETURNING" in sql
        assert params[1] == "tid"

    def test_record_row_mapping(self):
        now = utcnow()
        conn = FakeConnection(
            [
                {
                    "token_id": "tid",
                    "user_id": "6f1c1a8e-0000-4000-8000-000000000000",
                    "created_at": now,
                    "expires_at": now + timedelta(days=7),
                    "revoked_at": None,
                    "user_agent": "pytest",
                    "ip_addr": "10.0.0.1",
                }
            ]
        )
        record = _postgres(conn).get_refresh_record("tid")
        assert record.user_id == "6f1c1a8e-0000-4000-8000-000000000000"
        assert record.ip_addr == "10.0.0.1"
        assert not record.is_revoked

    def test_missing_record(self):
        assert _postgres(FakeConnection([None])).get_refresh_record("tid") is None

    def test_non_uuid_user_id_short_circuits(self):
        conn = FakeConnection([])
        assert _postgres(conn).get_user("not-a-uuid") is None
        assert conn.executed == []

    def test_restore_matches_own_revoke_stamp(self):
        conn = FakeConnection([{"token_id": "tid"}])
        stamp = utcnow()

        assert _postgres(conn).restore_refresh_record("tid", stamp) is True
        sql, params = conn.executed[0]
        assert "SET revoked_at = NULL" in sql
        assert "WHERE token_id = %s AND revoked_at = %s" in sql
        assert params == ("tid", stamp)

    def test_unknown_owner_is_missing_reference(self):
        fk_error = pg_errors.ForeignKeyViolation("refresh_token_user_id_fkey")
        store = _postgres(RaisingConnection(fk_error))
        record = RefreshRecord.new("tid", "uid", utcnow() + timedelta(days=7))

        with pytest.raises(MissingReference) as excinfo:
            store.create_refresh_record(record)
        assert excinfo.value.__cause__ is fk_error

    def test_duplicate_token_id_keeps_cause(self):
        dup_error = pg_errors.UniqueViolation("refresh_token_pkey")
        store = _postgres(RaisingConnection(dup_error))
        record = RefreshRecord.new("tid", "uid", utcnow() + timedelta(days=7))

        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_refresh_record(record)
        assert not isinstance(excinfo.value, MissingReference)
        assert excinfo.value.__cause__ is dup_error

    def test_login_record_joins_password(self):
        now = utcnow()
        user_row = {
            "id": "6f1c1a8e-0000-4000-8000-000000000000",
            "email": "a@x.com",
            "display_name": None,
            "is_active": True,
            "created_at": now,
            "last_login_at": None,
        }
        conn = FakeConnection(
            [
                {**user_row, "password_hash": "hash", "password_algo": "argon2id"},
                {**user_row, "password_hash": None, "password_algo": None},
                None,
            ]
        )
        store = _postgres(conn)

        user, password = store.get_login_record("a@x.com")
        assert user.id == user_row["id"]
        assert password == ("hash", "argon2id")
        assert store.get_login_record("a@x.com")[1] is None
        assert store.get_login_record("nobody@x.com") is None
        assert len(conn.executed) == 3
        assert "LEFT JOIN user_auth_credential" in conn.executed[0][0]

    def test_pool_timeout_is_unavailable(self):
        store = _postgres(exc=PoolTimeout("no connection"))
        with pytest.raises(StoreUnavailable) as excinfo:
            store.get_refresh_record("tid")
        assert excinfo.value.backend == "postgres"


class FakeScript:
    def __init__(self, result=None, exc=None):
        self.result = result
        self.exc = exc
        self.calls = []

    def __call__(self, keys=None, args=None):
        self.calls.append((keys, args))
        if self.exc is not None:
            raise self.exc
        return self.result


class FakeRedis:
    def __init__(self, data=None):
        self.data = data or {}

    def hgetall(self, key):
        return self.data.get(key, {})


def _redis(create=None, revoke=None, data=None, restore=None) -> RedisLedgerStore:
    store: RedisLedgerStore = RedisLedgerStore.__new__(RedisLedgerStore)
    store.client = FakeRedis(data)
    store._create = create or FakeScript(1)
    store._revoke = revoke or FakeScript(1)
    store._restore = restore or FakeScript(1)
    return store


class TestRedisLedgerStore:
    def test_create_sets_expiry_from_record(self):
        create = FakeScript(1)
        record = RefreshRecord.new("tid", "uid", utcnow() + timedelta(days=7))
        _redis(create=create).create_refresh_record(record)

        keys, args = create.calls[0]
        assert keys == ["refresh:tid"]
        assert args[0] == "uid"
        assert args[5] == int(record.expires_at.timestamp())

    def test_create_collision_is_constraint_violation(self):
        record = RefreshRecord.new("tid", "uid", utcnow() + timedelta(days=7))
        with pytest.raises(ConstraintViolation):
            _redis(create=FakeScript(0)).create_refresh_record(record)

    def test_revoke_reports_winner(self):
        assert _redis(revoke=FakeScript(1)).revoke_refresh_record("tid") is True
        assert _redis(revoke=FakeScript(0)).revoke_refresh_record("tid") is False

    def test_restore_passes_revoke_stamp(self):
        restore = FakeScript(1)
        stamp = utcnow()

        assert _redis(restore=restore).restore_refresh_record("tid", stamp) is True
        keys, args = restore.calls[0]
        assert keys == ["refresh:tid"]
        assert args == [stamp.isoformat()]
        assert _redis(restore=FakeScript(0)).restore_refresh_record("tid", stamp) is False

    def test_connection_error_is_unavailable(self):
        store = _redis(revoke=FakeScript(exc=RedisConnectionError("down")))
        with pytest.raises(StoreUnavailable) as excinfo:
            store.revoke_refresh_record("tid")
        assert excinfo.value.backend == "redis"

    def test_hash_mapping(self):
        now = utcnow()
        store = _redis(
            data={
                "refresh:tid": {
                    "user_id": "uid",
                    "created_at": now.isoformat(),
                    "expires_at": (now + timedelta(days=7)).isoformat(),
                    "revoked_at": "",
                    "user_agent": "",
                    "ip_addr": "10.0.0.1",
                }
            }
        )
        record = store.get_refresh_record("tid")
        assert record.user_id == "uid"
        assert record.revoked_at is None
        assert record.user_agent is None
        assert record.ip_addr == "10.0.0.1"
        assert store.get_refresh_record("missing") is None
