"""Unit tests for the refresh ledger client and bounded upstream calls."""

import time
from datetime import timedelta

import pytest

from tokenledger.service.errors import (
    ConflictError,
    UpstreamUnavailableError,
    UserUnavailableError,
)
from tokenledger.service.ledger import RefreshLedger
from tokenledger.service.upstream import call_upstream
from tokenledger.storage.errors import MissingReference, StoreUnavailable
from tokenledger.storage.memory import MemoryStore
from tokenledger.storage.models import utcnow


class SlowStore(MemoryStore):
    def get_refresh_record(self, token_id):
        time.sleep(0.5)
        return super().get_refresh_record(token_id)


class OrphanStore(MemoryStore):
    def create_refresh_record(self, record):
        raise MissingReference("user not found for refresh token", {"user_id": record.user_id})


class DownStore(MemoryStore):
    def get_refresh_record(self, token_id):
        raise StoreUnavailable("postgres", "connection refused")


async def test_create_and_fetch(ledger, test_user):
    expires_at = utcnow() + timedelta(days=7)
    await ledger.create(
        test_user.id, "tid-1", expires_at, user_agent="pytest", ip_addr="127.0.0.1"
    )
    record = await ledger.fetch("tid-1")

    assert record.user_id == test_user.id
    assert record.expires_at == expires_at
    assert record.revoked_at is None
    assert record.user_agent == "pytest"
    assert record.ip_addr == "127.0.0.1"
    assert await ledger.fetch("unknown") is None


async def test_create_conflict(ledger, test_user):
    expires_at = utcnow() + timedelta(days=7)
    await ledger.create(test_user.id, "tid-1", expires_at)
    with pytest.raises(ConflictError):
        await ledger.create(test_user.id, "tid-1", expires_at)


async def test_revoke_is_idempotent(ledger, test_user):
    await ledger.create(test_user.id, "tid-1", utcnow() + timedelta(days=7))

    await ledger.revoke("tid-1")
    first = (await ledger.fetch("tid-1")).revoked_at
    await ledger.revoke("tid-1")
    await ledger.revoke("never-issued")

    assert first is not None
    assert (await ledger.fetch("tid-1")).revoked_at == first


async def test_revoke_if_active_reports_winner(ledger, test_user):
    await ledger.create(test_user.id, "tid-1", utcnow() + timedelta(days=7))
    assert await ledger.revoke_if_active("tid-1") is True
    assert await ledger.revoke_if_active("tid-1") is False


async def test_missing_owner_is_not_a_conflict():
    ledger = RefreshLedger(OrphanStore(), timeout=2.0)
    with pytest.raises(UserUnavailableError):
        await ledger.create("deleted-user", "tid-1", utcnow() + timedelta(days=7))


async def test_reinstate_undoes_own_revoke(ledger, test_user):
    await ledger.create(test_user.id, "tid-1", utcnow() + timedelta(days=7))
    stamp = utcnow()
    assert await ledger.revoke_if_active("tid-1", at=stamp) is True
    assert (await ledger.fetch("tid-1")).revoked_at == stamp

    assert await ledger.reinstate("tid-1", stamp) is True
    assert (await ledger.fetch("tid-1")).revoked_at is None
    assert await ledger.reinstate("tid-1", stamp) is False


async def test_timeout_surfaces_as_upstream_unavailable():
    ledger = RefreshLedger(SlowStore(), timeout=0.05)
    with pytest.raises(UpstreamUnavailableError) as excinfo:
        await ledger.fetch("tid-1")
    assert excinfo.value.status_code == 503
    assert excinfo.value.error_code == "upstream_unavailable"


async def test_store_outage_surfaces_as_upstream_unavailable():
    ledger = RefreshLedger(DownStore(), timeout=1.0)
    with pytest.raises(UpstreamUnavailableError):
        await ledger.fetch("tid-1")


async def test_call_upstream_passes_other_errors_through():
    def broken():
        raise KeyError("corrupt row")

    with pytest.raises(KeyError):
        await call_upstream("ledger", broken, timeout=1.0)


async def test_call_upstream_without_timeout():
    assert await call_upstream("ledger", lambda: 42, timeout=None) == 42
