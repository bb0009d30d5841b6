from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from tokenledger.logging import fingerprint, get_logger
from tokenledger.service.errors import ConflictError, UserUnavailableError
from tokenledger.service.upstream import call_upstream
from tokenledger.storage.errors import ConstraintViolation, MissingReference
from tokenledger.storage.models import RefreshRecord, utcnow


class LedgerStore(Protocol):
    def create_refresh_record(self, record: RefreshRecord) -> RefreshRecord: ...

    def get_refresh_record(self, token_id: str) -> Optional[RefreshRecord]: ...

    def revoke_refresh_record(
        self, token_id: str, at: Optional[datetime] = None
    ) -> bool: ...

    def restore_refresh_record(self, token_id: str, revoked_at: datetime) -> bool: ...

    def verify_connection(self) -> None: ...


class RefreshLedger:
    """Async client over the durable refresh token ledger.

    All calls run through :func:`call_upstream` so they are bounded by the
    configured timeout. Revocation is delegated to the store's atomic
    revoke-if-unrevoked primitive; there is no read-then-write path here.
    """

    def __init__(self, store: LedgerStore, *, timeout: Optional[float] = None) -> None:
        self.store = store
        self.timeout = timeout
        self.logger = get_logger(__name__)

    async def create(
        self,
        user_id: str,
        token_id: str,
        expires_at: datetime,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> RefreshRecord:
        record = RefreshRecord.new(
            token_id,
            user_id,
            expires_at,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )
        try:
            created = await call_upstream(
                "ledger", self.store.create_refresh_record, record, timeout=self.timeout
            )
        except MissingReference as exc:
            self.logger.warning(
                "refresh_record_owner_missing",
                token_fp=fingerprint(token_id),
                user_id=user_id,
            )
            raise UserUnavailableError() from exc
        except ConstraintViolation as exc:
            # Never overwrite an existing record, even on an id collision
            self.logger.error(
                "refresh_record_conflict", token_fp=fingerprint(token_id), user_id=user_id
            )
            raise ConflictError("refresh token id conflict") from exc
        self.logger.info(
            "refresh_record_created", token_fp=fingerprint(token_id), user_id=user_id
        )
        return created

    async def fetch(self, token_id: str) -> Optional[RefreshRecord]:
        return await call_upstream(
            "ledger", self.store.get_refresh_record, token_id, timeout=self.timeout
        )

    async def revoke_if_active(
        self, token_id: str, *, at: Optional[datetime] = None
    ) -> bool:
        """Atomically set ``revoked_at`` if unset; True only for the winning caller."""
        revoked = await call_upstream(
            "ledger",
            self.store.revoke_refresh_record,
            token_id,
            at or utcnow(),
            timeout=self.timeout,
        )
        if revoked:
            self.logger.info("refresh_record_revoked", token_fp=fingerprint(token_id))
        return revoked

    async def revoke(self, token_id: str) -> None:
        """Idempotent revoke; an already-revoked or unknown id is a no-op."""
        await self.revoke_if_active(token_id)

    async def reinstate(self, token_id: str, revoked_at: datetime) -> bool:
        """Undo our own ``revoke_if_active(token_id, at=revoked_at)``.

        Only clears the revocation if ``revoked_at`` still carries that exact
        stamp, so a revoke made by anyone else is never undone.
        """
        restored = await call_upstream(
            "ledger",
            self.store.restore_refresh_record,
            token_id,
            revoked_at,
            timeout=self.timeout,
        )
        if restored:
            self.logger.info("refresh_record_reinstated", token_fp=fingerprint(token_id))
        return restored
