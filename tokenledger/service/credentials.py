from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from tokenledger.logging import get_logger
from tokenledger.service.errors import ServiceError
from tokenledger.service.upstream import call_upstream
from tokenledger.storage.models import User, utcnow

PASSWORD_ALGO = "argon2id"


class CredentialStore(Protocol):
    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_login_record(
        self, email: str
    ) -> Optional[tuple[User, Optional[tuple[str, str]]]]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def record_login(self, user_id: str, at: datetime) -> None: ...


def normalize_login_identifier(identifier: str) -> str:
    return (identifier or "").strip().lower()


class CredentialVerifier:
    """Looks users up by login identifier and checks secrets with argon2id."""

    def __init__(
        self, store: CredentialStore, *, timeout: Optional[float] = None
    ) -> None:
        self.store = store
        self.timeout = timeout
        self.logger = get_logger(__name__)
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against when a user has no usable hash, so misses cost a full hash check
        self._dummy_hash = self._pwd_hasher.hash("tokenledger-timing-placeholder")

    def hash_secret(self, plaintext: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(plaintext), PASSWORD_ALGO

    def verify_secret(self, plaintext: str, stored_hash: Optional[str]) -> bool:
        """Check ``plaintext`` against ``stored_hash``.

        A missing hash is still checked against a throwaway hash so the
        call costs the same whether or not the user exists.
        """
        target = stored_hash or self._dummy_hash
        try:
            matched = self._pwd_hasher.verify(target, plaintext)
        except (InvalidHash, VerificationError):
            return False
        return bool(matched and stored_hash)

    async def verify_secret_async(
        self, plaintext: str, stored_hash: Optional[str]
    ) -> bool:
        # argon2 is CPU bound; keep it off the event loop
        return await asyncio.to_thread(self.verify_secret, plaintext, stored_hash)

    async def find_by_login_identifier(self, identifier: str) -> Optional[User]:
        normalized = normalize_login_identifier(identifier)
        if not normalized:
            return None
        return await call_upstream(
            "credentials", self.store.get_user_by_email, normalized, timeout=self.timeout
        )

    async def get_user(self, user_id: str) -> Optional[User]:
        return await call_upstream(
            "credentials", self.store.get_user, user_id, timeout=self.timeout
        )

    async def find_login_record(
        self, identifier: str
    ) -> Tuple[Optional[User], Optional[str]]:
        """User and usable secret hash for ``identifier`` in one store call.

        Known and unknown identifiers cost the same round-trips, so the
        store latency does not reveal which accounts exist.
        """
        normalized = normalize_login_identifier(identifier)
        if not normalized:
            return None, None
        found = await call_upstream(
            "credentials", self.store.get_login_record, normalized, timeout=self.timeout
        )
        if found is None:
            return None, None
        user, record = found
        return user, self._usable_hash(user.id, record)

    async def get_secret_hash(self, user_id: str) -> Optional[str]:
        record = await call_upstream(
            "credentials", self.store.get_password_record, user_id, timeout=self.timeout
        )
        return self._usable_hash(user_id, record)

    def _usable_hash(
        self, user_id: str, record: Optional[tuple[str, str]]
    ) -> Optional[str]:
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return None
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return None
        return stored_hash

    async def set_secret(self, user_id: str, plaintext: str) -> None:
        pwd_hash, algo = await asyncio.to_thread(self.hash_secret, plaintext)
        await call_upstream(
            "credentials",
            self.store.save_password,
            user_id,
            pwd_hash,
            algo,
            timeout=self.timeout,
        )

    async def record_login(self, user_id: str) -> bool:
        """Stamp last-login. Failures are logged and reported, never raised."""
        try:
            await call_upstream(
                "credentials",
                self.store.record_login,
                user_id,
                utcnow(),
                timeout=self.timeout,
            )
        except ServiceError as exc:
            self.logger.warning(
                "last_login_update_failed",
                user_id=user_id,
                error_code=exc.error_code,
            )
            return False
        except Exception as exc:
            self.logger.warning(
                "last_login_update_failed",
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        return True
