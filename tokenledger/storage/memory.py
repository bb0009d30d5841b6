from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, Optional, Tuple

from tokenledger.logging import get_logger
from tokenledger.storage.errors import ConstraintViolation, MissingReference
from tokenledger.storage.models import RefreshRecord, User, utcnow


class MemoryStore:
    """In-process credential store and refresh ledger used by the test suite.

    Every read returns a copy so callers never hold a reference into the
    store, and every check-then-write runs under one lock.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.refresh_records: Dict[str, RefreshRecord] = {}
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    # users
    def create_user(
        self,
        email: str,
        display_name: Optional[str] = None,
        *,
        is_active: bool = True,
    ) -> User:
        with self._data_lock:
            normalized = email.strip().lower()
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                display_name=display_name,
                is_active=is_active,
            )
            self.users[user.id] = user
            return replace(user)

    def set_user_active(self, user_id: str, is_active: bool) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.is_active = is_active

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def get_login_record(
        self, email: str
    ) -> Optional[Tuple[User, Optional[tuple[str, str]]]]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            if user is None:
                return None
            return replace(user), self.credentials.get(user.id)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def record_login(self, user_id: str, at: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.last_login_at = at

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise MissingReference(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # refresh ledger
    def create_refresh_record(self, record: RefreshRecord) -> RefreshRecord:
        with self._data_lock:
            if record.token_id in self.refresh_records:
                raise ConstraintViolation(
                    "refresh token id already exists", {"field": "token_id"}
                )
            self.refresh_records[record.token_id] = replace(record)
            return replace(record)

    def get_refresh_record(self, token_id: str) -> Optional[RefreshRecord]:
        with self._data_lock:
            record = self.refresh_records.get(token_id)
            return replace(record) if record else None

    def revoke_refresh_record(
        self, token_id: str, at: Optional[datetime] = None
    ) -> bool:
        """Set ``revoked_at`` if unset. Returns True only for the call that set it."""
        with self._data_lock:
            record = self.refresh_records.get(token_id)
            if record is None or record.revoked_at is not None:
                return False
            record.revoked_at = at or utcnow()
            return True

    def restore_refresh_record(self, token_id: str, revoked_at: datetime) -> bool:
        """Clear ``revoked_at`` only if it still holds the stamp ``revoked_at``."""
        with self._data_lock:
            record = self.refresh_records.get(token_id)
            if record is None or record.revoked_at != revoked_at:
                return False
            record.revoked_at = None
            return True
