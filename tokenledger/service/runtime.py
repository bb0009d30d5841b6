from __future__ import annotations

import threading
from typing import Any, Optional
from urllib.parse import urlparse, urlunparse

from tokenledger.config import LedgerBackend, get_settings, reset_settings_cache
from tokenledger.logging import get_logger
from tokenledger.service.credentials import CredentialVerifier
from tokenledger.service.ledger import RefreshLedger
from tokenledger.service.sessions import SessionIssuer, SessionRotator
from tokenledger.service.tokens import TokenCodec
from tokenledger.storage.memory import MemoryStore
from tokenledger.storage.postgres import PostgresStore
from tokenledger.storage.redis_ledger import RedisLedgerStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the configured stores and session services for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            ledger_backend=self.settings.ledger_backend.value,
            test_mode=self.settings.test_mode,
        )

        self.store: Any
        self.ledger_store: Any
        if self.settings.use_memory_store:
            if not self.settings.test_mode:
                raise RuntimeError(
                    "USE_MEMORY_STORE is only allowed with TEST_MODE=true; "
                    "configure DATABASE_URL for a real credential store."
                )
            self.store = MemoryStore()
            self.ledger_store = self.store
        else:
            try:
                self.store = PostgresStore(self.settings.database_url)
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    store_type="postgres",
                    database_url=_mask_url_password(self.settings.database_url),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise
            self.ledger_store = self._build_ledger_store()
        logger.info(
            "runtime_store_initialized",
            store_type=type(self.store).__name__,
            ledger_type=type(self.ledger_store).__name__,
        )

        timeout = self.settings.upstream_timeout_seconds
        self.codec = TokenCodec(self.settings)
        self.verifier = CredentialVerifier(self.store, timeout=timeout)
        self.ledger = RefreshLedger(self.ledger_store, timeout=timeout)
        self.issuer = SessionIssuer(self.verifier, self.ledger, self.codec)
        self.rotator = SessionRotator(self.verifier, self.ledger, self.codec)
        logger.info("runtime_initialized", upstream_timeout=timeout)

    def _build_ledger_store(self):
        if self.settings.ledger_backend != LedgerBackend.REDIS:
            return self.store
        if not self.settings.redis_url:
            raise RuntimeError("LEDGER_BACKEND=redis requires REDIS_URL")
        ledger_store = RedisLedgerStore(
            self.settings.redis_url,
            socket_timeout=self.settings.upstream_timeout_seconds,
        )
        try:
            ledger_store.verify_connection()
        except Exception as exc:
            logger.error(
                "runtime_ledger_init_failed",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(exc),
            )
            raise
        return ledger_store

    def close(self) -> None:
        seen = set()
        for backend in (self.ledger_store, self.store):
            if id(backend) in seen:
                continue
            seen.add(id(backend))
            closer = getattr(backend, "close", None)
            if closer is not None:
                closer()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
