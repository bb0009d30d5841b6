from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from tokenledger.config import ACCESS_TOKEN_TTL_SECONDS
from tokenledger.logging import fingerprint, get_logger
from tokenledger.service.credentials import CredentialVerifier
from tokenledger.service.errors import (
    AccountInactiveError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    RefreshTokenExpiredError,
    RefreshTokenRevokedError,
    ServiceError,
    UserUnavailableError,
)
from tokenledger.service.ledger import RefreshLedger
from tokenledger.service.tokens import TokenCodec, generate_token_id
from tokenledger.storage.models import User, utcnow

logger = get_logger(__name__)


@dataclass
class IssuedSession:
    user: User
    access_token: str
    refresh_token: str
    refresh_token_id: str
    expires_in: int = ACCESS_TOKEN_TTL_SECONDS
    token_type: str = "bearer"


async def mint_session(
    codec: TokenCodec,
    ledger: RefreshLedger,
    user: User,
    *,
    user_agent: Optional[str] = None,
    ip_addr: Optional[str] = None,
) -> IssuedSession:
    """Sign a fresh token pair and persist the refresh record behind it.

    The signed refresh token is only returned once its ledger record has
    been written; a failed insert leaves nothing usable behind.
    """
    token_id = generate_token_id()
    access = codec.issue_access_token(user)
    refresh = codec.issue_refresh_token(user, token_id)
    await ledger.create(
        user.id,
        token_id,
        refresh.claims.expires_at_datetime,
        user_agent=user_agent,
        ip_addr=ip_addr,
    )
    return IssuedSession(
        user=user,
        access_token=access.token,
        refresh_token=refresh.token,
        refresh_token_id=token_id,
    )


class SessionIssuer:
    """Login: verify credentials and hand out a new token pair.

    Logging in never revokes the user's other sessions.
    """

    def __init__(
        self,
        verifier: CredentialVerifier,
        ledger: RefreshLedger,
        codec: TokenCodec,
    ) -> None:
        self.verifier = verifier
        self.ledger = ledger
        self.codec = codec

    async def login(
        self,
        identifier: str,
        secret: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> IssuedSession:
        user, stored_hash = await self.verifier.find_login_record(identifier)
        if user is None:
            # Burn a full hash check so unknown identifiers cost the same
            await self.verifier.verify_secret_async(secret, None)
            logger.info("login_failed", reason="unknown_identifier")
            raise InvalidCredentialsError()
        if not user.is_active:
            logger.info("login_failed", reason="account_inactive", user_id=user.id)
            raise AccountInactiveError()
        if not await self.verifier.verify_secret_async(secret, stored_hash):
            logger.info("login_failed", reason="secret_mismatch", user_id=user.id)
            raise InvalidCredentialsError()

        if await self.verifier.record_login(user.id):
            user.last_login_at = utcnow()
        session = await mint_session(
            self.codec, self.ledger, user, user_agent=user_agent, ip_addr=ip_addr
        )
        logger.info(
            "login_succeeded",
            user_id=user.id,
            token_fp=fingerprint(session.refresh_token_id),
        )
        return session


class SessionRotator:
    """Refresh: exchange a live refresh token for a new pair, exactly once.

    Validation runs to completion before anything is written. The atomic
    ``revoke_if_active`` call is the only serialization point, so of any
    number of concurrent callers presenting the same token one wins and
    the rest see ``RefreshTokenRevokedError``. If minting the replacement
    fails, the winner puts its own revocation back so a retry can succeed.
    """

    def __init__(
        self,
        verifier: CredentialVerifier,
        ledger: RefreshLedger,
        codec: TokenCodec,
    ) -> None:
        self.verifier = verifier
        self.ledger = ledger
        self.codec = codec

    async def refresh(
        self,
        presented: Optional[str],
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> IssuedSession:
        if not presented:
            logger.info("refresh_rejected", reason="missing_token")
            raise InvalidRefreshTokenError()
        claims = self.codec.verify_refresh_token(presented)
        if claims is None or not claims.token_id:
            logger.info("refresh_rejected", reason="token_invalid")
            raise InvalidRefreshTokenError()
        token_id = claims.token_id
        token_fp = fingerprint(token_id)

        record = await self.ledger.fetch(token_id)
        if record is None:
            logger.warning("refresh_rejected", reason="record_missing", token_fp=token_fp)
            raise InvalidRefreshTokenError()
        if record.user_id != claims.subject:
            logger.warning("refresh_rejected", reason="subject_mismatch", token_fp=token_fp)
            raise InvalidRefreshTokenError()
        if record.is_revoked:
            logger.warning(
                "refresh_reuse_detected", user_id=record.user_id, token_fp=token_fp
            )
            raise RefreshTokenRevokedError()
        if record.is_expired():
            logger.info("refresh_rejected", reason="record_expired", token_fp=token_fp)
            raise RefreshTokenExpiredError()

        user = await self.verifier.get_user(record.user_id)
        if user is None or not user.is_active:
            logger.info(
                "refresh_rejected",
                reason="user_unavailable",
                user_id=record.user_id,
                token_fp=token_fp,
            )
            raise UserUnavailableError()

        revoked_at = utcnow()
        if not await self.ledger.revoke_if_active(token_id, at=revoked_at):
            # Lost the race to a concurrent rotation of the same token
            logger.warning(
                "refresh_reuse_detected",
                user_id=record.user_id,
                token_fp=token_fp,
                concurrent=True,
            )
            raise RefreshTokenRevokedError()

        try:
            session = await mint_session(
                self.codec, self.ledger, user, user_agent=user_agent, ip_addr=ip_addr
            )
        except Exception:
            # No replacement was issued, so the presented token must stay usable
            await self._reinstate(token_id, revoked_at, token_fp)
            raise
        logger.info(
            "refresh_rotated",
            user_id=user.id,
            token_fp=token_fp,
            next_fp=fingerprint(session.refresh_token_id),
        )
        return session

    async def _reinstate(
        self, token_id: str, revoked_at: datetime, token_fp: str
    ) -> None:
        try:
            restored = await self.ledger.reinstate(token_id, revoked_at)
        except ServiceError as exc:
            logger.error(
                "refresh_reinstate_failed", token_fp=token_fp, error_code=exc.error_code
            )
            return
        if not restored:
            logger.warning("refresh_reinstate_skipped", token_fp=token_fp)

    async def revoke(self, presented: Optional[str]) -> bool:
        """Revoke the ledger record behind ``presented``; used on logout.

        Returns False for tokens that do not verify. Revoking an already
        revoked token is a no-op.
        """
        claims = self.codec.verify_refresh_token(presented)
        if claims is None or not claims.token_id:
            return False
        await self.ledger.revoke(claims.token_id)
        logger.info(
            "session_revoked", user_id=claims.subject, token_fp=fingerprint(claims.token_id)
        )
        return True
