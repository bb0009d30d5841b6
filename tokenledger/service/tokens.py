from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from tokenledger.config import (
    ACCESS_TOKEN_TTL_SECONDS,
    REFRESH_TOKEN_TTL_SECONDS,
    Settings,
)
from tokenledger.logging import get_logger
from tokenledger.storage.models import User

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"

# 32 bytes of entropy, ~43 URL-safe characters
TOKEN_ID_BYTES = 32


def generate_token_id() -> str:
    return secrets.token_urlsafe(TOKEN_ID_BYTES)


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    token_type: str
    issued_at: int
    expires_at: int
    token_id: Optional[str] = None

    @property
    def expires_at_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.expires_at, tz=timezone.utc)


@dataclass(frozen=True)
class SignedToken:
    token: str
    claims: TokenClaims


class TokenCodec:
    """Signs and verifies the HS256 access and refresh tokens.

    Verification never raises: every failure (bad signature, wrong algorithm,
    wrong issuer/audience, malformed payload, expiry, kind mismatch) returns
    ``None`` so callers map it to a single coarse error.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        leeway_seconds: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not settings.jwt_secret:
            raise ValueError("jwt_secret is required to sign tokens")
        self._secret = settings.jwt_secret.encode()
        self.issuer = settings.jwt_issuer
        self.audience = settings.jwt_audience
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    def issue_access_token(self, user: User) -> SignedToken:
        return self._issue(user.id, ACCESS, ACCESS_TOKEN_TTL_SECONDS)

    def issue_refresh_token(self, user: User, token_id: str) -> SignedToken:
        if not token_id:
            raise ValueError("refresh tokens require a token id")
        return self._issue(user.id, REFRESH, REFRESH_TOKEN_TTL_SECONDS, token_id=token_id)

    def verify_access_token(self, token: Optional[str]) -> Optional[TokenClaims]:
        return self._verify(token, ACCESS)

    def verify_refresh_token(self, token: Optional[str]) -> Optional[TokenClaims]:
        claims = self._verify(token, REFRESH)
        if claims is None:
            return None
        if not claims.token_id:
            logger.warning("refresh_token_missing_jti", subject=claims.subject)
            return None
        return claims

    def _issue(
        self,
        subject: str,
        token_type: str,
        ttl_seconds: int,
        *,
        token_id: Optional[str] = None,
    ) -> SignedToken:
        now = int(self._clock())
        payload: dict[str, Any] = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": subject,
            "token_type": token_type,
            "iat": now,
            "exp": now + ttl_seconds,
        }
        if token_id:
            payload["jti"] = token_id
        claims = TokenClaims(
            subject=subject,
            token_type=token_type,
            issued_at=payload["iat"],
            expires_at=payload["exp"],
            token_id=token_id,
        )
        return SignedToken(token=self._encode_jwt(payload), claims=claims)

    def _verify(self, token: Optional[str], expected_type: str) -> Optional[TokenClaims]:
        if not token or not isinstance(token, str):
            return None
        payload = self._decode_jwt(token)
        if payload is None:
            return None
        if payload.get("token_type") != expected_type:
            return None
        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            return None
        token_id = payload.get("jti")
        if token_id is not None and not isinstance(token_id, str):
            return None
        try:
            issued_at = int(payload.get("iat", 0))
            expires_at = int(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        return TokenClaims(
            subject=subject,
            token_type=expected_type,
            issued_at=issued_at,
            expires_at=expires_at,
            token_id=token_id,
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Pin the algorithm before looking at the signature
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        exp = payload.get("exp")
        if exp is None or isinstance(exp, bool):
            return None
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._clock() - self.leeway_seconds:
            return None
        return payload
