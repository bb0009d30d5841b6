from __future__ import annotations

from ipaddress import ip_address
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, Request, Response

from tokenledger.api.schemas import (
    Envelope,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    LogoutResponse,
    MeResponse,
    TokenPairResponse,
    TokenRefreshRequest,
    UserSummary,
)
from tokenledger.config import (
    ACCESS_TOKEN_TTL_SECONDS,
    REFRESH_TOKEN_TTL_SECONDS,
    get_settings,
)
from tokenledger.logging import get_logger
from tokenledger.service.errors import AuthenticationError, ServiceError
from tokenledger.service.runtime import get_runtime
from tokenledger.service.sessions import IssuedSession
from tokenledger.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"
MAX_USER_AGENT_LENGTH = 512


def _client_ip(request: Request) -> Optional[str]:
    """Originating address; X-Forwarded-For is only honoured behind a trusted proxy."""
    candidate: Optional[str] = None
    if get_settings().trust_proxy_headers:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            candidate = forwarded.split(",")[0].strip()
    if not candidate and request.client:
        candidate = request.client.host
    if not candidate:
        return None
    try:
        return str(ip_address(candidate))
    except ValueError:
        return None


def _user_agent(request: Request) -> Optional[str]:
    value = request.headers.get("user-agent")
    if not value:
        return None
    return value[:MAX_USER_AGENT_LENGTH]


def _apply_auth_cookies(response: Response, session: IssuedSession) -> None:
    settings = get_settings()
    response.set_cookie(
        ACCESS_COOKIE,
        session.access_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite=settings.cookie_samesite,
        max_age=ACCESS_TOKEN_TTL_SECONDS,
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        session.refresh_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite=settings.cookie_samesite,
        max_age=REFRESH_TOKEN_TTL_SECONDS,
        path="/",
    )


def _clear_auth_cookies(response: Response) -> None:
    settings = get_settings()
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(
            name,
            path="/",
            secure=settings.cookie_secure,
            httponly=True,
            samesite=settings.cookie_samesite,
        )


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_current_user(
    authorization: Optional[str] = Header(None),
    access_cookie: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
) -> User:
    runtime = get_runtime()
    token = _extract_bearer(authorization) or access_cookie
    claims = runtime.codec.verify_access_token(token)
    if claims is None:
        raise AuthenticationError("invalid or missing access token")
    user = await runtime.verifier.get_user(claims.subject)
    if user is None or not user.is_active:
        raise AuthenticationError("invalid or missing access token")
    return user


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Returns the token pair in the body and mirrors both tokens into
    HttpOnly cookies. Other sessions of the same user stay valid.

    Raises:
        401: invalid_credentials, for an unknown email or a wrong password alike
        403: account_inactive
    """
    runtime = get_runtime()
    session = await runtime.issuer.login(
        body.email,
        body.password,
        user_agent=_user_agent(request),
        ip_addr=_client_ip(request),
    )
    _apply_auth_cookies(response, session)
    return Envelope(
        status="ok",
        data=LoginResponse(
            user=UserSummary.from_user(session.user),
            access_token=session.access_token,
            refresh_token=session.refresh_token,
            token_type=session.token_type,
            expires_in=session.expires_in,
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    request: Request,
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    """Rotate a refresh token into a new pair.

    The token comes from the JSON body when present, otherwise from the
    ``refresh_token`` cookie; an empty body is a valid call. The presented
    token is single-use.
    """
    runtime = get_runtime()
    presented = (body.refresh_token if body else None) or refresh_cookie
    session = await runtime.rotator.refresh(
        presented,
        user_agent=_user_agent(request),
        ip_addr=_client_ip(request),
    )
    _apply_auth_cookies(response, session)
    return Envelope(
        status="ok",
        data=TokenPairResponse(
            access_token=session.access_token,
            refresh_token=session.refresh_token,
            token_type=session.token_type,
            expires_in=session.expires_in,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    body: Optional[LogoutRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    """Revoke the presented refresh token and clear auth cookies.

    Always succeeds; a token that fails to verify or a ledger outage is
    logged and the cookies are cleared regardless.
    """
    runtime = get_runtime()
    presented = (body.refresh_token if body else None) or refresh_cookie
    if presented:
        try:
            revoked = await runtime.rotator.revoke(presented)
            if not revoked:
                logger.info("logout_token_not_verified")
        except ServiceError as exc:
            logger.warning("logout_revoke_failed", error_code=exc.error_code)
    _clear_auth_cookies(response)
    return Envelope(status="ok", data=LogoutResponse())


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(user: User = Depends(get_current_user)):
    """Return the user behind the presented access token."""
    return Envelope(status="ok", data=MeResponse.from_user(user))
