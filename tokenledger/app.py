from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware

from tokenledger.api.error_handling import register_exception_handlers
from tokenledger.api.routes import router
from tokenledger.config import get_settings
from tokenledger.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup so misconfiguration fails fast."""
    from tokenledger.service.runtime import get_runtime

    get_runtime()
    yield
    try:
        get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="tokenledger", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    return get_settings().cors_allow_origins


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with X-Request-ID, taken from the client or generated."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        # Responses carry bearer tokens
        response.headers["Cache-Control"] = "no-store"
        response.headers.setdefault("Pragma", "no-cache")
    response.headers.setdefault("API-Version", __version__)
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health(response: Response) -> Dict[str, Any]:
    """Probe the credential store and the refresh ledger, each with a time bound."""
    from tokenledger.service.runtime import get_runtime

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    db_ok = await _run_bounded("credential_store", runtime.store.verify_connection)
    checks["credential_store"] = {
        "status": "healthy" if db_ok else "unhealthy",
        "type": type(runtime.store).__name__,
    }
    overall_healthy = db_ok
    if runtime.ledger_store is not runtime.store:
        ledger_ok = await _run_bounded("ledger", runtime.ledger_store.verify_connection)
        checks["ledger"] = {
            "status": "healthy" if ledger_ok else "unhealthy",
            "type": type(runtime.ledger_store).__name__,
        }
        overall_healthy = overall_healthy and ledger_ok
    else:
        checks["ledger"] = {"status": checks["credential_store"]["status"], "shared": True}

    if not overall_healthy:
        response.status_code = 503
    return {
        "status": "healthy" if overall_healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
