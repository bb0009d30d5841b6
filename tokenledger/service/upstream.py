from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional, TypeVar

from tokenledger.logging import get_logger
from tokenledger.service.errors import UpstreamUnavailableError
from tokenledger.storage.errors import StoreUnavailable

logger = get_logger(__name__)

T = TypeVar("T")


async def call_upstream(
    label: str,
    func: Callable[..., T],
    *args: Any,
    timeout: Optional[float],
) -> T:
    """Run a blocking store call in a worker thread with an upper time bound.

    Timeouts and backend connectivity failures both surface as
    ``UpstreamUnavailableError``; nothing is retried here. Other exceptions
    (constraint violations, bugs) propagate unchanged.
    """
    try:
        if timeout is None:
            return await asyncio.to_thread(func, *args)
        return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout)
    except asyncio.TimeoutError as exc:
        logger.error("upstream_timeout", component=label, timeout=timeout)
        raise UpstreamUnavailableError(detail={"component": label}) from exc
    except StoreUnavailable as exc:
        logger.error(
            "upstream_unavailable",
            component=label,
            backend=exc.backend,
            error=exc.message,
        )
        raise UpstreamUnavailableError(detail={"component": label}) from exc
