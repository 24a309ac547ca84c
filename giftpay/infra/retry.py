from __future__ import annotations
import asyncio
from typing import Awaitable, Callable

import httpx
import structlog

log = structlog.get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]


async def fetch_with_retry(
    client: httpx.AsyncClient,
    request: httpx.Request,
    max_attempts: int = 3,
    *,
    base_delay: float = 1.0,
    sleep: Sleep = asyncio.sleep,
) -> httpx.Response:
    """Send ``request``, retrying only server errors and network failures.

    Success and 4xx responses are returned at once. A 5xx on the last attempt
    is returned as-is for the caller to inspect; a network error on the last
    attempt propagates. Between attempts we wait ``2**attempt * base_delay``
    seconds (1x, 2x, 4x, ...).
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    for attempt in range(max_attempts):
        last = attempt == max_attempts - 1
        try:
            response = await client.send(request)
        except httpx.TransportError as e:
            if last:
                raise
            log.warning("gateway.network_error", url=str(request.url),
                        attempt=attempt + 1, error=str(e))
        else:
            if response.status_code < 500 or last:
                return response
            log.warning("gateway.server_error", url=str(request.url),
                        attempt=attempt + 1, status=response.status_code)
            await response.aclose()
        await sleep((2 ** attempt) * base_delay)

    # unreachable: the last attempt either returns or raises
    raise RuntimeError("max retries reached")
