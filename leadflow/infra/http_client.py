# leadflow/infra/http_client.py
"""
Outbound HTTP session for the push gateway.

One pooled aiohttp session is shared by every push delivery; it is
rebuilt when closed or when a caller asks for a different timeout.
``close_all_sessions()`` runs from the API lifespan on shutdown.
"""
from __future__ import annotations

import aiohttp

from leadflow.infra.logging_config import get_logger

logger = get_logger(__name__)

PUSH_POOL_LIMIT = 20
PUSH_CONNECT_TIMEOUT = 5

_push_session: aiohttp.ClientSession | None = None
_push_timeout: float | None = None


def get_push_session(timeout: float = 10) -> aiohttp.ClientSession:
    global _push_session, _push_timeout

    if _push_session is not None and not _push_session.closed and _push_timeout == timeout:
        return _push_session

    stale = _push_session
    _push_session = aiohttp.ClientSession(
        timeout=aiohttp.ClientTimeout(total=timeout, connect=min(PUSH_CONNECT_TIMEOUT, timeout)),
        connector=aiohttp.TCPConnector(limit=PUSH_POOL_LIMIT, keepalive_timeout=30),
        headers={"User-Agent": "leadflow-push/1.0"},
    )
    _push_timeout = timeout
    if stale is not None and not stale.closed:
        # Detached; in-flight requests on the old session still finish
        logger.info(f"Push session timeout changed to {timeout}s, old session left to drain")
    logger.debug(f"Push session created (timeout={timeout}s, limit={PUSH_POOL_LIMIT})")
    return _push_session


async def close_all_sessions() -> None:
    global _push_session, _push_timeout

    session, _push_session, _push_timeout = _push_session, None, None
    if session is not None and not session.closed:
        await session.close()
        logger.debug("Push session closed")
