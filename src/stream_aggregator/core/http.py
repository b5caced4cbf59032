"""Shared ``httpx`` client handling.

Components accept an optional injected :class:`httpx.AsyncClient` (tests
pass one wired to ``respx``).  When none is injected a short-lived client is
opened for the duration of the request; an injected client is never closed
here because its owner controls its lifetime.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx

DEFAULT_TIMEOUT_S: float = 15.0


@asynccontextmanager
async def client_scope(
    client: httpx.AsyncClient | None,
    timeout: float = DEFAULT_TIMEOUT_S,
) -> AsyncIterator[httpx.AsyncClient]:
    """Yield *client*, or a temporary client closed on exit."""
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(timeout=timeout) as temporary:
        yield temporary
