"""
The liveness endpoint for the Kubernetes probes.

The operator is alive while none of its watch-streams is alarmed,
i.e. while it can talk to the cluster API. Otherwise, the endpoint responds
with HTTP 503, and Kubernetes restarts the pod after a few failed probes.
"""
import asyncio
import logging
import urllib.parse
from typing import Collection, Optional

import aiohttp.web

from nsclass.clients import watching

logger = logging.getLogger(__name__)

LOCALHOST: str = 'localhost'
HTTP_PORT: int = 80


async def health_reporter(
        endpoint: str,
        *,
        healths: Collection[watching.WatchHealth],
        ready_flag: Optional[asyncio.Event] = None,  # used for testing
) -> None:
    """
    Serve the health of the watch-streams at the endpoint until cancelled.

    The response body has the details of every stream by its name.
    """
    parts = urllib.parse.urlsplit(endpoint)
    if parts.scheme != 'http':
        raise Exception(f"Unsupported scheme: {endpoint}")
    host = parts.hostname or LOCALHOST
    port = parts.port or HTTP_PORT
    path = parts.path or '/'

    async def get_health(request: aiohttp.web.Request) -> aiohttp.web.Response:
        details = {health.name: health.as_dict() for health in healths}
        alive = not any(health.alarmed for health in healths)
        return aiohttp.web.json_response(details, status=200 if alive else 503)

    app = aiohttp.web.Application()
    app.router.add_get(path, get_health)
    runner = aiohttp.web.AppRunner(app, handle_signals=False, shutdown_timeout=1.0)
    await runner.setup()
    try:
        await aiohttp.web.TCPSite(runner, host, port).start()
        logger.debug(f"Serving the liveness probe at http://{host}:{port}{path}")
        if ready_flag is not None:
            ready_flag.set()
        await asyncio.Event().wait()  # forever, the site serves on its own.
    finally:
        await asyncio.shield(runner.cleanup())
