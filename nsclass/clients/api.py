"""
Raw HTTP calls to the Kubernetes API, with JSON in and out.

The calls are authenticated (see :mod:`nsclass.clients.auth`) and retried
on the transient errors: the connectivity errors, the timeouts, and the 5xx
responses. The client errors (4xx) are never retried, they are raised
as the specialised `APIError`'s for the callers to decide what to do.
"""
import asyncio
import json
from typing import Any, AsyncIterator, Mapping, Optional

import aiohttp

from nsclass.clients import auth, errors
from nsclass.structs import configuration
from nsclass.utilities import typedefs


@auth.authenticated
async def request(
        method: str,
        url: str,  # relative to the server/api root.
        *,
        settings: configuration.OperatorSettings,
        payload: Optional[object] = None,
        headers: Optional[Mapping[str, str]] = None,
        timeout: Optional[aiohttp.ClientTimeout] = None,
        context: Optional[auth.APIContext] = None,  # injected by the decorator
        logger: typedefs.Logger,
) -> aiohttp.ClientResponse:
    """
    Send the request and return the successful response unread.

    Retried after every interval of ``settings.networking.error_backoffs``,
    then the last error is raised.
    """
    if context is None:  # for type-checking!
        raise RuntimeError("API instance is not injected by the decorator.")

    if '://' not in url:
        url = context.server.rstrip('/') + '/' + url.lstrip('/')

    if timeout is None:
        timeout = aiohttp.ClientTimeout(
            total=settings.networking.request_timeout,
            sock_connect=settings.networking.connect_timeout,
        )

    what = f"{method.upper()} {url}"
    delays = list(settings.networking.error_backoffs)
    attempts = len(delays) + 1
    for attempt in range(1, attempts + 1):
        idx = f"#{attempt}/{attempts}"
        if attempt > 1:
            logger.debug(f"Request attempt {idx}: {what}")
        try:
            response = await context.session.request(
                method=method,
                url=url,
                json=payload,
                headers=headers,
                timeout=timeout,
            )
            await errors.check_response(response)
        except (aiohttp.ClientConnectionError, errors.APIServerError, asyncio.TimeoutError) as e:
            if attempt == attempts:
                logger.error(f"Request attempt {idx} failed; escalating: {what} -> {e!r}")
                raise
            logger.error(f"Request attempt {idx} failed; will retry: {what} -> {e!r}")
            await asyncio.sleep(delays[attempt - 1])
        else:
            if attempt > 1:
                logger.debug(f"Request attempt {idx} succeeded: {what}")
            return response

    raise RuntimeError("Unreachable: the retries end with either a response or an error.")


async def _request_json(
        method: str,
        url: str,
        *,
        settings: configuration.OperatorSettings,
        payload: Optional[object] = None,
        headers: Optional[Mapping[str, str]] = None,
        timeout: Optional[aiohttp.ClientTimeout] = None,
        logger: typedefs.Logger,
) -> Any:
    response = await request(
        method=method,
        url=url,
        payload=payload,
        headers=headers,
        timeout=timeout,
        settings=settings,
        logger=logger,
    )
    async with response:
        return await response.json()


async def get(
        url: str,  # relative to the server/api root.
        *,
        settings: configuration.OperatorSettings,
        headers: Optional[Mapping[str, str]] = None,
        timeout: Optional[aiohttp.ClientTimeout] = None,
        logger: typedefs.Logger,
) -> Any:
    return await _request_json('get', url, headers=headers, timeout=timeout,
                               settings=settings, logger=logger)


async def post(
        url: str,  # relative to the server/api root.
        *,
        settings: configuration.OperatorSettings,
        payload: Optional[object] = None,
        headers: Optional[Mapping[str, str]] = None,
        timeout: Optional[aiohttp.ClientTimeout] = None,
        logger: typedefs.Logger,
) -> Any:
    return await _request_json('post', url, payload=payload, headers=headers, timeout=timeout,
                               settings=settings, logger=logger)


async def delete(
        url: str,  # relative to the server/api root.
        *,
        settings: configuration.OperatorSettings,
        payload: Optional[object] = None,
        headers: Optional[Mapping[str, str]] = None,
        timeout: Optional[aiohttp.ClientTimeout] = None,
        logger: typedefs.Logger,
) -> Any:
    return await _request_json('delete', url, payload=payload, headers=headers, timeout=timeout,
                               settings=settings, logger=logger)


async def stream(
        url: str,  # relative to the server/api root.
        *,
        settings: configuration.OperatorSettings,
        headers: Optional[Mapping[str, str]] = None,
        timeout: Optional[aiohttp.ClientTimeout] = None,
        stopper: Optional[typedefs.Future] = None,
        logger: typedefs.Logger,
) -> AsyncIterator[Any]:
    """
    Yield the decoded JSON lines of a long-living response (e.g. of a watch).

    When the stopper is resolved, the response is closed from outside,
    and the iteration ends normally instead of failing on the closed connection.
    """
    response = await request(
        method='get',
        url=url,
        headers=headers,
        timeout=timeout,
        settings=settings,
        logger=logger,
    )

    def close_response(_: Any) -> None:
        response.close()

    if stopper is not None:
        stopper.add_done_callback(close_response)
    try:
        async with response:
            async for line in iter_jsonlines(response.content):
                yield json.loads(line.decode('utf-8'))
    except aiohttp.ClientConnectionError:
        if stopper is None or not stopper.done():
            raise
    finally:
        if stopper is not None:
            stopper.remove_done_callback(close_response)


async def iter_jsonlines(
        content: aiohttp.StreamReader,
        chunk_size: int = 1024 * 1024,
) -> AsyncIterator[bytes]:
    """
    Split the response's content into lines, skipping the empty ones.

    ``async for line in response.content`` would do the same, but aiohttp
    fails on lines longer than its buffer limit (128 KB). The classes
    with many or big templates produce much longer lines than that.
    """
    tail = b''
    async for chunk in content.iter_chunked(chunk_size):
        lines = (tail + chunk).split(b'\n')
        tail = lines.pop()
        for line in lines:
            if line:
                yield line
    if tail:
        yield tail
