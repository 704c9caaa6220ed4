"""
Watching and streaming watch-events.

A watch-stream of a resource is an infinite sequence of the list-then-watch
API calls. Every cycle starts with a regular listing of the objects, which are
yielded as events with ``type=None`` (equivalent to the synthetic "ADDED" events
of a fresh watch). Then, the watch continues from the listing's resource
version until the server closes the connection or the version expires
("410 Gone"), after which the cycle is repeated.

The streams never end on their own and never escalate the transient errors:
the failed cycles are retried with an exponential backoff. The consecutive
failures are counted, and after a threshold, the stream is marked as alarmed
(the connectivity is considered lost) until the first successful cycle.
"""
import asyncio
import dataclasses
import enum
import itertools
import logging
import random
from typing import AsyncIterator, Dict, Optional, Union, cast

import aiohttp

from nsclass.clients import api, errors, fetching
from nsclass.structs import bodies, configuration, references
from nsclass.utilities import typedefs

logger = logging.getLogger(__name__)

KNOWN_EVENT_TYPES = frozenset({'ADDED', 'MODIFIED', 'DELETED'})


class WatchingError(Exception):
    """
    Raised when an unexpected error happens in the watch-stream API.
    """


class Bookmark(enum.Enum):
    """ Special marks sent in the stream among raw events. """
    LISTED = enum.auto()  # the listing is over, now streaming.


class Backoff:
    """
    Exponentially growing delays with a ceiling and a random jitter.

    The first delay is the initial one, every next one is doubled,
    until the maximum is reached. The jitter is a fraction of the delay
    randomly added or subtracted, so that the streams reconnect at different times.
    The jittered delay never exceeds the maximum.
    """

    def __init__(
            self,
            *,
            initial: float,
            maximum: float,
            jitter: float = 0.0,
    ) -> None:
        super().__init__()
        self.initial = initial
        self.maximum = maximum
        self.jitter = jitter
        self.attempts = 0

    def __repr__(self) -> str:
        return f'<{self.__class__.__name__}: attempts={self.attempts}>'

    def next(self) -> float:
        base = min(self.maximum, self.initial * 2 ** self.attempts)
        if base < self.maximum:
            self.attempts += 1
        spread = base * self.jitter
        return max(0.0, min(self.maximum, base + random.uniform(-spread, spread)))

    def reset(self) -> None:
        self.attempts = 0


@dataclasses.dataclass
class WatchHealth:
    """
    A health state of one watch-stream, shared with the liveness endpoint.
    """
    name: str
    failures: int = 0
    alarmed: bool = False
    last_error: Optional[str] = None

    def record_failure(self, exc: BaseException, *, threshold: int) -> None:
        self.failures += 1
        self.last_error = repr(exc)
        if not self.alarmed and self.failures >= threshold:
            self.alarmed = True
            logger.error(f"The watch-stream for {self.name} has failed {self.failures} times "
                         f"in a row. The connectivity to the API is considered lost.")

    def record_success(self) -> None:
        if self.alarmed:
            logger.info(f"The watch-stream for {self.name} has recovered "
                        f"after {self.failures} consecutive failures.")
        self.failures = 0
        self.alarmed = False
        self.last_error = None

    def as_dict(self) -> Dict[str, object]:
        return {'failures': self.failures, 'alarmed': self.alarmed, 'error': self.last_error}


def _describe(resource: references.Resource, namespace: references.Namespace) -> str:
    return f'{resource} in {namespace!r}' if namespace is not None else f'{resource} cluster-wide'


async def infinite_watch(
        *,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        namespace: references.Namespace = None,
        health: Optional[WatchHealth] = None,
        stopper: Optional[typedefs.Future] = None,
        _iterations: Optional[int] = None,  # for tests only: the number of cycles
) -> AsyncIterator[bodies.RawEvent]:
    """
    Stream the events of a resource forever, reconnecting after the failures.

    Only the cancellation, the stopper, and the non-retriable errors
    (e.g. `LoginError` when all the credentials are rejected) end the stream.
    """
    what = _describe(resource, namespace)
    health = health if health is not None else WatchHealth(name=repr(resource))
    threshold = settings.watching.alarm_threshold
    backoff = Backoff(
        initial=settings.watching.error_backoff_initial,
        maximum=settings.watching.error_backoff_maximum,
        jitter=settings.watching.error_backoff_jitter,
    )

    logger.debug(f"Starting the watch-stream for {what}.")
    try:
        cycles = itertools.count() if _iterations is None else range(_iterations)
        for _ in cycles:
            delay: float = settings.watching.reconnect_backoff
            try:
                async for item in continuous_watch(settings=settings, resource=resource,
                                                   namespace=namespace, stopper=stopper):
                    if item is Bookmark.LISTED:
                        health.record_success()
                        backoff.reset()
                    else:
                        yield cast(bodies.RawEvent, item)
            except errors.APITooManyRequestsError as e:
                retry_after = (e.details or {}).get('retryAfterSeconds')
                delay = retry_after or backoff.next()
                health.record_failure(e, threshold=threshold)
                logger.warning(f"Receiving `too many requests` error from server, will retry after "
                               f"{delay} seconds. Error details: {e}")
            except (errors.APIError, WatchingError, asyncio.TimeoutError,
                    aiohttp.ClientConnectionError, aiohttp.ClientPayloadError) as e:
                delay = backoff.next()
                health.record_failure(e, threshold=threshold)
                logger.warning(f"The watch-stream for {what} has failed, "
                               f"will retry after {delay:.1f} seconds: {e!r}")

            if stopper is not None and stopper.done():
                break
            await asyncio.sleep(delay)
    finally:
        logger.debug(f"Stopping the watch-stream for {what}.")


async def continuous_watch(
        *,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        namespace: references.Namespace = None,
        stopper: Optional[typedefs.Future] = None,
) -> AsyncIterator[Union[Bookmark, bodies.RawEvent]]:
    """
    One cycle of the stream: list the objects, then watch since the listing.

    The listed objects are yielded as events of type ``None``. The watch is
    reconnected from the last seen resource version every time the server
    closes it; the cycle ends when that version is expired ("410 Gone").
    """
    objs, resource_version = await fetching.list_objs(
        logger=logger,
        settings=settings,
        resource=resource,
        namespace=namespace,
    )

    # Even with nothing listed, the API is now known to be reachable.
    yield Bookmark.LISTED
    for obj in objs:
        yield {'type': None, 'object': obj}

    while stopper is None or not stopper.done():
        async for raw_input in watch_objs(settings=settings, resource=resource,
                                          namespace=namespace, since=resource_version,
                                          stopper=stopper):
            event_type = raw_input['type']
            if event_type == 'ERROR':
                status = cast(bodies.RawError, raw_input['object'])
                if status.get('code') == 410:
                    logger.debug(f"Restarting the watch-stream for {_describe(resource, namespace)}.")
                    return
                raise WatchingError(f"Error in the watch-stream: {status}")

            if event_type not in KNOWN_EVENT_TYPES:
                logger.warning(f"Ignoring an unsupported event type: {raw_input!r}")
                continue

            metadata = cast(bodies.RawBody, raw_input['object']).get('metadata', {})
            resource_version = metadata.get('resourceVersion', resource_version)
            yield cast(bodies.RawEvent, raw_input)


async def watch_objs(
        *,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        namespace: references.Namespace = None,
        since: Optional[str] = None,
        stopper: Optional[typedefs.Future] = None,
) -> AsyncIterator[bodies.RawInput]:
    """
    Stream the raw events of one watch request, as long as it lives.
    """
    params = {'watch': 'true'}
    if since is not None:
        params['resourceVersion'] = since
    if settings.watching.server_timeout is not None:
        params['timeoutSeconds'] = str(settings.watching.server_timeout)

    connect_timeout = settings.watching.connect_timeout
    if connect_timeout is None:
        connect_timeout = settings.networking.connect_timeout
    if connect_timeout is None:
        connect_timeout = settings.networking.request_timeout
    timeout = aiohttp.ClientTimeout(total=settings.watching.client_timeout,
                                    sock_connect=connect_timeout)

    url = resource.get_url(namespace=namespace, params=params)
    async for raw_input in api.stream(url=url, settings=settings, timeout=timeout,
                                      stopper=stopper, logger=logger):
        yield raw_input
