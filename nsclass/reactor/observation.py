"""
Watching the namespaces and the classes, and converting their events to intents.

The watchers are the single sequential consumers of their watch-streams.
They do nothing slow on their own (except for the listing of the namespaces
of a changed class): all the actual work is queued to the namespaces' workers.
"""
import asyncio
import logging
from typing import Optional

import aiohttp

from nsclass.clients import errors, fetching, watching
from nsclass.reactor import handling, queueing
from nsclass.structs import bodies, configuration, labels, references

logger = logging.getLogger(__name__)


async def namespace_watcher(
        *,
        settings: configuration.OperatorSettings,
        multiplexer: queueing.Multiplexer,
        health: Optional[watching.WatchHealth] = None,
        _iterations: Optional[int] = None,  # used in tests/mocks/fixtures
) -> None:
    """
    Reconcile every namespace as it is seen: listed, added, or modified.

    The namespace's own labels decide what the reconciliation does: the namespace
    gets the objects of its class, or loses all the managed objects if unbound.
    """
    async for raw_event in watching.infinite_watch(
        settings=settings,
        resource=references.NAMESPACES,
        health=health,
        _iterations=_iterations,
    ):
        await process_namespace_event(raw_event=raw_event, multiplexer=multiplexer)


async def class_watcher(
        *,
        settings: configuration.OperatorSettings,
        multiplexer: queueing.Multiplexer,
        health: Optional[watching.WatchHealth] = None,
        _iterations: Optional[int] = None,  # used in tests/mocks/fixtures
) -> None:
    """
    Re-apply the changed classes, and collect the objects of the deleted classes.
    """
    async for raw_event in watching.infinite_watch(
        settings=settings,
        resource=references.NAMESPACECLASSES,
        health=health,
        _iterations=_iterations,
    ):
        await process_class_event(raw_event=raw_event, multiplexer=multiplexer, settings=settings)


async def process_namespace_event(
        *,
        raw_event: bodies.RawEvent,
        multiplexer: queueing.Multiplexer,
) -> None:
    namespace = handling.get_target(raw_event['object'])
    event_type = raw_event['type']

    if event_type == 'DELETED':
        logger.debug(f"Namespace {namespace!r} is deleted. Nothing to do.")
        return

    class_name = labels.get_class_name(raw_event['object'])
    logger.debug(f"Namespace {namespace!r} is {event_type or 'listed'} "
                 f"with the class {class_name!r}.")
    await multiplexer.enqueue(handling.Reconciliation(namespace=namespace, class_name=class_name))


async def process_class_event(
        *,
        raw_event: bodies.RawEvent,
        multiplexer: queueing.Multiplexer,
        settings: configuration.OperatorSettings,
) -> None:
    class_name = bodies.get_name(raw_event['object'])
    event_type = raw_event['type']

    # New classes are applied when the namespaces get labelled, and are reported by them.
    if event_type is None or event_type == 'ADDED':
        logger.info(f"Class {class_name!r} is available.")
        return

    try:
        namespaces, _ = await fetching.list_objs(
            settings=settings,
            resource=references.NAMESPACES,
            label_selector=labels.build_class_selector(class_name),
            logger=logger,
        )
    except (errors.APIError, aiohttp.ClientError, asyncio.TimeoutError) as e:
        logger.error(f"Failed to list the namespaces of the class {class_name!r}: {e}")
        return

    what = 'modified, updating' if event_type == 'MODIFIED' else 'deleted, cleaning up'
    logger.info(f"Class {class_name!r} is {what} {len(namespaces)} namespace(s).")
    for body in namespaces:
        namespace = handling.get_target(body)
        if event_type == 'MODIFIED':
            await multiplexer.enqueue(handling.Reconciliation(namespace=namespace,
                                                              class_name=class_name))
        else:
            await multiplexer.enqueue(handling.Collection(namespace=namespace, owner=class_name))
