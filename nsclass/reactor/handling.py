"""
The intents for the namespaces and their processing.

The watchers do not act on the namespaces directly: they only convert the
watch-events into the intents of what should happen to a specific namespace,
and queue them (see :mod:`nsclass.reactor.queueing`). The intents of one
namespace are then processed here strictly sequentially.

There are two kinds of intents:

* A reconciliation: bring the namespace to the state of its class (if any).
  It is always the full re-application, so it fixes any drift regardless
  of what has happened before it.
* A collection: remove the objects of one specific class from the namespace
  (e.g. when the class is deleted).

A namespace labelled with a class that does not exist (HTTP 404) is treated
as a namespace with an empty class: all its managed objects are removed.
It is not left as it is with only an error logged, so that a namespace
never keeps the objects of a class that is gone. Other errors of reading
the class leave the namespace untouched until the next event.
"""
import asyncio
import dataclasses
from typing import Iterable, List, Optional, Union

import aiohttp

from nsclass.clients import errors, fetching
from nsclass.engines import loggers
from nsclass.reactor import applying, collecting, discovery
from nsclass.structs import bodies, configuration, references


@dataclasses.dataclass(frozen=True)
class Reconciliation:
    namespace: references.NamespaceName
    class_name: Optional[str]


@dataclasses.dataclass(frozen=True)
class Collection:
    namespace: references.NamespaceName
    owner: str


Intent = Union[Reconciliation, Collection]


def coalesce(intents: Iterable[Intent]) -> List[Intent]:
    """
    Reduce a batch of the pending intents of one namespace to the essential ones.

    A reconciliation purges all the managed objects before creating the new ones,
    so whatever precedes the latest reconciliation has no effect and is dropped.
    The intents after it are kept in their order, with no repetitions.
    """
    pending = list(intents)
    starts = [idx for idx, intent in enumerate(pending) if isinstance(intent, Reconciliation)]
    result: List[Intent] = []
    for intent in pending[starts[-1] if starts else 0:]:
        if intent not in result:
            result.append(intent)
    return result


async def process_intent(
        intent: Intent,
        *,
        registry: discovery.TypeRegistry,
        settings: configuration.OperatorSettings,
) -> None:
    logger = loggers.ObjectLogger(namespace=intent.namespace)

    if isinstance(intent, Collection):
        logger.info(f"Cleaning up the resources of the class {intent.owner!r}.")
        await collecting.cleanup(
            namespace=intent.namespace,
            owner=intent.owner,
            registry=registry,
            settings=settings,
            logger=logger,
        )

    elif intent.class_name is None:
        logger.info("No class is assigned. Cleaning up all managed resources.")
        await collecting.cleanup(
            namespace=intent.namespace,
            owner=None,
            registry=registry,
            settings=settings,
            logger=logger,
        )

    else:
        try:
            class_body = await fetching.read_obj(
                settings=settings,
                resource=references.NAMESPACECLASSES,
                name=intent.class_name,
                logger=logger,
            )
        except errors.APINotFoundError:
            logger.warning(f"The class {intent.class_name!r} does not exist. "
                           f"Cleaning up all managed resources.")
            class_body = None
        except (errors.APIError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Failed to get the class {intent.class_name!r}: {e}")
            return

        if class_body is None:
            await collecting.cleanup(
                namespace=intent.namespace,
                owner=None,
                registry=registry,
                settings=settings,
                logger=logger,
            )
        else:
            await applying.apply_class(
                namespace=intent.namespace,
                class_name=intent.class_name,
                class_body=class_body,
                registry=registry,
                settings=settings,
                logger=logger,
            )


def get_target(body: bodies.RawBody) -> references.NamespaceName:
    return references.NamespaceName(bodies.get_name(body))
