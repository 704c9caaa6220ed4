"""
The garbage collection of the managed objects in a namespace.

The objects are found by the reserved labels only: the ones marked as managed
and, optionally, owned by a specific class. Every registered resource kind is
scanned, since the templates of the classes could be of any kind.

The collection is best-effort: a failure to list one kind or to delete one
object is logged and counted, but the scan continues with the rest.
The remaining objects are collected on the next reconciliation of the namespace.
"""
import asyncio
import dataclasses
from typing import Optional

import aiohttp

from nsclass.clients import deleting, errors, fetching
from nsclass.reactor import discovery
from nsclass.structs import bodies, configuration, labels, references
from nsclass.utilities import typedefs


@dataclasses.dataclass(frozen=True)
class CleanupResult:
    deleted: int = 0
    failed: int = 0


async def cleanup(
        *,
        namespace: references.NamespaceName,
        owner: Optional[str] = None,
        registry: discovery.TypeRegistry,
        settings: configuration.OperatorSettings,
        logger: typedefs.Logger,
) -> CleanupResult:
    """
    Delete the managed objects in the namespace: all of them, or only of one owner.
    """
    selector = labels.build_selector(owner)
    whose = f"of {owner!r}" if owner else "of any class"
    logger.debug(f"Scanning {len(registry)} resource kinds for the managed objects {whose}.")

    deleted = failed = 0
    for resource in registry:
        try:
            objs, _ = await fetching.list_objs(
                settings=settings,
                resource=resource,
                namespace=namespace,
                label_selector=selector,
                logger=logger,
            )
        except (errors.APIError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Failed to list {resource!r} for the cleanup: {e}")
            failed += 1
            continue

        for obj in objs:
            name = bodies.get_name(obj)
            logger.info(f"Deleting {resource.kind}/{name} ({resource!r}).")
            try:
                await deleting.delete_obj(
                    settings=settings,
                    resource=resource,
                    namespace=namespace,
                    name=name,
                    logger=logger,
                )
            except (errors.APIError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.error(f"Failed to delete {resource.kind}/{name}: {e}")
                failed += 1
            else:
                deleted += 1

    if deleted:
        logger.info(f"Deleted {deleted} resource(s).")
    else:
        logger.info("No resources to clean up.")
    if failed:
        logger.warning(f"Failed to clean up {failed} resource(s); they are left as is.")
    return CleanupResult(deleted=deleted, failed=failed)
