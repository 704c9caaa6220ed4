"""
Applying a class to a namespace: purge the old objects, create the new ones.

The application is a full re-creation rather than a diff-and-patch:
all managed objects are deleted first, then every template is created anew.
This is simple and always converges, at the cost of a short window
when the namespace has none of the objects.

Every template is created independently: a broken template or a rejected
creation is logged and counted, and the rest of the templates are still created.
There is no rollback of the created objects on partial failures.
"""
import asyncio
import dataclasses

import aiohttp

from nsclass.clients import creating, errors
from nsclass.reactor import collecting, discovery
from nsclass.structs import bodies, configuration, manifests, references
from nsclass.utilities import typedefs


@dataclasses.dataclass(frozen=True)
class ApplyResult:
    created: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.created + self.failed


async def apply_class(
        *,
        namespace: references.NamespaceName,
        class_name: str,
        class_body: bodies.RawBody,
        registry: discovery.TypeRegistry,
        settings: configuration.OperatorSettings,
        logger: typedefs.Logger,
) -> ApplyResult:
    logger.info(f"Applying the class {class_name!r}.")

    # Purge everything managed, not only of this class: the namespace could switch its class.
    await collecting.cleanup(
        namespace=namespace,
        owner=None,
        registry=registry,
        settings=settings,
        logger=logger,
    )

    try:
        templates = manifests.get_templates(class_body)
    except manifests.MalformedClassError as e:
        logger.error(f"Failed to extract the resources of the class {class_name!r}: {e}")
        return ApplyResult()

    logger.debug(f"Found {len(templates)} resource(s) to create.")
    created = failed = 0
    for idx, template in enumerate(templates, start=1):
        try:
            manifest = manifests.Manifest.parse(template)
        except manifests.InvalidManifestError as e:
            logger.error(f"Skipping the resource #{idx}/{len(templates)}: {e}")
            failed += 1
            continue

        try:
            resource = registry.lookup(manifest.gvk)
        except discovery.UnknownResourceTypeError as e:
            logger.error(f"Failed to create {manifest.title}: {e}")
            failed += 1
            continue

        body = manifest.materialize(namespace=namespace, owner=class_name)
        logger.debug(f"Creating the resource #{idx}/{len(templates)}: {manifest.title}")
        try:
            await creating.create_obj(
                settings=settings,
                resource=resource,
                namespace=namespace,
                body=body,
                logger=logger,
            )
        except (errors.APIError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Failed to create {manifest.title}: {e}")
            failed += 1
        else:
            logger.info(f"Created {manifest.title}.")
            created += 1

    result = ApplyResult(created=created, failed=failed)
    logger.info(f"Finished applying the class {class_name!r}: "
                f"{result.created}/{result.total} resources created.")
    return result
