"""
The registry of the resource kinds that the operator can create and collect.

The registry is built once at startup from the cluster's discovery API,
and is never refreshed: the kinds added to the cluster later (e.g. new CRDs)
are unknown until the operator is restarted.

Only the namespaced kinds that can be listed and deleted are retained:
the operator never touches the cluster-scoped objects, and it must be able
to find and remove everything it has ever created.
"""
import asyncio
import logging
from typing import Collection, Dict, Iterator, Mapping, Tuple

import aiohttp

from nsclass.clients import errors, scanning
from nsclass.structs import configuration, references
from nsclass.utilities import typedefs

logger = logging.getLogger(__name__)

REQUIRED_VERBS = frozenset({'list', 'delete'})


class DiscoveryError(Exception):
    """ Raised when the cluster's resource kinds cannot be discovered at all. """


class UnknownResourceTypeError(LookupError):
    """ Raised when a manifest's kind is not served by the cluster as usable. """

    def __init__(self, gvk: references.GroupVersionKind) -> None:
        super().__init__(f"unknown resource type: {gvk}")
        self.gvk = gvk


class TypeRegistry:
    """
    An immutable collection of the usable resource kinds.

    Iterating over the registry yields the resources to scan for the garbage:
    one version per kind, the preferred one where it serves the kind.
    The lookups by a manifest's kind accept any served version of the kind,
    as it is written in the manifest.
    """

    def __init__(self, resources: Collection[references.Resource]) -> None:
        super().__init__()
        usable = [resource for resource in resources if is_usable(resource)]
        self._lookups: Mapping[references.GroupVersionKind, references.Resource] = {
            resource.gvk: resource for resource in usable
        }
        self._resources: Tuple[references.Resource, ...] = tuple(sorted(
            _pick_scanned_versions(usable),
            key=lambda resource: (resource.group, resource.version, resource.plural),
        ))

    def __repr__(self) -> str:
        return f'<{self.__class__.__name__}: {list(self._resources)!r}>'

    def __len__(self) -> int:
        return len(self._resources)

    def __iter__(self) -> Iterator[references.Resource]:
        return iter(self._resources)

    def __contains__(self, gvk: object) -> bool:
        return gvk in self._lookups

    @property
    def resources(self) -> Tuple[references.Resource, ...]:
        return self._resources

    def lookup(self, gvk: references.GroupVersionKind) -> references.Resource:
        try:
            return self._lookups[gvk]
        except KeyError:
            raise UnknownResourceTypeError(gvk) from None


def is_usable(resource: references.Resource) -> bool:
    return bool(resource.namespaced) and REQUIRED_VERBS <= resource.verbs


def _pick_scanned_versions(
        resources: Collection[references.Resource],
) -> Collection[references.Resource]:
    """
    Pick one version of every kind to scan: the preferred one if it serves the kind.

    Some kinds are served only in the group's non-preferred versions
    (e.g. a beta kind next to a stable group version). They are scanned
    in one of their served versions, the latest one by name.
    """
    picked: Dict[Tuple[str, str], references.Resource] = {}
    for resource in resources:
        key = (resource.group, resource.plural)
        current = picked.get(key)
        if current is None or (resource.preferred, resource.version) > (current.preferred, current.version):
            picked[key] = resource
    return picked.values()


async def build_registry(
        *,
        settings: configuration.OperatorSettings,
        logger: typedefs.Logger = logger,
) -> TypeRegistry:
    """
    Discover the cluster's resource kinds and build the registry of them.

    The partial failures of individual API groups are tolerated (the kinds are
    then unknown). The failure of the whole discovery, or an empty result,
    means that the operator cannot function at all, so it fails to start.
    """
    try:
        resources = await scanning.scan_resources(settings=settings, logger=logger)
    except (errors.APIError, aiohttp.ClientConnectionError, asyncio.TimeoutError) as e:
        raise DiscoveryError(f"Failed to discover the cluster's resources: {e!r}") from e

    registry = TypeRegistry(resources)
    if not registry:
        raise DiscoveryError("No usable namespaced resources are discovered in the cluster.")

    counts: Dict[bool, int] = {True: 0, False: 0}
    for resource in resources:
        counts[is_usable(resource)] += 1
    for resource in registry:
        logger.debug(f"Registered a resource kind: {resource.gvk} as {resource!r}.")
    logger.info(f"Discovered {len(registry)} resource kinds "
                f"({counts[True]} usable versions, {counts[False]} unusable).")
    return registry
