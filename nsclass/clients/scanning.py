"""
The discovery of all resource kinds served by the cluster.

The legacy core API (``/api``) and the named groups (``/apis``) are listed
first; then every group-version found there is read for its resources.
"""
import asyncio
import itertools
from typing import Collection, List, NamedTuple, Set

import aiohttp

from nsclass.clients import api, errors
from nsclass.structs import configuration, references
from nsclass.utilities import typedefs


class _GroupVersion(NamedTuple):
    url: str
    group: str
    version: str
    preferred: bool


async def scan_resources(
        *,
        settings: configuration.OperatorSettings,
        logger: typedefs.Logger,
) -> Collection[references.Resource]:
    """
    Discover all the resource kinds served by the cluster, in all versions.

    Both roots (``/api`` and ``/apis``) must be readable, or the scan fails.
    An individual group-version can fail (e.g. an aggregated API server is down):
    it is skipped with a warning, so that the rest of the cluster is usable.
    """
    core, named = await asyncio.gather(
        api.get('/api', settings=settings, logger=logger),
        api.get('/apis', settings=settings, logger=logger),
    )
    groupversions: List[_GroupVersion] = [
        _GroupVersion(f'/api/{version}', '', version, True)
        for version in core.get('versions') or []
    ]
    for group in named.get('groups') or []:
        preferred = (group.get('preferredVersion') or {}).get('version')
        for item in group.get('versions') or []:
            url = f'/apis/{group["name"]}/{item["version"]}'
            groupversions.append(_GroupVersion(url, group['name'], item['version'],
                                               item['version'] == preferred))

    results = await asyncio.gather(*[
        _read_groupversion(gv, settings=settings, logger=logger) for gv in groupversions
    ])
    return set(itertools.chain.from_iterable(results))


async def _read_groupversion(
        gv: _GroupVersion,
        *,
        settings: configuration.OperatorSettings,
        logger: typedefs.Logger,
) -> Set[references.Resource]:
    try:
        rsp = await api.get(gv.url, settings=settings, logger=logger)
    except errors.APINotFoundError:
        # The group-version is gone while scanning: its last resource was deleted.
        return set()
    except (errors.APIError, aiohttp.ClientConnectionError, asyncio.TimeoutError) as e:
        logger.warning(f"Failed to discover the resources of {gv.url}; skipping: {e!r}")
        return set()

    # Subresources (e.g. "pods/status") are not the kinds of objects.
    return {
        references.Resource(
            group=gv.group,
            version=gv.version,
            plural=info['name'],
            kind=info['kind'],
            namespaced=info['namespaced'],
            preferred=gv.preferred,
            verbs=frozenset(info.get('verbs') or ()),
        )
        for info in rsp.get('resources') or []
        if '/' not in info['name']
    }
