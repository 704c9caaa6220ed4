from typing import Collection, Optional, Tuple

from nsclass.clients import api
from nsclass.structs import bodies, configuration, references
from nsclass.utilities import typedefs


async def read_obj(
        *,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        namespace: references.Namespace = None,
        name: str,
        logger: typedefs.Logger,
) -> bodies.RawBody:
    """ Read one object by its name. A missing object raises `APINotFoundError`. """
    url = resource.get_url(namespace=namespace, name=name)
    body: bodies.RawBody = await api.get(url, settings=settings, logger=logger)
    return body


async def list_objs(
        *,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        namespace: references.Namespace = None,
        label_selector: Optional[str] = None,
        logger: typedefs.Logger,
) -> Tuple[Collection[bodies.RawBody], str]:
    """
    List the objects of a resource, optionally filtered by labels.

    The API omits ``kind`` & ``apiVersion`` in the list's items; they are
    restored from the list's own ones (e.g. "NamespaceList" -> "Namespace").
    The list's resource version is returned for the watch to continue from.
    """
    params = {'labelSelector': label_selector} if label_selector else None
    url = resource.get_url(namespace=namespace, params=params)
    rsp = await api.get(url, settings=settings, logger=logger)

    list_kind: Optional[str] = rsp.get('kind')
    item_kind = list_kind[:-len('List')] if list_kind and list_kind.endswith('List') else list_kind
    api_version: Optional[str] = rsp.get('apiVersion')

    items = list(rsp.get('items') or [])
    for item in items:
        if item_kind is not None:
            item.setdefault('kind', item_kind)
        if api_version is not None:
            item.setdefault('apiVersion', api_version)

    resource_version = (rsp.get('metadata') or {}).get('resourceVersion')
    return items, resource_version
