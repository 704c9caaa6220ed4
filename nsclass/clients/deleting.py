from typing import Optional

from nsclass.clients import api, errors
from nsclass.structs import bodies, configuration, references
from nsclass.utilities import typedefs


async def delete_obj(
        *,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        namespace: references.Namespace = None,
        name: str,
        logger: typedefs.Logger,
) -> Optional[bodies.RawBody]:
    """
    Delete an object, and return its last known state (or a status).

    The object that is already gone is considered as deleted: ``None`` is returned.
    """
    try:
        body: bodies.RawBody = await api.delete(
            url=resource.get_url(namespace=namespace, name=name),
            logger=logger,
            settings=settings,
        )
    except errors.APINotFoundError:
        return None
    return body
