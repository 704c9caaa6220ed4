"""
The errors of the Kubernetes API, as the operator sees them.

The API reports its errors with a ``Status`` object in the response body.
Its fields (the reason, the message, the details) are more informative than
the HTTP status alone, so they are kept in the raised errors.

The networking errors (connectivity, SSL, timeouts) are not converted:
they come from ``aiohttp`` and ``asyncio`` as they are.
"""
import collections.abc
import json
from typing import Collection, Dict, Optional, Type

import aiohttp
from typing_extensions import Literal, TypedDict


class RawStatusCause(TypedDict):
    field: str
    reason: str
    message: str


class RawStatusDetails(TypedDict, total=False):
    name: str
    uid: str
    retryAfterSeconds: int
    kind: str
    group: str
    causes: Collection[RawStatusCause]


# https://kubernetes.io/docs/reference/generated/kubernetes-api/v1.19/#status-v1-meta
class RawStatus(TypedDict, total=False):
    apiVersion: str
    kind: Literal["Status"]
    code: int
    status: Literal["Success", "Failure"]
    reason: str
    message: str
    details: RawStatusDetails


class APIError(Exception):
    """ An error response of the API, with the ``Status`` object if provided. """

    def __init__(
            self,
            payload: Optional[RawStatus],
            *,
            status: int,
    ) -> None:
        super().__init__(payload.get('message') if payload else None, payload)
        self._status = status
        self._payload: RawStatus = payload or {}

    def __str__(self) -> str:
        return f'({self._status}) {self.reason or "no reason"}: {self.message or "no message"}'

    @property
    def status(self) -> int:
        return self._status

    @property
    def code(self) -> Optional[int]:
        return self._payload.get('code')

    @property
    def reason(self) -> Optional[str]:
        return self._payload.get('reason')

    @property
    def message(self) -> Optional[str]:
        return self._payload.get('message')

    @property
    def details(self) -> Optional[RawStatusDetails]:
        return self._payload.get('details')


class APIClientError(APIError):
    pass


class APIServerError(APIError):
    pass


class APIUnauthorizedError(APIClientError):
    pass


class APIForbiddenError(APIClientError):
    pass


class APINotFoundError(APIClientError):
    pass


class APIConflictError(APIClientError):
    pass


class APITooManyRequestsError(APIClientError):
    pass


_SPECIFIC_ERRORS: Dict[int, Type[APIError]] = {
    401: APIUnauthorizedError,
    403: APIForbiddenError,
    404: APINotFoundError,
    409: APIConflictError,
    429: APITooManyRequestsError,
}


def _get_error_class(status: int) -> Type[APIError]:
    if status in _SPECIFIC_ERRORS:
        return _SPECIFIC_ERRORS[status]
    elif 400 <= status < 500:
        return APIClientError
    elif 500 <= status < 600:
        return APIServerError
    else:
        return APIError


async def check_response(
        response: aiohttp.ClientResponse,
) -> None:
    """
    Raise the specialised `APIError` if the response is an error.

    The original ``aiohttp`` error is chained as the cause.
    The successful responses are left unread for the caller.
    """
    if response.status < 400:
        return

    # The body must be read before raise_for_status(), which releases the response.
    payload: Optional[RawStatus]
    try:
        payload = await response.json()
    except (json.JSONDecodeError, aiohttp.ContentTypeError, aiohttp.ClientConnectionError):
        payload = None

    # Only the Status objects are trusted: arbitrary bodies can leak sensitive data into the logs.
    if not isinstance(payload, collections.abc.Mapping) or payload.get('kind') != 'Status':
        payload = None

    cls = _get_error_class(response.status)
    try:
        response.raise_for_status()
    except aiohttp.ClientResponseError as e:
        raise cls(payload, status=response.status) from e
