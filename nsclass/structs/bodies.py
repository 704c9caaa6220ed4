"""
The JSON payloads of the Kubernetes API, as far as the operator reads them.

Only the fields that the operator interprets are declared. The templates
of the classes are arbitrary objects and are passed through as they are.
"""
from typing import Any, List, Mapping, Union

from typing_extensions import Literal, TypedDict

Labels = Mapping[str, str]
Annotations = Mapping[str, str]

# The listed objects come as pseudo-events of type ``None``.
RawEventType = Literal[None, 'ADDED', 'MODIFIED', 'DELETED']
RawInputType = Literal[None, 'ADDED', 'MODIFIED', 'DELETED', 'ERROR']


class RawMeta(TypedDict, total=False):
    name: str
    namespace: str
    uid: str
    labels: Labels
    annotations: Annotations
    ownerReferences: List[Mapping[str, Any]]
    resourceVersion: str
    creationTimestamp: str
    deletionTimestamp: str


class RawBody(TypedDict, total=False):
    apiVersion: str
    kind: str
    metadata: RawMeta
    spec: Mapping[str, Any]
    status: Mapping[str, Any]


class RawError(TypedDict, total=False):
    """ A ``Status`` object in the watch-stream, in the events of type "ERROR". """
    apiVersion: str
    kind: str
    code: int
    status: str
    reason: str
    message: str


class RawInput(TypedDict, total=True):
    type: RawInputType
    object: Union[RawBody, RawError]


class RawEvent(TypedDict, total=True):
    type: RawEventType
    object: RawBody


def get_name(body: RawBody) -> str:
    return body.get('metadata', {}).get('name', '')
