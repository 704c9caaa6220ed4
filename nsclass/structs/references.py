"""
The resource kinds and their URLs in the Kubernetes API.

A kind appears in two forms: as written in the manifests (``apiVersion``
and ``kind``, see `GroupVersionKind`), and as addressed in the API
(the group, the version, and the plural name, see `Resource`).
The former is mapped to the latter by the discovery registry.
"""
import dataclasses
import urllib.parse
from typing import FrozenSet, Iterator, Mapping, NamedTuple, NewType, Optional

# A name of an existing namespace, as opposed to any other string.
NamespaceName = NewType('NamespaceName', str)

# `None` stands for the cluster-wide API calls.
Namespace = Optional[NamespaceName]


class GroupVersionKind(NamedTuple):
    """ A kind as in the manifests. The core API group is ``""``. """
    group: str
    version: str
    kind: str

    @classmethod
    def parse(cls, api_version: str, kind: str) -> "GroupVersionKind":
        # "apps/v1" -> ("apps", "v1"); "v1" -> ("", "v1")
        group, _, version = api_version.rpartition('/')
        return cls(group=group, version=version, kind=kind)

    @property
    def api_version(self) -> str:
        return _join_api_version(self.group, self.version)

    def __str__(self) -> str:
        return f'{self.api_version} Kind={self.kind}'


@dataclasses.dataclass(frozen=True, eq=False, repr=False)
class Resource:
    """
    An API endpoint of a resource kind, plus what the discovery tells about it.

    Only the group, the version, and the plural name identify the endpoint;
    two resources with the same endpoint are equal regardless of the rest.
    """
    group: str
    version: str
    plural: str
    kind: Optional[str] = None
    namespaced: Optional[bool] = None
    preferred: bool = True
    verbs: FrozenSet[str] = frozenset()

    @property
    def _endpoint(self) -> tuple:
        return (self.group, self.version, self.plural)

    def __hash__(self) -> int:
        return hash(self._endpoint)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Resource):
            return NotImplemented
        return self._endpoint == other._endpoint

    def __repr__(self) -> str:
        return '.'.join(part for part in (self.plural, self.version, self.group) if part)

    def __iter__(self) -> Iterator[str]:
        return iter(self._endpoint)

    @property
    def api_version(self) -> str:
        return _join_api_version(self.group, self.version)

    @property
    def gvk(self) -> GroupVersionKind:
        return GroupVersionKind(self.group, self.version, self.kind or '')

    def get_url(
            self,
            *,
            server: Optional[str] = None,
            namespace: Namespace = None,
            name: Optional[str] = None,
            params: Optional[Mapping[str, str]] = None,
    ) -> str:
        """
        Build the URL of either the resource list, or of one named object.

        The cluster-scoped resources have no namespaced URLs. The namespaced
        resources have the cluster-wide URLs for listing only, never for
        the named objects.
        """
        if namespace is not None and not self.namespaced:
            raise ValueError("Specific namespaces are not supported for cluster-scoped resources.")
        if namespace is None and name is not None and self.namespaced:
            raise ValueError("Specific namespaces are required for specific namespaced resources.")

        root = '/api' if (self.group, self.version) == ('', 'v1') else f'/apis/{self.group}'
        path = f'{root}/{self.version}'
        if namespace is not None:
            path += f'/namespaces/{namespace}'
        path += f'/{self.plural}'
        if name is not None:
            path += f'/{name}'
        if params:
            path += '?' + urllib.parse.urlencode(params, encoding='utf-8')
        return path if server is None else server.rstrip('/') + path


def _join_api_version(group: str, version: str) -> str:
    return f'{group}/{version}' if group else version


# The endpoints the operator watches for its own purposes.
NAMESPACES = Resource('', 'v1', 'namespaces', kind='Namespace', namespaced=False)
NAMESPACECLASSES = Resource('snowflying.io', 'v1alpha1', 'namespaceclasses',
                            kind='NamespaceClass', namespaced=False)
