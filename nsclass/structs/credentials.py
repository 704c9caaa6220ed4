"""
The credentials of the operator, as resolved at startup.

Only what a plain HTTP client can use is supported: the server URL,
the CA to verify it, a client certificate with its key, a bearer token
(or another authorization scheme), a basic-auth pair, and the "insecure" flag.

The credentials are resolved once (see :mod:`nsclass.utilities.piggybacking`)
and are never refreshed. The API calls drop the credentials rejected by
the API (HTTP 401) and continue with the remaining ones, if any. When none
are left, `LoginError` is raised, and the operator stops.
"""
import asyncio
import collections
import dataclasses
import inspect
from typing import AsyncIterable, AsyncIterator, Callable, Dict, List, \
                   Mapping, NewType, Optional, Tuple, TypeVar, cast


class LoginError(Exception):
    """ Raised when the operator cannot login to the API. """


@dataclasses.dataclass(frozen=True)
class ConnectionInfo:
    """ One API endpoint and the means to authenticate in it. """
    server: str  # e.g. "https://localhost:443"
    ca_path: Optional[str] = None
    ca_data: Optional[bytes] = None
    insecure: Optional[bool] = None
    username: Optional[str] = None
    password: Optional[str] = None
    scheme: Optional[str] = None  # RFC-7235/5.1: e.g. Bearer, Basic, Digest, etc.
    token: Optional[str] = None
    certificate_path: Optional[str] = None
    certificate_data: Optional[bytes] = None
    private_key_path: Optional[str] = None
    private_key_data: Optional[bytes] = None
    default_namespace: Optional[str] = None
    priority: int = 0


VaultKey = NewType('VaultKey', str)

_T = TypeVar('_T', bound=object)


@dataclasses.dataclass
class _VaultEntry:
    info: ConnectionInfo
    cached: Dict[str, object] = dataclasses.field(default_factory=dict)


class Vault(AsyncIterable[Tuple[VaultKey, ConnectionInfo]]):
    """
    The operator-wide store of the credentials which are not rejected yet.

    Iterating over the vault yields the best credentials first (by priority,
    then by the order of addition). The iteration continues to the next ones
    only if the consumer invalidates the yielded ones while processing them,
    i.e. it is a retry-loop over the credentials until one of them works.
    """

    def __init__(
            self,
            __src: Optional[Mapping[str, object]] = None,
    ) -> None:
        super().__init__()
        self._entries: Dict[VaultKey, _VaultEntry] = {}
        self._rejected: Dict[VaultKey, List[ConnectionInfo]] = collections.defaultdict(list)
        self._lock = asyncio.Lock()
        if __src is not None:
            self._merge(__src)

    def __repr__(self) -> str:
        return f'<{self.__class__.__name__}: {sorted(self._entries)!r}>'

    def __bool__(self) -> bool:
        return bool(self._entries)

    async def __aiter__(self) -> AsyncIterator[Tuple[VaultKey, ConnectionInfo]]:
        async for key, entry in self._attempts():
            yield key, entry.info

    async def extended(
            self,
            factory: Callable[[ConnectionInfo], _T],
            purpose: Optional[str] = None,
    ) -> AsyncIterator[Tuple[VaultKey, ConnectionInfo, _T]]:
        """
        Same as the iteration, but also with an object built from the credentials.

        The objects (e.g. HTTP sessions) are built by the factory once per
        credentials and purpose, and are cached until the credentials are
        invalidated or the vault is closed. Then, they are closed if possible.
        """
        purpose = repr(factory) if purpose is None else purpose
        async for key, entry in self._attempts():
            async with self._lock:
                if purpose not in entry.cached:
                    entry.cached[purpose] = factory(entry.info)
                obj = cast(_T, entry.cached[purpose])
            yield key, entry.info, obj

    async def _attempts(self) -> AsyncIterator[Tuple[VaultKey, _VaultEntry]]:
        while True:
            async with self._lock:
                if not self._entries:
                    raise LoginError("No valid credentials are available.")
                key = max(self._entries, key=lambda k: self._entries[k].info.priority)
                entry = self._entries[key]

            yield key, entry

            # Still in the vault: the consumer is satisfied with it, so we are done.
            async with self._lock:
                if self._entries.get(key) is entry:
                    return

    async def invalidate(
            self,
            key: VaultKey,
            *,
            exc: Optional[Exception] = None,
    ) -> None:
        """
        Forget the credentials as rejected by the API.

        If nothing is left, raise `LoginError` from the rejection's error
        (most likely an HTTP 401 error), so that the caller would stop trying.
        """
        async with self._lock:
            entry = self._entries.pop(key, None)
            if entry is not None:
                self._rejected[key].append(entry.info)
                await _close_cached(entry)
            if not self._entries:
                raise LoginError("All credentials are rejected by the API.") from exc

    async def populate(
            self,
            __src: Mapping[str, object],
    ) -> None:
        """
        Add the credentials. The already rejected ones are not re-added.
        """
        async with self._lock:
            self._merge(__src)

    async def close(self) -> None:
        """ Close the cached objects (e.g. the sessions) when the operator exits. """
        async with self._lock:
            for entry in self._entries.values():
                await _close_cached(entry)

    def _merge(self, __src: Mapping[str, object]) -> None:
        for key, info in __src.items():
            if not isinstance(info, ConnectionInfo):
                raise ValueError("Only ConnectionInfo instances are currently accepted.")
            if info not in self._rejected[VaultKey(str(key))]:
                self._entries[VaultKey(str(key))] = _VaultEntry(info=info)


async def _close_cached(entry: _VaultEntry) -> None:
    for obj in entry.cached.values():
        close = getattr(obj, 'close', None)
        if close is not None:
            if inspect.iscoroutinefunction(close):
                await close()
            else:
                close()
    entry.cached.clear()
