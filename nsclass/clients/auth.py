"""
Authenticated sessions for the API calls.

Every API call takes a pre-authenticated `APIContext` (an ``aiohttp`` session
with the server's URL) from the operator's vault. If the API rejects
the credentials (HTTP 401), they are dropped from the vault, and the call
is repeated with the next best ones until the vault runs out of them.
"""
import base64
import contextlib
import functools
import ssl
import tempfile
from contextvars import ContextVar
from typing import Any, Callable, Dict, Optional, TypeVar, Union, cast

import aiohttp

from nsclass.clients import errors
from nsclass.structs import credentials
from nsclass.utilities import versions

# The vault of the current operator, set once at startup and inherited by all its tasks.
vault_var: ContextVar[credentials.Vault] = ContextVar('vault_var')

_F = TypeVar('_F', bound=Callable[..., Any])


def authenticated(fn: _F) -> _F:
    """
    Inject the ``context=`` kwarg with an authenticated session into an API call.

    An explicitly passed context is used as is, with no retries on 401.
    """
    @functools.wraps(fn)
    async def wrapper(*args: Any, **kwargs: Any) -> Any:
        if 'context' in kwargs:
            return await fn(*args, **kwargs)

        vault = vault_var.get()
        async for key, info, context in vault.extended(APIContext, 'contexts'):
            try:
                return await fn(*args, **kwargs, context=context)
            except errors.APIUnauthorizedError as e:
                await vault.invalidate(key, exc=e)  # raises LoginError when nothing is left.

        raise RuntimeError("The credentials vault is exhausted without a LoginError.")

    return cast(_F, wrapper)


class APIContext:
    """
    An ``aiohttp`` session bound to one `ConnectionInfo`, and the server's URL.

    It is created once per credentials item, cached in the vault, and closed
    when the credentials are rejected or the vault is closed.
    """
    session: aiohttp.ClientSession
    server: str
    default_namespace: Optional[str]

    def __init__(
            self,
            info: credentials.ConnectionInfo,
    ) -> None:
        super().__init__()
        self.server = info.server
        self.default_namespace = info.default_namespace
        self.session = aiohttp.ClientSession(
            connector=aiohttp.TCPConnector(limit=0, ssl=make_ssl_context(info)),
            headers=make_headers(info),
            auth=aiohttp.BasicAuth(info.username, info.password)
                 if info.username and info.password else None,
        )

    async def close(self) -> None:
        await self.session.close()


def make_headers(info: credentials.ConnectionInfo) -> Dict[str, str]:
    headers = {'User-Agent': f'nsclass/{versions.version or "unknown"}'}
    if info.token:
        headers['Authorization'] = f'{info.scheme or "Bearer"} {info.token}'
    elif info.scheme:
        headers['Authorization'] = info.scheme
    return headers


def make_ssl_context(info: credentials.ConnectionInfo) -> ssl.SSLContext:
    """
    Build the SSL context for the server's verification and for the client's certificate.

    The SSL module only loads the client certificates from files. So, the inline
    certificates are written to temporary files, which exist only while loading.
    """
    context = ssl.create_default_context(
        purpose=ssl.Purpose.SERVER_AUTH,
        cafile=info.ca_path,
        cadata=decode_to_pem(info.ca_data) if info.ca_data is not None else None,
    )
    with contextlib.ExitStack() as stack:
        cert_path = _materialize(stack, info.certificate_path, info.certificate_data)
        pkey_path = _materialize(stack, info.private_key_path, info.private_key_data)
        if cert_path and pkey_path:
            context.load_cert_chain(certfile=cert_path, keyfile=pkey_path)

    if info.insecure:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


def _materialize(
        stack: contextlib.ExitStack,
        path: Optional[str],
        data: Optional[Union[str, bytes]],
) -> Optional[str]:
    if path:
        return path
    elif data:
        file = stack.enter_context(tempfile.NamedTemporaryFile(buffering=0))
        file.write(decode_to_pem(data).encode('ascii'))
        return file.name
    else:
        return None


def decode_to_pem(data: Union[str, bytes]) -> str:
    """ Accept PEM as is, base64-decode everything else (as in kubeconfigs' ``*-data``). """
    if isinstance(data, bytes) and data.startswith(b'-----BEGIN '):
        return data.decode('ascii')
    elif isinstance(data, str) and data.startswith('-----BEGIN '):
        return data
    else:
        return base64.b64decode(data).decode('ascii')
