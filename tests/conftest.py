import asyncio
import collections
import dataclasses
import io
import itertools
import json
import logging
import re
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import AsyncMock, MagicMock

import aiohttp.web
import pytest
from aiohttp.test_utils import TestServer

from nsclass.clients import auth
from nsclass.clients.auth import APIContext
from nsclass.engines.loggers import ObjectPrefixingTextFormatter, configure
from nsclass.reactor.discovery import TypeRegistry
from nsclass.structs.configuration import OperatorSettings
from nsclass.structs.credentials import ConnectionInfo, Vault, VaultKey
from nsclass.structs.labels import CLASS_LABEL, MANAGED_LABEL, OWNER_LABEL
from nsclass.structs.references import Resource


@pytest.fixture()
def settings():
    """ The settings with the delays shortened to the minimum, so that the tests are fast. """
    settings = OperatorSettings()
    settings.networking.request_timeout = 5
    settings.networking.error_backoffs = []
    settings.watching.reconnect_backoff = 0.01
    settings.watching.error_backoff_initial = 0.01
    settings.watching.error_backoff_maximum = 0.05
    settings.watching.error_backoff_jitter = 0.0
    settings.queueing.idle_timeout = 0.5
    settings.queueing.batch_window = 0.01
    settings.queueing.exit_timeout = 1.0
    return settings


#
# The fake Kubernetes API. Reasons:
# 1. No external calls must be made under any circumstances.
#    The tests must be fully isolated from the environment.
# 2. The operator's behaviour is defined by the objects it leaves in the cluster,
#    so the fake keeps the objects and serves them as the real API would do,
#    with the discovery, the label selectors, the creations & deletions, the watching.
#

@dataclasses.dataclass(frozen=True)
class FakeKind:
    group: str
    versions: Tuple[str, ...]
    plural: str
    kind: str
    namespaced: bool
    verbs: Tuple[str, ...] = ('create', 'delete', 'get', 'list', 'patch', 'update', 'watch')


DEFAULT_KINDS = [
    FakeKind('', ('v1',), 'namespaces', 'Namespace', False),
    FakeKind('', ('v1',), 'nodes', 'Node', False),
    FakeKind('', ('v1',), 'configmaps', 'ConfigMap', True),
    FakeKind('', ('v1',), 'secrets', 'Secret', True),
    FakeKind('', ('v1',), 'serviceaccounts', 'ServiceAccount', True),
    FakeKind('', ('v1',), 'bindings', 'Binding', True, verbs=('create',)),
    FakeKind('apps', ('v1',), 'deployments', 'Deployment', True),
    FakeKind('networking.k8s.io', ('v1',), 'networkpolicies', 'NetworkPolicy', True),
    FakeKind('policy', ('v1', 'v1beta1'), 'poddisruptionbudgets', 'PodDisruptionBudget', True),
    FakeKind('snowflying.io', ('v1alpha1',), 'namespaceclasses', 'NamespaceClass', False),
]

ObjectKey = Tuple[str, str, Optional[str], str]  # group, plural, namespace, name


class FakeCluster:
    """
    An in-memory cluster behind the fake API. The tests arrange & assert its objects.
    """

    def __init__(self, kinds=DEFAULT_KINDS):
        super().__init__()
        self.kinds: List[FakeKind] = list(kinds)
        self.objects: Dict[ObjectKey, Dict[str, Any]] = {}
        self.requests: List[Tuple[str, str, Dict[str, str]]] = []
        self.headers: List[Dict[str, str]] = []
        self.failures: Dict[Tuple[str, str], List[int]] = collections.defaultdict(list)
        self.broken_groupversions: List[str] = []
        self.streams: Dict[str, List[asyncio.Queue]] = collections.defaultdict(list)
        self.pending: Dict[str, List[Dict[str, Any]]] = collections.defaultdict(list)
        self._versions = itertools.count(1)
        self._suffixes = itertools.count(1)

    #
    # Arranging & asserting in the tests.
    #

    def add(self, body, *, group='', plural=None):
        body = json.loads(json.dumps(body))  # a deep copy
        kind = self._find_kind(group=group, plural=plural, kind=body.get('kind'))
        meta = body.setdefault('metadata', {})
        meta.setdefault('uid', f'uid-{next(self._suffixes)}')
        meta['resourceVersion'] = str(next(self._versions))
        key = (kind.group, kind.plural, meta.get('namespace'), meta['name'])
        self.objects[key] = body
        return body

    def add_kind(self, group, versions, plural, kind, namespaced=True):
        self.kinds.append(FakeKind(group, tuple(versions), plural, kind, namespaced))

    def add_namespace(self, name, class_name=None, labels=None):
        labels = dict(labels or {})
        if class_name is not None:
            labels[CLASS_LABEL] = class_name
        return self.add({'apiVersion': 'v1', 'kind': 'Namespace',
                         'metadata': {'name': name, 'labels': labels}})

    def add_class(self, name, resources):
        return self.add({'apiVersion': 'snowflying.io/v1alpha1', 'kind': 'NamespaceClass',
                         'metadata': {'name': name}, 'spec': {'resources': resources}},
                        group='snowflying.io')

    def add_managed(self, plural, namespace, name, *, owner, group='', kind=None, version='v1'):
        fake_kind = self._find_kind(group=group, plural=plural)
        return self.add({
            'apiVersion': f'{group}/{version}' if group else version,
            'kind': kind or fake_kind.kind,
            'metadata': {'name': name, 'namespace': namespace,
                         'labels': {MANAGED_LABEL: 'true', OWNER_LABEL: owner}},
        }, group=group, plural=plural)

    def get(self, plural, namespace, name, *, group=''):
        return self.objects.get((group, plural, namespace, name))

    def names(self, namespace, *, plural=None, group=None):
        return sorted(
            f'{key[1]}/{key[3]}' for key in self.objects
            if key[2] == namespace and (plural is None or key[1] == plural)
            and (group is None or key[0] == group)
        )

    def fail(self, method, path, *statuses):
        """ Make the next requests to the path fail with the statuses (one per request). """
        self.failures[(method.upper(), path)].extend(statuses)

    def emit(self, plural, event_type, body):
        """ Send an event to the current watch-streams of the resource (or to the next one). """
        event = {'type': event_type, 'object': body}
        if self.streams[plural]:
            for queue in self.streams[plural]:
                queue.put_nowait(event)
        else:
            self.pending[plural].append(event)

    def close_streams(self):
        for queues in self.streams.values():
            for queue in queues:
                queue.put_nowait(None)

    #
    # Serving the API requests.
    #

    def _find_kind(self, *, group, plural=None, kind=None, version=None):
        for fake_kind in self.kinds:
            if fake_kind.group != group:
                continue
            if version is not None and version not in fake_kind.versions:
                continue
            if plural is not None and fake_kind.plural == plural:
                return fake_kind
            if plural is None and kind is not None and fake_kind.kind == kind:
                return fake_kind
        raise LookupError(f"No such kind in the fake cluster: {group!r} {plural!r} {kind!r}")

    def make_app(self):
        app = aiohttp.web.Application()
        app.add_routes([aiohttp.web.route('*', '/{tail:.*}', self.handle)])
        return app

    async def handle(self, request: aiohttp.web.Request) -> aiohttp.web.StreamResponse:
        method = request.method.upper()
        path = request.path.rstrip('/')
        query = dict(request.query)
        self.requests.append((method, path, query))
        self.headers.append(dict(request.headers))

        statuses = self.failures.get((method, path))
        if statuses:
            status = statuses.pop(0)
            return status_response(status, 'Injected', f"Injected failure of {method} {path}")

        if path == '/api':
            return aiohttp.web.json_response({'versions': ['v1']})
        if path == '/apis':
            return aiohttp.web.json_response({'groups': self._render_groups()})

        parts = path.strip('/').split('/')
        if parts[0] == 'api':
            group, version, rest = '', parts[1], parts[2:]
        elif parts[0] == 'apis' and len(parts) >= 3:
            group, version, rest = parts[1], parts[2], parts[3:]
        else:
            return status_response(404, 'NotFound', f"Unknown path: {path}")

        groupversion = f'{group}/{version}' if group else version
        if not rest:
            if groupversion in self.broken_groupversions:
                return status_response(503, 'ServiceUnavailable', "The group is down.")
            return aiohttp.web.json_response({'resources': self._render_resources(group, version)})

        namespace: Optional[str] = None
        if len(rest) >= 3 and rest[0] == 'namespaces':
            namespace, rest = rest[1], rest[2:]
        plural, name = rest[0], (rest[1] if len(rest) > 1 else None)

        try:
            kind = self._find_kind(group=group, plural=plural, version=version)
        except LookupError:
            return status_response(404, 'NotFound', f"Unknown resource: {plural}")

        if method == 'GET' and name is None and query.get('watch') == 'true':
            return await self._watch(request, kind)
        elif method == 'GET' and name is None:
            return self._list(kind, version, namespace, query.get('labelSelector'))
        elif method == 'GET':
            return self._read(kind, namespace, name)
        elif method == 'POST' and name is None:
            return self._create(kind, namespace, await request.json())
        elif method == 'DELETE' and name is not None:
            return self._delete(kind, namespace, name)
        else:
            return status_response(405, 'MethodNotAllowed', f"{method} is not allowed.")

    def _render_groups(self):
        groups: Dict[str, List[str]] = {}
        for fake_kind in self.kinds:
            if fake_kind.group:
                versions = groups.setdefault(fake_kind.group, [])
                versions.extend(v for v in fake_kind.versions if v not in versions)
        return [{'name': group,
                 'versions': [{'groupVersion': f'{group}/{v}', 'version': v} for v in versions],
                 'preferredVersion': {'groupVersion': f'{group}/{versions[0]}',
                                      'version': versions[0]}}
                for group, versions in groups.items()]

    def _render_resources(self, group, version):
        resources = []
        for fake_kind in self.kinds:
            if fake_kind.group == group and version in fake_kind.versions:
                resources.append({'name': fake_kind.plural, 'kind': fake_kind.kind,
                                  'namespaced': fake_kind.namespaced,
                                  'verbs': list(fake_kind.verbs)})
                resources.append({'name': f'{fake_kind.plural}/status', 'kind': fake_kind.kind,
                                  'namespaced': fake_kind.namespaced, 'verbs': ['get']})
        return resources

    def _list(self, kind, version, namespace, selector):
        requirements = dict(req.split('=', 1) for req in selector.split(',')) if selector else {}
        items = []
        for (group, plural, ns, _), body in sorted(self.objects.items(), key=lambda kv: kv[0][3]):
            if group != kind.group or plural != kind.plural:
                continue
            if namespace is not None and ns != namespace:
                continue
            labels = body.get('metadata', {}).get('labels') or {}
            if all(labels.get(key) == value for key, value in requirements.items()):
                items.append({key: val for key, val in body.items() if key not in ['apiVersion', 'kind']})
        api_version = f'{kind.group}/{version}' if kind.group else version
        return aiohttp.web.json_response({
            'apiVersion': api_version,
            'kind': f'{kind.kind}List',
            'metadata': {'resourceVersion': str(next(self._versions))},
            'items': items,
        })

    def _read(self, kind, namespace, name):
        body = self.objects.get((kind.group, kind.plural, namespace, name))
        if body is None:
            return status_response(404, 'NotFound', f"{kind.plural} {name!r} not found")
        return aiohttp.web.json_response(body)

    def _create(self, kind, namespace, body):
        meta = body.setdefault('metadata', {})
        if meta.get('namespace', namespace) != namespace:
            return status_response(400, 'BadRequest', "The namespace does not match.")
        if not meta.get('name') and meta.get('generateName'):
            meta['name'] = f"{meta['generateName']}{next(self._suffixes):05d}"
        key = (kind.group, kind.plural, namespace, meta.get('name'))
        if key in self.objects:
            return status_response(409, 'AlreadyExists', f"{kind.plural} {meta['name']!r} already exists")
        meta['uid'] = f'uid-{next(self._suffixes)}'
        meta['resourceVersion'] = str(next(self._versions))
        self.objects[key] = body
        return aiohttp.web.json_response(body, status=201)

    def _delete(self, kind, namespace, name):
        body = self.objects.pop((kind.group, kind.plural, namespace, name), None)
        if body is None:
            return status_response(404, 'NotFound', f"{kind.plural} {name!r} not found")
        return aiohttp.web.json_response(body)

    async def _watch(self, request, kind):
        queue: asyncio.Queue = asyncio.Queue()
        for event in self.pending.pop(kind.plural, []):
            queue.put_nowait(event)
        self.streams[kind.plural].append(queue)
        response = aiohttp.web.StreamResponse()
        await response.prepare(request)
        try:
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=0.1)
                except asyncio.TimeoutError:
                    if request.transport is None or request.transport.is_closing():
                        break  # the client has disconnected
                    continue
                if event is None:
                    break
                await response.write(json.dumps(event).encode('utf-8') + b'\n')
        finally:
            self.streams[kind.plural].remove(queue)
        return response


def status_response(status, reason, message):
    payload = {'apiVersion': 'v1', 'kind': 'Status', 'status': 'Failure',
               'code': status, 'reason': reason, 'message': message}
    return aiohttp.web.json_response(payload, status=status)


@pytest.fixture()
def cluster():
    return FakeCluster()


@pytest.fixture()
async def fake_server(cluster):
    server = TestServer(cluster.make_app())
    await server.start_server()
    try:
        yield server
    finally:
        cluster.close_streams()
        await server.close()


@pytest.fixture()
def vault():
    """
    A vault set as if every coroutine is invoked from the operator (where it is set normally).

    The context variable is set in a sync fixture, so that it is inherited by the test.
    """
    vault = Vault()
    token = auth.vault_var.set(vault)
    try:
        yield vault
    finally:
        auth.vault_var.reset(token)


@pytest.fixture()
async def fake_vault(vault, fake_server):
    """ Provide the credentials to the fake API. The sessions are closed in the end. """
    info = ConnectionInfo(server=str(fake_server.make_url('')).rstrip('/'))
    await vault.populate({VaultKey('fixture'): info})
    try:
        yield vault
    finally:
        await vault.close()


#
# Mocks for the single requests. Reasons:
# 1. The request-level tests assert what exactly is sent and how the responses
#    are interpreted, so the responses are arranged per test, not via the fake cluster.
# 2. The errors that no real server can produce (e.g. the connection errors)
#    are simulated by patching the session.
#

@pytest.fixture()
def hostname():
    """ A fake hostname to be used in all aiohttp/aresponses tests. """
    return 'fake-host'


@pytest.fixture()
async def api_vault(vault, hostname):
    """ Provide the credentials to the fake host, as intercepted by `aresponses`. """
    info = ConnectionInfo(server=f'https://{hostname}')
    await vault.populate({VaultKey('fixture'): info})
    try:
        yield vault
    finally:
        await vault.close()


@pytest.fixture()
async def enforced_context(api_vault, hostname, mocker):
    """
    Force the authenticating decorator to use one specific session for the whole test.

    `aresponses` can only return the erroneous responses, not raise arbitrary
    errors on the client side; these are simulated by patching this session.
    """
    context = APIContext(ConnectionInfo(server=f'https://{hostname}'))
    mocker.patch(f'{APIContext.__module__}.{APIContext.__name__}', return_value=context)
    async with context.session:
        yield context


@pytest.fixture()
async def enforced_session(enforced_context: APIContext):
    yield enforced_context.session


# Note: Unused `enforced_session` is to ensure that the session is closed for every test.
@pytest.fixture()
def resp_mocker(api_vault, enforced_session, aresponses):
    """
    A factory of server-side callbacks for `aresponses` with mocking/spying.

    The callbacks record the requests, so that the tests can assert on whether
    the request was handled at all (i.e. the URL & method matched), and with
    what payload (as ``request.data``)::

        callback = resp_mocker(return_value=aiohttp.web.json_response({'a': 'b'}))
        aresponses.add(hostname, '/path', 'get', callback)
        do_something()
        assert callback.call_count == 1
    """
    def resp_maker(*args, **kwargs):
        actual_response = MagicMock(*args, **kwargs)

        async def resp_mock_effect(request):
            # The content can be read only inside the handler, so it is preserved for asserts.
            try:
                request.data = await request.json()
            except json.JSONDecodeError:
                request.data = await request.text()
            return actual_response()

        return AsyncMock(side_effect=resp_mock_effect)
    return resp_maker


@pytest.fixture()
def registry():
    """ A registry as discovered from the fake cluster (preferred versions only for scanning). """
    resources = []
    for fake_kind in DEFAULT_KINDS:
        for idx, version in enumerate(fake_kind.versions):
            resources.append(Resource(
                fake_kind.group, version, fake_kind.plural,
                kind=fake_kind.kind,
                namespaced=fake_kind.namespaced,
                preferred=idx == 0,
                verbs=frozenset(fake_kind.verbs),
            ))
    return TypeRegistry(resources)


@pytest.fixture()
def logger():
    return logging.getLogger('nsclass.tests')


#
# Helpers for the logging checks.
#

@pytest.fixture()
def logstream(caplog):
    """ Prefixing is done at the final output. We have to intercept it. """

    logger = logging.getLogger()
    handlers = list(logger.handlers)

    # Setup all log levels of sub-libraries. A side-effect: the handlers are also added.
    configure(verbose=True)

    # Remove any stream handlers added in the step above. But keep the caplog's handlers.
    for handler in list(logger.handlers):
        if type(handler).__name__ == '_NsclassStreamHandler':
            logger.removeHandler(handler)

    # Inject our stream-intercepting handler.
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    formatter = ObjectPrefixingTextFormatter('prefix %(message)s')
    handler.setFormatter(formatter)
    logger.addHandler(handler)

    try:
        with caplog.at_level(logging.DEBUG):
            yield stream
    finally:
        logger.removeHandler(handler)
        logger.handlers[:] = handlers  # undo `configure()`


@pytest.fixture()
def assert_logs(caplog):
    """
    A function to assert the logs are present (by pattern).

    The listed message patterns MUST be present, in the order specified.
    Some other log messages can also be present, but they are ignored.
    """
    caplog.set_level(logging.DEBUG)

    def assert_logs_fn(patterns, prohibited=[], strict=False):
        __traceback_hide__ = True
        remaining_patterns = list(patterns)
        for message in caplog.messages:
            # The expected pattern is at position 0.
            # Looking-ahead: if one of the following patterns matches, while the
            # 0th does not, then the log message is missing, and we fail the test.
            for idx, pattern in enumerate(remaining_patterns):
                m = re.search(pattern, message)
                if m:
                    if idx == 0:
                        remaining_patterns[:1] = []
                        break  # out of `remaining_patterns` cycle
                    else:
                        skipped_patterns = remaining_patterns[:idx]
                        raise AssertionError(f"Few patterns were skipped: {skipped_patterns!r}")
                elif strict:
                    raise AssertionError(f"Unexpected log message: {message!r}")

            # Check that the prohibited patterns do not appear in any message.
            for pattern in prohibited:
                m = re.search(pattern, message)
                if m:
                    raise AssertionError(f"Prohibited log pattern found: {message!r} ~ {pattern!r}")

        # If all patterns have been matched in order, we are done.
        # if some are left, but the messages are over, then we fail.
        if remaining_patterns:
            raise AssertionError(f"Few patterns were missed: {remaining_patterns!r}")

    return assert_logs_fn
