"""
Rudimentary resolution of the credentials for the Kubernetes API.

Only two sources are supported: the in-cluster service account (when running
in a pod), and the plain kubeconfig files with static credentials: tokens,
certificates, basic auth. No exec-plugins or auth-providers are invoked,
though the tokens already cached by the auth-providers are used as is.

The in-cluster service account is tried first. If the operator does not run
in a cluster, the kubeconfig is used: from the ``KUBECONFIG`` environment
variable (a path list), or from ``~/.kube/config`` by default.
"""
import os
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

import yaml

from nsclass.structs import credentials
from nsclass.utilities import typedefs

# Keep as constants to make them patchable. Higher priority is more preferred.
PRIORITY_OF_KUBECONFIG: int = 10
PRIORITY_OF_SERVICE_ACCOUNT: int = 20

# https://kubernetes.io/docs/tasks/run-application/access-api-from-pod/
SERVICE_ACCOUNT_DIR = '/var/run/secrets/kubernetes.io/serviceaccount'
DEFAULT_KUBECONFIG = '~/.kube/config'

# The named sections of a kubeconfig, and the key of the item's payload in each of them.
KUBECONFIG_SECTIONS = {'contexts': 'context', 'clusters': 'cluster', 'users': 'user'}


def login(*, logger: typedefs.Logger) -> Dict[str, credentials.ConnectionInfo]:
    """
    Resolve the credentials for the vault, or fail with `LoginError`.
    """
    info = login_with_service_account()
    if info is not None:
        logger.info("Using the in-cluster service account.")
        return {'service-account': info}

    logger.debug("The in-cluster service account is not available.")
    info = login_with_kubeconfig()
    if info is not None:
        logger.info(f"Using the kubeconfig context for {info.server}.")
        return {'kubeconfig': info}

    raise credentials.LoginError("Cannot authenticate neither in-cluster, nor via kubeconfig.")


def _read_stripped(path: str) -> Optional[str]:
    if not os.path.exists(path):
        return None
    with open(path, encoding='utf-8') as f:
        return f.read().strip() or None


def login_with_service_account() -> Optional[credentials.ConnectionInfo]:
    """ Read the token, the namespace, and the CA of the pod's service account. """
    token_path = os.path.join(SERVICE_ACCOUNT_DIR, 'token')
    if not os.path.exists(token_path):
        return None

    # Kubernetes sets these variables in every pod; the service's DNS name is a fallback.
    host = os.environ.get('KUBERNETES_SERVICE_HOST')
    port = os.environ.get('KUBERNETES_SERVICE_PORT', '443')

    ca_path = os.path.join(SERVICE_ACCOUNT_DIR, 'ca.crt')
    return credentials.ConnectionInfo(
        server=f'https://{host}:{port}' if host else 'https://kubernetes.default.svc',
        ca_path=ca_path if os.path.exists(ca_path) else None,
        token=_read_stripped(token_path),
        default_namespace=_read_stripped(os.path.join(SERVICE_ACCOUNT_DIR, 'namespace')),
        priority=PRIORITY_OF_SERVICE_ACCOUNT,
    )


def login_with_kubeconfig() -> Optional[credentials.ConnectionInfo]:
    """
    Take the credentials of the current context of the kubeconfig files.

    Several files are merged as ``kubectl`` does it: the first value wins.
    A listed but absent or broken file is an error, not a skip.
    """
    kubeconfig = os.environ.get('KUBECONFIG')
    if not kubeconfig and os.path.exists(os.path.expanduser(DEFAULT_KUBECONFIG)):
        kubeconfig = DEFAULT_KUBECONFIG
    if not kubeconfig:
        return None

    paths = [os.path.expanduser(path.strip()) for path in kubeconfig.split(os.pathsep) if path.strip()]
    current_context, sections = _merge_kubeconfigs(paths)

    if current_context is None:
        raise credentials.LoginError('Current context is not set in kubeconfigs.')
    if current_context not in sections['contexts']:
        raise credentials.LoginError(f'Current context {current_context!r} is not defined.')
    context = sections['contexts'][current_context]
    cluster = sections['clusters'].get(context.get('cluster'), {})
    user = sections['users'].get(context.get('user'), {})
    provider_token = user.get('auth-provider', {}).get('config', {}).get('access-token')

    return credentials.ConnectionInfo(
        server=cluster.get('server'),
        ca_path=cluster.get('certificate-authority'),
        ca_data=cluster.get('certificate-authority-data'),
        insecure=cluster.get('insecure-skip-tls-verify'),
        certificate_path=user.get('client-certificate'),
        certificate_data=user.get('client-certificate-data'),
        private_key_path=user.get('client-key'),
        private_key_data=user.get('client-key-data'),
        username=user.get('username'),
        password=user.get('password'),
        token=user.get('token') or provider_token,
        default_namespace=context.get('namespace'),
        priority=PRIORITY_OF_KUBECONFIG,
    )


def _merge_kubeconfigs(
        paths: Iterable[str],
) -> Tuple[Optional[str], Mapping[str, Dict[str, Dict[str, Any]]]]:
    current_context: Optional[str] = None
    sections: Dict[str, Dict[str, Dict[str, Any]]] = {name: {} for name in KUBECONFIG_SECTIONS}
    for path in paths:
        with open(path, encoding='utf-8') as f:
            config = yaml.safe_load(f) or {}

        current_context = current_context or config.get('current-context')
        for section, payload_key in KUBECONFIG_SECTIONS.items():
            for item in config.get(section) or []:
                sections[section].setdefault(item['name'], item.get(payload_key) or {})
    return current_context, sections
