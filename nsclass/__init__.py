"""
The NamespaceClass operator: the namespaces get the resources of their classes.

The namespaces opt into a cluster-scoped ``NamespaceClass`` with a label.
The operator creates the objects declared in the class in every such namespace,
and removes them when the namespace leaves the class or the class is deleted.
"""
# isort: skip_file

# Unlike all other places, where we import other modules and refer
# the functions via the modules, this is the operator's top-level interface,
# as it is seen by the embedding code. So, we export the individual names.

from nsclass.engines.loggers import (
    configure,
    LogFormat,
)
from nsclass.reactor.discovery import (
    DiscoveryError,
    TypeRegistry,
    UnknownResourceTypeError,
)
from nsclass.reactor.running import (
    run,
    operator,
    spawn_tasks,
    run_tasks,
)
from nsclass.structs.configuration import (
    OperatorSettings,
)
from nsclass.structs.credentials import (
    ConnectionInfo,
    LoginError,
    Vault,
)
from nsclass.structs.labels import (
    CLASS_LABEL,
    MANAGED_LABEL,
    OWNER_LABEL,
)
from nsclass.utilities.versions import (
    version as __version__,
)

__all__ = [
    'configure', 'LogFormat',
    'DiscoveryError', 'TypeRegistry', 'UnknownResourceTypeError',
    'run', 'operator', 'spawn_tasks', 'run_tasks',
    'OperatorSettings',
    'ConnectionInfo', 'LoginError', 'Vault',
    'CLASS_LABEL', 'MANAGED_LABEL', 'OWNER_LABEL',
    '__version__',
]
