"""
The label conventions shared by the operator and by the cluster operators.

The namespaces opt into a class with one reserved label. The objects created
by the operator carry two other reserved labels: one marks them as managed,
the other remembers the class which produced them. The owner label is the only
durable link between a live object and its class: the ownership is never
guessed from the object's names or kinds.

The label keys must match exactly across all the parties, so they are fixed.
"""
from typing import Dict, Mapping, Optional

from nsclass.structs import bodies

CLASS_LABEL = 'namespaceclass.snowflying.io/name'
MANAGED_LABEL = 'namespaceclass.snowflying.io/managed'
OWNER_LABEL = 'namespaceclass.snowflying.io/owner'

MANAGED_VALUE = 'true'


def get_class_name(body: bodies.RawBody) -> Optional[str]:
    """ Get the class name a namespace is bound to, or `None` if unbound. """
    labels: Mapping[str, str] = body.get('metadata', {}).get('labels') or {}
    return labels.get(CLASS_LABEL) or None


def make_ownership_labels(owner: str) -> Dict[str, str]:
    return {MANAGED_LABEL: MANAGED_VALUE, OWNER_LABEL: owner}


def build_selector(owner: Optional[str] = None) -> str:
    """
    Build a label selector for the managed objects, optionally of one owner.

    The selector syntax is the one of K8s API's ``labelSelector`` parameter:
    the comma-separated requirements, all of which must be satisfied.
    """
    requirements = [f'{MANAGED_LABEL}={MANAGED_VALUE}']
    if owner:
        requirements.append(f'{OWNER_LABEL}={owner}')
    return ','.join(requirements)


def build_class_selector(class_name: str) -> str:
    """ Build a label selector for the namespaces bound to a specific class. """
    return f'{CLASS_LABEL}={class_name}'
