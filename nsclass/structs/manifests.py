"""
Resource templates of the classes, and their materialisation in namespaces.

The templates are untyped documents: any kind, any fields. The operator only
needs a few header fields to address them in the API, so it parses a header
and keeps the rest of the document as an opaque payload. The payload is only
copied and touched when the object is materialised in a specific namespace,
and then only the namespace and the labels are changed.
"""
import copy
import dataclasses
from typing import Any, List, Mapping, Optional, Sequence

from nsclass.structs import bodies, labels, references


class InvalidManifestError(Exception):
    """ Raised when a resource template lacks the fields needed to create it. """


class MalformedClassError(Exception):
    """ Raised when a class has no list of resource templates in its spec. """


@dataclasses.dataclass(frozen=True)
class Manifest:
    """
    A parsed header of a resource template, with the raw template attached.

    The raw payload is never modified: every materialisation makes a deep copy.
    """
    gvk: references.GroupVersionKind
    name: Optional[str]
    generate_name: Optional[str]
    raw: Mapping[str, Any] = dataclasses.field(repr=False, compare=False)

    @classmethod
    def parse(cls, raw: object) -> "Manifest":
        if not isinstance(raw, Mapping):
            raise InvalidManifestError(f"A resource template must be a mapping, got {raw!r}.")

        api_version = raw.get('apiVersion')
        kind = raw.get('kind')
        metadata = raw.get('metadata') or {}
        if not isinstance(api_version, str) or not api_version:
            raise InvalidManifestError("A resource template has no apiVersion.")
        if not isinstance(kind, str) or not kind:
            raise InvalidManifestError(f"A resource template of {api_version} has no kind.")
        if not isinstance(metadata, Mapping):
            raise InvalidManifestError(f"A resource template of {kind} has malformed metadata.")

        name = metadata.get('name') or None
        generate_name = metadata.get('generateName') or None
        if name is None and generate_name is None:
            raise InvalidManifestError(f"A resource template of {kind} has no name.")
        for field, value in [('name', name), ('generateName', generate_name)]:
            if value is not None and not isinstance(value, str):
                raise InvalidManifestError(f"A resource template of {kind} has a non-string {field}.")
        if not isinstance(metadata.get('labels') or {}, Mapping):
            raise InvalidManifestError(f"A resource template of {kind} has malformed labels.")

        return cls(
            gvk=references.GroupVersionKind.parse(api_version, kind),
            name=name,
            generate_name=generate_name,
            raw=raw,
        )

    @property
    def kind(self) -> str:
        return self.gvk.kind

    @property
    def title(self) -> str:
        return f'{self.kind}/{self.name or self.generate_name}'

    def materialize(
            self,
            *,
            namespace: references.NamespaceName,
            owner: str,
    ) -> bodies.RawBody:
        """
        Render the template as an object body for the specific namespace.

        The template's own labels are preserved. The reserved ownership labels
        are always set by the operator, even if the template has them.
        """
        body: Any = copy.deepcopy(dict(self.raw))
        metadata = body['metadata'] = dict(body.get('metadata') or {})
        metadata['namespace'] = namespace
        metadata['labels'] = dict(metadata.get('labels') or {}, **labels.make_ownership_labels(owner))
        result: bodies.RawBody = body
        return result


def get_templates(body: bodies.RawBody) -> Sequence[object]:
    """
    Get the resource templates of a class, in their declared order.

    The items themselves are not validated here: they are parsed one by one
    when applied, so that one broken template does not break its siblings.
    """
    spec = body.get('spec')
    if not isinstance(spec, Mapping):
        raise MalformedClassError("The class has no spec.")
    resources = spec.get('resources')
    if not isinstance(resources, list):
        raise MalformedClassError("The class has no resources in its spec.")
    templates: List[object] = list(resources)
    return templates
