"""
Logging of the operator: formats, per-namespace loggers, and the setup.

Everything done on behalf of a specific namespace is logged via the per-namespace
logger: its messages carry the namespace reference, which is rendered either
as a ``[namespace]`` prefix of the messages (in the text formats),
or as a separate field (in the JSON format), for the log parsers to filter on.
"""
import copy
import enum
import logging
import sys
from typing import TYPE_CHECKING, Any, MutableMapping, Optional, TextIO, Tuple, Union

from pythonjsonlogger.core import RESERVED_ATTRS
from pythonjsonlogger.json import JsonFormatter

from nsclass.structs import references
from nsclass.utilities import typedefs

logger = logging.getLogger('nsclass.objects')

# The JSON field for the namespace reference, unless configured otherwise.
DEFAULT_JSON_REFKEY = 'object'

# The record's attribute with the namespace reference, as put there by `ObjectLogger`.
REF_ATTR = 'k8s_ref'


class LogFormat(enum.Enum):
    """ Log formats, as specified on CLI. """
    PLAIN = '%(message)s'
    FULL = '[%(asctime)s] %(name)-20.20s [%(levelname)-8.8s] %(message)s'
    JSON = '-json-'  # detected by identity, never used as a format string


def _get_severity(levelno: int) -> str:
    if levelno <= logging.DEBUG:
        return "debug"
    elif levelno <= logging.INFO:
        return "info"
    elif levelno <= logging.WARNING:
        return "warn"
    elif levelno <= logging.ERROR:
        return "error"
    else:
        return "fatal"


class ObjectFormatter(logging.Formatter):
    """ A base class of our own formatters: to find our own handlers. """


class ObjectTextFormatter(ObjectFormatter):
    pass


class ObjectJsonFormatter(ObjectFormatter, JsonFormatter):
    """
    A JSON formatter with the namespace reference and the log severity as fields.

    The severity is the one understood by the log collectors (e.g. in GCP),
    as opposed to Python's own level names.
    """

    def __init__(
            self,
            *args: Any,
            refkey: Optional[str] = None,
            **kwargs: Any,
    ) -> None:
        kwargs['reserved_attrs'] = set(kwargs.pop('reserved_attrs', RESERVED_ATTRS)) | {REF_ATTR}
        kwargs.setdefault('timestamp', True)
        super().__init__(*args, **kwargs)
        self._refkey: str = refkey or DEFAULT_JSON_REFKEY

    def add_fields(
            self,
            log_record: MutableMapping[str, object],
            record: logging.LogRecord,
            message_dict: MutableMapping[str, object],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        ref = getattr(record, REF_ATTR, None)
        if ref is not None:
            log_record[self._refkey] = ref
        log_record.setdefault('severity', _get_severity(record.levelno))


class ObjectPrefixingMixin(ObjectFormatter):
    """ Prepend the messages with ``[namespace]`` if they are about a namespace. """

    def format(self, record: logging.LogRecord) -> str:
        ref = getattr(record, REF_ATTR, None)
        if ref is not None:
            record = copy.copy(record)  # other handlers must see the original message
            record.msg = f"[{ref.get('name', '')}] {record.msg}"
        return super().format(record)


class ObjectPrefixingTextFormatter(ObjectPrefixingMixin, ObjectTextFormatter):
    pass


class ObjectPrefixingJsonFormatter(ObjectPrefixingMixin, ObjectJsonFormatter):
    pass


class ObjectLogger(typedefs.LoggerAdapter):
    """
    A logger/adapter to carry the namespace reference for formatting.

    Constructed for every intent processed for a namespace. The reference has
    the same structure as an object reference in K8s API, so that the log parsers
    would treat it the same way as other K8s-related logs.
    """

    def __init__(self, *, namespace: references.NamespaceName) -> None:
        ref = {
            'apiVersion': references.NAMESPACES.api_version,
            'kind': references.NAMESPACES.kind,
            'name': namespace,
        }
        super().__init__(logger, {REF_ATTR: ref})

    def process(
            self,
            msg: str,
            kwargs: MutableMapping[str, Any],
    ) -> Tuple[str, MutableMapping[str, Any]]:
        # The stdlib adapter replaces the call's extras with its own ones. We merge them instead.
        kwargs['extra'] = {**(self.extra or {}), **kwargs.get('extra', {})}
        return msg, kwargs


# Our own handler class: to replace it on re-configuration (e.g. in the CLI tests),
# where the previous handler can point to an already closed stream.
if TYPE_CHECKING:
    class _NsclassStreamHandler(logging.StreamHandler[TextIO]):
        pass
else:
    class _NsclassStreamHandler(logging.StreamHandler):
        pass


def configure(
        debug: Optional[bool] = None,
        verbose: Optional[bool] = None,
        quiet: Optional[bool] = None,
        log_format: Union[LogFormat, str] = LogFormat.FULL,
        log_prefix: Optional[bool] = None,
        log_refkey: Optional[str] = None,
) -> None:
    """
    Set up the root logger: one stream handler to stdout, and the level.

    Unless debugging, the noisy low-level loggers are muted.
    """
    handler = _NsclassStreamHandler(sys.stdout)
    handler.setFormatter(make_formatter(log_format=log_format, log_prefix=log_prefix,
                                        log_refkey=log_refkey))

    root = logging.getLogger()
    root.handlers[:] = [h for h in root.handlers if not isinstance(h, _NsclassStreamHandler)]
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if debug or verbose else logging.WARNING if quiet else logging.INFO)

    for name in ['asyncio', 'aiohttp.access']:
        lowlevel = logging.getLogger(name)
        lowlevel.propagate = bool(debug)
        if not debug:
            lowlevel.handlers[:] = [logging.NullHandler()]


def make_formatter(
        log_format: Union[LogFormat, str] = LogFormat.FULL,
        log_prefix: Optional[bool] = None,
        log_refkey: Optional[str] = None,
) -> ObjectFormatter:
    """
    Pick a formatter for the format. The JSON format is not prefixed by default.
    """
    if log_prefix is None:
        log_prefix = log_format is not LogFormat.JSON

    if log_format is LogFormat.JSON:
        json_cls = ObjectPrefixingJsonFormatter if log_prefix else ObjectJsonFormatter
        return json_cls(refkey=log_refkey)

    if isinstance(log_format, LogFormat):
        fmt = log_format.value
    elif isinstance(log_format, str):
        fmt = log_format
    else:
        raise ValueError(f"Unsupported log format: {log_format!r}")

    text_cls = ObjectPrefixingTextFormatter if log_prefix else ObjectTextFormatter
    return text_cls(fmt)
