"""
All configuration flags, options, settings to fine-tune the operator.

All settings are grouped semantically just for convenience
(instead of a flat mega-object with all the values in it).

Some of the settings are flags, some are scalars, some are optional,
some are not (but all of them have reasonable defaults).
"""
import dataclasses
from typing import Optional, Sequence


@dataclasses.dataclass
class ProcessSettings:
    """
    Settings for the operator's OS process: e.g. when started via CLI.
    """

    ultimate_exiting_timeout: Optional[float] = 10 * 60
    """
    How long to wait for the graceful exit before SIGKILL'ing the operator.

    The countdown goes from when a graceful signal arrives (SIGTERM/SIGINT),
    regardless of what is happening in the graceful exiting routine.

    Measured in seconds. Set to `None` to disable (on your own risk).
    """


@dataclasses.dataclass
class NetworkingSettings:

    request_timeout: Optional[float] = 60
    """
    A timeout for a single API call (not a stream), in seconds.
    Every listing, reading, creation, deletion is aborted after this time.
    """

    connect_timeout: Optional[float] = None
    """
    A timeout for establishing a connection to the API, in seconds.
    """

    error_backoffs: Sequence[float] = (1, 1, 2, 3, 5, 8)
    """
    Backoff intervals in case of connection errors & 5xx responses of one request.

    The number of retries is the number of intervals plus one (the initial one).
    The request fails with the original error when the intervals are depleted.
    To disable the retries, set it to ``[]`` or ``()``.
    """


@dataclasses.dataclass
class WatchingSettings:

    server_timeout: Optional[float] = None
    """
    The maximum duration of one streaming request. Patched in some tests.
    If ``None``, then obey the server-side timeouts (they seem to be random).
    """

    client_timeout: Optional[float] = None
    """
    An HTTP/HTTPS session timeout to use in watch requests.
    """

    connect_timeout: Optional[float] = None
    """
    An HTTP/HTTPS connection timeout to use in watch requests.
    """

    reconnect_backoff: float = 0.1
    """
    How long should a pause be between healthy watch requests (to prevent API flooding).
    """

    error_backoff_initial: float = 1.0
    """
    The first delay after a failed watch request. Every next failure doubles it.
    """

    error_backoff_maximum: float = 60.0
    """
    The ceiling of the delays after repeatedly failing watch requests.
    """

    error_backoff_jitter: float = 0.2
    """
    A random fraction of the delay added or subtracted to spread the reconnections.
    """

    alarm_threshold: int = 10
    """
    How many consecutive failures of a watch-stream mean that the connectivity is lost.

    The stream keeps retrying regardless, but it is reported as alarmed:
    in the logs and on the liveness endpoint (if enabled).
    """


@dataclasses.dataclass
class QueueingSettings:
    """
    Settings for how the per-namespace intents are queued and processed.
    """

    idle_timeout: float = 5.0
    """
    How soon an idle worker is exited and garbage-collected if no intents arrive.
    """

    batch_window: float = 0.1
    """
    How long a worker waits for more intents before processing the received ones.
    All intents arriving within this window are coalesced into one batch.
    """

    exit_timeout: float = 2.0
    """
    How soon a worker is cancelled when the operator is going to exit.
    This is the time given to the worker to deplete and process the queue.
    """


@dataclasses.dataclass
class OperatorSettings:
    process: ProcessSettings = dataclasses.field(default_factory=ProcessSettings)
    networking: NetworkingSettings = dataclasses.field(default_factory=NetworkingSettings)
    watching: WatchingSettings = dataclasses.field(default_factory=WatchingSettings)
    queueing: QueueingSettings = dataclasses.field(default_factory=QueueingSettings)
