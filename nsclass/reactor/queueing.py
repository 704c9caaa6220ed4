"""
The per-namespace queueing system of the intents.

Both watchers (of the namespaces and of the classes) produce the intents
for the namespaces. The intents of every namespace are put to the namespace's
own queue, which is consumed by the namespace's own worker. The queues and
the workers are created on demand, and are destroyed when idle for some time.

Every namespace is handled sequentially: i.e. its intents are processed
in the order of their arrival, and never overlap in time, no matter which
watcher has produced them. Other namespaces are handled in parallel
in their own sequential workers.

The enqueueing never waits for the processing. A slow namespace (e.g. with
a lot of objects or with a slow API) does not block the watchers, so the other
namespaces are not delayed by it.

The bursts of the intents are coalesced: a worker waits a bit for more intents
to come, and then processes only the essential ones (see `handling.coalesce`).
"""
import asyncio
import contextlib
import enum
import logging
from typing import TYPE_CHECKING, Dict, List, Union

from typing_extensions import Protocol

from nsclass.reactor import discovery, handling
from nsclass.structs import configuration, references
from nsclass.utilities import aiotasks

logger = logging.getLogger(__name__)


class IntentProcessor(Protocol):
    async def __call__(self, intent: handling.Intent) -> None: ...


class EOS(enum.Enum):
    """ The end-of-stream marker: the worker exits after the intents before it. """
    token = enum.auto()


if TYPE_CHECKING:
    IntentQueue = asyncio.Queue[Union[handling.Intent, EOS]]
else:
    IntentQueue = asyncio.Queue

Backlogs = Dict[references.NamespaceName, IntentQueue]


class Multiplexer:
    """
    The per-namespace queues with their workers, all in one event loop.

    A queue exists only while its worker exists: the worker removes the queue
    on exit, and the next intent of the namespace creates both anew.
    """

    def __init__(
            self,
            *,
            settings: configuration.OperatorSettings,
            processor: IntentProcessor,
    ) -> None:
        super().__init__()
        self.settings = settings
        self.processor = processor
        self.streams: Backlogs = {}
        self.changed = asyncio.Condition()
        self.scheduler = aiotasks.Scheduler(exception_handler=self._remember_failure)
        self.closed = False
        self._failures: List[BaseException] = []
        self._failed = asyncio.Event()

    def _remember_failure(self, exc: BaseException) -> None:
        self._failures.append(exc)
        self._failed.set()

    async def wait_for_failure(self) -> None:
        """
        Re-raise the first unexpected error of any worker, as soon as it happens.

        The processing logs and forgets the expected errors itself. Whatever
        escapes it (e.g. `LoginError`) is fatal for the whole operator.
        """
        await self._failed.wait()
        raise self._failures[0]

    async def enqueue(self, intent: handling.Intent) -> None:
        """ Queue the intent for its namespace's worker, starting the worker if absent. """
        if self.closed:
            logger.debug(f"Ignoring an intent after the closing: {intent!r}")
            return

        namespace = intent.namespace
        backlog = self.streams.get(namespace)
        if backlog is not None:
            await backlog.put(intent)
            return

        backlog = self.streams[namespace] = asyncio.Queue()
        await backlog.put(intent)
        await self.scheduler.spawn(self._work(namespace, backlog), name=f'worker for {namespace}')

    async def close(self) -> None:
        """
        Stop accepting the intents, let the workers finish the queued ones, then cancel them.

        The closing goes to its end even if the caller is cancelled meanwhile.
        """
        self.closed = True
        for step in (self._deplete, self.scheduler.close):
            task = asyncio.create_task(step())
            while not task.done():
                with contextlib.suppress(asyncio.CancelledError):
                    await asyncio.shield(task)

    async def _deplete(self) -> None:
        for backlog in self.streams.values():
            await backlog.put(EOS.token)

        async with self.changed:
            try:
                await asyncio.wait_for(
                    self.changed.wait_for(lambda: not self.streams or self.scheduler.empty()),
                    timeout=self.settings.queueing.exit_timeout)
            except asyncio.TimeoutError:
                pass  # the remaining workers are cancelled by the caller.

        if self.streams:
            logger.warning(f"Unprocessed intents left for {sorted(self.streams)!r}.")

    async def _work(self, namespace: references.NamespaceName, backlog: IntentQueue) -> None:
        """
        Process the namespace's intents one batch at a time, until idle or told to stop.
        """
        idle_timeout = self.settings.queueing.idle_timeout
        batch_window = self.settings.queueing.batch_window
        try:
            stopping = False
            while not stopping:
                try:
                    first = await asyncio.wait_for(backlog.get(), timeout=idle_timeout)
                except asyncio.TimeoutError:
                    # No awaiting between the check and the queue's removal in `finally`,
                    # so that no intent can be put into an orphaned queue.
                    if backlog.empty():
                        break
                    continue

                # Let the burst of intents arrive, then take everything queued by now.
                if first is not EOS.token and batch_window > 0:
                    await asyncio.sleep(batch_window)
                batch = [first]
                while not backlog.empty():
                    batch.append(backlog.get_nowait())

                intents: List[handling.Intent] = []
                for item in batch:
                    if isinstance(item, EOS):
                        stopping = True
                        break
                    intents.append(item)

                for intent in handling.coalesce(intents):
                    await self.processor(intent)

        except Exception:
            logger.exception(f"Intent processing has failed with an unexpected error for {namespace!r}.")
            raise

        finally:
            if self.streams.get(namespace) is backlog:
                del self.streams[namespace]
            async with self.changed:
                self.changed.notify_all()


def make_processor(
        *,
        registry: discovery.TypeRegistry,
        settings: configuration.OperatorSettings,
) -> IntentProcessor:
    """ Bind the intent processing to the operator's registry & settings. """
    async def processor(intent: handling.Intent) -> None:
        await handling.process_intent(intent, registry=registry, settings=settings)
    return processor

