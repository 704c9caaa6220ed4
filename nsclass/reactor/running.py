"""
The operator's lifecycle: startup, the root tasks, and the shutdown.

The root tasks are few and run forever: the two watchers, the intent
processing, the optional health reporter, and the infrastructural tasks
for stopping and cleaning up. As soon as any of them exits (for any reason),
the whole operator goes down: the rest of the root tasks are cancelled,
then whatever they have spawned is given a few seconds to finish.
"""
import asyncio
import logging
import signal
import threading
from typing import Collection, MutableSequence, Optional, Sequence

from nsclass.clients import auth, watching
from nsclass.engines import probing
from nsclass.reactor import discovery, observation, queueing
from nsclass.structs import configuration, credentials
from nsclass.utilities import aiotasks, piggybacking, primitives, typedefs

logger = logging.getLogger(__name__)

# How long the tasks spawned during the runtime can take to finish after the root tasks are gone.
HUNG_TASKS_TIMEOUT = 5.0


def run(
        *,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        settings: Optional[configuration.OperatorSettings] = None,
        registry: Optional[discovery.TypeRegistry] = None,
        liveness_endpoint: Optional[str] = None,
        stop_flag: Optional[primitives.Flag] = None,
        ready_flag: Optional[primitives.Flag] = None,
        vault: Optional[credentials.Vault] = None,
) -> None:
    """ Run the operator in a blocking way, e.g. from the CLI. """
    coro = operator(
        settings=settings,
        registry=registry,
        liveness_endpoint=liveness_endpoint,
        stop_flag=stop_flag,
        ready_flag=ready_flag,
        vault=vault,
    )
    try:
        if loop is None:
            asyncio.run(coro)
        else:
            loop.run_until_complete(coro)
    except asyncio.CancelledError:
        pass


async def operator(
        *,
        settings: Optional[configuration.OperatorSettings] = None,
        registry: Optional[discovery.TypeRegistry] = None,
        liveness_endpoint: Optional[str] = None,
        stop_flag: Optional[primitives.Flag] = None,
        ready_flag: Optional[primitives.Flag] = None,
        vault: Optional[credentials.Vault] = None,
) -> None:
    """
    Run the operator in an existing event loop, e.g. when embedded into an app.

    The tasks of the embedding app, which exist before the operator is started,
    are left intact on the operator's exit. Everything else is stopped.
    """
    preexisting = await aiotasks.all_tasks()
    root_tasks = await spawn_tasks(
        settings=settings,
        registry=registry,
        liveness_endpoint=liveness_endpoint,
        stop_flag=stop_flag,
        ready_flag=ready_flag,
        vault=vault,
    )
    await run_tasks(root_tasks, ignored=preexisting)


async def spawn_tasks(
        *,
        settings: Optional[configuration.OperatorSettings] = None,
        registry: Optional[discovery.TypeRegistry] = None,
        liveness_endpoint: Optional[str] = None,
        stop_flag: Optional[primitives.Flag] = None,
        ready_flag: Optional[primitives.Flag] = None,
        vault: Optional[credentials.Vault] = None,
) -> Collection[typedefs.Task]:
    """
    Prepare the operator and start its root tasks.

    The login and the discovery happen here, before any task is started.
    Their failures (`LoginError`, `DiscoveryError`) mean that the operator
    cannot work at all, so they escalate directly to the caller.
    """
    settings = configuration.OperatorSettings() if settings is None else settings
    vault = credentials.Vault() if vault is None else vault
    signal_flag: typedefs.Future = asyncio.Future()

    # All API calls of this operator (and of its sub-tasks) take the credentials from here.
    auth.vault_var.set(vault)
    if not vault:
        await vault.populate(piggybacking.login(logger=logger))

    # Discovered once per process. New CRDs in the cluster are only seen after a restart.
    if registry is None:
        registry = await discovery.build_registry(settings=settings, logger=logger)

    # One multiplexer for both watchers: so that each namespace is handled sequentially.
    multiplexer = queueing.Multiplexer(
        settings=settings,
        processor=queueing.make_processor(registry=registry, settings=settings),
    )
    ns_health = watching.WatchHealth(name='namespaces')
    cls_health = watching.WatchHealth(name='namespaceclasses')

    tasks: MutableSequence[typedefs.Task] = []
    tasks.append(asyncio.create_task(
        _stop_flag_checker(signal_flag=signal_flag, stop_flag=stop_flag),
        name="stop-flag checker"))
    tasks.append(asyncio.create_task(
        _ultimate_termination(settings=settings, stop_flag=stop_flag),
        name="ultimate termination"))
    tasks.append(asyncio.create_task(
        _cleanup_activities(root_tasks=tasks, multiplexer=multiplexer, vault=vault),
        name="cleanup activities"))
    if liveness_endpoint:
        tasks.append(aiotasks.create_guarded_task(
            probing.health_reporter(endpoint=liveness_endpoint, healths=[ns_health, cls_health]),
            name="health reporter", logger=logger))
    tasks.append(aiotasks.create_guarded_task(
        multiplexer.wait_for_failure(),
        name="intent processing", logger=logger))
    tasks.append(aiotasks.create_guarded_task(
        observation.namespace_watcher(settings=settings, multiplexer=multiplexer, health=ns_health),
        name="namespace watcher", logger=logger))
    tasks.append(aiotasks.create_guarded_task(
        observation.class_watcher(settings=settings, multiplexer=multiplexer, health=cls_health),
        name="class watcher", logger=logger))

    # Let the guarded tasks start, so that their cancellations are logged properly.
    await asyncio.sleep(0)

    # SIGINT/SIGTERM stop the operator gracefully. Only possible in the main thread on Unix.
    if threading.current_thread() is not threading.main_thread():
        logger.warning("OS signals are ignored: running not in the main thread.")
    else:
        loop = asyncio.get_running_loop()
        try:
            for signum in [signal.SIGINT, signal.SIGTERM]:
                loop.add_signal_handler(signum, signal_flag.set_result, signum)
        except NotImplementedError:
            logger.warning("OS signals are ignored: can't add signal handler in Windows.")

    logger.info("The operator is started: watching the namespaces and the classes.")
    await primitives.raise_flag(ready_flag)
    return tasks


async def run_tasks(
        root_tasks: Collection[typedefs.Task],
        *,
        ignored: Collection[typedefs.Task] = frozenset(),
) -> None:
    """
    Wait until any root task exits, then stop everything, and re-raise its errors.

    The root tasks never exit normally, so any exit means the operator's end.
    The sub-tasks still running after the root tasks are stopped (e.g. the API calls)
    are "hung" ones: they get `HUNG_TASKS_TIMEOUT` to finish, and are cancelled then.
    """
    try:
        root_done, root_pending = await aiotasks.wait(root_tasks, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        await _stop_everything(root_tasks, ignored=ignored)
        raise

    root_cancelled, _ = await aiotasks.stop(root_pending, title="Root", logger=logger)

    hung_tasks = await aiotasks.all_tasks(ignored=ignored)
    try:
        hung_done, hung_pending = await aiotasks.wait(hung_tasks, timeout=HUNG_TASKS_TIMEOUT)
    except asyncio.CancelledError:
        await aiotasks.stop(hung_tasks, title="Hung", logger=logger, cancelled=True, interval=1)
        raise
    hung_cancelled, _ = await aiotasks.stop(hung_pending, title="Hung", logger=logger, interval=1)

    await aiotasks.reraise(root_done | root_cancelled | hung_done | hung_cancelled)


async def _stop_everything(
        root_tasks: Collection[typedefs.Task],
        *,
        ignored: Collection[typedefs.Task],
) -> None:
    # The operator itself is cancelled from outside: no graceful period for anything.
    await aiotasks.stop(root_tasks, title="Root", logger=logger, cancelled=True, interval=10)
    hung_tasks = await aiotasks.all_tasks(ignored=ignored)
    await aiotasks.stop(hung_tasks, title="Hung", logger=logger, cancelled=True, interval=1)


async def _stop_flag_checker(
        signal_flag: typedefs.Future,
        stop_flag: Optional[primitives.Flag],
) -> None:
    """ Exit when an OS signal comes or the stop-flag is raised: this stops the operator. """
    waiters: MutableSequence[typedefs.Future] = [signal_flag]
    if stop_flag is not None:
        waiters.append(asyncio.create_task(primitives.wait_flag(stop_flag), name="stop-flag waiter"))

    try:
        done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        result = done.pop().result()
    except asyncio.CancelledError:
        pass  # stopping for other reasons, e.g. a failed root task.
    else:
        if isinstance(result, signal.Signals):
            logger.info("Signal %s is received. Operator is stopping.", result.name)
        else:
            logger.info("Stop-flag is raised. Operator is stopping.")
    finally:
        for waiter in waiters[1:]:
            waiter.cancel()


async def _ultimate_termination(
        *,
        settings: configuration.OperatorSettings,
        stop_flag: Optional[primitives.Flag],
) -> None:
    """
    Schedule a SIGKILL of the operator's thread once the shutdown begins.

    If the graceful shutdown gets stuck (e.g. in a non-cancellable call),
    the thread is killed anyway after the configured timeout. The shutdowns
    requested by the embedding code via the stop-flag are never forced.
    """
    try:
        await asyncio.Event().wait()
    except asyncio.CancelledError:
        timeout = settings.process.ultimate_exiting_timeout
        if timeout is not None and not primitives.check_flag(stop_flag):
            asyncio.get_running_loop().call_later(
                timeout, signal.pthread_kill, threading.get_ident(), signal.SIGKILL)


async def _cleanup_activities(
        root_tasks: Sequence[typedefs.Task],  # populated after this task is created.
        multiplexer: queueing.Multiplexer,
        vault: credentials.Vault,
) -> None:
    """
    Drain the namespace queues and close the API sessions on the operator's exit.

    It idles until cancelled, i.e. until the shutdown begins. Then it waits
    until the other root tasks are gone, so that no new intents can arrive,
    and only then closes the queues and the sessions.
    """
    try:
        await asyncio.Event().wait()
    except asyncio.CancelledError:
        pass

    current_task = asyncio.current_task()
    try:
        await aiotasks.wait([task for task in root_tasks if task is not current_task])
    except asyncio.CancelledError:
        logger.warning("Cleanup activity is not executed at all due to cancellation.")
        raise

    try:
        await multiplexer.close()
        await vault.close()
    except asyncio.CancelledError:
        logger.warning("Cleanup activity is only partially executed due to cancellation.")
        raise
