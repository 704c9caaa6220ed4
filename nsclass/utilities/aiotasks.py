"""
Orchestration of the asyncio tasks: guarding, waiting, stopping, scheduling.

Only the tasks are supported, not arbitrary awaitables: the tasks are not only
awaited here, but also cancelled, and inspected for their results.
"""
import asyncio
from typing import Any, Callable, Collection, Coroutine, Optional, Set, Tuple

from nsclass.utilities import typedefs
from nsclass.utilities.typedefs import Task


async def guard(
        coro: Coroutine[Any, Any, Any],
        name: str,
        *,
        logger: Optional[typedefs.Logger] = None,
) -> None:
    """
    A guard for an eternal (never-finishing) root task of the operator.

    The root tasks only exit when cancelled. If one exits on its own,
    it is a misbehaviour that is logged as a warning. Errors are logged
    with the traceback and re-raised for the orchestrator to stop the operator.
    """
    capname = name.capitalize()
    try:
        await coro
    except asyncio.CancelledError:
        if logger is not None:
            logger.debug(f"{capname} is cancelled.")
        raise
    except Exception as e:
        if logger is not None:
            logger.exception(f"{capname} has failed: {e}")
        raise
    else:
        if logger is not None:
            logger.warning(f"{capname} has finished unexpectedly.")


def create_guarded_task(
        coro: Coroutine[Any, Any, Any],
        name: str,
        *,
        logger: Optional[typedefs.Logger] = None,
) -> Task:
    """ A shortcut for a named task with a guard (the name is used in both). """
    return asyncio.create_task(guard(coro=coro, name=name, logger=logger), name=name)


async def wait(
        tasks: Collection[Task],
        *,
        timeout: Optional[float] = None,
        return_when: Any = asyncio.ALL_COMPLETED,
) -> Tuple[Set[Task], Set[Task]]:
    """ Same as :func:`asyncio.wait`, but an empty collection is fine here. """
    if not tasks:
        return set(), set()
    return await asyncio.wait(tasks, timeout=timeout, return_when=return_when)


async def stop(
        tasks: Collection[Task],
        *,
        title: str,
        quiet: bool = False,
        cancelled: bool = False,
        interval: Optional[float] = None,
        logger: Optional[typedefs.Logger] = None,
) -> Tuple[Set[Task], Set[Task]]:
    """
    Cancel the tasks and wait until they are done.

    With the interval, the still running tasks are reported every so often,
    so that the stuck ones are visible in the logs. Without it, the waiting
    is done in one go, however long it takes. In the quiet mode, nothing is
    logged unless some tasks are stuck for longer than one interval.

    Returns the tasks that are finished, and those that are still running
    (the latter is only possible if the stopping itself is cancelled).
    """
    captitle = title.capitalize()
    if not tasks:
        if logger is not None and not quiet:
            logger.debug(f"{captitle} tasks stopping is skipped: no tasks given.")
        return set(), set()

    for task in tasks:
        task.cancel()

    finished: Set[Task] = set()
    pending: Set[Task] = set(tasks)
    rounds = 0
    while pending:
        rounds += 1
        loud = logger is not None and (not quiet or rounds > 1)
        try:
            done, pending = await wait(pending, timeout=interval)
        except asyncio.CancelledError:
            # Stopping the stopper: leave the tasks to finish on their own, but report them.
            pending = {task for task in tasks if not task.done()}
            if logger is not None and (loud or pending):
                why = 'double-cancelling at stopping' if cancelled else 'cancelling at stopping'
                logger.debug(f"{captitle} tasks {'are not' if pending else 'are'} stopped: "
                             f"{why}; tasks left: {pending!r}")
            raise
        finished |= done
        if logger is not None and (loud or pending):
            why = 'cancelling normally' if cancelled else 'finishing normally'
            logger.debug(f"{captitle} tasks {'are not' if pending else 'are'} stopped: "
                         f"{why}; tasks left: {pending!r}")

    return finished, pending


async def reraise(
        tasks: Collection[Task],
) -> None:
    """ Raise the first error of the finished tasks, if any. Cancellations are not errors. """
    for task in tasks:
        if not task.cancelled():
            task.result()


async def all_tasks(
        *,
        ignored: Collection[Task] = frozenset(),
) -> Collection[Task]:
    """ All tasks of the event loop, except the current one and the ignored ones. """
    current_task = asyncio.current_task()
    return {task for task in asyncio.all_tasks() if task is not current_task and task not in ignored}


class Scheduler:
    """
    An owner of "fire-and-forget" tasks, such as the per-namespace workers.

    The spawned tasks are neither awaited nor checked by the spawning code.
    Their errors are passed to the exception handler instead (if any),
    and the tasks are cancelled when the scheduler is closed.
    """

    def __init__(
            self,
            *,
            exception_handler: Optional[Callable[[BaseException], None]] = None,
    ) -> None:
        super().__init__()
        self._closed = False
        self._exception_handler = exception_handler
        self._tasks: Set[Task] = set()
        self._idle = asyncio.Event()
        self._idle.set()

    def empty(self) -> bool:
        """ Check if the scheduler has nothing running. """
        return not self._tasks

    async def wait(self) -> None:
        """ Wait until all the spawned tasks are done. """
        await self._idle.wait()

    async def close(self) -> None:
        """ Stop accepting new tasks, cancel the running ones, and wait for them. """
        self._closed = True
        for task in self._tasks:
            task.cancel()
        await self.wait()

    async def spawn(
            self,
            coro: Coroutine[Any, Any, Any],
            *,
            name: Optional[str] = None,
    ) -> None:
        """
        Start a coroutine as a task owned by the scheduler.

        A closed scheduler does not start anything: the coroutine is closed
        unstarted (to avoid the "never awaited" warnings), and an error is raised.
        """
        if self._closed:
            coro.close()
            raise RuntimeError("Cannot add new coroutines to a closed and inactive scheduler.")
        task = asyncio.create_task(coro, name=name)
        task.add_done_callback(self._task_done_callback)
        self._tasks.add(task)
        self._idle.clear()

    def _task_done_callback(self, task: Task) -> None:
        # Retrieving the exception also prevents the "never retrieved" warnings.
        exc = None if task.cancelled() else task.exception()
        if exc is not None and self._exception_handler is not None:
            self._exception_handler(exc)

        self._tasks.discard(task)
        if not self._tasks:
            self._idle.set()
