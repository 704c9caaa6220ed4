"""
The stop-flags of the operator, of whatever kind the embedding code prefers.

A flag is raised once and stays raised. The asyncio primitives must belong
to the operator's loop; the threading & concurrent ones can be raised from
other threads (e.g. when the operator runs in a thread of a bigger app).
"""
import asyncio
import concurrent.futures
import threading
from typing import Any, Optional, Union

from nsclass.utilities import typedefs

Flag = Union[typedefs.Future, asyncio.Event, concurrent.futures.Future, threading.Event]

_FUTURES = (asyncio.Future, concurrent.futures.Future)
_EVENTS = (asyncio.Event, threading.Event)


def _unsupported(flag: object) -> TypeError:
    return TypeError(f"Unsupported type of a flag: {flag!r}")


async def wait_flag(
        flag: Optional[Flag],
) -> Any:
    """ Wait until the flag is raised. The threaded ones are waited in an executor. """
    loop = asyncio.get_running_loop()
    if flag is None:
        return None
    elif isinstance(flag, asyncio.Future):
        return await flag
    elif isinstance(flag, asyncio.Event):
        return await flag.wait()
    elif isinstance(flag, concurrent.futures.Future):
        return await loop.run_in_executor(None, flag.result)
    elif isinstance(flag, threading.Event):
        return await loop.run_in_executor(None, flag.wait)
    else:
        raise _unsupported(flag)


async def raise_flag(
        flag: Optional[Flag],
) -> None:
    if flag is None:
        pass
    elif isinstance(flag, _FUTURES):
        flag.set_result(None)
    elif isinstance(flag, _EVENTS):
        flag.set()
    else:
        raise _unsupported(flag)


def check_flag(
        flag: Optional[Flag],
) -> Optional[bool]:
    """ Check if the flag is raised; ``None`` if there is no flag at all. """
    if flag is None:
        return None
    elif isinstance(flag, _FUTURES):
        return flag.done()
    elif isinstance(flag, _EVENTS):
        return flag.is_set()
    else:
        raise _unsupported(flag)
