"""
Rudimentary type [re-]definitions for cross-versioned Python & mypy.

Some StdLib types are generics only in the type-sheds, not at runtime:
e.g. asyncio.Task, asyncio.Future, logging.LoggerAdapter.
"""
import asyncio
import logging
from typing import TYPE_CHECKING, Any, Union

if TYPE_CHECKING:
    LoggerAdapter = logging.LoggerAdapter[Any]
    Future = asyncio.Future[Any]
    Task = asyncio.Task[Any]
else:
    LoggerAdapter = logging.LoggerAdapter
    Future = asyncio.Future
    Task = asyncio.Task

# We only promise that it is based on one of the built-in loggable classes.
Logger = Union[logging.Logger, LoggerAdapter]
