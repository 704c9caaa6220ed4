import functools
import logging

import click.testing
import pytest

from nsclass.cli import main


@pytest.fixture(autouse=True)
def _restore_logging():
    # The CLI configures the global logging. Undo it for the other tests.
    names = ['', 'asyncio', 'aiohttp.access']
    loggers = [logging.getLogger(name) for name in names]
    saved = [(logger, logger.level, logger.propagate, list(logger.handlers)) for logger in loggers]
    try:
        yield
    finally:
        for logger, level, propagate, handlers in saved:
            logger.setLevel(level)
            logger.propagate = propagate
            logger.handlers[:] = handlers


@pytest.fixture()
def runner():
    runner = click.testing.CliRunner()
    return runner


@pytest.fixture()
def invoke(runner):
    return functools.partial(runner.invoke, main)


@pytest.fixture()
def real_run(mocker):
    return mocker.patch('nsclass.reactor.running.run')
