import logging.handlers

import pytest

from nsclass.engines.loggers import ObjectLogger


@pytest.fixture(autouse=True)
def _caplog_all_levels(caplog):
    caplog.set_level(0)


@pytest.fixture()
def ns_record():
    handler = logging.handlers.BufferingHandler(capacity=100)
    logger = ObjectLogger(namespace='namespace1')
    logger.logger.addHandler(handler)
    try:
        logger.info("hello")
    finally:
        logger.logger.removeHandler(handler)
    return handler.buffer[0]


@pytest.fixture()
def plain_record():
    handler = logging.handlers.BufferingHandler(capacity=100)
    logger = logging.getLogger('nsclass.tests.plain')
    logger.addHandler(handler)
    try:
        logger.info("hello")
    finally:
        logger.removeHandler(handler)
    return handler.buffer[0]
