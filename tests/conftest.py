import logging

import pytest

from src.logging_config import LOGGER_NAME
from tests.fake_translatr import FakeTranslatrService


@pytest.fixture(scope="session", autouse=True)
def quiet_engine_logger():
    """Keep engine debug output out of the test run unless a test asks for it."""
    logger = logging.getLogger(LOGGER_NAME)
    previous_level = logger.level
    logger.setLevel(logging.WARNING)
    yield
    logger.setLevel(previous_level)


@pytest.fixture
def service():
    """A fresh scripted Translatr service."""
    return FakeTranslatrService()
