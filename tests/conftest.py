# tests/conftest.py
import logging
import os

import pytest

from wickrelay.core import log
from wickrelay.core.dispatcher import Dispatcher
from wickrelay.core.metrics import start_exporter, stop_exporter


@pytest.fixture(scope="session", autouse=True)
def _bootstrap_logging_and_metrics():
    log.setup(os.getenv("LOG_LEVEL", "WARNING"))

    interval = float(os.getenv("METRICS_INTERVAL_TEST", "1.0"))
    start_exporter(interval_sec=interval, logger=logging.getLogger("metrics"))
    yield
    stop_exporter()


class FakeTransport:
    """Records what the dispatcher sends instead of writing to sockets."""

    def __init__(self):
        self.sent = []        # (conn, event, data)
        self.broadcasts = []  # (event, data)

    async def emit(self, conn, event, data):
        self.sent.append((conn, event, data))

    async def broadcast(self, event, data):
        self.broadcasts.append((event, data))


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def dispatcher(transport):
    return Dispatcher(transport=transport)
