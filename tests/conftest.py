# -*- coding: utf-8 -*-

"""
Pytest configuration and fixtures for asyncserial tests.
"""
import pytest
import threading
import time
from types import SimpleNamespace
from unittest.mock import Mock

from asyncserial.state import CallbackSlot
from asyncserial.state import ErrorState
from asyncserial.state import WriteQueue

# Import all fixtures from virtual_ports
from .fixtures.virtual_ports import *


def wait_until(predicate, timeout=2.0, interval=0.005):
    """Poll predicate until it holds; False on timeout."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def shared_state():
    """Queue, callback slot, error flag and open flag of one engine."""
    state = SimpleNamespace(
        queue=WriteQueue(),
        callback=CallbackSlot(),
        error=ErrorState(),
        open_flag=threading.Event(),
        received=[],
    )
    state.callback.set(state.received.append)
    state.open_flag.set()
    return state


@pytest.fixture
def mock_serial():
    """Mock serial port exposing a descriptor."""
    instance = Mock()
    instance.port = '/dev/ttyTEST0'
    instance.is_open = True
    instance.fileno.return_value = 42
    instance.in_waiting = 0
    instance.read.return_value = b""
    instance.write.side_effect = lambda data: len(data)
    instance.close.return_value = None
    return instance
