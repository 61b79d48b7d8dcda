# -*- coding: utf-8 -*-

"""
asyncserial - Asynchronous serial port engine

Features:
- Received bytes delivered to a callback on a background thread
- Non-blocking, ordered writes with at most one write outstanding
- asyncio reactor model, blocking read thread where the reactor cannot
  drive serial devices (macOS)
- Error flag and close-on-error instead of exceptions across threads
"""

from .engine import SerialEngine
from .engine import CallbackSerial
from .engine import BufferedSerial

from .config import LineSettings
from .config import FlowControl
from .compat import IOModel
from .compat import default_io_model

from .exceptions import AsyncSerialError
from .exceptions import SerialOpenError
from .exceptions import SerialConfigError
from .exceptions import SerialCloseError
from .exceptions import PlatformNotSupportedError

__version__ = "0.1.0"
__license__ = "MIT"

__all__ = [
    # Engines
    'SerialEngine',
    'CallbackSerial',
    'BufferedSerial',

    # Configuration
    'LineSettings',
    'FlowControl',
    'IOModel',
    'default_io_model',

    # Exceptions
    'AsyncSerialError',
    'SerialOpenError',
    'SerialConfigError',
    'SerialCloseError',
    'PlatformNotSupportedError',
]
