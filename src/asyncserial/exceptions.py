# -*- coding: utf-8 -*-

"""
asyncserial exceptions
"""

class AsyncSerialError(Exception):
    """Base exception for all asyncserial errors"""
    pass

class SerialOpenError(AsyncSerialError):
    """Failed to open the serial device"""
    pass

class SerialConfigError(SerialOpenError):
    """Line settings rejected by validation or by the device"""
    pass

class SerialCloseError(AsyncSerialError):
    """An I/O error occurred while the device was being closed"""
    pass

class PlatformNotSupportedError(AsyncSerialError):
    """Platform not supported for async operations"""
    pass
