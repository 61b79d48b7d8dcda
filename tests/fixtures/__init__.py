"""
Test fixtures for asyncserial testing.

Provides fake serial devices and pseudo-terminal pairs for testing without
hardware dependencies.
"""

from .virtual_ports import (
    LoopbackSerial,
    loopback_serial,
    chunked_serial,
    virtual_serial_pair,
    mock_serial_config,
    different_baudrates,
)

__all__ = [
    'LoopbackSerial',
    'loopback_serial',
    'chunked_serial',
    'virtual_serial_pair',
    'mock_serial_config',
    'different_baudrates',
]
