"""
Test suite for asyncserial - asynchronous serial port engine.

This package contains unit tests, integration tests, and test fixtures
for verifying both background I/O models without hardware.
"""
