# -*- coding: utf-8 -*-

"""
Platform capability layer.
Decides which background I/O model a platform can use for serial devices.
"""
import enum
import os
import sys

from typing import FrozenSet
from typing import Optional

from .exceptions import PlatformNotSupportedError

IS_DARWIN = sys.platform == 'darwin'

# macOS reports errno 45 on a read issued right after some reconfiguration
# calls; the read only has to be repeated.
_DARWIN_RETRY_ERRNOS = frozenset({45})

DEFAULT_RETRY_ERRNOS: FrozenSet[int] = (
    _DARWIN_RETRY_ERRNOS if IS_DARWIN else frozenset()
)


class IOModel(str, enum.Enum):
    """Background execution model of an open engine."""

    REACTOR = 'reactor'
    BLOCKING = 'blocking'


def default_io_model(platform: Optional[str] = None, os_name: Optional[str] = None) -> IOModel:
    """
    Pick the I/O model for the running platform.

    The asyncio reactor cannot drive serial devices on macOS, so a blocking
    read thread is used there. POSIX and Windows get the reactor; Windows
    falls back to polling inside it.
    """
    if platform is None:
        platform = sys.platform
    if os_name is None:
        os_name = os.name

    if platform == 'darwin':
        return IOModel.BLOCKING
    if os_name in ('posix', 'nt'):
        return IOModel.REACTOR
    raise PlatformNotSupportedError(
        f'Platform {os_name} not supported for async serial'
    )


def resolve_io_model(value) -> IOModel:
    """Accept an IOModel, its string value or None (platform default)."""
    if value is None:
        return default_io_model()
    try:
        return IOModel(value)
    except ValueError:
        raise PlatformNotSupportedError(f'Unknown I/O model: {value!r}') from None
