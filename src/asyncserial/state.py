# -*- coding: utf-8 -*-

"""
State shared between the foreground and the background I/O thread.
"""
import threading

from typing import Callable
from typing import Optional

ReadCallback = Callable[[bytes], None]


class ErrorState:
    """Error flag polled by the foreground and set by background I/O."""

    def __init__(self):
        self._lock = threading.Lock()
        self._error = False

    def set(self):
        with self._lock:
            self._error = True

    def clear(self):
        with self._lock:
            self._error = False

    def is_set(self) -> bool:
        with self._lock:
            return self._error


class CallbackSlot:
    """
    Replaceable read handler.

    Handlers run while the slot lock is held, so ``clear()`` or ``set()``
    from another thread waits for a running handler to return. After that
    the old handler is never called again. The lock is re-entrant, which
    lets a handler replace or clear itself.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._callback: Optional[ReadCallback] = None

    def set(self, callback: Optional[ReadCallback]):
        if callback is not None and not callable(callback):
            raise TypeError('read callback must be callable')
        with self._lock:
            self._callback = callback

    def clear(self):
        self.set(None)

    def is_set(self) -> bool:
        return self._callback is not None

    def invoke(self, data: bytes) -> bool:
        """Call the handler with data; False if no handler is registered."""
        with self._lock:
            callback = self._callback
            if callback is None:
                return False
            callback(data)
            return True


class WriteQueue:
    """Outgoing bytes waiting for the next drain."""

    def __init__(self):
        self._lock = threading.Lock()
        self._pending = bytearray()

    def append(self, data: bytes):
        with self._lock:
            self._pending += data

    def take(self) -> bytes:
        """Move everything queued out of the queue, leaving it empty."""
        with self._lock:
            data = bytes(self._pending)
            self._pending.clear()
        return data

    def clear(self):
        with self._lock:
            self._pending.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)
