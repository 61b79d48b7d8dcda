# -*- coding: utf-8 -*-

"""
Read and write channels of an open serial device, driven by an asyncio loop.
Every method here runs on the loop's thread.
"""

import asyncio
import logging
import os
import threading
import serial

from typing import Callable
from typing import FrozenSet
from typing import Optional

from .state import CallbackSlot
from .state import ErrorState
from .state import WriteQueue

log = logging.getLogger('asyncserial.transport')


def error_code(exc: BaseException) -> Optional[int]:
    """errno of an exception, looking through pyserial's wrapping."""
    while exc is not None:
        code = getattr(exc, 'errno', None)
        if code is not None:
            return code
        exc = exc.__cause__ or exc.__context__
    return None


class SerialChannel:
    """
    Asynchronous read and write channels for one serial device.

    Features:
    - Descriptor readiness on POSIX (add_reader/add_writer)
    - Polling task where no usable descriptor exists (Windows, URL handlers)
    - At most one outstanding write; bytes queued meanwhile are coalesced
    - Close-on-error for failures while the device is marked open
    """

    def __init__(
            self,
            loop: asyncio.AbstractEventLoop,
            serial_instance: serial.SerialBase,
            *,
            queue: WriteQueue,
            callback: CallbackSlot,
            error: ErrorState,
            open_flag: threading.Event,
            read_buffer_size: int = 512,
            retry_errnos: FrozenSet[int] = frozenset(),
            poll_interval: float = 0.005,
            on_closed: Optional[Callable[[], None]] = None
        ):
        self._loop = loop
        self._serial = serial_instance
        self._queue = queue
        self._callback = callback
        self._error = error
        self._open = open_flag
        self._read_buffer_size = read_buffer_size
        self._retry_errnos = frozenset(retry_errnos)
        self._poll_interval = poll_interval
        self._on_closed = on_closed
        self._closed = False

        # Bytes of the outstanding write, None while no write is outstanding
        self._in_flight: Optional[bytes] = None

        self._fd: Optional[int] = None
        self._reader_active = False
        self._writer_active = False
        self._poll_task: Optional[asyncio.Task] = None

        # Reads never block the loop
        self._serial.timeout = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def write_in_flight(self) -> bool:
        return self._in_flight is not None

    @property
    def polling(self) -> bool:
        return self._poll_task is not None

    def get_write_buffer_size(self) -> int:
        """Bytes queued plus bytes of the outstanding write not yet sent"""
        in_flight = len(self._in_flight) if self._in_flight is not None else 0
        return len(self._queue) + in_flight

    def start(self):
        """Arm the first read"""
        if os.name == 'posix' and self._setup_posix_async():
            # Partial writes return at once and wait for add_writer
            self._serial.write_timeout = 0
            return
        # pyserial's URL handlers treat a zero write timeout as an
        # immediate timeout, so these devices write to completion.
        self._serial.write_timeout = None
        self._start_polling()

    def _setup_posix_async(self) -> bool:
        """POSIX: readiness callbacks on the device descriptor"""
        try:
            fd = self._serial.fileno()
            self._loop.add_reader(fd, self._read_ready)
        except (OSError, ValueError, NotImplementedError) as e:
            # URL handlers have no descriptor; regular files and some
            # pseudo devices are refused by the selector.
            log.debug('No descriptor readiness for %s, polling: %s',
                      self._serial.port, e)
            return False
        self._fd = fd
        self._reader_active = True
        return True

    def _start_polling(self):
        if not self._closed and self._poll_task is None:
            self._poll_task = self._loop.create_task(self._poll_loop())

    async def _poll_loop(self):
        """Polling loop for devices without descriptor readiness"""
        try:
            while not self._closed:
                if self._serial.in_waiting > 0:
                    self._read_ready()

                if self._in_flight is not None:
                    self._write_ready()

                await asyncio.sleep(self._poll_interval)
        except (serial.SerialException, OSError) as e:
            self._fatal_error(e)

    def _read_ready(self):
        """Read completion: deliver the chunk, stay armed for the next one"""
        if self._closed:
            return

        try:
            data = self._serial.read(self._read_buffer_size)
        except (serial.SerialException, OSError) as e:
            if error_code(e) in self._retry_errnos:
                log.debug('Retrying read on %s after %s', self._serial.port, e)
                return
            self._fatal_error(e)
            return

        if data:
            self._deliver(data)

    def _deliver(self, data: bytes):
        try:
            self._callback.invoke(data)
        except Exception as e:
            self._loop.call_exception_handler({
                'message': 'read callback failed',
                'exception': e,
                'channel': self,
            })

    def drain(self):
        """
        Start transmitting queued bytes.

        Does nothing while a write is outstanding; its completion picks up
        whatever was queued in the meantime.
        """
        if self._closed or self._in_flight is not None:
            return
        self._send_next()

    def _send_next(self):
        data = self._queue.take()
        if not data:
            self._in_flight = None
            self._remove_writer()
            return
        self._in_flight = data
        self._write_ready()

    def _write_ready(self):
        """Push the outstanding write; chain the next one once it completes"""
        if self._closed or self._in_flight is None:
            self._remove_writer()
            return

        data = self._in_flight
        try:
            written = self._serial.write(data)
        except (BlockingIOError, InterruptedError):
            # Try again later
            written = 0
        except (serial.SerialException, OSError) as e:
            self._fatal_error(e)
            return

        if written < len(data):
            self._in_flight = data[written:]
            self._ensure_writer()
            return

        self._send_next()

    def _ensure_writer(self):
        """Wait for write readiness; the polling task covers other devices"""
        if self._fd is not None and not self._writer_active:
            try:
                self._loop.add_writer(self._fd, self._write_ready)
                self._writer_active = True
            except (OSError, ValueError, NotImplementedError):
                self._start_polling()

    def _remove_writer(self):
        if self._fd is not None and self._writer_active:
            self._loop.remove_writer(self._fd)
            self._writer_active = False

    def _cleanup_reader(self):
        if self._fd is not None and self._reader_active:
            self._loop.remove_reader(self._fd)
            self._reader_active = False

    def _fatal_error(self, exc: Exception):
        """Close-on-error, unless the failure comes from closing the device"""
        if self._closed:
            return
        if not self._open.is_set():
            log.debug('Ignoring %r on %s: device is closing', exc, self._serial.port)
            return

        log.error('Serial I/O error on %s: %s', self._serial.port, exc)
        self._error.set()
        self._open.clear()
        self.close()

    def close(self):
        """Cancel outstanding I/O and release the device"""
        if self._closed:
            return
        self._closed = True

        self._cleanup_reader()
        self._remove_writer()
        if self._poll_task is not None and not self._poll_task.done():
            self._poll_task.cancel()
        self._in_flight = None

        try:
            self._serial.close()
        except (serial.SerialException, OSError) as e:
            log.error('Failed to close %s: %s', self._serial.port, e)
            self._error.set()

        if self._on_closed is not None:
            self._on_closed()
