# -*- coding: utf-8 -*-

"""
Background execution contexts.

An open engine owns exactly one context, which performs all device I/O:

- ReactorContext: a private asyncio loop run by one background thread
- BlockingWorkerContext: one background thread doing blocking reads, for
  platforms where the reactor cannot drive serial devices
"""

import asyncio
import logging
import threading
import serial

from typing import FrozenSet
from typing import Optional

from .compat import IOModel
from .compat import resolve_io_model
from .state import CallbackSlot
from .state import ErrorState
from .state import WriteQueue
from .transport import SerialChannel
from .transport import error_code

log = logging.getLogger('asyncserial.context')


class ExecutionContext:
    """Interface shared by both execution models."""

    io_model: IOModel

    def __init__(self):
        self._thread: Optional[threading.Thread] = None

    def start(self):
        """Arm the first read and start the background thread."""
        raise NotImplementedError

    def schedule_write(self):
        """Transmit whatever the write queue holds."""
        raise NotImplementedError

    def cancel_and_stop(self):
        """Cancel outstanding I/O, release the device and join the thread."""
        raise NotImplementedError

    def release_nowait(self):
        """Release the device without joining; for use on the background thread."""
        raise NotImplementedError

    def get_write_buffer_size(self) -> int:
        """Bytes accepted by write() and not yet handed to the device."""
        raise NotImplementedError

    def is_background_thread(self) -> bool:
        return self._thread is not None and threading.current_thread() is self._thread


class ReactorContext(ExecutionContext):
    """Event loop in a dedicated thread; completions run serially on it."""

    io_model = IOModel.REACTOR

    def __init__(
            self,
            serial_instance: serial.SerialBase,
            *,
            queue: WriteQueue,
            callback: CallbackSlot,
            error: ErrorState,
            open_flag: threading.Event,
            read_buffer_size: int = 512,
            retry_errnos: FrozenSet[int] = frozenset(),
            poll_interval: float = 0.005
        ):
        super().__init__()
        self._serial = serial_instance
        self._loop = asyncio.new_event_loop()
        # Set when nobody will join the thread; it closes the loop itself
        self._detached = False
        self._channel = SerialChannel(
            self._loop,
            serial_instance,
            queue=queue,
            callback=callback,
            error=error,
            open_flag=open_flag,
            read_buffer_size=read_buffer_size,
            retry_errnos=retry_errnos,
            poll_interval=poll_interval,
            on_closed=self._stop_soon,
        )

    @property
    def channel(self) -> SerialChannel:
        return self._channel

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop

    def _stop_soon(self):
        # Let the cancelled polling task finish before the loop stops
        self._loop.call_soon(self._loop.stop)

    def _run(self):
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_forever()
        finally:
            asyncio.set_event_loop(None)
            if self._detached:
                self._loop.close()

    def start(self):
        self._channel.start()
        self._thread = threading.Thread(
            target=self._run,
            name=f'asyncserial-reactor-{self._serial.port}',
            daemon=True,
        )
        self._thread.start()

    def schedule_write(self):
        try:
            self._loop.call_soon_threadsafe(self._channel.drain)
        except RuntimeError:
            log.debug('Write scheduled after the reactor was closed')

    def cancel_and_stop(self):
        if self._loop.is_closed():
            return

        if self._thread is not None and self._thread.is_alive():
            self._loop.call_soon_threadsafe(self._channel.close)
            self._thread.join()

        # Loop is stopped; release the device if it never got the chance
        if not self._channel.closed:
            self._channel.close()
        self._loop.close()

    def release_nowait(self):
        self._detached = True
        self._loop.call_soon(self._channel.close)

    def get_write_buffer_size(self) -> int:
        return self._channel.get_write_buffer_size()


class BlockingWorkerContext(ExecutionContext):
    """
    Blocking read loop in a background thread.

    Writes are issued synchronously by the calling thread.
    """

    io_model = IOModel.BLOCKING

    def __init__(
            self,
            serial_instance: serial.SerialBase,
            *,
            queue: WriteQueue,
            callback: CallbackSlot,
            error: ErrorState,
            open_flag: threading.Event,
            read_buffer_size: int = 512,
            retry_errnos: FrozenSet[int] = frozenset(),
            error_backoff: float = 0.05
        ):
        super().__init__()
        self._serial = serial_instance
        self._queue = queue
        self._callback = callback
        self._error = error
        self._open = open_flag
        self._read_buffer_size = read_buffer_size
        self._retry_errnos = frozenset(retry_errnos)
        self._error_backoff = error_backoff
        self._stopping = threading.Event()
        self._write_lock = threading.Lock()

        self._serial.timeout = None
        self._serial.write_timeout = None

    def start(self):
        self._thread = threading.Thread(
            target=self._read_loop,
            name=f'asyncserial-reader-{self._serial.port}',
            daemon=True,
        )
        self._thread.start()

    def _read_loop(self):
        while self._open.is_set():
            try:
                size = min(max(self._serial.in_waiting, 1), self._read_buffer_size)
                data = self._serial.read(size)
            except (serial.SerialException, OSError) as e:
                if not self._open.is_set():
                    break
                if error_code(e) in self._retry_errnos:
                    continue
                log.error('Serial read error on %s: %s', self._serial.port, e)
                self._error.set()
                self._stopping.wait(self._error_backoff)
                continue
            except TypeError:
                # pyserial's posix read() passes fd=None to select() once
                # close() ran underneath it
                if self._open.is_set():
                    raise
                break

            if not data:
                continue

            try:
                self._callback.invoke(data)
            except Exception:
                log.exception('read callback failed')

    def schedule_write(self):
        with self._write_lock:
            data = self._queue.take()
            if not data:
                return
            try:
                written = self._serial.write(data)
            except (serial.SerialException, OSError) as e:
                log.error('Serial write error on %s: %s', self._serial.port, e)
                self._error.set()
                return
            if written is not None and written != len(data):
                log.error('Short write on %s: %d of %d bytes',
                          self._serial.port, written, len(data))
                self._error.set()

    def cancel_and_stop(self):
        self._stopping.set()

        cancel_read = getattr(self._serial, 'cancel_read', None)
        if cancel_read is not None:
            try:
                cancel_read()
            except (serial.SerialException, OSError) as e:
                log.debug('cancel_read failed on %s: %s', self._serial.port, e)

        try:
            self._serial.close()
        except (serial.SerialException, OSError) as e:
            log.error('Failed to close %s: %s', self._serial.port, e)
            self._error.set()

        if self._thread is not None:
            self._thread.join()

    def release_nowait(self):
        # The read loop sees the cleared open flag once the callback returns
        self._stopping.set()
        try:
            self._serial.close()
        except (serial.SerialException, OSError) as e:
            log.error('Failed to close %s: %s', self._serial.port, e)
            self._error.set()

    def get_write_buffer_size(self) -> int:
        return len(self._queue)


def create_execution_context(
        io_model,
        serial_instance: serial.SerialBase,
        *,
        queue: WriteQueue,
        callback: CallbackSlot,
        error: ErrorState,
        open_flag: threading.Event,
        read_buffer_size: int = 512,
        retry_errnos: FrozenSet[int] = frozenset(),
        poll_interval: float = 0.005,
        error_backoff: float = 0.05
    ) -> ExecutionContext:
    """Build the context for io_model (None selects the platform default)."""
    shared = dict(
        queue=queue,
        callback=callback,
        error=error,
        open_flag=open_flag,
        read_buffer_size=read_buffer_size,
        retry_errnos=retry_errnos,
    )
    if resolve_io_model(io_model) is IOModel.REACTOR:
        return ReactorContext(serial_instance, poll_interval=poll_interval, **shared)
    return BlockingWorkerContext(serial_instance, error_backoff=error_backoff, **shared)
