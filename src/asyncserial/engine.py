# -*- coding: utf-8 -*-

"""
Serial engine facade.

Opens a device, hands received bytes to a callback on a background thread
and transmits written bytes in the background, so callers never block on
device I/O.
"""
import logging
import threading
import serial

from typing import Any
from typing import FrozenSet
from typing import Iterable
from typing import Optional

from .compat import DEFAULT_RETRY_ERRNOS
from .compat import IOModel
from .compat import resolve_io_model
from .config import FlowControl
from .config import LineSettings
from .context import ExecutionContext
from .context import create_execution_context
from .exceptions import SerialCloseError
from .exceptions import SerialConfigError
from .exceptions import SerialOpenError
from .state import CallbackSlot
from .state import ErrorState
from .state import ReadCallback
from .state import WriteQueue

log = logging.getLogger('asyncserial.engine')

_LINE_OPTIONS = ('parity', 'bytesize', 'flow_control', 'stopbits', 'exclusive')


def _create_serial_instance(port: str, settings: LineSettings) -> serial.SerialBase:
    """
    Open the device and apply its line settings.

    Handles both device paths and pyserial URLs (e.g. 'loop://').
    """
    try:
        return serial.serial_for_url(port, **settings.to_serial_kwargs())
    except ValueError as e:
        raise SerialConfigError(f'Unsupported settings for {port}: {e}') from e
    except (serial.SerialException, OSError) as e:
        raise SerialOpenError(f'Failed to open serial port {port}: {e}') from e


class SerialEngine:
    """
    Asynchronous serial port.

    Received bytes are passed to the read callback on the background thread.
    ``write()`` only queues bytes; the background context transmits them in
    call order with at most one write outstanding. Runtime I/O failures are
    never raised: the device is closed, ``is_open()`` turns false and
    ``error_status()`` true until the next successful ``open()``.

    Example:
        >>> engine = SerialEngine('/dev/ttyUSB0', 115200)
        >>> engine.set_read_callback(lambda data: print(data))
        >>> engine.write(b'AT\\r\\n')
        >>> engine.close()
    """

    def __init__(
            self,
            port: Optional[str] = None,
            baudrate: int = 9600,
            *,
            parity: str = serial.PARITY_NONE,
            bytesize: int = serial.EIGHTBITS,
            flow_control: FlowControl = FlowControl.NONE,
            stopbits: float = serial.STOPBITS_ONE,
            exclusive: Optional[bool] = None,
            io_model: Optional[IOModel] = None,
            read_buffer_size: int = 512,
            retry_errnos: Optional[Iterable[int]] = None,
            poll_interval: float = 0.005,
            error_backoff: float = 0.05
        ):
        if read_buffer_size <= 0:
            raise ValueError(f'read_buffer_size must be > 0, got {read_buffer_size}')

        self._io_model = resolve_io_model(io_model)
        self._read_buffer_size = read_buffer_size
        self._retry_errnos: FrozenSet[int] = (
            DEFAULT_RETRY_ERRNOS if retry_errnos is None else frozenset(retry_errnos)
        )
        self._poll_interval = poll_interval
        self._error_backoff = error_backoff

        self._queue = WriteQueue()
        self._callback = CallbackSlot()
        self._error = ErrorState()
        self._open = threading.Event()
        self._lifecycle_lock = threading.RLock()
        self._context: Optional[ExecutionContext] = None
        self._port: Optional[str] = None
        self._settings: Optional[LineSettings] = None

        if port is not None:
            self.open(port, baudrate, parity=parity, bytesize=bytesize,
                      flow_control=flow_control, stopbits=stopbits,
                      exclusive=exclusive)

    @property
    def port(self) -> Optional[str]:
        return self._port

    @property
    def settings(self) -> Optional[LineSettings]:
        return self._settings

    @property
    def io_model(self) -> IOModel:
        return self._io_model

    def open(
            self,
            port: str,
            baudrate: int = 9600,
            parity: str = serial.PARITY_NONE,
            bytesize: int = serial.EIGHTBITS,
            flow_control: FlowControl = FlowControl.NONE,
            stopbits: float = serial.STOPBITS_ONE,
            exclusive: Optional[bool] = None
        ):
        """
        Open a device, closing the current one first.

        An error reported while closing the previous device is logged, not
        raised, so reopening is how callers recover from an I/O error.

        Args:
            port: Device path or pyserial URL (e.g. '/dev/ttyUSB0', 'COM3')
            baudrate: Baud rate (default: 9600)
            parity: Parity checking (default: PARITY_NONE)
            bytesize: Number of data bits (default: EIGHTBITS)
            flow_control: FlowControl mode (default: NONE)
            stopbits: Number of stop bits (default: STOPBITS_ONE)
            exclusive: Exclusive access mode (default: None)

        Raises:
            SerialOpenError: If the device cannot be opened
            SerialConfigError: If the line settings are rejected
        """
        self._check_not_background('open')

        with self._lifecycle_lock:
            if self._context is not None:
                self._release()
                if self._error.is_set():
                    log.warning('Error while closing %s before reopening', self._port)

            # Stays set if anything below fails
            self._error.set()

            settings = LineSettings(
                baudrate=baudrate,
                parity=parity,
                bytesize=bytesize,
                flow_control=flow_control,
                stopbits=stopbits,
                exclusive=exclusive,
            ).validate()
            serial_instance = _create_serial_instance(port, settings)

            context = None
            try:
                context = create_execution_context(
                    self._io_model,
                    serial_instance,
                    queue=self._queue,
                    callback=self._callback,
                    error=self._error,
                    open_flag=self._open,
                    read_buffer_size=self._read_buffer_size,
                    retry_errnos=self._retry_errnos,
                    poll_interval=self._poll_interval,
                    error_backoff=self._error_backoff,
                )
                self._queue.clear()
                self._error.clear()
                self._context = context
                self._open.set()
                context.start()
            except (serial.SerialException, OSError, ValueError, RuntimeError) as e:
                self._open.clear()
                self._error.set()
                self._context = None
                if context is not None:
                    context.cancel_and_stop()
                else:
                    serial_instance.close()
                raise SerialOpenError(f'Failed to start I/O on {port}: {e}') from e

            self._port = port
            self._settings = settings
            log.info('Opened %s (%d baud, %s model)', port, settings.baudrate,
                     self._io_model.value)

    def close(self):
        """
        Close the device and stop the background context.

        Does nothing if the engine was never opened or is already closed.
        The device is always released.

        Raises:
            SerialCloseError: If an I/O error occurred while the device was
                open or being closed
        """
        self._check_not_background('close')

        with self._lifecycle_lock:
            if self._context is None:
                return
            self._release()
            log.info('Closed %s', self._port)

        if self._error.is_set():
            raise SerialCloseError(f'Error while closing the device {self._port}')

    def _release(self):
        self._open.clear()
        context, self._context = self._context, None
        if context is not None:
            context.cancel_and_stop()
        self._queue.clear()

    def _check_not_background(self, operation: str):
        context = self._context
        if context is not None and context.is_background_thread():
            raise RuntimeError(f'{operation}() cannot be called from the read callback')

    def is_open(self) -> bool:
        return self._open.is_set()

    def error_status(self) -> bool:
        """True once an I/O error occurred; reset only by a successful open()"""
        return self._error.is_set()

    def write(self, data: bytes):
        """
        Queue data for transmission.

        Returns immediately in the reactor model; transmission errors only
        show up through ``error_status()``. Data written while the engine is
        not open is dropped.
        """
        context = self._context
        if context is None or not self._open.is_set():
            log.debug('Dropping %d bytes written while %s is not open',
                      len(data), self._port)
            return
        self._queue.append(data)
        context.schedule_write()

    def write_string(self, text: str, encoding: str = 'utf-8'):
        self.write(text.encode(encoding))

    def set_read_callback(self, callback: ReadCallback):
        """
        Register ``callback(data: bytes)`` for received data.

        Replaces any previous callback starting with the next chunk.
        """
        self._callback.set(callback)

    def clear_read_callback(self):
        """No callback invocation happens once this returns"""
        self._callback.clear()

    def get_write_buffer_size(self) -> int:
        """Bytes written but not yet accepted by the device"""
        context = self._context
        if context is None:
            return len(self._queue)
        return context.get_write_buffer_size()

    def __enter__(self) -> 'SerialEngine':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __del__(self):
        context = getattr(self, '_context', None)
        if context is None:
            return
        if context.is_background_thread():
            # Collected inside the read callback: the thread cannot join itself
            self._open.clear()
            self._context = None
            context.release_nowait()
            log.debug('Released %s from its own background thread', self._port)
            return
        try:
            self.close()
        except Exception:
            log.debug('Error while closing %s on destruction', self._port, exc_info=True)

    def __repr__(self) -> str:
        state = 'open' if self.is_open() else 'closed'
        return f'<{type(self).__name__} port={self._port!r} {state}>'


class CallbackSerial(SerialEngine):
    """SerialEngine forwarding received bytes to a user callback."""

    def set_callback(self, callback: ReadCallback):
        self.set_read_callback(callback)

    def clear_callback(self):
        self.clear_read_callback()

    def __del__(self):
        slot = getattr(self, '_callback', None)
        if slot is not None:
            slot.clear()
        super().__del__()


class BufferedSerial(SerialEngine):
    """SerialEngine keeping received bytes until ``read()`` collects them."""

    def __init__(self, port: Optional[str] = None, baudrate: int = 9600, **kwargs: Any):
        line_options = {k: kwargs.pop(k) for k in _LINE_OPTIONS if k in kwargs}
        super().__init__(**kwargs)

        self._received = bytearray()
        self._received_lock = threading.Lock()

        # Collector closes over the buffer, not self
        received, lock = self._received, self._received_lock

        def collect(data: bytes):
            with lock:
                received.extend(data)

        self.set_read_callback(collect)

        if port is not None:
            self.open(port, baudrate, **line_options)

    def read(self) -> bytes:
        """Return and forget everything received so far"""
        with self._received_lock:
            data = bytes(self._received)
            self._received.clear()
        return data

    def read_string(self, encoding: str = 'utf-8', errors: str = 'replace') -> str:
        return self.read().decode(encoding, errors)

    def available(self) -> int:
        with self._received_lock:
            return len(self._received)
