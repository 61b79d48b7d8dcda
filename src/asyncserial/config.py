# -*- coding: utf-8 -*-

"""
Line settings for a serial device.

Values use pyserial's constants; applying them to the device is left to
pyserial and the host OS.
"""
import enum
import numbers
import serial

from dataclasses import dataclass
from typing import Any
from typing import Dict
from typing import Optional

from .exceptions import SerialConfigError


class FlowControl(str, enum.Enum):
    """Flow control modes."""

    NONE = 'none'
    SOFTWARE = 'software'  # XON/XOFF
    HARDWARE = 'hardware'  # RTS/CTS


@dataclass(frozen=True)
class LineSettings:
    """Baud rate and framing options applied when a device is opened."""

    baudrate: int = 9600
    parity: str = serial.PARITY_NONE
    bytesize: int = serial.EIGHTBITS
    flow_control: FlowControl = FlowControl.NONE
    stopbits: float = serial.STOPBITS_ONE
    exclusive: Optional[bool] = None

    def validate(self) -> 'LineSettings':
        """
        Check every option against the values pyserial accepts.

        Returns:
            self, so calls can be chained

        Raises:
            SerialConfigError: If any option is out of range
        """
        if (isinstance(self.baudrate, bool)
                or not isinstance(self.baudrate, numbers.Integral)
                or self.baudrate <= 0):
            raise SerialConfigError(f'Invalid baud rate: {self.baudrate!r}')
        if self.parity not in serial.SerialBase.PARITIES:
            raise SerialConfigError(f'Invalid parity: {self.parity!r}')
        if self.bytesize not in serial.SerialBase.BYTESIZES:
            raise SerialConfigError(f'Invalid character size: {self.bytesize!r}')
        if self.stopbits not in serial.SerialBase.STOPBITS:
            raise SerialConfigError(f'Invalid stop bits: {self.stopbits!r}')
        try:
            FlowControl(self.flow_control)
        except ValueError:
            raise SerialConfigError(
                f'Invalid flow control: {self.flow_control!r}'
            ) from None
        return self

    def to_serial_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for ``serial.Serial`` / ``serial_for_url``."""
        flow = FlowControl(self.flow_control)
        kwargs: Dict[str, Any] = {
            'baudrate': int(self.baudrate),
            'parity': self.parity,
            'bytesize': self.bytesize,
            'stopbits': self.stopbits,
            'xonxoff': flow is FlowControl.SOFTWARE,
            'rtscts': flow is FlowControl.HARDWARE,
        }
        if self.exclusive is not None:
            kwargs['exclusive'] = self.exclusive
        return kwargs
