"""
Tests for the background execution contexts.
"""
import pytest
import serial

from asyncserial.compat import IOModel
from asyncserial.context import BlockingWorkerContext
from asyncserial.context import ReactorContext
from asyncserial.context import create_execution_context
from asyncserial.exceptions import PlatformNotSupportedError

from .conftest import wait_until
from .fixtures.virtual_ports import LoopbackSerial


def context_kwargs(state):
    return dict(
        queue=state.queue,
        callback=state.callback,
        error=state.error,
        open_flag=state.open_flag,
    )


def received_bytes(state):
    return b"".join(state.received)


class TestReactorContext:
    """Test the event loop thread model."""

    def test_echo_round_trip(self, loopback_serial, shared_state):
        """Test queued bytes are written and read back."""
        context = ReactorContext(loopback_serial, poll_interval=0.001,
                                 **context_kwargs(shared_state))
        context.start()
        try:
            shared_state.queue.append(b"AB")
            context.schedule_write()
            shared_state.queue.append(b"CD")
            context.schedule_write()

            assert wait_until(lambda: received_bytes(shared_state) == b"ABCD")
        finally:
            shared_state.open_flag.clear()
            context.cancel_and_stop()

        assert not context._thread.is_alive()
        assert context.loop.is_closed()
        assert not loopback_serial.is_open
        assert not shared_state.error.is_set()

    def test_read_error_stops_thread(self, loopback_serial, shared_state):
        """Test close-on-error ends the background thread by itself."""
        context = ReactorContext(loopback_serial, poll_interval=0.001,
                                 **context_kwargs(shared_state))
        context.start()

        loopback_serial.fail_next_read(serial.SerialException("device gone"))

        assert wait_until(lambda: not context._thread.is_alive())
        assert shared_state.error.is_set()
        assert not shared_state.open_flag.is_set()
        assert not loopback_serial.is_open

        context.cancel_and_stop()
        assert context.loop.is_closed()

    def test_cancel_and_stop_twice(self, loopback_serial, shared_state):
        """Test teardown is idempotent."""
        context = ReactorContext(loopback_serial, **context_kwargs(shared_state))
        context.start()
        shared_state.open_flag.clear()

        context.cancel_and_stop()
        context.cancel_and_stop()

        assert loopback_serial.close_calls == 1

    def test_schedule_write_after_stop(self, loopback_serial, shared_state):
        """Test scheduling on a closed loop is harmless."""
        context = ReactorContext(loopback_serial, **context_kwargs(shared_state))
        context.start()
        shared_state.open_flag.clear()
        context.cancel_and_stop()

        shared_state.queue.append(b"late")
        context.schedule_write()

        assert loopback_serial.writes == []

    def test_is_background_thread(self, loopback_serial, shared_state):
        context = ReactorContext(loopback_serial, **context_kwargs(shared_state))
        seen = []
        shared_state.callback.set(lambda data: seen.append(context.is_background_thread()))
        context.start()
        try:
            loopback_serial.feed(b"x")
            assert wait_until(lambda: seen)
        finally:
            shared_state.open_flag.clear()
            context.cancel_and_stop()

        assert seen == [True]
        assert not context.is_background_thread()

    def test_release_nowait_from_loop_thread(self, loopback_serial, shared_state):
        """Test the loop thread releases the device and closes its own loop."""
        context = ReactorContext(loopback_serial, poll_interval=0.001,
                                 **context_kwargs(shared_state))
        context.start()

        shared_state.open_flag.clear()
        context.loop.call_soon_threadsafe(context.release_nowait)

        assert wait_until(lambda: not context._thread.is_alive())
        assert not loopback_serial.is_open
        assert context.loop.is_closed()


class TestBlockingWorkerContext:
    """Test the blocking read thread model."""

    def test_reads_delivered(self, shared_state):
        device = LoopbackSerial(echo=False)
        context = BlockingWorkerContext(device, **context_kwargs(shared_state))
        assert device.timeout is None

        context.start()
        try:
            device.feed(b"hello")
            assert wait_until(lambda: received_bytes(shared_state) == b"hello")
        finally:
            shared_state.open_flag.clear()
            context.cancel_and_stop()

        assert not context._thread.is_alive()
        assert not device.is_open

    def test_write_is_synchronous(self, shared_state):
        device = LoopbackSerial(echo=False)
        context = BlockingWorkerContext(device, **context_kwargs(shared_state))
        context.start()
        try:
            shared_state.queue.append(b"AB")
            context.schedule_write()

            # Already on the wire when schedule_write returns
            assert bytes(device.wire) == b"AB"
            assert len(shared_state.queue) == 0
        finally:
            shared_state.open_flag.clear()
            context.cancel_and_stop()

    def test_short_write_sets_error(self, shared_state):
        device = LoopbackSerial(echo=False, write_chunk=1)
        context = BlockingWorkerContext(device, **context_kwargs(shared_state))

        shared_state.queue.append(b"AB")
        context.schedule_write()

        assert shared_state.error.is_set()

    def test_write_failure_sets_error(self, shared_state):
        device = LoopbackSerial(echo=False)
        device.write_error = serial.SerialException("write failed")
        context = BlockingWorkerContext(device, **context_kwargs(shared_state))

        shared_state.queue.append(b"AB")
        context.schedule_write()

        assert shared_state.error.is_set()

    def test_read_error_keeps_loop_running(self, shared_state):
        """Test a failed read sets the error flag without ending the loop."""
        device = LoopbackSerial(echo=False)
        context = BlockingWorkerContext(device, error_backoff=0.001,
                                        **context_kwargs(shared_state))
        context.start()
        try:
            device.fail_next_read(serial.SerialException("read failed"))
            assert wait_until(shared_state.error.is_set)

            device.feed(b"after")
            assert wait_until(lambda: received_bytes(shared_state) == b"after")
            assert context._thread.is_alive()
        finally:
            shared_state.open_flag.clear()
            context.cancel_and_stop()

    def test_retry_errno_does_not_set_error(self, shared_state):
        device = LoopbackSerial(echo=False)
        context = BlockingWorkerContext(device, retry_errnos={45},
                                        **context_kwargs(shared_state))
        context.start()
        try:
            device.fail_next_read(OSError(45, "Operation not supported"))
            device.feed(b"ok")
            assert wait_until(lambda: received_bytes(shared_state) == b"ok")
            assert not shared_state.error.is_set()
        finally:
            shared_state.open_flag.clear()
            context.cancel_and_stop()

    @pytest.mark.filterwarnings("ignore::pytest.PytestUnhandledThreadExceptionWarning")
    def test_programming_error_is_not_a_device_error(self, shared_state):
        """Test a TypeError while open ends the loop instead of setting the error flag."""
        device = LoopbackSerial(echo=False)
        context = BlockingWorkerContext(device, error_backoff=0.001,
                                        **context_kwargs(shared_state))
        context.start()
        try:
            device.fail_next_read(TypeError("bad argument"))
            assert wait_until(lambda: not context._thread.is_alive())
            assert not shared_state.error.is_set()
        finally:
            shared_state.open_flag.clear()
            context.cancel_and_stop()

    def test_type_error_after_close_ends_loop(self, shared_state):
        device = LoopbackSerial(echo=False)
        context = BlockingWorkerContext(device, **context_kwargs(shared_state))
        context.start()

        shared_state.open_flag.clear()
        device.fail_next_read(TypeError("select() fd=None"))

        assert wait_until(lambda: not context._thread.is_alive())
        assert not shared_state.error.is_set()
        context.cancel_and_stop()

    def test_release_nowait_closes_device(self, shared_state):
        device = LoopbackSerial(echo=False)
        context = BlockingWorkerContext(device, **context_kwargs(shared_state))
        context.start()

        shared_state.open_flag.clear()
        context.release_nowait()

        assert not device.is_open
        assert wait_until(lambda: not context._thread.is_alive())

    def test_close_failure_sets_error(self, shared_state):
        device = LoopbackSerial(echo=False)
        device.close_error = OSError(5, "EIO")
        context = BlockingWorkerContext(device, **context_kwargs(shared_state))
        context.start()

        shared_state.open_flag.clear()
        context.cancel_and_stop()

        assert shared_state.error.is_set()
        assert not context._thread.is_alive()


class TestCreateExecutionContext:
    """Test model selection."""

    def test_reactor(self, loopback_serial, shared_state):
        context = create_execution_context(IOModel.REACTOR, loopback_serial,
                                           **context_kwargs(shared_state))
        assert isinstance(context, ReactorContext)
        context.cancel_and_stop()

    def test_blocking(self, loopback_serial, shared_state):
        context = create_execution_context('blocking', loopback_serial,
                                           **context_kwargs(shared_state))
        assert isinstance(context, BlockingWorkerContext)

    def test_unknown_model(self, loopback_serial, shared_state):
        with pytest.raises(PlatformNotSupportedError):
            create_execution_context('threads', loopback_serial,
                                     **context_kwargs(shared_state))
