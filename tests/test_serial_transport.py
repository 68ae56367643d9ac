"""Unit tests for SerialTransport (raw byte stream over pyserial)."""

import threading
import time
import unittest
from unittest.mock import MagicMock, Mock, patch

import serial

from mpy_manager.errors import TransportFailure
from mpy_manager.transport.base import Transport
from mpy_manager.transport.serial import SerialTransport


def _idle_read(size):
    time.sleep(0.01)
    return b""


def _idle_serial() -> MagicMock:
    mock_serial = MagicMock()
    mock_serial.read.side_effect = _idle_read
    return mock_serial


class TestTransportABC(unittest.TestCase):
    """Tests for the Transport abstract base class."""

    def test_is_abstract(self):
        """Transport cannot be instantiated directly."""
        with self.assertRaises(TypeError):
            Transport()

    def test_serial_transport_is_transport(self):
        self.assertTrue(issubclass(SerialTransport, Transport))


class TestSerialTransportInit(unittest.TestCase):
    """Tests for SerialTransport initialization."""

    def test_init_defaults(self):
        """Test initialization with default parameters."""
        transport = SerialTransport("/dev/ttyUSB0", 115200)

        self.assertEqual(transport.port, "/dev/ttyUSB0")
        self.assertEqual(transport.baudrate, 115200)
        self.assertEqual(transport._timeout, 0.1)
        self.assertEqual(transport._chunk_size, 4096)
        self.assertFalse(transport.is_open())

    def test_open_attempts_at_least_one(self):
        transport = SerialTransport("/dev/ttyUSB0", 115200, open_attempts=0)
        self.assertEqual(transport._open_attempts, 1)


class TestSerialTransportOpen(unittest.TestCase):
    """Tests for open/close lifecycle."""

    @patch('mpy_manager.transport.serial.serial.Serial')
    def test_open(self, mock_serial_class):
        """Test opening configures 8N1 and clears the buffers."""
        mock_serial = _idle_serial()
        mock_serial_class.return_value = mock_serial

        transport = SerialTransport("/dev/ttyUSB0", 9600)
        transport.open()
        try:
            self.assertTrue(transport.is_open())
            mock_serial_class.assert_called_once_with(
                port="/dev/ttyUSB0",
                baudrate=9600,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=0.1,
            )
            mock_serial.reset_input_buffer.assert_called_once()
            mock_serial.reset_output_buffer.assert_called_once()
        finally:
            transport.close()

    @patch('mpy_manager.transport.serial.time.sleep')
    @patch('mpy_manager.transport.serial.serial.Serial')
    def test_open_failure_retries_with_backoff(self, mock_serial_class, mock_sleep):
        """Test a failing open is retried a bounded number of times."""
        mock_serial_class.side_effect = serial.SerialException("Port busy")

        transport = SerialTransport("/dev/ttyUSB0", 115200, open_attempts=3, open_backoff=0.2)

        with self.assertRaises(TransportFailure):
            transport.open()

        self.assertEqual(mock_serial_class.call_count, 3)
        self.assertEqual([c.args[0] for c in mock_sleep.call_args_list], [0.2, 0.4])
        self.assertFalse(transport.is_open())

    @patch('mpy_manager.transport.serial.serial.Serial')
    def test_open_succeeds_on_second_attempt(self, mock_serial_class):
        mock_serial_class.side_effect = [serial.SerialException("busy"), _idle_serial()]

        transport = SerialTransport("/dev/ttyUSB0", 115200, open_attempts=2, open_backoff=0.0)
        transport.open()
        try:
            self.assertTrue(transport.is_open())
        finally:
            transport.close()

    @patch('mpy_manager.transport.serial.serial.Serial')
    def test_half_open_handle_is_closed(self, mock_serial_class):
        """Test a handle that fails after creation is not left open."""
        mock_serial = _idle_serial()
        mock_serial.reset_input_buffer.side_effect = serial.SerialException("gone")
        mock_serial_class.return_value = mock_serial

        transport = SerialTransport("/dev/ttyUSB0", 115200, open_attempts=1)
        with self.assertRaises(TransportFailure):
            transport.open()

        mock_serial.close.assert_called_once()

    @patch('mpy_manager.transport.serial.serial.Serial')
    def test_close_idempotent(self, mock_serial_class):
        """Test close can be called multiple times and notifies once."""
        mock_serial = _idle_serial()
        mock_serial_class.return_value = mock_serial
        closed = Mock()

        transport = SerialTransport("/dev/ttyUSB0", 115200)
        transport.subscribe_closed(closed)
        transport.open()
        transport.close()
        transport.close()

        self.assertFalse(transport.is_open())
        mock_serial.close.assert_called_once()
        closed.assert_called_once()

    def test_close_when_never_opened(self):
        transport = SerialTransport("/dev/ttyUSB0", 115200)
        transport.close()
        self.assertFalse(transport.is_open())

    @patch('mpy_manager.transport.serial.serial.Serial')
    def test_context_manager(self, mock_serial_class):
        mock_serial_class.return_value = _idle_serial()

        with SerialTransport("/dev/ttyUSB0", 115200) as transport:
            self.assertTrue(transport.is_open())
        self.assertFalse(transport.is_open())


class TestSerialTransportIO(unittest.TestCase):
    """Tests for writes, reads and fatal errors."""

    @patch('mpy_manager.transport.serial.serial.Serial')
    def test_write(self, mock_serial_class):
        mock_serial = _idle_serial()
        mock_serial_class.return_value = mock_serial

        transport = SerialTransport("/dev/ttyUSB0", 115200)
        transport.open()
        try:
            transport.write(b"1+1\r\n")
            mock_serial.write.assert_called_once_with(b"1+1\r\n")
            mock_serial.flush.assert_called_once()
        finally:
            transport.close()

    def test_write_when_closed(self):
        """Test writing to a closed transport raises TransportFailure."""
        transport = SerialTransport("/dev/ttyUSB0", 115200)
        with self.assertRaises(TransportFailure):
            transport.write(b"x")

    @patch('mpy_manager.transport.serial.serial.Serial')
    def test_write_failure_is_fatal(self, mock_serial_class):
        """Test a write error closes the port and notifies error subscribers."""
        mock_serial = _idle_serial()
        mock_serial.write.side_effect = serial.SerialException("device disconnected")
        mock_serial_class.return_value = mock_serial
        errors = []

        transport = SerialTransport("/dev/ttyUSB0", 115200)
        transport.subscribe_error(errors.append)
        transport.open()

        with self.assertRaises(TransportFailure):
            transport.write(b"x")

        self.assertFalse(transport.is_open())
        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0], serial.SerialException)

    @patch('mpy_manager.transport.serial.serial.Serial')
    def test_reader_dispatches_chunks(self, mock_serial_class):
        """Test the reader thread forwards raw chunks to data subscribers."""
        mock_serial = MagicMock()
        pending = [b"MicroPython", b" v1.22.0\r\n>>> "]
        mock_serial.read.side_effect = lambda size: pending.pop(0) if pending else _idle_read(size)
        mock_serial_class.return_value = mock_serial
        received = []
        done = threading.Event()

        def on_data(chunk):
            received.append(chunk)
            if len(received) == 2:
                done.set()

        transport = SerialTransport("/dev/ttyUSB0", 115200)
        transport.subscribe_data(on_data)
        transport.open()
        try:
            self.assertTrue(done.wait(2.0))
            self.assertEqual(b"".join(received), b"MicroPython v1.22.0\r\n>>> ")
        finally:
            transport.close()

    @patch('mpy_manager.transport.serial.serial.Serial')
    def test_read_failure_is_fatal(self, mock_serial_class):
        """Test a read error tears the transport down from the reader thread."""
        mock_serial = MagicMock()
        mock_serial.read.side_effect = serial.SerialException("returned no data")
        mock_serial_class.return_value = mock_serial
        failed = threading.Event()

        transport = SerialTransport("/dev/ttyUSB0", 115200)
        transport.subscribe_error(lambda e: failed.set())
        transport.open()

        self.assertTrue(failed.wait(2.0))
        deadline = time.time() + 2.0
        while transport.is_open() and time.time() < deadline:
            time.sleep(0.01)
        self.assertFalse(transport.is_open())

    def test_unsubscribe(self):
        transport = SerialTransport("/dev/ttyUSB0", 115200)
        callback = Mock()
        unsubscribe = transport.subscribe_data(callback)

        self.assertIn(callback, transport._data_callbacks)
        unsubscribe()
        self.assertNotIn(callback, transport._data_callbacks)

    def test_callback_exception_handling(self):
        """Test that exceptions in callbacks don't stop delivery."""
        transport = SerialTransport("/dev/ttyUSB0", 115200)

        def bad_callback(chunk):
            raise ValueError("Test exception")

        good_chunks = []
        transport.subscribe_data(bad_callback)
        transport.subscribe_data(good_chunks.append)

        transport._notify_data_callbacks(b"test")

        self.assertEqual(good_chunks, [b"test"])


if __name__ == '__main__':
    unittest.main()
