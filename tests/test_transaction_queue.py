"""Unit tests for the per-device TransactionQueue."""

import threading
import time
import unittest
from concurrent.futures import wait
from unittest.mock import Mock

from fake_board import FakeBoard, FakeTransport

from mpy_manager.errors import NotConnected, OperationTimeout, TransportFailure
from mpy_manager.protocol.capture import PromptCapture, SentinelCapture, Sentinels
from mpy_manager.protocol.control import encode_line
from mpy_manager.protocol.line_parser import LineParser
from mpy_manager.device.transaction_queue import QueueEntry, Step, TransactionQueue


def echo_capture(line):
    return lambda: PromptCapture(echo=line)


class QueueTestCase(unittest.TestCase):
    """Queue wired to a fake board through a real line parser."""

    def setUp(self):
        self.board = FakeBoard(hang_commands={"hang()"})
        self.transport = FakeTransport(self.board)
        self.transport.open()
        self.parser = LineParser()
        self.transport.subscribe_data(self.parser.feed)
        self.writes = []
        self.queue = TransactionQueue(
            self.transport,
            self.parser,
            name="test",
            default_timeout=2.0,
            settle_time=0.2,
            on_write=self.writes.append,
        )

    def tearDown(self):
        self.queue.close()
        self.transport.close()

    def run_line(self, line, timeout=None):
        return self.queue.enqueue(encode_line(line), timeout=timeout, capture=echo_capture(line))


class TestTransactionQueueBasics(QueueTestCase):

    def test_single_command(self):
        future = self.run_line("1+1")
        self.assertEqual(future.result(timeout=2), "2")
        self.assertEqual(self.writes, [b"1+1\r\n"])

    def test_fifo_completion_order(self):
        """Test entries complete in submission order."""
        completed = []
        lock = threading.Lock()
        futures = []
        for i in range(10):
            future = self.run_line(f"print({i})")

            def record(f, i=i):
                with lock:
                    completed.append(i)

            future.add_done_callback(record)
            futures.append(future)

        results = [f.result(timeout=5) for f in futures]
        self.assertEqual(results, [str(i) for i in range(10)])
        self.assertEqual(completed, list(range(10)))
        self.assertEqual(
            self.board.lines_executed,
            [f"print({i})" for i in range(10)],
        )

    def test_timeout_does_not_block_later_entries(self):
        """Test a hung entry times out and the next one still runs."""
        hung = self.run_line("hang()", timeout=0.3)
        after = self.run_line("1+1")

        with self.assertRaises(OperationTimeout):
            hung.result(timeout=2)
        self.assertEqual(after.result(timeout=2), "2")

    def test_timeout_carries_partial_output(self):
        future = self.queue.enqueue(encode_line("hang()"), timeout=0.2)
        with self.assertRaises(OperationTimeout) as ctx:
            future.result(timeout=2)
        self.assertIn("hang()", ctx.exception.partial_output)

    def test_deadline_armed_when_entry_starts(self):
        """Test time spent waiting in the queue does not count against an entry."""
        first = self.run_line("hang()", timeout=0.4)
        second = self.run_line("1+1", timeout=0.3)

        with self.assertRaises(OperationTimeout):
            first.result(timeout=2)
        self.assertEqual(second.result(timeout=2), "2")

    def test_multi_step_entry(self):
        """Test all steps of one entry run back to back."""
        entry = QueueEntry(
            [Step(encode_line("x = 41"), echo_capture("x = 41")),
             Step(encode_line("x + 1"), echo_capture("x + 1"))],
            timeout=2.0,
            collect=list,
        )
        self.assertEqual(self.queue.submit(entry).result(timeout=2), ["", "42"])

    def test_sentinel_entry_swallows_trailing_prompt(self):
        """Test the prompt after a sentinel cannot complete the next entry."""
        sentinels = Sentinels.for_operation("test")
        line = f"print({sentinels.start!r}); print('data'); print({sentinels.end!r})"
        framed = self.queue.enqueue(encode_line(line), capture=lambda: SentinelCapture(sentinels))
        after = self.run_line("print('after')")

        self.assertEqual(framed.result(timeout=2), "data")
        self.assertEqual(after.result(timeout=2), "after")

    def test_busy(self):
        self.assertFalse(self.queue.busy)
        hung = self.run_line("hang()", timeout=0.3)
        self.assertTrue(self.queue.busy)
        with self.assertRaises(OperationTimeout):
            hung.result(timeout=2)
        deadline = time.time() + 2
        while self.queue.busy and time.time() < deadline:
            time.sleep(0.01)
        self.assertFalse(self.queue.busy)

    def test_entry_resolves_once(self):
        entry = QueueEntry([Step(b"x")], timeout=1.0)
        self.assertTrue(entry.resolve("a"))
        self.assertFalse(entry.resolve("b"))
        self.assertFalse(entry.reject(RuntimeError("late")))
        self.assertEqual(entry.future.result(), "a")

    def test_entry_needs_steps(self):
        with self.assertRaises(ValueError):
            QueueEntry([], timeout=1.0)


class TestTransactionQueueClose(QueueTestCase):

    def test_close_rejects_queued_entries(self):
        """Test closing with k queued entries rejects all of them with NotConnected."""
        in_flight = self.run_line("hang()", timeout=10)
        queued = [self.run_line(f"print({i})") for i in range(5)]

        self.queue.close()

        done, not_done = wait([in_flight] + queued, timeout=3)
        self.assertFalse(not_done)
        for future in queued + [in_flight]:
            self.assertIsInstance(future.exception(), NotConnected)

    def test_close_with_transport_failure(self):
        in_flight = self.run_line("hang()", timeout=10)
        queued = self.run_line("1+1")

        self.queue.close(TransportFailure("port vanished"))

        for future in (in_flight, queued):
            self.assertIsInstance(future.exception(timeout=3), TransportFailure)

    def test_submit_after_close(self):
        self.queue.close()
        future = self.run_line("1+1")
        self.assertIsInstance(future.exception(timeout=1), NotConnected)
        self.assertTrue(self.queue.closed)

    def test_close_idempotent(self):
        self.queue.close()
        self.queue.close()
        self.assertTrue(self.queue.closed)

    def test_write_failure_rejects_entry(self):
        """Test a transport write failure rejects only that entry."""
        self.transport.close()
        future = self.run_line("1+1")
        self.assertIsInstance(future.exception(timeout=2), TransportFailure)


class TestTransactionQueueStaleOutput(unittest.TestCase):

    def test_stale_chunks_are_discarded(self):
        """Test output that arrived before an entry started is ignored."""
        transport = Mock()
        transport.port = "/dev/null"
        parser = LineParser()
        queue = TransactionQueue(transport, parser, settle_time=0.1)
        parser.feed(b"leftover\r\n>>> ")

        def reply(payload):
            parser.feed(b"fresh\r\n>>> ")

        transport.write.side_effect = reply
        try:
            self.assertEqual(queue.enqueue(b"x\r\n").result(timeout=2), "fresh")
        finally:
            queue.close()


if __name__ == '__main__':
    unittest.main()
