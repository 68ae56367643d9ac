"""Unit tests for completion captures and REPL control vocabulary."""

import re
import unittest

from mpy_manager.errors import RemoteError
from mpy_manager.protocol.capture import (
    MarkerCapture,
    PasteCapture,
    PromptCapture,
    SentinelCapture,
    Sentinels,
    WakeCapture,
    has_error_marker,
    is_prompt,
)
from mpy_manager.protocol.control import (
    CTRL_A,
    CTRL_C,
    CTRL_D,
    CTRL_E,
    ControlSequence,
    command_line,
    encode_line,
    exec_line,
    extract_version,
    python_literal,
)
from mpy_manager.protocol.line_parser import PromptChunk


PROMPT = PromptChunk(">>> ")
CONTINUATION = PromptChunk("... ")


def feed_all(capture, chunks):
    """Feed chunks until the capture completes; returns how many were used."""
    for index, chunk in enumerate(chunks, 1):
        if capture.feed(chunk):
            return index
    return None


class TestPromptHelpers(unittest.TestCase):

    def test_is_prompt(self):
        self.assertTrue(is_prompt(PROMPT))
        self.assertTrue(is_prompt(CONTINUATION))
        self.assertTrue(is_prompt(PromptChunk("no newline>>> ")))
        self.assertFalse(is_prompt(PromptChunk("=== ")))
        self.assertFalse(is_prompt("2"))

    def test_printed_prompt_lookalikes_are_not_prompts(self):
        """Test delimited lines that read like prompts are output."""
        self.assertFalse(is_prompt(">>> "))
        self.assertFalse(is_prompt("..."))
        self.assertFalse(is_prompt("... "))
        self.assertFalse(is_prompt("result >>>"))

    def test_has_error_marker(self):
        self.assertTrue(has_error_marker("Traceback (most recent call last):\n..."))
        self.assertTrue(has_error_marker("ImportError: no module named 'machine'"))
        self.assertFalse(has_error_marker("2"))


class TestPromptCapture(unittest.TestCase):
    """Tests for prompt terminated exchanges."""

    def test_completes_on_primary_prompt(self):
        capture = PromptCapture()
        self.assertEqual(feed_all(capture, ["hello", PROMPT]), 2)
        self.assertEqual(capture.result(), "hello")

    def test_completes_on_continuation_prompt(self):
        capture = PromptCapture()
        self.assertEqual(feed_all(capture, ["for i in range(3):", CONTINUATION]), 2)

    def test_drops_echo_and_leading_blank_lines(self):
        """Test the echoed command is not part of the output."""
        capture = PromptCapture(echo="1+1")
        feed_all(capture, ["", "1+1", "2", PROMPT])
        self.assertEqual(capture.result(), "2")

    def test_drops_echo_with_prompt_prefix(self):
        capture = PromptCapture(echo="print('x')")
        feed_all(capture, [">>> print('x')", "x", PROMPT])
        self.assertEqual(capture.result(), "x")

    def test_output_equal_to_echo_later_is_kept(self):
        capture = PromptCapture(echo="x")
        feed_all(capture, ["x", "x", PROMPT])
        self.assertEqual(capture.result(), "x")

    def test_multiline_output(self):
        capture = PromptCapture(echo="for i in range(2): print(i)")
        feed_all(capture, ["for i in range(2): print(i)", "0", "1", PROMPT])
        self.assertEqual(capture.result(), "0\n1")

    def test_output_reading_like_a_prompt_is_kept(self):
        capture = PromptCapture(echo="print('...'); print('>>>')")
        used = feed_all(capture, ["print('...'); print('>>>')", "...", ">>>", PROMPT])
        self.assertEqual(used, 4)
        self.assertEqual(capture.result(), "...\n>>>")

    def test_output_before_unterminated_prompt(self):
        capture = PromptCapture()
        feed_all(capture, [PromptChunk("no newline>>> ")])
        self.assertEqual(capture.result(), "no newline")

    def test_partial(self):
        capture = PromptCapture()
        capture.feed("still running")
        self.assertEqual(capture.partial(), "still running")

    def test_wake_capture_settles(self):
        self.assertTrue(WakeCapture.settles)
        self.assertFalse(PromptCapture.settles)


class TestPasteCapture(unittest.TestCase):

    def test_echo_lines_are_dropped(self):
        """Test one echo line per source line plus the bare terminator."""
        capture = PasteCapture(["x = 1", "print(x)"])
        feed_all(capture, ["x = 1", "=== print(x)", "=== ", "1", PROMPT])
        self.assertEqual(capture.result(), "1")

    def test_output_starting_with_paste_prompt_is_kept(self):
        capture = PasteCapture(["print('a')", "print('=== b')", "print('c')"])
        feed_all(capture, [
            "print('a')", "=== print('=== b')", "=== print('c')", "=== ",
            "a", "=== b", "c", PROMPT,
        ])
        self.assertEqual(capture.result(), "a\n=== b\nc")

    def test_blank_source_lines_count_as_echo(self):
        capture = PasteCapture(["x = 2", "", "print(x)"])
        feed_all(capture, ["x = 2", "=== ", "=== print(x)", "=== ", "", "2", PROMPT])
        self.assertEqual(capture.result(), "2")

    def test_prompt_flushed_apart_from_its_line(self):
        """Test a === prompt split from the line it prefixes is not counted."""
        capture = PasteCapture(["x = 3", "print(x)"])
        feed_all(capture, [
            "x = 3", PromptChunk("=== "), "print(x)", PromptChunk("=== "), "", "3", PROMPT,
        ])
        self.assertEqual(capture.result(), "3")


class TestMarkerCapture(unittest.TestCase):

    def test_regex_marker(self):
        capture = MarkerCapture(re.compile("micropython", re.IGNORECASE))
        self.assertEqual(feed_all(capture, ["noise", "(name='micropython', version=(1, 22, 0))"]), 2)
        self.assertIn("micropython", capture.result())
        self.assertTrue(capture.settles)

    def test_plain_marker_is_escaped(self):
        capture = MarkerCapture("a.b", settle=False)
        self.assertFalse(capture.feed("axb"))
        self.assertTrue(capture.feed("a.b"))
        self.assertFalse(capture.settles)


class TestSentinelCapture(unittest.TestCase):
    """Tests for the shared bounded capture."""

    def setUp(self):
        self.sentinels = Sentinels.for_operation("download")

    def test_sentinels_are_namespaced(self):
        other = Sentinels.for_operation("download")
        self.assertNotEqual(self.sentinels.start, other.start)
        self.assertTrue(self.sentinels.start.startswith("__MPYMGR_DOWNLOAD_"))
        self.assertTrue(self.sentinels.start.endswith("_START__"))
        self.assertTrue(self.sentinels.end.endswith("_END__"))
        self.assertTrue(self.sentinels.error.endswith("_ERROR__"))

    def test_captures_between_sentinels(self):
        capture = SentinelCapture(self.sentinels)
        used = feed_all(capture, ["noise", self.sentinels.start, "a", "b", self.sentinels.end, "late"])
        self.assertEqual(used, 5)
        self.assertEqual(capture.result(), "a\nb")
        self.assertTrue(capture.settles)

    def test_echoed_command_never_matches(self):
        """Test sentinels only match whole lines."""
        capture = SentinelCapture(self.sentinels)
        echo = f"exec('print({self.sentinels.start!r}); print({self.sentinels.end!r})')"
        self.assertFalse(capture.feed(echo))
        self.assertFalse(capture.feed(self.sentinels.start))
        self.assertTrue(capture.feed(self.sentinels.end))
        self.assertEqual(capture.result(), "")

    def test_error_sentinel_raises_remote_error(self):
        capture = SentinelCapture(self.sentinels)
        self.assertTrue(capture.feed(f"{self.sentinels.error} OSError: [Errno 2] ENOENT"))

        with self.assertRaises(RemoteError) as ctx:
            capture.result()
        self.assertEqual(ctx.exception.remote_message, "OSError: [Errno 2] ENOENT")

    def test_incomplete_partial(self):
        capture = SentinelCapture(self.sentinels)
        feed_all(capture, [self.sentinels.start, "half"])
        self.assertEqual(capture.partial(), "half")


class TestControl(unittest.TestCase):
    """Tests for control sequences and line encoding."""

    def test_control_payloads(self):
        self.assertEqual(ControlSequence.INTERRUPT.payload, CTRL_C)
        self.assertEqual(ControlSequence.ENTER_RAW.payload, CTRL_A)
        self.assertEqual(ControlSequence.EXIT_RAW.payload, b"\x02")
        self.assertEqual(ControlSequence.ENTER_PASTE.payload, CTRL_E)
        self.assertEqual(ControlSequence.EXIT_PASTE.payload, CTRL_D)
        self.assertEqual(ControlSequence.SOFT_RESET.payload, CTRL_D)

    def test_control_captures(self):
        self.assertIsInstance(ControlSequence.INTERRUPT.capture(), PromptCapture)
        self.assertIsInstance(ControlSequence.ENTER_RAW.capture(), MarkerCapture)
        self.assertIsInstance(ControlSequence.ENTER_PASTE.capture(), MarkerCapture)

    def test_enter_raw_capture_matches_banner(self):
        capture = ControlSequence.ENTER_RAW.capture()
        self.assertTrue(capture.feed("raw REPL; CTRL-B to exit"))

    def test_extract_version_from_implementation(self):
        text = "(name='micropython', version=(1, 22, 0, ''), _machine='ESP32 module with ESP32')"
        self.assertEqual(extract_version(text), "1.22.0")

    def test_extract_version_from_banner(self):
        self.assertEqual(extract_version("MicroPython v1.19.1 on 2022-06-18; ESP32"), "1.19.1")

    def test_extract_version_unknown(self):
        self.assertEqual(extract_version("micropython"), "unknown")

    def test_python_literal_is_ascii_and_round_trips(self):
        text = 'quote " single \' backslash \\ newline \n tab \t é 😀'
        literal = python_literal(text)
        self.assertTrue(literal.isascii())
        self.assertNotIn("\n", literal)
        self.assertEqual(eval(literal), text)

    def test_single_line_command_unchanged(self):
        self.assertEqual(command_line("print(1)"), "print(1)")
        self.assertEqual(command_line("print(1)\r\n"), "print(1)")

    def test_multiline_command_is_wrapped(self):
        """Test multi-line text becomes one exec() line."""
        line = command_line("for i in range(2):\n    print(i)\n")
        self.assertEqual(line, exec_line("for i in range(2):\n    print(i)"))
        self.assertNotIn("\n", line)

    def test_encode_line(self):
        self.assertEqual(encode_line("1+1"), b"1+1\r\n")


if __name__ == '__main__':
    unittest.main()
