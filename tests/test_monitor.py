import pathlib
import signal
import sys
import tempfile
import time
import unittest
from unittest import mock


ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from ralph_loop import monitor


class ClassifyPhaseTests(unittest.TestCase):
    def test_default_is_thinking(self):
        self.assertEqual(monitor.classify_phase(""), monitor.THINKING)
        self.assertEqual(monitor.classify_phase("just musing"), monitor.THINKING)

    def test_keeps_current_phase_without_match(self):
        self.assertEqual(monitor.classify_phase("nothing here", "Testing"), "Testing")

    def test_commit_outranks_everything(self):
        content = '{"tool": "read"} running pytest then git add . && git commit -m "x"'
        self.assertEqual(monitor.classify_phase(content), "Committing")

    def test_ordering_of_rules(self):
        self.assertEqual(monitor.classify_phase("git add src/"), "Staging")
        self.assertEqual(monitor.classify_phase("ruff check . ; pytest"), "Linting")
        self.assertEqual(monitor.classify_phase("running pytest -q"), "Testing")
        self.assertEqual(monitor.classify_phase("editing src/tests/test_login.py"), "Writing tests")
        self.assertEqual(monitor.classify_phase('{"name": "Edit", "input": {}}'), "Implementing")
        self.assertEqual(monitor.classify_phase('{"tool": "grep"}'), "Reading code")


class ReadTailTests(unittest.TestCase):
    def test_missing_file_returns_none(self):
        self.assertIsNone(monitor.read_tail(pathlib.Path("/nonexistent/ralph/capture.jsonl")))

    def test_reads_only_the_tail(self):
        with tempfile.TemporaryDirectory() as td:
            path = pathlib.Path(td) / "capture.jsonl"
            path.write_text("a" * 100 + "TAIL", encoding="utf-8")
            self.assertEqual(monitor.read_tail(path, limit=4), "TAIL")


class RenderTests(unittest.TestCase):
    def test_status_line_without_color(self):
        line = monitor.render_status_line("⠋", "Testing", "Add login form", 75)
        self.assertIn("Testing", line)
        self.assertIn("Add login form", line)
        self.assertIn("[01:15]", line)
        self.assertNotIn("\033[", line)


class ProgressMonitorTests(unittest.TestCase):
    def test_start_and_stop_lifecycle(self):
        with tempfile.TemporaryDirectory() as td:
            capture = pathlib.Path(td) / "capture.jsonl"
            capture.write_text('{"type": "tool", "command": "git commit -m wip"}\n', encoding="utf-8")
            progress = monitor.ProgressMonitor(interval=0.02, render=False)
            handle = progress.start(capture, "Add login form")
            try:
                deadline = time.monotonic() + 10
                while handle.phase != "Committing" and time.monotonic() < deadline:
                    time.sleep(0.02)
                self.assertEqual(handle.phase, "Committing")
            finally:
                progress.stop(handle)
            self.assertFalse(handle.alive)

    def test_missing_capture_does_not_crash_monitor(self):
        with tempfile.TemporaryDirectory() as td:
            progress = monitor.ProgressMonitor(interval=0.02, render=False)
            handle = progress.start(pathlib.Path(td) / "never-written.jsonl", "task")
            try:
                time.sleep(0.1)
                self.assertTrue(handle.alive)
                self.assertEqual(handle.phase, monitor.THINKING)
            finally:
                progress.stop(handle)
            self.assertFalse(handle.alive)

    def test_child_restores_default_termination_signals(self):
        stop_event = mock.Mock()
        stop_event.is_set.return_value = True
        with mock.patch("ralph_loop.monitor.signal.signal") as set_handler:
            monitor._poll_loop("unused.jsonl", "task", stop_event, mock.Mock(), 0.01, False, False)
        calls = set_handler.call_args_list
        self.assertIn(mock.call(signal.SIGINT, signal.SIG_IGN), calls)
        self.assertIn(mock.call(signal.SIGTERM, signal.SIG_DFL), calls)
        if hasattr(signal, "SIGHUP"):
            self.assertIn(mock.call(signal.SIGHUP, signal.SIG_DFL), calls)

    def test_stop_tolerates_none(self):
        monitor.ProgressMonitor(render=False).stop(None)


if __name__ == "__main__":
    unittest.main()
