import os
import pathlib
import signal
import subprocess
import sys
import tempfile
import time
import unittest
from unittest import mock


ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from ralph_loop import cleanup
from ralph_loop.accounting import RunSession
from ralph_loop.errors import RunInterrupted


def _cp(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(["git"], returncode=returncode, stdout=stdout, stderr=stderr)


class CleanupHandlerTests(unittest.TestCase):
    def test_exit_removes_tracked_files_and_stops_resources(self):
        with tempfile.TemporaryDirectory() as td:
            root = pathlib.Path(td)
            capture = root / "capture.jsonl"
            capture.write_text("{}", encoding="utf-8")
            process = mock.Mock()
            monitor, handle = mock.Mock(), object()
            with cleanup.CleanupHandler(root) as handler:
                handler.track_file(capture)
                handler.track_process(process)
                handler.track_monitor(monitor, handle)
            self.assertFalse(capture.exists())
            process.terminate.assert_called_once()
            monitor.stop.assert_called_once_with(handle)

    def test_released_resources_are_not_touched(self):
        process = mock.Mock()
        monitor, handle = mock.Mock(), object()
        handler = cleanup.CleanupHandler(pathlib.Path("."))
        handler.track_process(process)
        handler.track_monitor(monitor, handle)
        handler.release_process(process)
        handler.release_monitor(handle)
        handler.cleanup()
        process.terminate.assert_not_called()
        monitor.stop.assert_not_called()

    def test_cleanup_runs_when_body_raises(self):
        with tempfile.TemporaryDirectory() as td:
            capture = pathlib.Path(td) / "capture.jsonl"
            capture.write_text("{}", encoding="utf-8")
            with self.assertRaises(RuntimeError):
                with cleanup.CleanupHandler(pathlib.Path(td)) as handler:
                    handler.track_file(capture)
                    raise RuntimeError("boom")
            self.assertFalse(capture.exists())

    def test_signal_becomes_run_interrupted_and_reports_branches(self):
        session = RunSession(engine="claude")
        session.add_branch("ralph/add-login-form")
        with self.assertLogs("ralph_loop.cleanup", level="INFO") as logs:
            with self.assertRaises(RunInterrupted) as ctx:
                with cleanup.CleanupHandler(pathlib.Path("."), session=session):
                    os.kill(os.getpid(), signal.SIGTERM)
                    time.sleep(5)
        self.assertEqual(ctx.exception.signum, signal.SIGTERM)
        output = "\n".join(logs.output)
        self.assertIn("Interrupted! Cleaned up.", output)
        self.assertIn("ralph/add-login-form", output)

    def test_previous_signal_handlers_restored(self):
        before = signal.getsignal(signal.SIGTERM)
        with cleanup.CleanupHandler(pathlib.Path(".")):
            self.assertNotEqual(signal.getsignal(signal.SIGTERM), before)
        self.assertEqual(signal.getsignal(signal.SIGTERM), before)


class ReconcileWorktreeTests(unittest.TestCase):
    def test_dirty_worktree_is_preserved(self):
        with tempfile.TemporaryDirectory() as td:
            base = pathlib.Path(td) / "worktrees"
            clean = base / "agent-1"
            dirty = base / "agent-2"
            clean.mkdir(parents=True)
            dirty.mkdir(parents=True)

            def fake_git(repo, *args):
                if args[:2] == ("status", "--porcelain"):
                    return _cp(stdout=" M file.py\n" if repo == dirty else "")
                return _cp()

            with mock.patch("ralph_loop.cleanup.run_git", side_effect=fake_git) as run_git, mock.patch(
                "ralph_loop.gitops.run_git", side_effect=fake_git
            ):
                removed, preserved = cleanup.reconcile_worktrees(pathlib.Path(td), base)

            self.assertEqual(removed, [clean])
            self.assertEqual(preserved, [dirty])
            self.assertTrue(base.exists())
            run_git.assert_called_once_with(pathlib.Path(td), "worktree", "remove", str(clean))

    def test_base_removed_when_everything_clean(self):
        with tempfile.TemporaryDirectory() as td:
            base = pathlib.Path(td) / "worktrees"
            (base / "agent-1").mkdir(parents=True)
            with mock.patch("ralph_loop.cleanup.run_git", return_value=_cp()), mock.patch(
                "ralph_loop.gitops.run_git", return_value=_cp()
            ):
                removed, preserved = cleanup.reconcile_worktrees(pathlib.Path(td), base)
            self.assertEqual(len(removed), 1)
            self.assertEqual(preserved, [])
            self.assertFalse(base.exists())

    def test_missing_base_is_noop(self):
        removed, preserved = cleanup.reconcile_worktrees(pathlib.Path("."), pathlib.Path("/nonexistent/ralph-wt"))
        self.assertEqual((removed, preserved), ([], []))


if __name__ == "__main__":
    unittest.main()
