import signal
import unittest

from procbridge.bridge.contract import ProcessStillRunning
from procbridge.process.base import capture
from procbridge.process.local import LocalProcess, spawn


class TestLocalProcess(unittest.TestCase):
    def test_capture_collects_both_streams(self) -> None:
        with LocalProcess(spawn(["sh", "-c", "cat; echo err >&2; exit 2"])) as proc:
            result = capture(proc, input=b"line\n")
        self.assertEqual(result.exit_code, 2)
        self.assertEqual(result.stdout, "line\n")
        self.assertEqual(result.stderr, "err\n")

    def test_exit_value_before_exit_raises(self) -> None:
        with LocalProcess(spawn(["sleep", "100"])) as proc:
            self.assertTrue(proc.is_alive())
            with self.assertRaises(ProcessStillRunning):
                proc.exit_value()
            with self.assertRaises(InterruptedError):
                proc.wait(timeout=0.05)
            proc.destroy()
            self.assertEqual(proc.wait(timeout=5.0), -signal.SIGTERM)
            self.assertEqual(proc.exit_value(), -signal.SIGTERM)
            self.assertFalse(proc.is_alive())

    def test_env_replaces_environment(self) -> None:
        with LocalProcess(spawn(["/bin/sh", "-c", 'echo "[$HOME]"'], env={})) as proc:
            result = capture(proc)
        self.assertEqual(result.stdout, "[]\n")

    def test_empty_argv_rejected(self) -> None:
        with self.assertRaises(ValueError):
            spawn([])
