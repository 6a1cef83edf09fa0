import errno
import os
import shutil
import signal
import tempfile
import threading
import time
import unittest
from dataclasses import replace
from pathlib import Path

from procbridge.bridge.contract import EXIT_UNAVAILABLE, ProcessStillRunning, TransportError
from procbridge.client import ServiceClient, ServiceConnection
from procbridge.config import default_config
from procbridge.process.base import capture
from procbridge.service import ProcessService


def _config_for(socket_path: Path, **exec_overrides):
    cfg = default_config()
    return replace(
        cfg,
        service=replace(cfg.service, socket_path=str(socket_path)),
        exec=replace(cfg.exec, **exec_overrides),
    )


class _ServiceTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.td = tempfile.mkdtemp(prefix="pb")
        self.socket_path = Path(self.td) / "s.sock"
        self.service = ProcessService(_config_for(self.socket_path))
        self.service.start()
        self.server_thread = threading.Thread(target=self.service.serve_forever, daemon=True)
        self.server_thread.start()
        self.client = ServiceClient(self.socket_path)

    def tearDown(self) -> None:
        self.client.close()
        self.service.shutdown()
        self.server_thread.join(timeout=5.0)
        shutil.rmtree(self.td, ignore_errors=True)

    def _wait_until(self, predicate, timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(0.02)
        return predicate()


class TestRemoteProcessOverSocket(_ServiceTestCase):
    def test_echo_hello(self) -> None:
        proc = self.client.exec(["sh", "-c", "echo hello"])
        self.assertIsNotNone(proc)
        with proc:
            self.assertEqual(proc.stdout.read(), b"hello\n")
            self.assertEqual(proc.wait(), 0)
            self.assertFalse(proc.is_alive())
            self.assertEqual(proc.exit_value(), 0)

    def test_same_stream_object_on_repeated_access(self) -> None:
        with self.client.exec(["sh", "-c", "echo hi"]) as proc:
            self.assertIs(proc.stdout, proc.stdout)
            self.assertIs(proc.stdin, proc.stdin)
            proc.wait()

    def test_stdin_round_trip_and_stderr(self) -> None:
        with self.client.exec(["sh", "-c", "cat; echo oops >&2; exit 3"]) as proc:
            result = capture(proc, input=b"abc\n" * 1000)
        self.assertEqual(result.exit_code, 3)
        self.assertEqual(result.stdout, "abc\n" * 1000)
        self.assertEqual(result.stderr, "oops\n")

    def test_destroy_long_running_process(self) -> None:
        with self.client.exec(["sleep", "100"]) as proc:
            stdout = proc.stdout
            self.assertTrue(proc.is_alive())

            proc.destroy()

            self.assertTrue(self._wait_until(lambda: not proc.is_alive()))
            # The stdout pump unblocked and closed its end.
            self.assertEqual(stdout.read(), b"")
            self.assertEqual(proc.wait(), -signal.SIGTERM)

    def test_wait_with_timeout_is_interrupted(self) -> None:
        with self.client.exec(["sleep", "100"]) as proc:
            with self.assertRaises(InterruptedError):
                proc.wait(timeout=0.1)
            with self.assertRaises(ProcessStillRunning):
                proc.exit_value()
            proc.destroy()

    def test_destroy_while_another_thread_waits(self) -> None:
        with self.client.exec(["sleep", "100"]) as proc:
            codes = []
            waiter = threading.Thread(target=lambda: codes.append(proc.wait()))
            waiter.start()
            time.sleep(0.1)
            proc.destroy()
            waiter.join(timeout=5.0)
            self.assertFalse(waiter.is_alive())
            self.assertEqual(codes, [-signal.SIGTERM])

    def test_env_replaces_environment_and_cwd_applies(self) -> None:
        with self.client.exec(
            ["/bin/sh", "-c", 'echo "$FOO:$HOME"; pwd -P'],
            env={"FOO": "bar"},
            cwd=self.td,
        ) as proc:
            result = capture(proc)
        lines = result.stdout.splitlines()
        self.assertEqual(lines[0], "bar:")
        self.assertEqual(lines[1], os.path.realpath(self.td))

    def test_launch_failure_returns_none(self) -> None:
        self.assertIsNone(self.client.exec(["/nonexistent/procbridge-test-binary"]))

    def test_pipe_is_delivered_only_once(self) -> None:
        with self.client.exec(["sleep", "100"]) as proc:
            self.assertIsNotNone(proc.stdout)
            with self.assertRaises(TransportError):
                self.client.connection.request("get_stdout", {"process": 1})
            proc.destroy()

    def test_unknown_method_and_process(self) -> None:
        with self.client.exec(["sleep", "100"]) as proc:
            conn = self.client.connection
            with self.assertRaises(TransportError):
                conn.request("frobnicate", {"process": 1})
            with self.assertRaises(TransportError):
                conn.request("is_alive", {"process": 999})
            # The connection survives bad calls.
            self.assertTrue(proc.is_alive())
            proc.destroy()

    def test_released_process_is_forgotten(self) -> None:
        proc = self.client.exec(["sh", "-c", "exit 0"])
        proc.wait()
        proc.close()
        with self.assertRaises(TransportError):
            self.client.connection.request("is_alive", {"process": 1})


class TestTransportLoss(_ServiceTestCase):
    def test_disconnect_before_any_stream_access(self) -> None:
        proc = self.client.exec(["sleep", "100"])
        self.client.close()

        self.assertIsNone(proc.stdin)
        self.assertIsNone(proc.stdout)
        self.assertIsNone(proc.stderr)
        self.assertFalse(proc.is_alive())
        self.assertEqual(proc.wait(), EXIT_UNAVAILABLE)
        proc.close()

    def test_service_shutdown_fails_pending_wait(self) -> None:
        proc = self.client.exec(["sleep", "100"])
        codes = []
        waiter = threading.Thread(target=lambda: codes.append(proc.wait()))
        waiter.start()
        time.sleep(0.1)

        self.service.shutdown()

        waiter.join(timeout=5.0)
        self.assertFalse(waiter.is_alive())
        # Either the service's teardown killed the process first, or the connection dropped first.
        self.assertIn(codes[0], (EXIT_UNAVAILABLE, -signal.SIGTERM))
        self.assertTrue(self._wait_until(lambda: not proc.is_alive()))

    def test_connect_to_missing_socket(self) -> None:
        client = ServiceClient(Path(self.td) / "nope.sock", timeout=0.5)
        with self.assertRaises(TransportError):
            client.exec(["true"])


class TestServicePolicy(unittest.TestCase):
    def test_command_outside_allow_list_is_refused(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            service = ProcessService(_config_for(Path(td) / "s.sock", allowed_commands=("echo",)))
            self.assertIsNone(service.launch(["sh", "-c", "true"]))
            holder = service.launch(["echo", "ok"])
            self.assertIsNotNone(holder)
            self.assertEqual(holder.wait(timeout=5.0), 0)
            holder.release()

    def test_rejects_peer_with_unlisted_uid(self) -> None:
        td = tempfile.mkdtemp(prefix="pb")
        self.addCleanup(shutil.rmtree, td, True)
        cfg = _config_for(Path(td) / "s.sock")
        cfg = replace(cfg, service=replace(cfg.service, allowed_uids=(os.getuid() + 1,)))
        service = ProcessService(cfg)
        service.start()
        t = threading.Thread(target=service.serve_forever, daemon=True)
        t.start()
        try:
            with ServiceConnection.connect(cfg.service.socket_path) as conn:
                with self.assertRaises(TransportError):
                    conn.request("exec", {"argv": ["true"]})
        finally:
            service.shutdown()
            t.join(timeout=5.0)

    def test_stale_socket_file_is_replaced(self) -> None:
        td = tempfile.mkdtemp(prefix="pb")
        self.addCleanup(shutil.rmtree, td, True)
        path = Path(td) / "s.sock"
        first = ProcessService(_config_for(path))
        first.start()
        # Simulate a crash: the listening socket goes away, the file stays.
        first._server.server_close()  # type: ignore[union-attr]
        self.assertTrue(path.is_socket())

        second = ProcessService(_config_for(path))
        second.start()
        try:
            self.assertEqual(path.stat().st_mode & 0o777, 0o600)
        finally:
            second.close()

    def test_live_socket_is_not_taken_over(self) -> None:
        td = tempfile.mkdtemp(prefix="pb")
        self.addCleanup(shutil.rmtree, td, True)
        path = Path(td) / "s.sock"
        first = ProcessService(_config_for(path))
        first.start()
        t = threading.Thread(target=first.serve_forever, daemon=True)
        t.start()
        try:
            second = ProcessService(_config_for(path))
            with self.assertRaises(OSError) as cm:
                second.start()
            self.assertEqual(cm.exception.errno, errno.EADDRINUSE)

            # The first service still owns the path and answers.
            with ServiceClient(path) as client:
                proc = client.exec(["true"])
                self.assertIsNotNone(proc)
                with proc:
                    self.assertEqual(proc.wait(), 0)
        finally:
            first.shutdown()
            t.join(timeout=5.0)
