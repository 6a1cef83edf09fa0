import os
import unittest
from typing import Optional

from procbridge.bridge.contract import EXIT_UNAVAILABLE, ProcessStillRunning, TransportError
from procbridge.bridge.pipes import PipeHandle
from procbridge.bridge.proxy import RemoteProcess


def _readable(payload: bytes) -> PipeHandle:
    r, w = os.pipe()
    os.write(w, payload)
    os.close(w)
    return PipeHandle(r, writable=False)


class _FakeRemote:
    def __init__(
        self,
        *,
        alive: bool = False,
        exit_code: Optional[int] = 0,
        wait_result: Optional[int] = 0,
        stdout: bytes = b"",
    ) -> None:
        self.alive = alive
        self.exit_code = exit_code
        self.wait_result = wait_result
        self.stdout_payload = stdout
        self.calls: list[str] = []

    def get_stdin(self) -> Optional[PipeHandle]:
        self.calls.append("get_stdin")
        r, w = os.pipe()
        os.close(r)
        return PipeHandle(w, writable=True)

    def get_stdout(self) -> Optional[PipeHandle]:
        self.calls.append("get_stdout")
        return _readable(self.stdout_payload)

    def get_stderr(self) -> Optional[PipeHandle]:
        self.calls.append("get_stderr")
        return None

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        self.calls.append("wait")
        return self.wait_result

    def exit_value(self) -> Optional[int]:
        self.calls.append("exit_value")
        return self.exit_code

    def is_alive(self) -> bool:
        self.calls.append("is_alive")
        return self.alive

    def destroy(self) -> None:
        self.calls.append("destroy")

    def release(self) -> None:
        self.calls.append("release")


class _BrokenRemote:
    def _fail(self, *args: object, **kwargs: object):
        raise TransportError("service went away")

    get_stdin = get_stdout = get_stderr = _fail
    wait = exit_value = is_alive = destroy = release = _fail


class TestRemoteProcessStreams(unittest.TestCase):
    def test_stream_is_built_once_and_cached(self) -> None:
        remote = _FakeRemote(stdout=b"hello\n")
        proc = RemoteProcess(remote)
        self.addCleanup(proc.close)

        first = proc.stdout
        self.assertIs(proc.stdout, first)
        self.assertEqual(remote.calls.count("get_stdout"), 1)
        self.assertEqual(first.read(), b"hello\n")

    def test_missing_remote_stream_is_none(self) -> None:
        proc = RemoteProcess(_FakeRemote())
        self.addCleanup(proc.close)

        self.assertIsNone(proc.stderr)

    def test_transport_failure_yields_none_streams(self) -> None:
        proc = RemoteProcess(_BrokenRemote())

        self.assertIsNone(proc.stdin)
        self.assertIsNone(proc.stdout)
        self.assertIsNone(proc.stderr)

    def test_unopenable_handle_yields_none(self) -> None:
        remote = _FakeRemote()
        spent = _readable(b"")
        os.close(spent.detach())
        remote.get_stdout = lambda: spent  # type: ignore[method-assign]
        proc = RemoteProcess(remote)
        self.addCleanup(proc.close)

        self.assertIsNone(proc.stdout)


class TestRemoteProcessStatus(unittest.TestCase):
    def test_wait_returns_exit_code(self) -> None:
        proc = RemoteProcess(_FakeRemote(wait_result=7))
        self.assertEqual(proc.wait(), 7)

    def test_wait_interrupted_raises(self) -> None:
        proc = RemoteProcess(_FakeRemote(wait_result=None))
        with self.assertRaises(InterruptedError):
            proc.wait()

    def test_wait_transport_failure_returns_sentinel(self) -> None:
        proc = RemoteProcess(_BrokenRemote())
        self.assertEqual(proc.wait(), EXIT_UNAVAILABLE)

    def test_exit_value_requires_termination(self) -> None:
        remote = _FakeRemote(alive=True, exit_code=None)
        proc = RemoteProcess(remote)
        with self.assertRaises(ProcessStillRunning):
            proc.exit_value()
        self.assertNotIn("exit_value", remote.calls)

    def test_exit_value_hides_not_terminated_status(self) -> None:
        proc = RemoteProcess(_FakeRemote(alive=False, exit_code=None))
        with self.assertRaises(ProcessStillRunning):
            proc.exit_value()

    def test_exit_value_reports_negative_codes(self) -> None:
        proc = RemoteProcess(_FakeRemote(alive=False, exit_code=-1))
        self.assertEqual(proc.exit_value(), -1)

    def test_transport_failure_reads_as_dead(self) -> None:
        proc = RemoteProcess(_BrokenRemote())
        self.assertFalse(proc.is_alive())
        self.assertEqual(proc.exit_value(), EXIT_UNAVAILABLE)
        proc.destroy()
        proc.close()

    def test_destroy_forwards(self) -> None:
        remote = _FakeRemote(alive=True)
        RemoteProcess(remote).destroy()
        self.assertEqual(remote.calls, ["destroy"])


class TestRemoteProcessClose(unittest.TestCase):
    def test_close_closes_streams_and_releases_once(self) -> None:
        remote = _FakeRemote(stdout=b"x")
        proc = RemoteProcess(remote)
        stdout = proc.stdout

        proc.close()
        proc.close()

        self.assertTrue(stdout.closed)
        self.assertEqual(remote.calls.count("release"), 1)

    def test_context_manager_closes(self) -> None:
        remote = _FakeRemote()
        with RemoteProcess(remote) as proc:
            self.assertIsNotNone(proc.stdin)
        self.assertIn("release", remote.calls)
