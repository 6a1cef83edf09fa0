from __future__ import annotations

import subprocess
from typing import BinaryIO, Mapping, Optional, Sequence

from procbridge.bridge.contract import ProcessStillRunning


class LocalProcess:
    """`ProcessHandle` backed by a child of the current process."""

    def __init__(self, proc: subprocess.Popen) -> None:
        self._proc = proc

    @property
    def pid(self) -> int:
        return int(self._proc.pid)

    @property
    def stdin(self) -> Optional[BinaryIO]:
        return self._proc.stdin

    @property
    def stdout(self) -> Optional[BinaryIO]:
        return self._proc.stdout

    @property
    def stderr(self) -> Optional[BinaryIO]:
        return self._proc.stderr

    def wait(self, timeout: Optional[float] = None) -> int:
        try:
            return int(self._proc.wait(timeout=timeout))
        except subprocess.TimeoutExpired as exc:
            raise InterruptedError(f"pid {self.pid} still running after {timeout}s") from exc

    def exit_value(self) -> int:
        rc = self._proc.poll()
        if rc is None:
            raise ProcessStillRunning(f"pid {self.pid} has not exited")
        return int(rc)

    def is_alive(self) -> bool:
        return self._proc.poll() is None

    def destroy(self) -> None:
        try:
            self._proc.terminate()
        except OSError:
            pass

    def close(self) -> None:
        for stream in (self._proc.stdin, self._proc.stdout, self._proc.stderr):
            if stream is None:
                continue
            try:
                stream.close()
            except OSError:
                pass

    def __enter__(self) -> "LocalProcess":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


def spawn(
    argv: Sequence[str],
    *,
    env: Optional[Mapping[str, str]] = None,
    cwd: Optional[str] = None,
) -> subprocess.Popen:
    """
    Start `argv` with all three standard streams piped.

    `env`, when given, replaces the environment. Raises `OSError` if the
    command cannot be started.
    """

    if not argv:
        raise ValueError("argv must not be empty")
    return subprocess.Popen(
        list(argv),
        stdin=subprocess.PIPE,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        env=dict(env) if env is not None else None,
        cwd=cwd,
        close_fds=True,
    )
