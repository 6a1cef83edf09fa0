from __future__ import annotations

import subprocess
import threading
from typing import BinaryIO, Callable, Optional

from procbridge.bridge.pipes import PipeHandle, pipe_from, pipe_to
from procbridge.constants import BUFFER_SIZE
from procbridge.util.log import describe_exc, log

DIRECTIONS = ("stdin", "stdout", "stderr")


class RemoteProcessHolder:
    """
    Service-side adapter exposing a started `subprocess.Popen` as a remote process.

    Pipes are built on first request per direction and cached; a second request
    returns the same handle, so there is never more than one pump on a native
    stream.
    """

    def __init__(self, process: subprocess.Popen, *, buffer_size: int = BUFFER_SIZE) -> None:
        self._process = process
        self._buffer_size = buffer_size
        self._locks = {d: threading.Lock() for d in DIRECTIONS}
        self._pipes: dict[str, PipeHandle] = {}
        self._released = False

    @property
    def pid(self) -> int:
        return int(self._process.pid)

    def _pipe(
        self,
        direction: str,
        make: Callable[..., PipeHandle],
        stream: Optional[BinaryIO],
    ) -> Optional[PipeHandle]:
        with self._locks[direction]:
            handle = self._pipes.get(direction)
            if handle is not None:
                return handle
            if stream is None or self._released:
                return None
            try:
                handle = make(stream, buffer_size=self._buffer_size)
            except (OSError, RuntimeError) as exc:
                log(f"pid {self.pid}: cannot open {direction} pipe: {describe_exc(exc)}")
                return None
            self._pipes[direction] = handle
            return handle

    def get_stdin(self) -> Optional[PipeHandle]:
        return self._pipe("stdin", pipe_to, self._process.stdin)

    def get_stdout(self) -> Optional[PipeHandle]:
        return self._pipe("stdout", pipe_from, self._process.stdout)

    def get_stderr(self) -> Optional[PipeHandle]:
        return self._pipe("stderr", pipe_from, self._process.stderr)

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        try:
            return self._process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            # Popen.wait retries on EINTR; only a timeout leaves the status unknown.
            return None

    def exit_value(self) -> Optional[int]:
        return self._process.poll()

    def is_alive(self) -> bool:
        return self._process.poll() is None

    def destroy(self) -> None:
        try:
            self._process.terminate()
        except OSError:
            # Racing process exit.
            pass

    def release(self) -> None:
        """
        Close pipe ends nobody took and the native streams no pump owns.
        """

        self._released = True
        for direction in DIRECTIONS:
            with self._locks[direction]:
                handle = self._pipes.get(direction)
                if handle is not None:
                    try:
                        handle.close()
                    except OSError as exc:
                        log(f"pid {self.pid}: closing {direction} pipe: {describe_exc(exc)}")
                    continue
                stream = getattr(self._process, direction)
                if stream is None:
                    continue
                try:
                    stream.close()
                except (OSError, ValueError) as exc:
                    log(f"pid {self.pid}: closing {direction}: {describe_exc(exc)}")

