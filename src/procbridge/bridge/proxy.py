from __future__ import annotations

import threading
from typing import BinaryIO, Callable, Optional

from procbridge.bridge.contract import (
    EXIT_UNAVAILABLE,
    ProcessStillRunning,
    RemoteProcessContract,
    TransportError,
)
from procbridge.bridge.pipes import PipeHandle
from procbridge.util.log import describe_exc, log


class RemoteProcess:
    """
    Client-side `ProcessHandle` for a process that runs inside the service.

    Streams are opened lazily from pipes received over the contract. Transport
    failures never escape: a stream becomes `None`, liveness becomes `False`,
    status calls return `EXIT_UNAVAILABLE`.
    """

    def __init__(self, remote: RemoteProcessContract) -> None:
        self._remote = remote
        self._lock = threading.Lock()
        self._streams: dict[str, BinaryIO] = {}
        self._closed = False

    def _stream(self, direction: str, fetch: Callable[[], Optional[PipeHandle]]) -> Optional[BinaryIO]:
        with self._lock:
            stream = self._streams.get(direction)
            if stream is not None or self._closed:
                return stream
            try:
                handle = fetch()
                if handle is None:
                    return None
                stream = handle.open()
            except TransportError as exc:
                log(f"remote {direction} unavailable: {describe_exc(exc)}")
                return None
            except OSError as exc:
                log(f"remote {direction} cannot be opened: {describe_exc(exc)}")
                return None
            self._streams[direction] = stream
            return stream

    @property
    def stdin(self) -> Optional[BinaryIO]:
        return self._stream("stdin", self._remote.get_stdin)

    @property
    def stdout(self) -> Optional[BinaryIO]:
        return self._stream("stdout", self._remote.get_stdout)

    @property
    def stderr(self) -> Optional[BinaryIO]:
        return self._stream("stderr", self._remote.get_stderr)

    def wait(self, timeout: Optional[float] = None) -> int:
        try:
            rc = self._remote.wait(timeout)
        except TransportError:
            return EXIT_UNAVAILABLE
        if rc is None:
            raise InterruptedError("remote wait was interrupted")
        return rc

    def exit_value(self) -> int:
        try:
            if self._remote.is_alive():
                raise ProcessStillRunning("remote process has not exited")
            rc = self._remote.exit_value()
        except TransportError:
            return EXIT_UNAVAILABLE
        if rc is None:
            raise ProcessStillRunning("remote process has not exited")
        return rc

    def is_alive(self) -> bool:
        try:
            return self._remote.is_alive()
        except TransportError:
            return False

    def destroy(self) -> None:
        try:
            self._remote.destroy()
        except TransportError:
            pass

    def close(self) -> None:
        """
        Close the local streams and drop the service's handle for this process.

        The process itself keeps running; call `destroy()` first to stop it.
        """

        with self._lock:
            if self._closed:
                return
            self._closed = True
            streams = list(self._streams.values())
        for stream in streams:
            try:
                stream.close()
            except OSError:
                pass
        try:
            self._remote.release()
        except TransportError:
            pass

    def __enter__(self) -> "RemoteProcess":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
