from __future__ import annotations

import os
import threading
from typing import BinaryIO, Optional

from procbridge.constants import BUFFER_SIZE
from procbridge.util.log import describe_exc, log


class PipeTransferredError(OSError):
    pass


class PipeHandle:
    """
    One end of an OS pipe whose other end is fed or drained by a pump thread.

    The descriptor is handed out exactly once: `detach()` (or `open()`) moves
    ownership to the caller. This is what happens when the handle crosses the
    service socket, and it is why closing the received stdin end delivers EOF
    to the process.
    """

    def __init__(self, fd: int, *, writable: bool) -> None:
        self._fd: Optional[int] = fd
        self._lock = threading.Lock()
        self.writable = writable

    def __repr__(self) -> str:
        mode = "w" if self.writable else "r"
        return f"PipeHandle(fd={self._fd}, mode={mode!r})"

    @property
    def transferred(self) -> bool:
        return self._fd is None

    def fileno(self) -> int:
        fd = self._fd
        if fd is None:
            raise PipeTransferredError("pipe handle already transferred")
        return fd

    def detach(self) -> int:
        with self._lock:
            fd = self._fd
            if fd is None:
                raise PipeTransferredError("pipe handle already transferred")
            self._fd = None
            return fd

    def open(self) -> BinaryIO:
        fd = self.detach()
        try:
            if self.writable:
                # Unbuffered: each write reaches the pump without an explicit flush.
                return os.fdopen(fd, "wb", buffering=0)
            return os.fdopen(fd, "rb")
        except Exception:
            os.close(fd)
            raise

    def close(self) -> None:
        """Close the descriptor if nobody took it."""
        with self._lock:
            fd, self._fd = self._fd, None
        if fd is not None:
            os.close(fd)


def _read_chunk(stream: BinaryIO, size: int) -> bytes:
    # read1 returns whatever is available instead of waiting for `size` bytes.
    read1 = getattr(stream, "read1", None)
    if read1 is not None:
        return read1(size)
    return stream.read(size) or b""


def _write_all(stream: BinaryIO, data: bytes) -> None:
    view = memoryview(data)
    while view:
        n = stream.write(view)
        if n is None:
            # Non-blocking raw streams report "would block" as None.
            raise BlockingIOError("sink would block")
        view = view[n:]


class _TransferThread(threading.Thread):
    def __init__(self, src: BinaryIO, dst: BinaryIO, *, buffer_size: int) -> None:
        super().__init__(name="pipe transfer", daemon=True)
        self._src = src
        self._dst = dst
        self._buffer_size = buffer_size

    def run(self) -> None:
        try:
            while True:
                chunk = _read_chunk(self._src, self._buffer_size)
                if not chunk:
                    break
                _write_all(self._dst, chunk)
                self._dst.flush()
        except (OSError, ValueError) as exc:
            # ValueError: the stream was closed under us (process destroyed/released).
            log(f"transfer: {describe_exc(exc)}")
        finally:
            for what, stream in (("source", self._src), ("sink", self._dst)):
                try:
                    stream.close()
                except (OSError, ValueError) as exc:
                    log(f"transfer: closing {what}: {describe_exc(exc)}")


def _start_pump(src: BinaryIO, dst: BinaryIO, *, buffer_size: int, own: BinaryIO) -> None:
    try:
        _TransferThread(src, dst, buffer_size=buffer_size).start()
    except Exception:
        own.close()
        raise


def pipe_from(source: BinaryIO, *, buffer_size: int = BUFFER_SIZE) -> PipeHandle:
    """
    Return the read end of a new pipe; a pump copies `source` into its write end.
    """

    read_fd, write_fd = os.pipe()
    try:
        sink = os.fdopen(write_fd, "wb", buffering=0)
    except Exception:
        os.close(read_fd)
        os.close(write_fd)
        raise
    handle = PipeHandle(read_fd, writable=False)
    try:
        _start_pump(source, sink, buffer_size=buffer_size, own=sink)
    except Exception:
        handle.close()
        raise
    return handle


def pipe_to(sink: BinaryIO, *, buffer_size: int = BUFFER_SIZE) -> PipeHandle:
    """
    Return the write end of a new pipe; a pump copies its read end into `sink`.
    """

    read_fd, write_fd = os.pipe()
    try:
        source = os.fdopen(read_fd, "rb", buffering=0)
    except Exception:
        os.close(read_fd)
        os.close(write_fd)
        raise
    handle = PipeHandle(write_fd, writable=True)
    try:
        _start_pump(source, sink, buffer_size=buffer_size, own=source)
    except Exception:
        handle.close()
        raise
    return handle
