from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import BinaryIO, Optional, Protocol

from procbridge.constants import BUFFER_SIZE


@dataclass(frozen=True)
class ExecResult:
    exit_code: int
    stdout: str
    stderr: str


class ProcessHandle(Protocol):
    """
    The process shape the rest of the application codes against.

    Implemented by `LocalProcess` (a child of this process) and `RemoteProcess`
    (a process running inside the service).
    """

    @property
    def stdin(self) -> Optional[BinaryIO]: ...

    @property
    def stdout(self) -> Optional[BinaryIO]: ...

    @property
    def stderr(self) -> Optional[BinaryIO]: ...

    def wait(self, timeout: Optional[float] = None) -> int: ...

    def exit_value(self) -> int: ...

    def is_alive(self) -> bool: ...

    def destroy(self) -> None: ...

    def close(self) -> None: ...


def _drain(stream: Optional[BinaryIO], out: list[bytes]) -> None:
    if stream is None:
        return
    try:
        while True:
            chunk = stream.read(BUFFER_SIZE)
            if not chunk:
                return
            out.append(chunk)
    finally:
        stream.close()


def _feed(stream: Optional[BinaryIO], data: Optional[bytes]) -> None:
    if stream is None:
        return
    try:
        if data:
            stream.write(data)
            stream.flush()
    except BrokenPipeError:
        # Process exited without reading all of its input.
        pass
    finally:
        try:
            stream.close()
        except BrokenPipeError:
            pass


def capture(handle: ProcessHandle, input: Optional[bytes] = None) -> ExecResult:
    """
    Feed `input` to the process, collect its output and wait for it.

    Both output streams are drained concurrently so a chatty stderr cannot
    block stdout.
    """

    out: list[bytes] = []
    err: list[bytes] = []
    workers = [
        threading.Thread(target=_drain, args=(handle.stdout, out), daemon=True),
        threading.Thread(target=_drain, args=(handle.stderr, err), daemon=True),
    ]
    for t in workers:
        t.start()
    _feed(handle.stdin, input)
    for t in workers:
        t.join()
    rc = handle.wait()
    return ExecResult(
        exit_code=int(rc),
        stdout=b"".join(out).decode("utf-8", "replace"),
        stderr=b"".join(err).decode("utf-8", "replace"),
    )
