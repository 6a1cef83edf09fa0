from __future__ import annotations

from typing import Optional, Protocol

from procbridge.bridge.pipes import PipeHandle

# Returned by the client proxy when a status call could not reach the service.
EXIT_UNAVAILABLE = -1


class TransportError(ConnectionError):
    """The call could not be completed because the service channel is broken."""


class ProcessStillRunning(RuntimeError):
    """An exit code was requested from a process that has not terminated."""


class RemoteProcessContract(Protocol):
    """
    Operations a remote process handle supports.

    Exit statuses are tagged: `None` means "not terminated" (for `exit_value`)
    or "interrupted" (for `wait`); any int is a real exit code, including
    negative signal deaths. Every method may raise `TransportError`.
    """

    def get_stdin(self) -> Optional[PipeHandle]: ...

    def get_stdout(self) -> Optional[PipeHandle]: ...

    def get_stderr(self) -> Optional[PipeHandle]: ...

    def wait(self, timeout: Optional[float] = None) -> Optional[int]: ...

    def exit_value(self) -> Optional[int]: ...

    def is_alive(self) -> bool: ...

    def destroy(self) -> None: ...

    def release(self) -> None: ...
