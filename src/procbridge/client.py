from __future__ import annotations

import os
import socket
import threading
from concurrent.futures import Future
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence

from procbridge.bridge.contract import TransportError
from procbridge.bridge.pipes import PipeHandle
from procbridge.bridge.proxy import RemoteProcess
from procbridge.constants import CONNECT_TIMEOUT_SECONDS
from procbridge.rpc import JsonRpcError, JsonRpcIncoming, MessageSocket, request_obj
from procbridge.util.log import describe_exc


def _close_fd(fd: Optional[int]) -> None:
    if fd is None:
        return
    try:
        os.close(fd)
    except OSError:
        pass


class ServiceConnection:
    """
    Client end of the service socket.

    Requests may be issued from any thread. A reader thread matches responses
    to pending requests by id; when the connection ends every pending request
    fails with `TransportError`, so no caller is left blocked.
    """

    def __init__(self, conn: MessageSocket) -> None:
        self._conn = conn
        self._lock = threading.Lock()
        self._next_id = 1
        self._pending: dict[int, Future[tuple[Any, Optional[int]]]] = {}
        self._closed = False
        self._reader = threading.Thread(
            target=self._read_loop, name="procbridge reader", daemon=True
        )
        self._reader.start()

    @classmethod
    def connect(
        cls, socket_path: Path | str, *, timeout: float = CONNECT_TIMEOUT_SECONDS
    ) -> "ServiceConnection":
        path = Path(socket_path).expanduser()
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(timeout)
        try:
            sock.connect(str(path))
        except OSError as exc:
            sock.close()
            raise TransportError(f"cannot connect to {path}: {describe_exc(exc)}") from exc
        sock.settimeout(None)
        return cls(MessageSocket(sock))

    @property
    def closed(self) -> bool:
        return self._closed

    def request(self, method: str, params: dict[str, Any]) -> tuple[Any, Optional[int]]:
        """
        Send one call and block for its reply.

        Returns `(result, fd)`; `fd` is set only for replies that carried a
        pipe, and the caller owns it.
        """

        fut: Future[tuple[Any, Optional[int]]] = Future()
        with self._lock:
            if self._closed:
                raise TransportError("connection closed")
            rid = self._next_id
            self._next_id += 1
            self._pending[rid] = fut
        try:
            self._conn.send(request_obj(rid, method, params))
        except OSError as exc:
            with self._lock:
                self._pending.pop(rid, None)
            raise TransportError(f"{method}: {describe_exc(exc)}") from exc
        try:
            return fut.result()
        except JsonRpcError as exc:
            raise TransportError(f"{method}: {exc}") from exc

    def _read_loop(self) -> None:
        reason = "connection closed"
        try:
            while True:
                batch = self._conn.recv()
                if batch is None:
                    return
                for incoming in batch:
                    self._handle_incoming(incoming)
        except OSError as exc:
            reason = f"connection lost: {describe_exc(exc)}"
        finally:
            self._fail_pending(reason)

    def _handle_incoming(self, incoming: JsonRpcIncoming) -> None:
        fd = self._conn.take_fd() if incoming.carries_pipe else None
        rid = incoming.id
        with self._lock:
            fut = self._pending.pop(rid, None) if rid is not None else None
        if fut is None or not incoming.is_response:
            _close_fd(fd)
            return
        error = incoming.obj.get("error")
        if error is not None:
            _close_fd(fd)
            message = error.get("message") if isinstance(error, dict) else error
            fut.set_exception(JsonRpcError(error=message))
            return
        fut.set_result((incoming.obj.get("result"), fd))

    def _fail_pending(self, reason: str) -> None:
        with self._lock:
            self._closed = True
            pending, self._pending = list(self._pending.values()), {}
        for fut in pending:
            if not fut.done():
                fut.set_exception(TransportError(reason))

    def close(self) -> None:
        with self._lock:
            self._closed = True
        # Wakes the reader, which fails whatever is still pending.
        self._conn.close()

    def __enter__(self) -> "ServiceConnection":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


def _status(result: Any) -> Optional[int]:
    if result is None:
        return None
    if isinstance(result, int) and not isinstance(result, bool):
        return result
    raise TransportError(f"malformed exit status: {result!r}")


class _RemoteProcessStub:
    """Remote process contract implemented by calls over a `ServiceConnection`."""

    def __init__(self, conn: ServiceConnection, process_id: int) -> None:
        self._conn = conn
        self._id = process_id

    def _call(self, method: str, **params: Any) -> tuple[Any, Optional[int]]:
        return self._conn.request(method, {"process": self._id, **params})

    def _pipe(self, method: str, *, writable: bool) -> Optional[PipeHandle]:
        result, fd = self._call(method)
        if fd is None:
            if result is not None:
                raise TransportError(f"{method}: pipe announced but no descriptor received")
            return None
        return PipeHandle(fd, writable=writable)

    def get_stdin(self) -> Optional[PipeHandle]:
        return self._pipe("get_stdin", writable=True)

    def get_stdout(self) -> Optional[PipeHandle]:
        return self._pipe("get_stdout", writable=False)

    def get_stderr(self) -> Optional[PipeHandle]:
        return self._pipe("get_stderr", writable=False)

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        result, _ = self._call("wait", timeout=timeout)
        return _status(result)

    def exit_value(self) -> Optional[int]:
        result, _ = self._call("exit_value")
        return _status(result)

    def is_alive(self) -> bool:
        result, _ = self._call("is_alive")
        return bool(result)

    def destroy(self) -> None:
        self._call("destroy")

    def release(self) -> None:
        self._call("release")


class ServiceClient:
    """
    Starts processes inside the service and hands back `RemoteProcess` proxies.

    The connection is opened on first use and shared by every proxy created
    through this client; closing the client drops it, after which the service
    destroys the processes it launched for us.
    """

    def __init__(self, socket_path: Path | str, *, timeout: float = CONNECT_TIMEOUT_SECONDS) -> None:
        self._socket_path = socket_path
        self._timeout = timeout
        self._conn: Optional[ServiceConnection] = None
        self._lock = threading.Lock()

    @property
    def connected(self) -> bool:
        """Whether a connection is open; unlike `connection`, never dials."""
        conn = self._conn
        return conn is not None and not conn.closed

    @property
    def connection(self) -> ServiceConnection:
        with self._lock:
            if self._conn is None or self._conn.closed:
                self._conn = ServiceConnection.connect(self._socket_path, timeout=self._timeout)
            return self._conn

    def exec(
        self,
        argv: Sequence[str],
        *,
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[str] = None,
    ) -> Optional[RemoteProcess]:
        """
        Run `argv` in the service. `None` if the service could not start it.

        Raises `TransportError` if the service cannot be reached.
        """

        params: dict[str, Any] = {"argv": list(argv)}
        if env is not None:
            params["env"] = dict(env)
        if cwd is not None:
            params["cwd"] = cwd
        conn = self.connection
        result, _ = conn.request("exec", params)
        if result is None:
            return None
        process_id = result.get("process") if isinstance(result, dict) else None
        if not isinstance(process_id, int):
            raise TransportError(f"exec: malformed reply: {result!r}")
        return RemoteProcess(_RemoteProcessStub(conn, process_id))

    def close(self) -> None:
        with self._lock:
            conn, self._conn = self._conn, None
        if conn is not None:
            conn.close()

    def __enter__(self) -> "ServiceClient":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
