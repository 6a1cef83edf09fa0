from __future__ import annotations

import errno
import itertools
import os
import socket
import socketserver
import threading
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence

from procbridge.bridge.holder import RemoteProcessHolder
from procbridge.bridge.pipes import PipeTransferredError
from procbridge.config import Config, command_allowed
from procbridge.constants import CONNECT_TIMEOUT_SECONDS
from procbridge.process.local import spawn
from procbridge.rpc import (
    JsonRpcError,
    JsonRpcIncoming,
    MessageSocket,
    error_obj,
    result_obj,
)
from procbridge.util.log import describe_exc, log

PIPE_METHODS = {"get_stdin": "stdin", "get_stdout": "stdout", "get_stderr": "stderr"}


def _argv_param(params: Mapping[str, Any]) -> list[str]:
    argv = params.get("argv")
    if not isinstance(argv, list) or not argv or not all(isinstance(a, str) for a in argv):
        raise JsonRpcError(error="exec: argv must be a non-empty list of strings")
    return argv


def _env_param(params: Mapping[str, Any]) -> Optional[dict[str, str]]:
    env = params.get("env")
    if env is None:
        return None
    if not isinstance(env, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in env.items()
    ):
        raise JsonRpcError(error="exec: env must map strings to strings")
    return env


def _opt_str_param(params: Mapping[str, Any], key: str) -> Optional[str]:
    value = params.get(key)
    if value is None or isinstance(value, str):
        return value
    raise JsonRpcError(error=f"{key} must be a string")


def _timeout_param(params: Mapping[str, Any]) -> Optional[float]:
    value = params.get("timeout")
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value >= 0:
        return float(value)
    raise JsonRpcError(error="wait: timeout must be a non-negative number")


class _Session:
    """
    Calls arriving on one client connection.

    The session owns every process launched through it; when the connection
    drops they are destroyed and released.
    """

    def __init__(self, service: "ProcessService", conn: MessageSocket) -> None:
        self._service = service
        self._conn = conn
        self._ids = itertools.count(1)
        self._holders: dict[int, RemoteProcessHolder] = {}
        self._lock = threading.Lock()

    def run(self) -> None:
        allowed = self._service.config.service.allowed_uids
        if allowed:
            uid = self._conn.peer_uid()
            if uid is None or uid not in allowed:
                log(f"rejecting peer uid={uid}")
                self._conn.close()
                return
        try:
            while True:
                try:
                    batch = self._conn.recv()
                except OSError as exc:
                    log(f"connection error: {describe_exc(exc)}")
                    return
                if batch is None:
                    return
                for incoming in batch:
                    self._dispatch(incoming)
        finally:
            self.close()

    def close(self) -> None:
        with self._lock:
            holders, self._holders = list(self._holders.values()), {}
        self._conn.close()
        for holder in holders:
            log(f"client gone, destroying pid {holder.pid}")
            holder.destroy()
            holder.release()

    def _dispatch(self, incoming: JsonRpcIncoming) -> None:
        if not incoming.is_request:
            self._send(error_obj(incoming.id, "expected a request"))
            return
        if incoming.method == "wait":
            # A blocked wait must not hold up destroy/is_alive on the same connection.
            threading.Thread(
                target=self._call, args=(incoming,), name="remote wait", daemon=True
            ).start()
            return
        self._call(incoming)

    def _call(self, incoming: JsonRpcIncoming) -> None:
        rid = incoming.id
        try:
            result, fd = self._handle(incoming.method or "", incoming.params)
        except JsonRpcError as exc:
            self._send(error_obj(rid, str(exc.error)))
            return
        except Exception as exc:
            log(f"{incoming.method}: {describe_exc(exc)}")
            self._send(error_obj(rid, f"internal error: {describe_exc(exc)}"))
            return
        try:
            self._send(result_obj(rid, result), fd=fd)
        finally:
            if fd is not None:
                os.close(fd)

    def _send(self, obj: dict[str, Any], *, fd: Optional[int] = None) -> None:
        try:
            self._conn.send(obj, fd=fd)
        except OSError as exc:
            log(f"reply {obj.get('id')} not delivered: {describe_exc(exc)}")

    def _holder(self, params: Mapping[str, Any]) -> tuple[int, RemoteProcessHolder]:
        pid = params.get("process")
        with self._lock:
            holder = self._holders.get(pid) if isinstance(pid, int) else None
        if holder is None:
            raise JsonRpcError(error=f"unknown process: {pid!r}")
        return pid, holder  # type: ignore[return-value]

    def _handle(self, method: str, params: Mapping[str, Any]) -> tuple[Any, Optional[int]]:
        if method == "exec":
            holder = self._service.launch(
                _argv_param(params),
                env=_env_param(params),
                cwd=_opt_str_param(params, "cwd"),
            )
            if holder is None:
                return None, None
            with self._lock:
                pid = next(self._ids)
                self._holders[pid] = holder
            return {"process": pid}, None

        pid, holder = self._holder(params)

        if method in PIPE_METHODS:
            direction = PIPE_METHODS[method]
            handle = getattr(holder, method)()
            if handle is None:
                return None, None
            try:
                fd = handle.detach()
            except PipeTransferredError:
                raise JsonRpcError(error=f"{direction} pipe already transferred")
            return {"pipe": direction}, fd
        if method == "wait":
            return holder.wait(_timeout_param(params)), None
        if method == "exit_value":
            return holder.exit_value(), None
        if method == "is_alive":
            return holder.is_alive(), None
        if method == "destroy":
            holder.destroy()
            return None, None
        if method == "release":
            with self._lock:
                self._holders.pop(pid, None)
            holder.release()
            return None, None
        raise JsonRpcError(error=f"unknown method: {method!r}")


def _socket_in_use(path: Path) -> bool:
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.settimeout(CONNECT_TIMEOUT_SECONDS)
    try:
        sock.connect(str(path))
    except (ConnectionRefusedError, FileNotFoundError):
        return False
    finally:
        sock.close()
    return True


class _Handler(socketserver.BaseRequestHandler):
    server: "_Server"

    def handle(self) -> None:
        self.server.service.run_session(MessageSocket(self.request))


class _Server(socketserver.ThreadingUnixStreamServer):
    daemon_threads = True

    def __init__(self, path: str, service: "ProcessService") -> None:
        self.service = service
        super().__init__(path, _Handler)


class ProcessService:
    """
    The privileged side: launches processes and answers remote-process calls.

    Typical use is `start()` then `serve_forever()`; tests run the loop on a
    thread and stop it with `shutdown()`.
    """

    def __init__(self, config: Config) -> None:
        self.config = config
        self._server: Optional[_Server] = None
        self._serving = threading.Event()
        self._sessions: set[_Session] = set()
        self._lock = threading.Lock()

    @property
    def socket_path(self) -> Path:
        return self.config.service.resolved_socket_path

    def launch(
        self,
        argv: Sequence[str],
        *,
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[str] = None,
    ) -> Optional[RemoteProcessHolder]:
        """Start `argv` and wrap it; `None` if it is not allowed or cannot be started."""
        argv = list(argv)
        if not command_allowed(self.config, argv):
            log(f"exec refused (not in exec.allowed_commands): {argv!r}")
            return None
        workdir = cwd if cwd is not None else self.config.exec.default_cwd
        if workdir is not None:
            workdir = os.path.expanduser(workdir)
        try:
            proc = spawn(argv, env=env, cwd=workdir)
        except (OSError, ValueError) as exc:
            log(f"exec failed: {argv!r}: {describe_exc(exc)}")
            return None
        log(f"exec pid {proc.pid}: {argv!r}")
        return RemoteProcessHolder(proc, buffer_size=self.config.transfer.buffer_size)

    def run_session(self, conn: MessageSocket) -> None:
        session = _Session(self, conn)
        with self._lock:
            self._sessions.add(session)
        try:
            session.run()
        finally:
            with self._lock:
                self._sessions.discard(session)

    def start(self) -> Path:
        path = self.socket_path
        path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        if path.is_socket():
            if _socket_in_use(path):
                raise OSError(errno.EADDRINUSE, "another service is listening", str(path))
            # Left behind by a previous run; binding would fail with EADDRINUSE.
            path.unlink()
        self._server = _Server(str(path), self)
        os.chmod(path, self.config.service.socket_mode)
        log(f"listening on {path}")
        return path

    def serve_forever(self, poll_interval: float = 0.5) -> None:
        if self._server is None:
            self.start()
        assert self._server is not None
        self._serving.set()
        try:
            self._server.serve_forever(poll_interval=poll_interval)
        finally:
            self._serving.clear()

    def shutdown(self) -> None:
        if self._server is not None and self._serving.is_set():
            self._server.shutdown()
        self.close()

    def close(self) -> None:
        server, self._server = self._server, None
        if server is not None:
            server.server_close()
            try:
                self.socket_path.unlink()
            except FileNotFoundError:
                pass
        with self._lock:
            sessions = list(self._sessions)
        for session in sessions:
            session.close()

    def __enter__(self) -> "ProcessService":
        self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.shutdown()
